# tests/helpers/fakes.py
"""
In-memory stand-ins for the aiomqtt and aiokafka clients.

They are injected through the ``client_factory`` / ``*_factory`` arguments
of the pooled connections so tests never touch the network.
"""
from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Callable

import aiomqtt
from aiokafka import TopicPartition
from aiokafka.errors import KafkaConnectionError

from brokerlink.core.broker.subscriptions import topic_matches


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate`` holds or fail after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# -- MQTT ----------------------------------------------------------------------


class FakeMqttBroker:
    """Routes publishes to every connected fake client with a matching subscription."""

    def __init__(self) -> None:
        self.clients: list[FakeMqttClient] = []
        self.connect_attempts = 0
        self.fail_connect = False
        self.hang_on_disconnect = False
        self.fail_subscribe = False
        self.refuse_topics: set[str] = set()
        self.fail_publish_topics: set[str] = set()
        self.published: list[tuple[str, Any, int, bool]] = []

    def client_factory(self, **options: Any) -> "FakeMqttClient":
        client = FakeMqttClient(self, options)
        self.clients.append(client)
        return client

    @property
    def last_client(self) -> "FakeMqttClient":
        return self.clients[-1]

    def route(self, topic: str, payload: Any) -> None:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        for client in self.clients:
            if client.connected and any(topic_matches(topic, p) for p in client.subscribed):
                client.feed(topic, payload)


class FakeMqttClient:
    def __init__(self, broker: FakeMqttBroker, options: dict[str, Any]) -> None:
        self.broker = broker
        self.options = options
        self.subscribed: dict[str, int] = {}
        self.connected = False
        self.exited = False
        self._queue: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self) -> "FakeMqttClient":
        self.broker.connect_attempts += 1
        if self.broker.fail_connect:
            raise aiomqtt.MqttError("[Errno 111] Connection refused")
        self.connected = True
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.connected = False
        if self.broker.hang_on_disconnect:
            await asyncio.Event().wait()
        self.exited = True

    @property
    def messages(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._queue.get()
            if isinstance(item, BaseException):
                self.connected = False
                raise item
            yield item

    def feed(self, topic: str, payload: bytes) -> None:
        self._queue.put_nowait(SimpleNamespace(topic=topic, payload=payload))

    def drop(self) -> None:
        """Simulate the broker closing the connection."""
        self._queue.put_nowait(aiomqtt.MqttError("Disconnected during message iteration"))

    async def subscribe(self, topics: list[tuple[str, int]]) -> list[int]:
        if self.broker.fail_subscribe:
            raise aiomqtt.MqttError("Subscribe rejected")
        granted = []
        for topic, qos in topics:
            if topic in self.broker.refuse_topics:
                granted.append(0x80)
                continue
            self.subscribed[topic] = qos
            granted.append(qos)
        return granted

    async def unsubscribe(self, topics: list[str]) -> None:
        for topic in topics:
            self.subscribed.pop(topic, None)

    async def publish(
        self, topic: str, payload: Any = None, qos: int = 0, retain: bool = False
    ) -> None:
        if topic in self.broker.fail_publish_topics:
            raise aiomqtt.MqttError(f"Publish to {topic} rejected")
        self.broker.published.append((topic, payload, qos, retain))
        self.broker.route(topic, payload)


# -- Kafka ---------------------------------------------------------------------


class FakeKafkaCluster:
    """
    Shared state behind the fake admin, producer and consumer clients.

    ``topics`` maps topic name to partition count; ``records`` holds
    ConsumerRecord-like namespaces per topic.
    """

    def __init__(self) -> None:
        self.topics: dict[str, int] = {"orders": 2, "payments": 1}
        self.records: dict[str, list[SimpleNamespace]] = {}
        self.groups: dict[str, dict[str, Any]] = {
            "billing": {"protocol_type": "consumer", "state": "Stable", "members": 2},
            "audit": {"protocol_type": "consumer", "state": "Empty", "members": 0},
        }
        self.committed: dict[str, dict[TopicPartition, int]] = {
            "billing": {TopicPartition("orders", 0): 7, TopicPartition("orders", 1): 3},
        }
        self.high: dict[TopicPartition, int] = {
            TopicPartition("orders", 0): 10,
            TopicPartition("orders", 1): 3,
            TopicPartition("payments", 0): 5,
        }
        self.unreachable = False
        self.hang_on_stop = False
        self.admins: list[FakeKafkaAdmin] = []
        self.producers: list[FakeKafkaProducer] = []
        self.consumers: list[FakeKafkaConsumer] = []

    def admin_factory(self, **options: Any) -> "FakeKafkaAdmin":
        admin = FakeKafkaAdmin(self, options)
        self.admins.append(admin)
        return admin

    def producer_factory(self, **options: Any) -> "FakeKafkaProducer":
        producer = FakeKafkaProducer(self, options)
        self.producers.append(producer)
        return producer

    def consumer_factory(self, *topics: str, **options: Any) -> "FakeKafkaConsumer":
        consumer = FakeKafkaConsumer(self, topics, options)
        self.consumers.append(consumer)
        return consumer

    def add_record(self, topic: str, value: str, partition: int = 0, key: str | None = None) -> None:
        records = self.records.setdefault(topic, [])
        records.append(
            SimpleNamespace(
                topic=topic,
                partition=partition,
                offset=len(records),
                key=key.encode() if key else None,
                value=value.encode(),
                timestamp=1700000000000 + len(records),
                headers=[("source", b"test")],
            )
        )


class FakeKafkaAdmin:
    def __init__(self, cluster: FakeKafkaCluster, options: dict[str, Any]) -> None:
        self.cluster = cluster
        self.options = options
        self.started = False
        self.closed = False

    async def start(self) -> None:
        if self.cluster.unreachable:
            raise KafkaConnectionError("Unable to bootstrap from brokers")
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def list_topics(self) -> list[str]:
        if self.cluster.unreachable:
            raise KafkaConnectionError("Connection lost")
        return list(self.cluster.topics)

    async def describe_topics(self, topics: list[str] | None = None) -> list[dict[str, Any]]:
        out = []
        for name in topics or list(self.cluster.topics):
            if name not in self.cluster.topics:
                out.append({"error_code": 3, "topic": name, "partitions": []})
                continue
            out.append(
                {
                    "error_code": 0,
                    "topic": name,
                    "is_internal": False,
                    "partitions": [
                        {
                            "error_code": 0,
                            "partition": p,
                            "leader": 1,
                            "replicas": [1, 2],
                            "isr": [1, 2],
                        }
                        for p in range(self.cluster.topics[name])
                    ],
                }
            )
        return out

    async def describe_cluster(self) -> dict[str, Any]:
        return {
            "cluster_id": "fake-cluster",
            "controller_id": 1,
            "brokers": [
                {"node_id": 1, "host": "kafka-1", "port": 9092, "rack": None},
                {"node_id": 2, "host": "kafka-2", "port": 9092, "rack": None},
            ],
        }

    async def list_consumer_groups(self) -> list[tuple[str, str]]:
        return [(gid, g["protocol_type"]) for gid, g in self.cluster.groups.items()]

    async def describe_consumer_groups(self, group_ids: list[str]) -> list[dict[str, Any]]:
        out = []
        for gid in group_ids:
            g = self.cluster.groups[gid]
            out.append(
                {
                    "groups": [
                        {
                            "error_code": 0,
                            "group": gid,
                            "state": g["state"],
                            "protocol_type": g["protocol_type"],
                            "protocol": "range",
                            "members": [{"member_id": f"m{i}"} for i in range(g["members"])],
                        }
                    ]
                }
            )
        return out

    async def list_consumer_group_offsets(self, group_id: str) -> dict[TopicPartition, Any]:
        return {
            tp: SimpleNamespace(offset=offset, metadata="")
            for tp, offset in self.cluster.committed.get(group_id, {}).items()
        }

    async def create_topics(self, new_topics: list[Any]) -> None:
        for t in new_topics:
            self.cluster.topics[t.name] = t.num_partitions

    async def delete_topics(self, topics: list[str]) -> None:
        for t in topics:
            self.cluster.topics.pop(t, None)


class FakeKafkaProducer:
    def __init__(self, cluster: FakeKafkaCluster, options: dict[str, Any]) -> None:
        self.cluster = cluster
        self.options = options
        self.started = False
        self.stopped = False
        self.sent: list[tuple[str, bytes, bytes | None, Any]] = []

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def send_and_wait(
        self, topic: str, value: bytes | None = None, key: bytes | None = None, headers: Any = None
    ) -> SimpleNamespace:
        self.sent.append((topic, value, key, headers))
        return SimpleNamespace(topic=topic, partition=0, offset=len(self.sent) - 1)


class FakeKafkaConsumer:
    def __init__(
        self, cluster: FakeKafkaCluster, topics: tuple[str, ...], options: dict[str, Any]
    ) -> None:
        self.cluster = cluster
        self.topics = topics
        self.options = options
        self.assigned: list[TopicPartition] = []
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        if self.cluster.hang_on_stop:
            await asyncio.Event().wait()
        self.stopped = True

    def assign(self, partitions: list[TopicPartition]) -> None:
        self.assigned = list(partitions)

    async def seek_to_beginning(self, *partitions: TopicPartition) -> None:
        return None

    async def end_offsets(self, partitions: list[TopicPartition]) -> dict[TopicPartition, int]:
        return {tp: self.cluster.high.get(tp, 0) for tp in partitions}

    async def beginning_offsets(
        self, partitions: list[TopicPartition]
    ) -> dict[TopicPartition, int]:
        return {tp: 0 for tp in partitions}

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        names = self.topics or tuple({tp.topic for tp in self.assigned})
        for name in names:
            for record in self.cluster.records.get(name, []):
                if self.assigned and record.partition not in {tp.partition for tp in self.assigned}:
                    continue
                yield record
        # Nothing more to read: block like a real consumer waiting for data.
        await asyncio.Event().wait()
