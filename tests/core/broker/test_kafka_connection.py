# tests/core/broker/test_kafka_connection.py
from __future__ import annotations

import asyncio

import pytest
from aiokafka import TopicPartition

from brokerlink.contracts.broker import ConnectionState
from brokerlink.contracts.credentials import KafkaCredentials
from brokerlink.core.broker.kafka import KafkaConnection, build_client_options
from brokerlink.core.errors import BrokerConnectionError
from tests.helpers.fakes import FakeKafkaCluster


def creds(**settings) -> KafkaCredentials:
    return KafkaCredentials.model_validate(
        {"settings": {"brokers": ["k1:9092"], "clientId": "app", **settings}}
    )


def connection(cluster: FakeKafkaCluster, credentials: KafkaCredentials | None = None) -> KafkaConnection:
    return KafkaConnection(
        credentials or creds(),
        operation_timeout=1.0,
        admin_factory=cluster.admin_factory,
        producer_factory=cluster.producer_factory,
        consumer_factory=cluster.consumer_factory,
    )


class TestBuildClientOptions:
    def test_plaintext(self):
        options = build_client_options(creds())

        assert options == {
            "bootstrap_servers": ["k1:9092"],
            "client_id": "app",
            "security_protocol": "PLAINTEXT",
        }

    def test_tokens_imply_sasl_plain(self):
        credentials = KafkaCredentials.model_validate(
            {
                "accessToken": "svc",
                "refreshToken": "pw",
                "settings": {"brokers": ["k1:9092"], "clientId": "app"},
            }
        )

        options = build_client_options(credentials)

        assert options["security_protocol"] == "SASL_PLAINTEXT"
        assert options["sasl_mechanism"] == "PLAIN"
        assert options["sasl_plain_username"] == "svc"
        assert options["sasl_plain_password"] == "pw"

    def test_ssl_with_scram(self):
        options = build_client_options(
            creds(
                ssl=True,
                sasl={"mechanism": "scram-sha-512", "username": "u", "password": "p"},
            )
        )

        assert options["security_protocol"] == "SASL_SSL"
        assert options["sasl_mechanism"] == "SCRAM-SHA-512"
        assert "ssl_context" in options


class TestKafkaConnection:
    @pytest.mark.asyncio
    async def test_connect_starts_admin(self):
        cluster = FakeKafkaCluster()
        conn = connection(cluster)

        await conn.connect()

        assert conn.state is ConnectionState.CONNECTED
        assert cluster.admins[0].started
        assert cluster.admins[0].options["client_id"] == "app"

    @pytest.mark.asyncio
    async def test_connect_failure_maps_error(self):
        cluster = FakeKafkaCluster()
        cluster.unreachable = True
        conn = connection(cluster)

        with pytest.raises(BrokerConnectionError, match="Kafka admin connect failed"):
            await conn.connect()

        assert conn.state is ConnectionState.DISCONNECTED
        assert cluster.admins[0].closed

    @pytest.mark.asyncio
    async def test_admin_reads(self):
        cluster = FakeKafkaCluster()
        conn = connection(cluster)
        await conn.connect()

        assert await conn.list_topics() == ["orders", "payments"]
        described = await conn.describe_topics(["orders"])
        assert len(described[0]["partitions"]) == 2
        assert (await conn.describe_cluster())["cluster_id"] == "fake-cluster"

    @pytest.mark.asyncio
    async def test_operations_require_connection(self):
        conn = connection(FakeKafkaCluster())

        with pytest.raises(BrokerConnectionError, match="not connected"):
            await conn.list_topics()

    @pytest.mark.asyncio
    async def test_producer_is_started_once_with_acks(self):
        cluster = FakeKafkaCluster()
        conn = connection(cluster)
        await conn.connect()

        await conn.send("orders", b"1")
        await conn.send("orders", b"2", key=b"k")

        assert len(cluster.producers) == 1
        producer = cluster.producers[0]
        assert producer.options["acks"] == "all"
        assert [s[1] for s in producer.sent] == [b"1", b"2"]

    @pytest.mark.asyncio
    async def test_offsets(self):
        cluster = FakeKafkaCluster()
        conn = connection(cluster)
        await conn.connect()
        tps = [TopicPartition("orders", 0), TopicPartition("orders", 1)]

        assert await conn.end_offsets(tps) == {tps[0]: 10, tps[1]: 3}
        assert await conn.beginning_offsets(tps) == {tps[0]: 0, tps[1]: 0}
        assert cluster.consumers[0].options["group_id"] is None

    @pytest.mark.asyncio
    async def test_consume_stops_at_limit(self):
        cluster = FakeKafkaCluster()
        for i in range(5):
            cluster.add_record("orders", f"v{i}")
        conn = connection(cluster)
        await conn.connect()

        records = await conn.consume("orders", limit=3, from_beginning=True, timeout=1.0)

        assert [r.value for r in records] == [b"v0", b"v1", b"v2"]
        consumer = cluster.consumers[-1]
        assert consumer.stopped
        assert consumer.options["auto_offset_reset"] == "earliest"
        assert consumer.options["group_id"].startswith("temp-consumer-")

    @pytest.mark.asyncio
    async def test_consume_soft_timeout_returns_partial(self):
        cluster = FakeKafkaCluster()
        cluster.add_record("orders", "only")
        conn = connection(cluster)
        await conn.connect()

        records = await conn.consume("orders", limit=10, timeout=0.05)

        assert [r.value for r in records] == [b"only"]
        assert cluster.consumers[-1].stopped

    @pytest.mark.asyncio
    async def test_consume_assigned_partition_uses_configured_group(self):
        cluster = FakeKafkaCluster()
        cluster.add_record("orders", "p0", partition=0)
        cluster.add_record("orders", "p1", partition=1)
        conn = connection(cluster, creds(groupId="readers"))
        await conn.connect()

        records = await conn.consume("orders", partition=1, timeout=0.05)

        assert [r.value for r in records] == [b"p1"]
        assert cluster.consumers[-1].assigned == [TopicPartition("orders", 1)]

        grouped = await conn.consume("orders", timeout=0.05)
        assert len(grouped) == 2
        assert cluster.consumers[-1].options["group_id"] == "readers"

    @pytest.mark.asyncio
    async def test_create_and_delete_topic(self):
        cluster = FakeKafkaCluster()
        conn = connection(cluster)
        await conn.connect()

        await conn.create_topic("audit", 3, 1, {"retention.ms": "1000"})
        assert cluster.topics["audit"] == 3

        await conn.delete_topic("audit")
        assert "audit" not in cluster.topics

    @pytest.mark.asyncio
    async def test_close_stops_everything_and_fires_callbacks(self):
        cluster = FakeKafkaCluster()
        conn = connection(cluster)
        await conn.connect()
        await conn.send("orders", b"x")
        closed = []
        conn.on_close(lambda: closed.append(True))

        await conn.close()

        assert conn.state is ConnectionState.CLOSED
        assert cluster.admins[0].closed
        assert cluster.producers[0].stopped
        assert closed == [True]

        with pytest.raises(BrokerConnectionError, match="closed"):
            await conn.connect()

    @pytest.mark.asyncio
    async def test_hung_consumer_stop_is_bounded(self):
        cluster = FakeKafkaCluster()
        cluster.add_record("orders", "only")
        conn = KafkaConnection(
            creds(),
            operation_timeout=0.1,
            admin_factory=cluster.admin_factory,
            producer_factory=cluster.producer_factory,
            consumer_factory=cluster.consumer_factory,
        )
        await conn.connect()
        cluster.hang_on_stop = True

        records = await asyncio.wait_for(
            conn.consume("orders", limit=10, timeout=0.05), timeout=2.0
        )

        assert [r.value for r in records] == [b"only"]
        assert cluster.consumers[-1].stopped is False

        await asyncio.wait_for(conn.close(), timeout=2.0)
        assert conn.state is ConnectionState.CLOSED
