# brokerlink/core/adapters/kafka.py
"""
Kafka adapter.

Administrative reads (topics, consumer groups, offsets, cluster) go through
the pooled admin client; produce uses the pooled producer; message reads
use a short-lived consumer with a soft timeout.

aiokafka returns protocol structures whose field names vary between
protocol versions (``partition`` vs ``partition_index``, ``leader`` vs
``leader_id``). The ``_field`` helper reads whichever is present so the
normalized output stays stable.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Mapping

from brokerlink.contracts.credentials import KafkaCredentials
from brokerlink.core.adapters.base import (
    BrokerAdapter,
    Handler,
    Params,
    bool_param,
    int_param,
    require_str,
)
from brokerlink.core.broker.bridge import settle
from brokerlink.core.broker.kafka import (
    DEFAULT_CONSUME_TIMEOUT,
    KafkaConnection,
    topic_partitions,
)
from brokerlink.core.broker.pool import ConnectionRegistry
from brokerlink.core.errors import ConfigurationError, IntegrationError

logger = logging.getLogger(__name__)

ACTIVE_GROUP_STATES = ("Stable", "PreparingRebalance")
SUMMARY_LIMIT = 10


class KafkaDataType(str, Enum):
    TOPICS = "topics"
    TOPIC_METADATA = "topicMetadata"
    CONSUMER_GROUPS = "consumerGroups"
    CONSUMER_GROUP_OFFSETS = "consumerGroupOffsets"
    MESSAGES = "messages"
    CLUSTER_INFO = "clusterInfo"
    ANALYTICS = "analytics"


# =============================================================================
# Normalization helpers
# =============================================================================


def _field(obj: Any, *names: str, default: Any = None) -> Any:
    for name in names:
        if isinstance(obj, Mapping):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return default


def _decode(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


def _encode(value: Any) -> bytes | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value).encode("utf-8")
    return str(value).encode("utf-8")


def _partition(raw: Any) -> dict[str, Any]:
    return {
        "partitionId": _field(raw, "partition_index", "partition"),
        "leader": _field(raw, "leader_id", "leader"),
        "replicas": list(_field(raw, "replica_nodes", "replicas", default=[]) or []),
        "isr": list(_field(raw, "isr_nodes", "isr", default=[]) or []),
    }


def _topic(raw: Any) -> dict[str, Any]:
    partitions = [_partition(p) for p in _field(raw, "partitions", default=[]) or []]
    return {
        "name": _field(raw, "topic", "name"),
        "partitions": len(partitions),
        "partitionDetails": partitions,
    }


def _group_listing(raw: Any) -> tuple[str, str | None]:
    if isinstance(raw, (tuple, list)):
        return raw[0], (raw[1] if len(raw) > 1 else None)
    return _field(raw, "group_id", "groupId", "group"), _field(
        raw, "protocol_type", "protocolType"
    )


def _group_description(raw: Any) -> dict[str, Any]:
    if hasattr(raw, "to_object"):
        raw = raw.to_object()
    groups = _field(raw, "groups")
    if groups:
        raw = groups[0]
    members = _field(raw, "members", default=[]) or []
    return {
        "state": _field(raw, "state"),
        "members": len(members),
        "protocol": _field(raw, "protocol"),
    }


def _record(record: Any) -> dict[str, Any]:
    headers = _field(record, "headers", default=()) or ()
    return {
        "topic": _field(record, "topic"),
        "partition": _field(record, "partition"),
        "offset": _field(record, "offset"),
        "key": _decode(_field(record, "key")),
        "value": _decode(_field(record, "value")),
        "timestamp": _field(record, "timestamp"),
        "headers": {k: _decode(v) for k, v in headers},
    }


def _broker(raw: Any) -> dict[str, Any]:
    return {
        "nodeId": _field(raw, "node_id", "nodeId"),
        "host": _field(raw, "host"),
        "port": _field(raw, "port"),
        "rack": _field(raw, "rack"),
    }


# =============================================================================
# Adapter
# =============================================================================


class KafkaAdapter(BrokerAdapter[KafkaCredentials, KafkaConnection]):
    """Adapter for ``provider: kafka`` integrations."""

    provider = "kafka"
    credentials_model = KafkaCredentials
    data_types = KafkaDataType

    def __init__(
        self,
        registry: ConnectionRegistry,
        consume_timeout: float = DEFAULT_CONSUME_TIMEOUT,
    ) -> None:
        super().__init__(registry)
        self._consume_timeout = consume_timeout

    def handlers(self) -> dict[Any, Handler]:
        return {
            KafkaDataType.TOPICS: self._topics,
            KafkaDataType.TOPIC_METADATA: self._topic_metadata,
            KafkaDataType.CONSUMER_GROUPS: self._consumer_groups,
            KafkaDataType.CONSUMER_GROUP_OFFSETS: self._consumer_group_offsets,
            KafkaDataType.MESSAGES: self._messages,
            KafkaDataType.CLUSTER_INFO: self._cluster_info,
            KafkaDataType.ANALYTICS: self._analytics,
        }

    async def probe(self, conn: KafkaConnection) -> bool:
        await conn.list_topics()
        return True

    # -- fetch_data handlers ---------------------------------------------------

    async def _topics(self, creds: KafkaCredentials, params: dict[str, Any]) -> list[dict[str, Any]]:
        conn = await self.registry.acquire(creds)
        names = await conn.list_topics()
        if not names:
            return []
        return [_topic(raw) for raw in await conn.describe_topics(names)]

    async def _topic_metadata(
        self, creds: KafkaCredentials, params: dict[str, Any]
    ) -> dict[str, Any]:
        topic = require_str(params, "topic")
        conn = await self.registry.acquire(creds)

        described = await conn.describe_topics([topic])
        if not described or _field(described[0], "error_code", default=0):
            raise ConfigurationError(f"Kafka topic '{topic}' not found")

        partitions = [_partition(p) for p in _field(described[0], "partitions", default=[]) or []]
        tps = topic_partitions(topic, [p["partitionId"] for p in partitions])
        high, low = await asyncio.gather(conn.end_offsets(tps), conn.beginning_offsets(tps))

        for p, tp in zip(partitions, tps):
            p["offset"] = high.get(tp)
            p["high"] = high.get(tp)
            p["low"] = low.get(tp)

        return {
            "name": topic,
            "partitions": partitions,
            "totalPartitions": len(partitions),
            "replicationFactor": len(partitions[0]["replicas"]) if partitions else 0,
        }

    async def _consumer_groups(
        self, creds: KafkaCredentials, params: dict[str, Any]
    ) -> list[dict[str, Any]]:
        conn = await self.registry.acquire(creds)
        listings = [_group_listing(g) for g in await conn.list_groups()]

        # One describe per group so a failing group does not hide the rest.
        described = await settle(conn.describe_groups([gid]) for gid, _ in listings)

        groups = []
        for (group_id, protocol_type), outcome in zip(listings, described):
            entry: dict[str, Any] = {"groupId": group_id, "protocolType": protocol_type}
            if outcome.ok and outcome.value:
                entry.update(_group_description(outcome.value[0]))
            groups.append(entry)
        return groups

    async def _consumer_group_offsets(
        self, creds: KafkaCredentials, params: dict[str, Any]
    ) -> list[dict[str, Any]]:
        group_id = require_str(params, "groupId")
        wanted = params.get("topics")
        if wanted is not None and not isinstance(wanted, list):
            raise ConfigurationError("Parameter 'topics' must be a list of topic names")

        conn = await self.registry.acquire(creds)
        committed = await conn.group_offsets(group_id)

        by_topic: dict[str, dict[int, int]] = defaultdict(dict)
        for tp, meta in committed.items():
            if wanted and tp.topic not in wanted:
                continue
            by_topic[tp.topic][tp.partition] = _field(meta, "offset", default=meta)

        topics = list(by_topic)
        watermarks = await settle(
            conn.end_offsets(topic_partitions(t, by_topic[t])) for t in topics
        )

        out = []
        for topic, outcome in zip(topics, watermarks):
            offsets = by_topic[topic]
            if not outcome.ok:
                out.append(
                    {
                        "topic": topic,
                        "partitions": [
                            {"partition": p, "offset": o} for p, o in sorted(offsets.items())
                        ],
                        "totalLag": None,
                    }
                )
                continue

            high = {tp.partition: value for tp, value in outcome.value.items()}
            partitions = []
            for partition, offset in sorted(offsets.items()):
                hw = high.get(partition, 0)
                partitions.append(
                    {
                        "partition": partition,
                        "offset": offset,
                        "highWatermark": high.get(partition),
                        "lag": hw - max(offset, 0),
                    }
                )
            out.append(
                {
                    "topic": topic,
                    "partitions": partitions,
                    "totalLag": sum(p["lag"] for p in partitions),
                }
            )
        return out

    async def _messages(
        self, creds: KafkaCredentials, params: dict[str, Any]
    ) -> list[dict[str, Any]]:
        topic = require_str(params, "topic")
        limit = int_param(params, "limit", 10) or 10
        partition = int_param(params, "partition", None)
        from_beginning = bool_param(params, "fromBeginning", False)

        conn = await self.registry.acquire(creds)
        records = await conn.consume(
            topic,
            limit=limit,
            from_beginning=from_beginning,
            partition=partition,
            timeout=self._consume_timeout,
        )
        return [_record(r) for r in records]

    async def _cluster_info(
        self, creds: KafkaCredentials, params: dict[str, Any]
    ) -> dict[str, Any]:
        conn = await self.registry.acquire(creds)
        cluster = await conn.describe_cluster()
        return {
            "clusterId": _field(cluster, "cluster_id", "clusterId"),
            "controller": _field(cluster, "controller_id", "controller"),
            "brokers": [_broker(b) for b in _field(cluster, "brokers", default=[]) or []],
        }

    async def _analytics(self, creds: KafkaCredentials, params: dict[str, Any]) -> dict[str, Any]:
        topics, groups, cluster = await asyncio.gather(
            self._topics(creds, params),
            self._consumer_groups(creds, params),
            self._cluster_info(creds, params),
        )
        active = [g for g in groups if g.get("state") in ACTIVE_GROUP_STATES]

        return {
            "summary": {
                "totalTopics": len(topics),
                "totalPartitions": sum(t["partitions"] for t in topics),
                "totalConsumerGroups": len(groups),
                "activeConsumerGroups": len(active),
                "totalBrokers": len(cluster["brokers"]),
                "controllerId": cluster["controller"],
            },
            "topicSummary": [
                {"name": t["name"], "partitions": t["partitions"]}
                for t in topics[:SUMMARY_LIMIT]
            ],
            "consumerGroupSummary": [
                {"groupId": g["groupId"], "state": g.get("state"), "members": g.get("members")}
                for g in groups[:SUMMARY_LIMIT]
            ],
            "brokers": cluster["brokers"],
        }

    # -- operations ------------------------------------------------------------

    async def produce_messages(
        self, credentials: KafkaCredentials | Params, data: Params
    ) -> dict[str, Any]:
        """
        Produce ``data["messages"]`` (``{key?, value, headers?}``) to ``data["topic"]``.

        Records are sent in order and each waits for the broker
        acknowledgement configured by ``acks``.

        Raises:
            ConfigurationError: If the topic or messages are missing.
            BrokerConnectionError: If a send fails.
        """
        creds = self.parse(credentials)
        topic = require_str(data, "topic")
        messages = data.get("messages")
        if not isinstance(messages, list) or not messages:
            raise ConfigurationError("Parameter 'messages' must be a non-empty list")
        for m in messages:
            if not isinstance(m, Mapping) or "value" not in m:
                raise ConfigurationError("Every message needs a 'value'")

        try:
            conn = await self.registry.acquire(creds)
            metadata = []
            for m in messages:
                headers = [(str(k), _encode(v) or b"") for k, v in (m.get("headers") or {}).items()]
                metadata.append(
                    await conn.send(topic, _encode(m["value"]), _encode(m.get("key")), headers)
                )
        except IntegrationError as exc:
            logger.error("Failed to produce Kafka messages to %s: %s", topic, exc)
            raise

        return {
            "success": True,
            "recordsProduced": len(messages),
            "topicPartitions": [
                {
                    "topic": _field(md, "topic", default=topic),
                    "partition": _field(md, "partition"),
                    "offset": _field(md, "offset"),
                }
                for md in metadata
            ],
        }

    async def create_topic(
        self, credentials: KafkaCredentials | Params, data: Params
    ) -> dict[str, Any]:
        """
        Raises:
            ConfigurationError: If the topic name or sizing is invalid.
            BrokerConnectionError: If the broker refuses the request.
        """
        creds = self.parse(credentials)
        topic = require_str(data, "topic")
        num_partitions = int_param(data, "numPartitions", 1) or 1
        replication_factor = int_param(data, "replicationFactor", 1) or 1
        if num_partitions < 1 or replication_factor < 1:
            raise ConfigurationError("numPartitions and replicationFactor must be positive")

        config: dict[str, str] = {}
        for entry in data.get("configEntries") or []:
            if not isinstance(entry, Mapping) or "name" not in entry:
                raise ConfigurationError("configEntries items need a 'name' and 'value'")
            config[str(entry["name"])] = str(entry.get("value", ""))

        try:
            conn = await self.registry.acquire(creds)
            await conn.create_topic(topic, num_partitions, replication_factor, config)
        except IntegrationError as exc:
            logger.error("Failed to create Kafka topic %s: %s", topic, exc)
            raise

        return {"success": True, "topic": topic}

    async def delete_topic(
        self, credentials: KafkaCredentials | Params, topic: str
    ) -> dict[str, Any]:
        creds = self.parse(credentials)
        if not topic:
            raise ConfigurationError("Topic is required")

        try:
            conn = await self.registry.acquire(creds)
            await conn.delete_topic(topic)
        except IntegrationError as exc:
            logger.error("Failed to delete Kafka topic %s: %s", topic, exc)
            raise

        return {"success": True, "topic": topic}
