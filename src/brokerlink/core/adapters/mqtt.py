# brokerlink/core/adapters/mqtt.py
"""
MQTT adapter.

Pooled publish/subscribe access to MQTT brokers. Each integration resolves
to one ``MqttConnection`` per (broker URL, client id); subscriptions and
the message buffer live on that connection and survive across requests.
"""
from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Mapping, Sequence

from brokerlink.contracts.broker import MessageCallback, QoS
from brokerlink.contracts.credentials import MqttCredentials
from brokerlink.core.adapters.base import (
    BrokerAdapter,
    Handler,
    Params,
    int_param,
    topic_list,
)
from brokerlink.core.broker.bridge import settle
from brokerlink.core.broker.buffer import coerce_since
from brokerlink.core.broker.mqtt import MqttConnection
from brokerlink.core.errors import (
    BrokerConnectionError,
    ConfigurationError,
    IntegrationError,
)

logger = logging.getLogger(__name__)

DEFAULT_READ_LIMIT = 100
TOPIC_STATS_LIMIT = 20


class MqttDataType(str, Enum):
    STATUS = "status"
    SUBSCRIPTIONS = "subscriptions"
    MESSAGES = "messages"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    ANALYTICS = "analytics"


def encode_payload(payload: Any) -> str | bytes:
    """Pass text and bytes through; serialize structured payloads as JSON."""
    if payload is None:
        return ""
    if isinstance(payload, (str, bytes)):
        return payload
    if isinstance(payload, bytearray):
        return bytes(payload)
    if isinstance(payload, (dict, list)):
        return json.dumps(payload)
    return str(payload)


def _qos(value: Any, default: QoS) -> QoS:
    if value is None or value == "":
        return default
    try:
        return QoS(int(value))
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid qos {value!r}: expected 0, 1 or 2") from None


class MqttAdapter(BrokerAdapter[MqttCredentials, MqttConnection]):
    """
    Adapter for ``provider: mqtt`` integrations.

    Read-only data types (``subscriptions``, ``messages``) inspect an
    existing pooled connection and never open one; everything else
    connects on demand.
    """

    provider = "mqtt"
    credentials_model = MqttCredentials
    data_types = MqttDataType

    def handlers(self) -> dict[Any, Handler]:
        return {
            MqttDataType.STATUS: self._status,
            MqttDataType.SUBSCRIPTIONS: self._subscriptions,
            MqttDataType.MESSAGES: self._messages,
            MqttDataType.SUBSCRIBE: self._subscribe,
            MqttDataType.UNSUBSCRIBE: self._unsubscribe,
            MqttDataType.ANALYTICS: self._analytics,
        }

    # -- fetch_data handlers ---------------------------------------------------

    async def _status(self, creds: MqttCredentials, params: dict[str, Any]) -> dict[str, Any]:
        try:
            conn = await self.registry.acquire(creds)
        except BrokerConnectionError as exc:
            return {"connected": False, "error": str(exc)}
        return conn.status()

    async def _subscriptions(
        self, creds: MqttCredentials, params: dict[str, Any]
    ) -> list[dict[str, Any]]:
        conn = self.registry.peek(creds)
        if conn is None:
            return []
        return [record.to_dict() for record in conn.subscriptions.snapshot()]

    async def _messages(
        self, creds: MqttCredentials, params: dict[str, Any]
    ) -> list[dict[str, Any]]:
        topic = params.get("topic") or None
        limit = int_param(params, "limit", DEFAULT_READ_LIMIT) or DEFAULT_READ_LIMIT
        return [
            m.to_dict()
            for m in self.read_buffered(creds, topic, limit=limit, since=params.get("since"))
        ]

    async def _subscribe(self, creds: MqttCredentials, params: dict[str, Any]) -> dict[str, Any]:
        return await self.subscribe(creds, params)

    async def _unsubscribe(
        self, creds: MqttCredentials, params: dict[str, Any]
    ) -> dict[str, Any]:
        return await self.unsubscribe(creds, params)

    async def _analytics(self, creds: MqttCredentials, params: dict[str, Any]) -> dict[str, Any]:
        status = await self._status(creds, params)
        conn = self.registry.peek(creds)

        if conn is None:
            return {
                "status": status,
                "summary": {
                    "totalMessages": 0,
                    "topicCount": 0,
                    "subscriptionCount": 0,
                    "connected": False,
                },
                "topicStats": [],
            }

        buffer = conn.buffer
        topic_stats = []
        for topic in buffer.topics():
            last = buffer.last(topic)
            topic_stats.append(
                {
                    "topic": topic,
                    "messageCount": buffer.count(topic),
                    "lastMessage": last.received_at.isoformat() if last else None,
                }
            )
        topic_stats.sort(key=lambda s: s["messageCount"], reverse=True)

        return {
            "status": status,
            "summary": {
                "totalMessages": buffer.total(),
                "topicCount": len(buffer),
                "subscriptionCount": len(conn.subscriptions),
                "connected": conn.is_connected,
            },
            "topicStats": topic_stats[:TOPIC_STATS_LIMIT],
        }

    # -- operations ------------------------------------------------------------

    def read_buffered(
        self,
        credentials: MqttCredentials | Params,
        topic: str | None = None,
        limit: int = DEFAULT_READ_LIMIT,
        since: Any = None,
    ) -> list:
        """
        Read buffered messages without connecting.

        Returns an empty list when no pooled connection exists yet.

        Raises:
            ConfigurationError: If ``since`` cannot be parsed.
        """
        creds = self.parse(credentials)
        try:
            since_at = coerce_since(since)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

        conn = self.registry.peek(creds)
        if conn is None:
            return []
        return conn.buffer.read(topic, limit=limit, since=since_at)

    async def publish(
        self, credentials: MqttCredentials | Params, message: Params
    ) -> dict[str, Any]:
        """
        Publish one message: ``{topic, payload|message, qos?, retain?}``.

        ``qos`` defaults to the integration's configured level.

        Raises:
            ConfigurationError: If the topic is missing or qos is invalid.
            BrokerConnectionError: If the broker rejects or drops the publish.
        """
        creds = self.parse(credentials)
        if not isinstance(message, Mapping):
            raise ConfigurationError("Message must be an object with a 'topic'")

        topic = message.get("topic")
        if not isinstance(topic, str) or not topic:
            raise ConfigurationError("Topic is required")

        payload = message.get("payload", message.get("message"))
        qos = _qos(message.get("qos"), creds.settings.qos)
        retain = bool(message.get("retain", False))

        try:
            conn = await self.registry.acquire(creds)
            await conn.publish(topic, encode_payload(payload), qos, retain)
        except IntegrationError as exc:
            logger.error("Failed to publish MQTT message to %s: %s", topic, exc)
            raise

        return {"success": True, "topic": topic, "qos": int(qos), "retain": retain}

    async def publish_batch(
        self, credentials: MqttCredentials | Params, messages: Sequence[Params]
    ) -> dict[str, Any]:
        """
        Publish messages concurrently, best effort.

        Never raises for individual failures; each result reports its own
        outcome.

        Raises:
            ConfigurationError: If the credentials or the message list are invalid.
        """
        creds = self.parse(credentials)
        if not isinstance(messages, (list, tuple)):
            raise ConfigurationError("Messages must be a list")

        outcomes = await settle(self.publish(creds, m) for m in messages)

        results = []
        for message, outcome in zip(messages, outcomes):
            entry: dict[str, Any] = {
                "topic": message.get("topic") if isinstance(message, Mapping) else None,
                "success": outcome.ok,
            }
            if not outcome.ok:
                entry["error"] = str(outcome.error)
            results.append(entry)

        successful = sum(1 for o in outcomes if o.ok)
        return {
            "total": len(messages),
            "successful": successful,
            "failed": len(messages) - successful,
            "results": results,
        }

    async def subscribe(
        self,
        credentials: MqttCredentials | Params,
        params: Params,
        callback: MessageCallback | None = None,
    ) -> dict[str, Any]:
        """
        Subscribe to ``topic`` or ``topics`` at ``qos``.

        Granted topics are listed in ``subscribed``; topics the broker
        refused are listed in ``failed`` with a reason.

        Raises:
            ConfigurationError: If no topic is given or qos is invalid.
            BrokerConnectionError: If the subscribe request fails.
        """
        creds = self.parse(credentials)
        topics = topic_list(params)
        qos = _qos(params.get("qos"), creds.settings.qos)

        try:
            conn = await self.registry.acquire(creds)
            outcome = await conn.subscribe(topics, qos, callback)
        except IntegrationError as exc:
            logger.error("Failed to subscribe to MQTT topic(s) %s: %s", topics, exc)
            raise

        return {
            "success": not outcome.failed,
            "subscribed": [record.to_dict() for record in outcome.subscribed],
            "failed": [{"topic": t, "reason": reason} for t, reason in outcome.failed],
        }

    async def unsubscribe(
        self, credentials: MqttCredentials | Params, params: Params
    ) -> dict[str, Any]:
        """
        Raises:
            ConfigurationError: If no topic is given.
            BrokerConnectionError: If the unsubscribe request fails.
        """
        creds = self.parse(credentials)
        topics = topic_list(params)

        try:
            conn = await self.registry.acquire(creds)
            removed = await conn.unsubscribe(topics)
        except IntegrationError as exc:
            logger.error("Failed to unsubscribe from MQTT topic(s) %s: %s", topics, exc)
            raise

        return {"success": True, "unsubscribed": removed}
