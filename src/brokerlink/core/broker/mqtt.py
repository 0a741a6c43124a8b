# brokerlink/core/broker/mqtt.py
"""
Pooled MQTT connection.

One ``MqttConnection`` owns one aiomqtt client for a (broker URL, client id)
pair, plus the subscription table and the per-topic message buffer for that
client. A supervisor task keeps the session alive: it connects, drains
inbound messages into the buffer and subscription callbacks, and reconnects
after ``reconnectPeriod`` when the broker drops the connection.

Usage:
    conn = MqttConnection(credentials)
    await conn.connect()

    await conn.subscribe(["sensors/#"], QoS.AT_LEAST_ONCE)
    await conn.publish("sensors/1", "21.5", QoS.AT_LEAST_ONCE)

    conn.buffer.read("sensors/1", limit=10)

    await conn.close()
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import ssl
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable
from urllib.parse import urlsplit
from uuid import uuid4

import aiomqtt

from brokerlink.contracts.broker import (
    BufferedMessage,
    CloseCallback,
    ConnectionState,
    MessageCallback,
    QoS,
    SubscriptionRecord,
)
from brokerlink.contracts.credentials import MqttCredentials, TlsSettings
from brokerlink.core.broker.bridge import OneShot, bounded
from brokerlink.core.broker.buffer import DEFAULT_BUFFER_SIZE, MessageBuffer
from brokerlink.core.broker.subscriptions import SubscriptionTracker
from brokerlink.core.errors import BrokerConnectionError, ConfigurationError

logger = logging.getLogger(__name__)

# Granted QoS codes at or above this value mean the broker refused the topic.
SUBACK_FAILURE = 0x80

_SCHEMES: dict[str, tuple[str, bool, int]] = {
    # scheme: (transport, tls, default port)
    "mqtt": ("tcp", False, 1883),
    "tcp": ("tcp", False, 1883),
    "mqtts": ("tcp", True, 8883),
    "ssl": ("tcp", True, 8883),
    "tls": ("tcp", True, 8883),
    "ws": ("websockets", False, 80),
    "wss": ("websockets", True, 443),
}


# =============================================================================
# Client options
# =============================================================================


def generate_client_id() -> str:
    return f"mqtt_client_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


def build_tls_context(tls: TlsSettings | None) -> ssl.SSLContext:
    """Build an SSL context from TLS settings (system CAs when none given)."""
    context = ssl.create_default_context()
    if tls is None:
        return context

    if tls.ca:
        if "-----BEGIN" in tls.ca:
            context.load_verify_locations(cadata=tls.ca)
        else:
            context.load_verify_locations(cafile=tls.ca)

    if tls.cert and tls.key:
        context.load_cert_chain(certfile=tls.cert, keyfile=tls.key)

    if not tls.reject_unauthorized:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    return context


def build_client_options(credentials: MqttCredentials, client_id: str) -> dict[str, Any]:
    """
    Translate credentials into aiomqtt ``Client`` keyword arguments.

    Raises:
        ConfigurationError: If the broker URL cannot be used.
    """
    settings = credentials.settings
    parsed = urlsplit(settings.broker_url)
    scheme = parsed.scheme.lower()

    if scheme not in _SCHEMES:
        raise ConfigurationError(
            f"Unsupported MQTT broker URL scheme '{parsed.scheme}' in '{settings.broker_url}'"
        )
    if not parsed.hostname:
        raise ConfigurationError(f"MQTT broker URL has no host: '{settings.broker_url}'")

    transport, use_tls, default_port = _SCHEMES[scheme]
    try:
        port = parsed.port or default_port
    except ValueError as exc:
        raise ConfigurationError(f"Invalid port in MQTT broker URL: {exc}") from exc

    options: dict[str, Any] = {
        "hostname": parsed.hostname,
        "port": port,
        "identifier": client_id,
        "username": credentials.access_token or parsed.username,
        "password": credentials.refresh_token or parsed.password,
        "keepalive": settings.keepalive,
        "clean_session": settings.clean,
        "timeout": settings.connect_timeout / 1000.0,
        "transport": transport,
    }

    if transport == "websockets":
        options["websocket_path"] = parsed.path or "/mqtt"

    if settings.will is not None:
        options["will"] = aiomqtt.Will(
            topic=settings.will.topic,
            payload=settings.will.payload,
            qos=int(settings.will.qos),
            retain=settings.will.retain,
        )

    if use_tls or settings.tls is not None:
        options["tls_context"] = build_tls_context(settings.tls)

    return options


def payload_text(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload).decode("utf-8", errors="replace")
    return str(payload)


@dataclass(frozen=True)
class SubscribeOutcome:
    """Per-topic result of a subscribe request."""

    subscribed: list[SubscriptionRecord]
    failed: list[tuple[str, str]]


# =============================================================================
# Pooled connection
# =============================================================================


class MqttConnection:
    """
    A pooled, self-reconnecting MQTT client.

    State machine: ``disconnected → connecting → connected →
    (reconnecting ⇄ connected) → closed``. ``closed`` is terminal.

    Inbound messages are appended to ``buffer`` (bounded per topic) and then
    delivered to connection listeners and to the callbacks of every
    subscription whose pattern matches the topic.
    """

    def __init__(
        self,
        credentials: MqttCredentials,
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        operation_timeout: float | None = 10.0,
        discard_buffer_on_unsubscribe: bool = True,
        client_factory: Callable[..., Any] = aiomqtt.Client,
    ) -> None:
        """
        Args:
            credentials: Broker address, auth and tuning.
            buffer_size: Per-topic cap of the message buffer.
            operation_timeout: Seconds allowed for publish/subscribe/unsubscribe.
            discard_buffer_on_unsubscribe: Drop a topic's buffered messages
                together with its subscription record.
            client_factory: Builds the underlying client (``aiomqtt.Client``).

        Raises:
            ConfigurationError: If the broker URL is invalid.
        """
        self._credentials = credentials
        self._client_id = credentials.settings.client_id or generate_client_id()
        self._options = build_client_options(credentials, self._client_id)
        self._client_factory = client_factory
        self._operation_timeout = operation_timeout
        self._discard_buffer = discard_buffer_on_unsubscribe

        settings = credentials.settings
        self._connect_timeout = settings.connect_timeout / 1000.0
        self._reconnect_delay = settings.reconnect_period / 1000.0

        self._buffer = MessageBuffer(buffer_size)
        self._subscriptions = SubscriptionTracker()
        self._unrestored: set[str] = set()
        self._listeners: list[MessageCallback] = []

        self._state = ConnectionState.DISCONNECTED
        self._client: Any = None
        self._supervisor: asyncio.Task | None = None
        self._ready: OneShot[None] | None = None
        self._close_callbacks: list[CloseCallback] = []
        self._finalized = False

        self._connected_at: float | None = None
        self._reconnect_count = 0
        self._receive_count = 0
        self._publish_count = 0

    # -- Properties ------------------------------------------------------------

    @property
    def key(self) -> str:
        return self._credentials.connection_key

    @property
    def broker_url(self) -> str:
        return self._credentials.settings.broker_url

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._client is not None

    @property
    def is_reconnecting(self) -> bool:
        return self._state is ConnectionState.RECONNECTING

    @property
    def buffer(self) -> MessageBuffer:
        return self._buffer

    @property
    def subscriptions(self) -> SubscriptionTracker:
        return self._subscriptions

    @property
    def default_qos(self) -> QoS:
        return self._credentials.settings.qos

    # -- Lifecycle -------------------------------------------------------------

    async def connect(self) -> None:
        """
        Connect to the broker, waiting at most ``connectTimeout``.

        Idempotent while the connection is alive.

        Raises:
            BrokerConnectionError: If the first connect fails or times out.
                The connection is closed in that case.
        """
        if self._state is ConnectionState.CONNECTED:
            return
        if self._state is ConnectionState.CLOSED:
            raise BrokerConnectionError(f"MQTT connection '{self.key}' is closed")

        if self._supervisor is None:
            self._ready = OneShot(f"MQTT connect to {self.broker_url}")
            self._state = ConnectionState.CONNECTING
            self._supervisor = asyncio.create_task(
                self._supervise(self._ready), name=f"mqtt-supervisor:{self.key}"
            )

        assert self._ready is not None
        try:
            await self._ready.wait(self._connect_timeout)
        except BrokerConnectionError:
            await self.close()
            raise

    async def close(self) -> None:
        """Disconnect and move to ``closed``. Safe to call more than once."""
        task, self._supervisor = self._supervisor, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._finalize()

    def on_close(self, callback: CloseCallback) -> None:
        if self._finalized:
            callback()
            return
        self._close_callbacks.append(callback)

    def add_listener(self, callback: MessageCallback) -> None:
        """Register a callback for every inbound message on this connection."""
        self._listeners.append(callback)

    async def _supervise(self, ready: OneShot[None]) -> None:
        try:
            while True:
                client = self._client_factory(**self._options)
                try:
                    await client.__aenter__()
                except aiomqtt.MqttError as exc:
                    if not ready.done:
                        logger.error("MQTT connection error (%s): %s", self.broker_url, exc)
                        ready.reject(
                            BrokerConnectionError(
                                f"Failed to connect to MQTT broker {self.broker_url}: {exc}"
                            )
                        )
                        return
                    logger.warning("MQTT reconnect to %s failed: %s", self.broker_url, exc)
                    await asyncio.sleep(self._reconnect_delay)
                    continue

                await self._run_session(client, ready)

                if self._reconnect_delay <= 0:
                    logger.warning(
                        "MQTT connection to %s lost and reconnect is disabled",
                        self.broker_url,
                    )
                    return

                self._state = ConnectionState.RECONNECTING
                logger.info(
                    "MQTT reconnecting to %s in %.1fs",
                    self.broker_url,
                    self._reconnect_delay,
                )
                await asyncio.sleep(self._reconnect_delay)
        finally:
            self._client = None
            self._finalize()

    async def _run_session(self, client: Any, ready: OneShot[None]) -> None:
        """Drive one connected session until the broker drops it."""
        self._client = client
        self._state = ConnectionState.CONNECTED
        self._connected_at = time.time()
        try:
            if ready.done:
                self._reconnect_count += 1
                logger.info("MQTT reconnected to %s", self.broker_url)
                await self._restore_subscriptions(client)
            else:
                logger.info("MQTT connected to %s as %s", self.broker_url, self._client_id)
                ready.resolve(None)

            async for message in client.messages:
                await self._dispatch(str(message.topic), message.payload)

            logger.warning("MQTT message stream ended: %s", self.broker_url)
        except aiomqtt.MqttError as exc:
            logger.warning("MQTT connection closed: %s (%s)", self.broker_url, exc)
        finally:
            self._client = None
            await _exit_client(client, self._operation_timeout)

    async def _restore_subscriptions(self, client: Any) -> None:
        records = self._subscriptions.snapshot()
        if not records:
            return
        try:
            granted = await bounded(
                client.subscribe([(r.topic, int(r.qos)) for r in records]),
                self._operation_timeout,
                "MQTT resubscribe",
            )
        except (aiomqtt.MqttError, BrokerConnectionError) as exc:
            self._unrestored = {r.topic for r in records}
            logger.error("Failed to restore MQTT subscriptions on %s: %s", self.broker_url, exc)
            return

        codes = list(granted or [])
        self._unrestored = {
            r.topic for idx, r in enumerate(records) if _grant(codes, idx)[1] is not None
        }
        if self._unrestored:
            logger.error(
                "MQTT broker %s refused restored subscription(s): %s",
                self.broker_url,
                sorted(self._unrestored),
            )
        logger.info(
            "Restored %d MQTT subscription(s) on %s",
            len(records) - len(self._unrestored),
            self.broker_url,
        )

    def _finalize(self) -> None:
        if self._finalized:
            return
        self._finalized = True
        self._state = ConnectionState.CLOSED
        self._client = None

        if self._ready is not None and self._ready.reject(
            BrokerConnectionError(f"MQTT connection '{self.key}' closed")
        ):
            self._ready.consume_exception()

        self._subscriptions.clear()
        self._buffer.clear()
        self._listeners.clear()

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("MQTT close callback failed for %s", self.key)

    # -- Inbound ---------------------------------------------------------------

    async def _dispatch(self, topic: str, payload: Any) -> BufferedMessage:
        self._receive_count += 1
        message = self._buffer.append(topic, payload_text(payload))
        logger.debug("MQTT message on %s (%d bytes)", topic, len(message.payload))

        for callback in [*self._listeners, *self._subscriptions.callbacks_for(topic)]:
            try:
                result = callback(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("MQTT message callback error on topic %s", topic)

        return message

    # -- Operations ------------------------------------------------------------

    def _require_client(self) -> Any:
        if not self.is_connected:
            raise BrokerConnectionError(
                f"MQTT client for {self.broker_url} is not connected (state={self._state.value})"
            )
        return self._client

    async def publish(
        self,
        topic: str,
        payload: Any,
        qos: QoS | int = QoS.AT_MOST_ONCE,
        retain: bool = False,
    ) -> None:
        """
        Publish one message.

        Returns once the client reports delivery (PUBACK/PUBCOMP for QoS 1/2).
        No retry: callers re-invoke on failure.

        Raises:
            BrokerConnectionError: If not connected, on transport error, or on timeout.
        """
        client = self._require_client()
        try:
            await bounded(
                client.publish(topic, payload=payload, qos=int(qos), retain=retain),
                self._operation_timeout,
                f"MQTT publish to '{topic}'",
            )
        except aiomqtt.MqttError as exc:
            raise BrokerConnectionError(f"MQTT publish to '{topic}' failed: {exc}") from exc

        self._publish_count += 1
        logger.debug("Published to %s (qos=%d, retain=%s)", topic, int(qos), retain)

    async def subscribe(
        self,
        topics: Iterable[str],
        qos: QoS | int = QoS.AT_MOST_ONCE,
        callback: MessageCallback | None = None,
    ) -> SubscribeOutcome:
        """
        Subscribe to topics and record every granted topic.

        The broker may grant some topics and refuse others; the outcome lists
        both so callers see per-topic results.

        Raises:
            BrokerConnectionError: If not connected, on transport error, or on timeout.
        """
        topic_list = list(topics)
        client = self._require_client()
        try:
            granted = await bounded(
                client.subscribe([(t, int(qos)) for t in topic_list]),
                self._operation_timeout,
                f"MQTT subscribe to {topic_list}",
            )
        except aiomqtt.MqttError as exc:
            raise BrokerConnectionError(f"MQTT subscribe to {topic_list} failed: {exc}") from exc

        codes = list(granted or [])
        subscribed: list[SubscriptionRecord] = []
        failed: list[tuple[str, str]] = []

        for idx, topic in enumerate(topic_list):
            code, reason = _grant(codes, idx)
            if reason is not None:
                failed.append((topic, reason))
                continue
            subscribed.append(self._subscriptions.record(topic, QoS(code), callback))
            self._unrestored.discard(topic)

        logger.info(
            "MQTT subscribe on %s: granted=%s refused=%s",
            self.broker_url,
            [r.topic for r in subscribed],
            [t for t, _ in failed],
        )
        return SubscribeOutcome(subscribed=subscribed, failed=failed)

    async def unsubscribe(self, topics: Iterable[str]) -> list[str]:
        """
        Unsubscribe from topics, dropping their records (and buffers if configured).

        Raises:
            BrokerConnectionError: If not connected, on transport error, or on timeout.
        """
        topic_list = list(topics)
        client = self._require_client()
        try:
            await bounded(
                client.unsubscribe(topic_list),
                self._operation_timeout,
                f"MQTT unsubscribe from {topic_list}",
            )
        except aiomqtt.MqttError as exc:
            raise BrokerConnectionError(
                f"MQTT unsubscribe from {topic_list} failed: {exc}"
            ) from exc

        for topic in topic_list:
            self._subscriptions.discard(topic)
            self._unrestored.discard(topic)
            if self._discard_buffer:
                self._buffer.discard(topic)

        logger.info("MQTT unsubscribed on %s: %s", self.broker_url, topic_list)
        return topic_list

    # -- Introspection ---------------------------------------------------------

    def status(self) -> dict[str, Any]:
        return {
            "connected": self.is_connected,
            "reconnecting": self.is_reconnecting,
            "state": self._state.value,
            "brokerUrl": self.broker_url,
            "clientId": self._client_id,
            "subscriptionCount": len(self._subscriptions),
            "bufferedTopics": len(self._buffer),
            "unrestoredSubscriptions": sorted(self._unrestored),
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            "connected": self.is_connected,
            "connected_at": self._connected_at,
            "reconnect_count": self._reconnect_count,
            "publish_count": self._publish_count,
            "receive_count": self._receive_count,
        }


def _grant(codes: list[Any], idx: int) -> tuple[int | None, str | None]:
    """Granted QoS for the ``idx``-th requested topic, or the refusal reason."""
    if idx >= len(codes):
        return None, "no acknowledgement from broker"
    code = int(getattr(codes[idx], "value", codes[idx]))
    if code >= SUBACK_FAILURE or code not in (0, 1, 2):
        return None, f"refused by broker (code {code:#04x})"
    return code, None


async def _exit_client(client: Any, timeout: float | None) -> None:
    try:
        await bounded(client.__aexit__(None, None, None), timeout, "MQTT disconnect")
    except aiomqtt.MqttError as exc:
        logger.debug("MQTT disconnect reported: %s", exc)
    except Exception as exc:
        logger.warning("Error during MQTT disconnect: %s", exc)
