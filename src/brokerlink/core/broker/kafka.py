# brokerlink/core/broker/kafka.py
"""
Pooled Kafka connection.

Kafka clients are cheap to describe but expensive to start, so one
``KafkaConnection`` per (bootstrap servers, client id) keeps a started admin
client, a lazily started producer and a lazily started offsets consumer.
Message reads use short-lived consumers that are stopped after each call.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Iterable

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError
from aiokafka.helpers import create_ssl_context

from brokerlink.contracts.broker import CloseCallback, ConnectionState
from brokerlink.contracts.credentials import KafkaCredentials
from brokerlink.core.broker.bridge import bounded
from brokerlink.core.errors import BrokerConnectionError

logger = logging.getLogger(__name__)

DEFAULT_CONSUME_TIMEOUT = 10.0


def build_client_options(credentials: KafkaCredentials) -> dict[str, Any]:
    """Keyword arguments shared by the admin client, producers and consumers."""
    settings = credentials.settings
    sasl = credentials.effective_sasl

    if sasl is not None:
        protocol = "SASL_SSL" if settings.ssl else "SASL_PLAINTEXT"
    else:
        protocol = "SSL" if settings.ssl else "PLAINTEXT"

    options: dict[str, Any] = {
        "bootstrap_servers": list(settings.brokers),
        "client_id": settings.client_id,
        "security_protocol": protocol,
    }

    if settings.ssl:
        options["ssl_context"] = create_ssl_context()

    if sasl is not None:
        options["sasl_mechanism"] = sasl.mechanism.upper()
        options["sasl_plain_username"] = sasl.username
        options["sasl_plain_password"] = sasl.password

    return options


class KafkaConnection:
    """
    A pooled set of Kafka clients for one cluster identity.

    ``connect`` starts the admin client; the producer and the offsets
    consumer start on first use. All calls are bounded by
    ``operation_timeout`` and Kafka errors surface as
    ``BrokerConnectionError``.
    """

    def __init__(
        self,
        credentials: KafkaCredentials,
        *,
        operation_timeout: float | None = 30.0,
        admin_factory: Callable[..., Any] = AIOKafkaAdminClient,
        producer_factory: Callable[..., Any] = AIOKafkaProducer,
        consumer_factory: Callable[..., Any] = AIOKafkaConsumer,
    ) -> None:
        self._credentials = credentials
        self._options = build_client_options(credentials)
        self._operation_timeout = operation_timeout
        self._admin_factory = admin_factory
        self._producer_factory = producer_factory
        self._consumer_factory = consumer_factory

        self._state = ConnectionState.DISCONNECTED
        self._admin: Any = None
        self._producer: Any = None
        self._offsets_consumer: Any = None
        self._consumers: set[Any] = set()
        self._lock = asyncio.Lock()
        self._close_callbacks: list[CloseCallback] = []

    @property
    def key(self) -> str:
        return self._credentials.connection_key

    @property
    def client_id(self) -> str:
        return self._credentials.settings.client_id

    @property
    def group_id(self) -> str | None:
        return self._credentials.settings.group_id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    # -- Lifecycle -------------------------------------------------------------

    async def connect(self) -> None:
        """
        Start the admin client.

        Raises:
            BrokerConnectionError: If the cluster cannot be reached.
        """
        async with self._lock:
            if self._state is ConnectionState.CONNECTED:
                return
            if self._state is ConnectionState.CLOSED:
                raise BrokerConnectionError(f"Kafka connection '{self.key}' is closed")

            self._state = ConnectionState.CONNECTING
            admin = self._admin_factory(**self._options)
            try:
                await self._call(admin.start(), "Kafka admin connect")
            except BrokerConnectionError:
                self._state = ConnectionState.DISCONNECTED
                await _stop(admin.close(), "admin client", self._operation_timeout)
                raise

            self._admin = admin
            self._state = ConnectionState.CONNECTED
            logger.info("Kafka connected to %s as %s", self._options["bootstrap_servers"], self.client_id)

    async def close(self) -> None:
        """Stop every client owned by this connection (best effort)."""
        if self._state is ConnectionState.CLOSED:
            return
        self._state = ConnectionState.CLOSED

        consumers, self._consumers = list(self._consumers), set()
        for consumer in consumers:
            await _stop(consumer.stop(), "consumer", self._operation_timeout)
        if self._offsets_consumer is not None:
            await _stop(
                self._offsets_consumer.stop(), "offsets consumer", self._operation_timeout
            )
        if self._producer is not None:
            await _stop(self._producer.stop(), "producer", self._operation_timeout)
        if self._admin is not None:
            await _stop(self._admin.close(), "admin client", self._operation_timeout)

        self._admin = self._producer = self._offsets_consumer = None

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Kafka close callback failed for %s", self.key)

    def on_close(self, callback: CloseCallback) -> None:
        if self._state is ConnectionState.CLOSED:
            callback()
            return
        self._close_callbacks.append(callback)

    async def _call(self, aw: Awaitable[Any], operation: str) -> Any:
        try:
            return await bounded(aw, self._operation_timeout, operation)
        except KafkaError as exc:
            raise BrokerConnectionError(f"{operation} failed: {exc}") from exc

    def _require_admin(self) -> Any:
        if not self.is_connected or self._admin is None:
            raise BrokerConnectionError(
                f"Kafka connection '{self.key}' is not connected (state={self._state.value})"
            )
        return self._admin

    async def _get_producer(self) -> Any:
        async with self._lock:
            self._require_admin()
            if self._producer is None:
                settings = self._credentials.settings
                producer = self._producer_factory(
                    **self._options,
                    acks="all" if settings.acks == -1 else settings.acks,
                )
                try:
                    await self._call(producer.start(), "Kafka producer connect")
                except BrokerConnectionError:
                    await _stop(producer.stop(), "producer", self._operation_timeout)
                    raise
                self._producer = producer
            return self._producer

    async def _get_offsets_consumer(self) -> Any:
        async with self._lock:
            self._require_admin()
            if self._offsets_consumer is None:
                consumer = self._consumer_factory(
                    **self._options, group_id=None, enable_auto_commit=False
                )
                try:
                    await self._call(consumer.start(), "Kafka offsets consumer connect")
                except BrokerConnectionError:
                    await _stop(consumer.stop(), "offsets consumer", self._operation_timeout)
                    raise
                self._offsets_consumer = consumer
            return self._offsets_consumer

    # -- Administrative reads --------------------------------------------------

    async def list_topics(self) -> list[str]:
        admin = self._require_admin()
        return list(await self._call(admin.list_topics(), "Kafka list topics"))

    async def describe_topics(self, topics: list[str] | None = None) -> list[dict[str, Any]]:
        admin = self._require_admin()
        return list(await self._call(admin.describe_topics(topics), "Kafka describe topics"))

    async def describe_cluster(self) -> dict[str, Any]:
        admin = self._require_admin()
        return dict(await self._call(admin.describe_cluster(), "Kafka describe cluster"))

    async def list_groups(self) -> list[Any]:
        admin = self._require_admin()
        return list(await self._call(admin.list_consumer_groups(), "Kafka list consumer groups"))

    async def describe_groups(self, group_ids: list[str]) -> list[Any]:
        admin = self._require_admin()
        return list(
            await self._call(
                admin.describe_consumer_groups(group_ids), "Kafka describe consumer groups"
            )
        )

    async def group_offsets(self, group_id: str) -> dict[Any, Any]:
        admin = self._require_admin()
        return dict(
            await self._call(
                admin.list_consumer_group_offsets(group_id),
                f"Kafka offsets for group '{group_id}'",
            )
        )

    async def end_offsets(self, partitions: list[TopicPartition]) -> dict[TopicPartition, int]:
        consumer = await self._get_offsets_consumer()
        return dict(await self._call(consumer.end_offsets(partitions), "Kafka end offsets"))

    async def beginning_offsets(
        self, partitions: list[TopicPartition]
    ) -> dict[TopicPartition, int]:
        consumer = await self._get_offsets_consumer()
        return dict(
            await self._call(consumer.beginning_offsets(partitions), "Kafka beginning offsets")
        )

    # -- Writes ----------------------------------------------------------------

    async def send(
        self,
        topic: str,
        value: bytes,
        key: bytes | None = None,
        headers: list[tuple[str, bytes]] | None = None,
    ) -> Any:
        """Produce one record and wait for the broker acknowledgement."""
        producer = await self._get_producer()
        return await self._call(
            producer.send_and_wait(topic, value=value, key=key, headers=headers or None),
            f"Kafka produce to '{topic}'",
        )

    async def create_topic(
        self,
        topic: str,
        num_partitions: int = 1,
        replication_factor: int = 1,
        config: dict[str, str] | None = None,
    ) -> None:
        admin = self._require_admin()
        new_topic = NewTopic(
            name=topic,
            num_partitions=num_partitions,
            replication_factor=replication_factor,
            topic_configs=config or {},
        )
        await self._call(admin.create_topics([new_topic]), f"Kafka create topic '{topic}'")
        logger.info("Created Kafka topic %s on %s", topic, self.key)

    async def delete_topic(self, topic: str) -> None:
        admin = self._require_admin()
        await self._call(admin.delete_topics([topic]), f"Kafka delete topic '{topic}'")
        logger.info("Deleted Kafka topic %s on %s", topic, self.key)

    # -- One-shot consume ------------------------------------------------------

    async def consume(
        self,
        topic: str,
        *,
        limit: int = 10,
        from_beginning: bool = False,
        partition: int | None = None,
        timeout: float = DEFAULT_CONSUME_TIMEOUT,
    ) -> list[Any]:
        """
        Read up to ``limit`` records with a temporary consumer.

        The wait is a soft timeout: once ``timeout`` seconds pass the
        consumer is stopped and whatever was collected is returned.
        With ``partition`` the consumer is assigned that partition directly;
        otherwise it joins the configured group (or a temporary one).

        Raises:
            BrokerConnectionError: If the consumer cannot start or fails mid-read.
        """
        self._require_admin()
        offset_reset = "earliest" if from_beginning else "latest"

        if partition is None:
            group_id = self.group_id or f"temp-consumer-{int(time.time() * 1000)}"
            consumer = self._consumer_factory(
                topic,
                **self._options,
                group_id=group_id,
                auto_offset_reset=offset_reset,
                enable_auto_commit=False,
            )
        else:
            consumer = self._consumer_factory(
                **self._options,
                group_id=None,
                auto_offset_reset=offset_reset,
                enable_auto_commit=False,
            )

        self._consumers.add(consumer)
        records: list[Any] = []
        try:
            await self._call(consumer.start(), f"Kafka consumer connect for '{topic}'")
            if partition is not None:
                tp = TopicPartition(topic, partition)
                consumer.assign([tp])
                if from_beginning:
                    await self._call(consumer.seek_to_beginning(tp), "Kafka seek")

            try:
                await asyncio.wait_for(_collect(consumer, records, limit), timeout=timeout)
            except asyncio.TimeoutError:
                logger.debug(
                    "Kafka consume on %s hit %.1fs timeout with %d record(s)",
                    topic,
                    timeout,
                    len(records),
                )
            except KafkaError as exc:
                raise BrokerConnectionError(f"Kafka consume from '{topic}' failed: {exc}") from exc
        finally:
            self._consumers.discard(consumer)
            await _stop(consumer.stop(), "consumer", self._operation_timeout)

        return records


async def _collect(consumer: Any, records: list[Any], limit: int) -> None:
    if limit <= 0:
        return
    async for record in consumer:
        records.append(record)
        if len(records) >= limit:
            return


async def _stop(aw: Awaitable[Any], what: str, timeout: float | None) -> None:
    try:
        await bounded(aw, timeout, f"Kafka {what} stop")
    except Exception as exc:
        logger.warning("Error stopping Kafka %s: %s", what, exc)


def topic_partitions(topic: str, partitions: Iterable[int]) -> list[TopicPartition]:
    return [TopicPartition(topic, p) for p in partitions]
