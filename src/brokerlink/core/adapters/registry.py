# brokerlink/core/adapters/registry.py
"""
Registry of broker adapters by provider name.

Each adapter holds the connection registry for its provider, so the
adapter registry is also the single place that closes every pooled
connection on shutdown.
"""
from __future__ import annotations

import logging
from functools import partial
from typing import Iterator

from brokerlink.core.adapters.base import BrokerAdapter
from brokerlink.core.adapters.kafka import KafkaAdapter
from brokerlink.core.adapters.mqtt import MqttAdapter
from brokerlink.core.broker.kafka import KafkaConnection
from brokerlink.core.broker.mqtt import MqttConnection
from brokerlink.core.broker.pool import ConnectionRegistry
from brokerlink.core.config import Settings

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """
    Named access to adapter instances for the HTTP layer and sync jobs.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, BrokerAdapter] = {}

    def register(self, adapter: BrokerAdapter) -> None:
        """
        Register an adapter under its provider name.

        Raises:
            ValueError: If an adapter for this provider already exists.
        """
        name = adapter.provider
        if name in self._adapters:
            raise ValueError(f"Adapter '{name}' is already registered")

        self._adapters[name] = adapter
        logger.info("Registered adapter: %s", name)

    def get(self, provider: str) -> BrokerAdapter:
        """
        Raises:
            KeyError: If no adapter serves this provider.
        """
        if provider not in self._adapters:
            raise KeyError(f"Adapter '{provider}' not found in registry")

        return self._adapters[provider]

    def has(self, provider: str) -> bool:
        return provider in self._adapters

    def list(self) -> list[str]:
        return list(self._adapters.keys())

    def items(self) -> Iterator[tuple[str, BrokerAdapter]]:
        yield from self._adapters.items()

    async def close_all(self) -> None:
        """Close every pooled connection of every adapter (best effort)."""
        for name, adapter in self._adapters.items():
            try:
                await adapter.registry.close_all()
            except Exception as exc:
                logger.error("Error closing %s connections: %s", name, exc)

    def __contains__(self, provider: str) -> bool:
        return self.has(provider)

    def __len__(self) -> int:
        return len(self._adapters)


def build_adapter_registry(cfg: Settings) -> AdapterRegistry:
    """Create the MQTT and Kafka adapters, each with a fresh connection registry."""
    mqtt_pool = ConnectionRegistry(
        "mqtt",
        factory=partial(
            MqttConnection,
            buffer_size=cfg.message_buffer_size,
            operation_timeout=cfg.operation_timeout,
            discard_buffer_on_unsubscribe=cfg.discard_buffer_on_unsubscribe,
        ),
    )
    kafka_pool = ConnectionRegistry(
        "kafka",
        factory=partial(KafkaConnection, operation_timeout=cfg.operation_timeout),
    )

    registry = AdapterRegistry()
    registry.register(MqttAdapter(mqtt_pool))
    registry.register(KafkaAdapter(kafka_pool, consume_timeout=cfg.kafka_consume_timeout))
    return registry
