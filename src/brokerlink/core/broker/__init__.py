# brokerlink/core/broker/__init__.py
"""
Broker connection pooling.

This package provides:
- ``ConnectionRegistry``: one pooled connection per broker identity
- ``MessageBuffer`` and ``SubscriptionTracker``: per-connection state
- ``MqttConnection`` and ``KafkaConnection``: the pooled clients
- bridge helpers turning broker callbacks into bounded awaitables

Example usage:

    from brokerlink.core.broker import ConnectionRegistry, MqttConnection

    registry = ConnectionRegistry("mqtt", factory=MqttConnection)
    conn = await registry.acquire(credentials)
    await conn.publish("sensors/1", "21.5")
    await registry.close_all()
"""

from brokerlink.core.broker.bridge import OneShot, Settled, bounded, settle
from brokerlink.core.broker.buffer import DEFAULT_BUFFER_SIZE, MessageBuffer
from brokerlink.core.broker.kafka import KafkaConnection
from brokerlink.core.broker.mqtt import MqttConnection, SubscribeOutcome
from brokerlink.core.broker.pool import ConnectionRegistry
from brokerlink.core.broker.subscriptions import SubscriptionTracker, topic_matches

__all__ = [
    # Bridge
    "OneShot",
    "Settled",
    "bounded",
    "settle",
    # Per-connection state
    "DEFAULT_BUFFER_SIZE",
    "MessageBuffer",
    "SubscriptionTracker",
    "topic_matches",
    # Pooled clients
    "KafkaConnection",
    "MqttConnection",
    "SubscribeOutcome",
    # Registry
    "ConnectionRegistry",
]
