# brokerlink/contracts/broker.py
"""
Broker contracts shared by the pooled connections and the adapter facade.

The pool does not depend on a specific transport: MQTT and Kafka
connections both conform to ``PooledConnection``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable


class QoS(int, Enum):
    """Quality of Service levels for message delivery."""

    AT_MOST_ONCE = 0  # Fire and forget
    AT_LEAST_ONCE = 1  # Acknowledged delivery
    EXACTLY_ONCE = 2  # Guaranteed single delivery


class ConnectionState(str, Enum):
    """Lifecycle of a pooled connection. ``CLOSED`` is terminal."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True)
class BufferedMessage:
    """
    A message observed on a pooled connection and kept for read-back.

    Attributes:
        topic: The topic the message arrived on.
        payload: Message payload decoded as text.
        received_at: When the message was received (UTC).
    """

    topic: str
    payload: str
    received_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "payload": self.payload,
            "receivedAt": self.received_at.isoformat(),
        }


@dataclass(frozen=True)
class SubscriptionRecord:
    """A granted subscription and its delivery quality."""

    topic: str
    qos: QoS

    def to_dict(self) -> dict[str, Any]:
        return {"topic": self.topic, "qos": int(self.qos)}


# Per-topic callback invoked for every inbound message on a subscribed topic.
MessageCallback = Callable[[BufferedMessage], Awaitable[None] | None]

# Invoked by a pooled connection once it reaches the CLOSED state.
CloseCallback = Callable[[], None]


@runtime_checkable
class PooledConnection(Protocol):
    """
    Protocol for connections held by the connection registry.

    Implementations own exactly one live client and manage its lifecycle.
    """

    @property
    def key(self) -> str:
        """Registry key this connection was opened for."""
        ...

    @property
    def state(self) -> ConnectionState:
        ...

    @property
    def is_connected(self) -> bool:
        ...

    async def connect(self) -> None:
        """
        Establish the connection.

        Raises:
            BrokerConnectionError: If the broker cannot be reached.
        """
        ...

    async def close(self) -> None:
        """Close the connection. Moves the connection to ``CLOSED``."""
        ...

    def on_close(self, callback: CloseCallback) -> None:
        """Register a callback fired once the connection is closed."""
        ...
