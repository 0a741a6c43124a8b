# brokerlink/core/broker/buffer.py
"""
Bounded per-topic message buffer.

Gives callers a pull-based view of recently observed messages without
holding a live subscription callback. Buffers are in-memory only; a
process restart loses all history.
"""
from __future__ import annotations

import heapq
from collections import deque
from datetime import datetime, timezone
from typing import Any, Iterator

from brokerlink.contracts.broker import BufferedMessage

DEFAULT_BUFFER_SIZE = 1000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def coerce_since(value: Any) -> datetime | None:
    """
    Normalize a ``since`` filter.

    Accepts a datetime, an ISO-8601 string or epoch milliseconds.
    Naive datetimes are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Invalid 'since' value: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return datetime.fromtimestamp(int(text) / 1000.0, tz=timezone.utc)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"Invalid 'since' value: {value!r}") from None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Invalid 'since' value: {value!r}")


class MessageBuffer:
    """
    Per-topic ring buffers with strict FIFO eviction.

    A topic only appears once a message has been observed for it. Each
    topic holds at most ``max_size`` entries; appending beyond the cap
    evicts the single oldest entry.
    """

    def __init__(self, max_size: int = DEFAULT_BUFFER_SIZE) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._topics: dict[str, deque[BufferedMessage]] = {}

    @property
    def max_size(self) -> int:
        return self._max_size

    def append(
        self, topic: str, payload: str, received_at: datetime | None = None
    ) -> BufferedMessage:
        message = BufferedMessage(
            topic=topic,
            payload=payload,
            received_at=received_at or utc_now(),
        )
        buf = self._topics.get(topic)
        if buf is None:
            buf = deque(maxlen=self._max_size)
            self._topics[topic] = buf
        buf.append(message)
        return message

    def read(
        self,
        topic: str | None = None,
        limit: int = 100,
        since: datetime | None = None,
    ) -> list[BufferedMessage]:
        """
        Read buffered messages.

        Args:
            topic: Restrict to one topic. Results are in arrival order.
            limit: Maximum number of messages returned.
            since: Only messages received strictly after this instant.

        Returns:
            For a single topic, the ``limit`` most recent matching messages
            in arrival order. Without a topic, messages from all topics
            merged newest first and truncated to ``limit``.
        """
        if limit <= 0:
            return []

        if topic is not None:
            messages = [
                m for m in self._topics.get(topic, ())
                if since is None or m.received_at > since
            ]
            return messages[-limit:]

        # Each deque is in arrival order; merge the reversed runs newest first.
        merged = heapq.merge(
            *(reversed(buf) for buf in self._topics.values()),
            key=lambda m: m.received_at,
            reverse=True,
        )
        out: list[BufferedMessage] = []
        for message in merged:
            if since is not None and message.received_at <= since:
                continue
            out.append(message)
            if len(out) >= limit:
                break
        return out

    def discard(self, topic: str) -> bool:
        """Drop a topic's buffer. Returns True if it existed."""
        return self._topics.pop(topic, None) is not None

    def clear(self) -> None:
        self._topics.clear()

    def count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def last(self, topic: str) -> BufferedMessage | None:
        buf = self._topics.get(topic)
        return buf[-1] if buf else None

    def topics(self) -> list[str]:
        return list(self._topics.keys())

    def total(self) -> int:
        return sum(len(buf) for buf in self._topics.values())

    def __contains__(self, topic: str) -> bool:
        return topic in self._topics

    def __len__(self) -> int:
        return len(self._topics)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._topics))
