# brokerlink/core/broker/subscriptions.py
from __future__ import annotations

from dataclasses import dataclass

from brokerlink.contracts.broker import MessageCallback, QoS, SubscriptionRecord


def topic_matches(topic: str, pattern: str) -> bool:
    """Check if a topic matches a single subscription pattern with + and # wildcards."""
    topic_parts = topic.split("/")
    pattern_parts = pattern.split("/")

    for i, pattern_part in enumerate(pattern_parts):
        if pattern_part == "#":
            return True  # matches everything from here, including the parent level

        if i >= len(topic_parts):
            return False

        if pattern_part == "+":
            continue

        if pattern_part != topic_parts[i]:
            return False

    return len(topic_parts) == len(pattern_parts)


@dataclass
class _Entry:
    qos: QoS
    callback: MessageCallback | None = None


class SubscriptionTracker:
    """
    Active topic subscriptions for one pooled connection.

    Records are created on a granted subscribe acknowledgement and only
    removed on unsubscribe; they never expire on their own.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def record(
        self,
        topic: str,
        qos: QoS,
        callback: MessageCallback | None = None,
    ) -> SubscriptionRecord:
        existing = self._entries.get(topic)
        if existing is not None and callback is None:
            # Re-subscribing keeps a previously registered callback.
            callback = existing.callback
        self._entries[topic] = _Entry(qos=QoS(qos), callback=callback)
        return SubscriptionRecord(topic=topic, qos=QoS(qos))

    def discard(self, topic: str) -> bool:
        return self._entries.pop(topic, None) is not None

    def snapshot(self) -> list[SubscriptionRecord]:
        return [
            SubscriptionRecord(topic=topic, qos=entry.qos)
            for topic, entry in self._entries.items()
        ]

    def callbacks_for(self, topic: str) -> list[MessageCallback]:
        """Callbacks of every subscription whose pattern matches ``topic``."""
        return [
            entry.callback
            for pattern, entry in self._entries.items()
            if entry.callback is not None and topic_matches(topic, pattern)
        ]

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, topic: str) -> bool:
        return topic in self._entries

    def __len__(self) -> int:
        return len(self._entries)
