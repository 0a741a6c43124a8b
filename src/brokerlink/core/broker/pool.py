# brokerlink/core/broker/pool.py
"""
Connection registry for persistent-connection brokers.

Maps a connection key (broker address + client identifier) to one live
pooled connection. Connections are opened lazily on first use, reused by
every later caller, and closed together on shutdown.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Generic, Iterator, Protocol, TypeVar

from brokerlink.contracts.broker import ConnectionState, PooledConnection

logger = logging.getLogger(__name__)


class _Keyed(Protocol):
    @property
    def connection_key(self) -> str: ...


ConnT = TypeVar("ConnT", bound=PooledConnection)
CredT = TypeVar("CredT", bound=_Keyed)

ConnectionFactory = Callable[[CredT], ConnT]


class ConnectionRegistry(Generic[CredT, ConnT]):
    """
    Keyed store of pooled connections.

    Guarantees at most one connection per key: concurrent first-time
    ``acquire`` calls for the same key share a single in-flight connect.
    A failed connect is surfaced to every waiting caller and nothing is
    cached. A connection that drops unexpectedly stays registered while it
    reconnects; a closed connection removes itself.

    Example:
        registry = ConnectionRegistry("mqtt", factory=lambda c: MqttConnection(c))
        conn = await registry.acquire(credentials)
        ...
        await registry.close_all()
    """

    def __init__(self, name: str, factory: ConnectionFactory) -> None:
        """
        Args:
            name: Label used in log messages (e.g. the provider name).
            factory: Builds an unconnected pooled connection from credentials.
        """
        self._name = name
        self._factory = factory
        self._connections: dict[str, ConnT] = {}
        self._pending: dict[str, asyncio.Task[ConnT]] = {}

    @property
    def name(self) -> str:
        return self._name

    async def acquire(self, credentials: CredT) -> ConnT:
        """
        Resolve credentials to a pooled connection, opening it if needed.

        Returns the cached entry immediately unless it has been closed.

        Raises:
            BrokerConnectionError: If a new connection cannot be established.
        """
        key = credentials.connection_key
        conn = self._connections.get(key)
        if conn is not None and conn.state is not ConnectionState.CLOSED:
            return conn

        task = self._pending.get(key)
        if task is None:
            task = asyncio.create_task(
                self._open(key, credentials), name=f"{self._name}-connect:{key}"
            )
            self._pending[key] = task
            task.add_done_callback(lambda t, k=key: self._clear_pending(k, t))
            # Errors are delivered to awaiting callers; avoid a stray warning
            # when every caller was cancelled before the connect finished.
            task.add_done_callback(_retrieve_exception)

        # A cancelled caller must not abort the connect other callers share.
        return await asyncio.shield(task)

    def peek(self, credentials: CredT) -> ConnT | None:
        """Return the cached connection for these credentials without connecting."""
        conn = self._connections.get(credentials.connection_key)
        if conn is None or conn.state is ConnectionState.CLOSED:
            return None
        return conn

    async def release(self, credentials: CredT) -> bool:
        """Close and forget one connection. Returns True if one was cached."""
        conn = self._connections.pop(credentials.connection_key, None)
        if conn is None:
            return False
        await conn.close()
        logger.info("Released %s connection: %s", self._name, credentials.connection_key)
        return True

    async def close_all(self) -> None:
        """
        Close every pooled connection.

        Best effort: a failure on one connection is logged and does not stop
        the others from being closed.
        """
        for task in list(self._pending.values()):
            task.cancel()

        connections = list(self._connections.items())
        self._connections.clear()

        for key, conn in connections:
            try:
                await conn.close()
                logger.info("Closed %s connection: %s", self._name, key)
            except Exception as exc:
                logger.error("Error closing %s connection '%s': %s", self._name, key, exc)

    async def _open(self, key: str, credentials: CredT) -> ConnT:
        conn = self._factory(credentials)
        logger.info("Opening %s connection: %s", self._name, key)
        try:
            await conn.connect()
        except asyncio.CancelledError:
            await conn.close()
            raise
        conn.on_close(lambda: self._forget(key, conn))
        self._connections[key] = conn
        return conn

    def _forget(self, key: str, conn: ConnT) -> None:
        if self._connections.get(key) is conn:
            del self._connections[key]
            logger.info("Removed closed %s connection: %s", self._name, key)

    def _clear_pending(self, key: str, task: asyncio.Task[ConnT]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    def keys(self) -> list[str]:
        return list(self._connections.keys())

    def items(self) -> Iterator[tuple[str, ConnT]]:
        yield from list(self._connections.items())

    def __contains__(self, key: str) -> bool:
        return key in self._connections

    def __len__(self) -> int:
        return len(self._connections)


def _retrieve_exception(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()
