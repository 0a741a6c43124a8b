# brokerlink/core/adapters/base.py
"""
BrokerAdapter - the single entry point callers use for a broker provider.

An adapter resolves credentials to a pooled connection through the
``ConnectionRegistry`` it was given, dispatches a logical data type to its
handler, and normalizes results into plain JSON-ready structures.

Each adapter declares a closed ``str`` enum of data types and must provide
a handler for every member; a missing handler is caught when the adapter is
constructed, and an unknown data type string raises
``UnsupportedOperationError``.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Generic, Mapping, TypeVar

from brokerlink.contracts.credentials import parse_credentials
from brokerlink.core.broker.pool import ConnectionRegistry
from brokerlink.core.errors import (
    ConfigurationError,
    IntegrationError,
    UnsupportedOperationError,
)

logger = logging.getLogger(__name__)

CredT = TypeVar("CredT")
ConnT = TypeVar("ConnT")

Params = Mapping[str, Any]
Handler = Callable[[Any, dict[str, Any]], Awaitable[Any]]


class BrokerAdapter(ABC, Generic[CredT, ConnT]):
    """Base class for pooled broker adapters.

    Class attributes
    ~~~~~~~~~~~~~~~~
    provider
        Provider name used in integration configs (e.g. ``"mqtt"``).
    credentials_model
        Pydantic model credentials are validated against.
    data_types
        Closed ``str`` enum of the data types ``fetch_data`` accepts.

    Override points
    ~~~~~~~~~~~~~~~
    * ``handlers`` - map every data type member to a coroutine handler.
    * ``probe`` - decide whether an acquired connection is usable.
    """

    provider: ClassVar[str]
    credentials_model: ClassVar[type]
    data_types: ClassVar[type[Enum]]

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry
        self._handlers = self.handlers()

        missing = [m.value for m in self.data_types if m not in self._handlers]
        if missing:
            raise TypeError(
                f"{type(self).__name__} has no handler for data type(s): {missing}"
            )

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    # -- override points -------------------------------------------------------

    @abstractmethod
    def handlers(self) -> dict[Any, Handler]:
        """Return the handler for each member of ``data_types``."""

    async def probe(self, conn: ConnT) -> bool:
        return bool(getattr(conn, "is_connected", False))

    # -- common surface --------------------------------------------------------

    def parse(self, credentials: CredT | Params) -> CredT:
        """
        Validate credentials given as a model instance or a mapping.

        Raises:
            ConfigurationError: If the credentials are invalid.
        """
        return parse_credentials(self.credentials_model, credentials)

    def resolve_data_type(self, data_type: str) -> Enum:
        """
        Raises:
            UnsupportedOperationError: If the adapter does not know ``data_type``.
        """
        try:
            return self.data_types(data_type)
        except ValueError:
            supported = [m.value for m in self.data_types]
            raise UnsupportedOperationError(
                f"Unsupported {self.provider} data type: '{data_type}'. "
                f"Supported: {supported}"
            ) from None

    async def connection(self, credentials: CredT | Params) -> ConnT:
        """Resolve credentials to a live pooled connection."""
        return await self._registry.acquire(self.parse(credentials))

    async def test_connection(self, credentials: CredT | Params) -> bool:
        """
        Report whether the broker is reachable with these credentials.

        Never raises: any failure, including invalid credentials, is
        reported as False.
        """
        try:
            conn = await self.connection(credentials)
            return await self.probe(conn)
        except Exception as exc:
            logger.warning("%s connection test failed: %s", self.provider, exc)
            return False

    async def fetch_data(
        self,
        credentials: CredT | Params,
        data_type: str,
        params: Params | None = None,
    ) -> Any:
        """
        Run the handler registered for ``data_type``.

        Raises:
            UnsupportedOperationError: For an unknown data type.
            ConfigurationError: For invalid credentials or missing parameters.
            BrokerConnectionError: If the broker operation fails.
        """
        kind = self.resolve_data_type(data_type)
        creds = self.parse(credentials)
        handler = self._handlers[kind]

        try:
            return await handler(creds, dict(params or {}))
        except IntegrationError as exc:
            logger.error("%s fetch '%s' failed: %s", self.provider, kind.value, exc)
            raise


# -- parameter helpers ---------------------------------------------------------


def require_str(params: Params, name: str) -> str:
    """
    Raises:
        ConfigurationError: If the parameter is missing or not a non-empty string.
    """
    value = params.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"Parameter '{name}' is required")
    return value


def int_param(params: Params, name: str, default: int | None) -> int | None:
    value = params.get(name)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"Parameter '{name}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Parameter '{name}' must be an integer") from None


def bool_param(params: Params, name: str, default: bool) -> bool:
    value = params.get(name)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "1", "yes"):
        return True
    if isinstance(value, str) and value.lower() in ("false", "0", "no"):
        return False
    raise ConfigurationError(f"Parameter '{name}' must be a boolean")


def topic_list(params: Params) -> list[str]:
    """
    Read ``topic`` or ``topics`` from parameters.

    Raises:
        ConfigurationError: If neither yields a non-empty topic list.
    """
    topics = params.get("topics")
    if topics:
        if not isinstance(topics, (list, tuple)) or not all(
            isinstance(t, str) and t for t in topics
        ):
            raise ConfigurationError("Parameter 'topics' must be a list of topic names")
        return list(topics)

    topic = params.get("topic")
    if isinstance(topic, str) and topic:
        return [topic]

    raise ConfigurationError("Topic or topics array is required")
