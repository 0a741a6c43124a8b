from __future__ import annotations


class IntegrationError(Exception):
    pass


class ConfigurationError(IntegrationError):
    """A required parameter or credential is missing or invalid."""


class BrokerConnectionError(IntegrationError):
    """The broker could not be reached or the connection was lost."""


class BrokerTimeoutError(BrokerConnectionError):
    """A bounded broker operation did not complete in time."""


class UnsupportedOperationError(IntegrationError):
    """The requested operation or data type is not supported by the adapter."""
