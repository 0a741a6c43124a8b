# brokerlink/contracts/credentials.py
"""
Credential models for broker integrations.

Credentials arrive from the integration store as camelCase mappings
(``brokerUrl``, ``clientId``, ...). They are validated once and are
immutable afterwards. ``connection_key`` carries a digest of every field,
secrets included, so any changed value yields a different pool entry.
"""
from __future__ import annotations

import hashlib
import secrets
from typing import Any, Literal, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from brokerlink.contracts.broker import QoS
from brokerlink.core.errors import ConfigurationError


# Per-process key for credential fingerprints.
_FINGERPRINT_KEY = secrets.token_bytes(16)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    def fingerprint(self) -> str:
        return hashlib.blake2b(
            self.model_dump_json().encode("utf-8"), key=_FINGERPRINT_KEY, digest_size=8
        ).hexdigest()


# -- MQTT ----------------------------------------------------------------------


class WillSettings(_Frozen):
    """Last-will message published by the broker if the client drops."""

    topic: str
    payload: str = ""
    qos: QoS = QoS.AT_MOST_ONCE
    retain: bool = False


class TlsSettings(_Frozen):
    """
    TLS material.

    ``ca`` may be a PEM string or a file path; ``cert`` and ``key`` are file
    paths to the client certificate chain and private key.
    """

    ca: str | None = None
    cert: str | None = None
    key: str | None = None
    reject_unauthorized: bool = Field(default=True, alias="rejectUnauthorized")


class MqttSettings(_Frozen):
    broker_url: str = Field(alias="brokerUrl", min_length=1)
    client_id: str | None = Field(default=None, alias="clientId")
    keepalive: int = Field(default=60, ge=0)
    clean: bool = True
    reconnect_period: int = Field(default=5000, alias="reconnectPeriod", ge=0)
    connect_timeout: int = Field(default=30000, alias="connectTimeout", gt=0)
    qos: QoS = QoS.AT_MOST_ONCE
    will: WillSettings | None = None
    tls: TlsSettings | None = None


class MqttCredentials(_Frozen):
    """
    Credentials for an MQTT integration.

    Attributes:
        access_token: Broker username.
        refresh_token: Broker password.
        settings: Broker address and connection tuning.
    """

    access_token: str | None = Field(default=None, alias="accessToken")
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    settings: MqttSettings

    @property
    def connection_key(self) -> str:
        client_id = self.settings.client_id or "default"
        return f"{self.settings.broker_url}_{client_id}_{self.fingerprint()}"


# -- Kafka ---------------------------------------------------------------------


class SaslSettings(_Frozen):
    mechanism: Literal["plain", "scram-sha-256", "scram-sha-512"] = "plain"
    username: str
    password: str


class KafkaSettings(_Frozen):
    brokers: list[str] = Field(min_length=1)
    client_id: str = Field(alias="clientId", min_length=1)
    group_id: str | None = Field(default=None, alias="groupId")
    ssl: bool = False
    sasl: SaslSettings | None = None
    acks: Literal[-1, 0, 1] = -1

    @field_validator("brokers")
    @classmethod
    def _strip_brokers(cls, value: list[str]) -> list[str]:
        brokers = [b.strip() for b in value if b and b.strip()]
        if not brokers:
            raise ValueError("at least one broker address is required")
        return brokers


class KafkaCredentials(_Frozen):
    """
    Credentials for a Kafka integration.

    ``access_token``/``refresh_token`` imply SASL/PLAIN when no explicit
    ``sasl`` block is configured.
    """

    access_token: str | None = Field(default=None, alias="accessToken")
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    settings: KafkaSettings

    @property
    def connection_key(self) -> str:
        brokers = ",".join(self.settings.brokers)
        return f"{brokers}_{self.settings.client_id}_{self.fingerprint()}"

    @property
    def effective_sasl(self) -> SaslSettings | None:
        if self.settings.sasl is not None:
            return self.settings.sasl
        if self.access_token and self.refresh_token:
            return SaslSettings(
                mechanism="plain",
                username=self.access_token,
                password=self.refresh_token,
            )
        return None


CredentialsT = TypeVar("CredentialsT", MqttCredentials, KafkaCredentials)


def parse_credentials(
    model: type[CredentialsT], value: CredentialsT | Mapping[str, Any]
) -> CredentialsT:
    """
    Validate credentials given either as a model instance or a mapping.

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    if isinstance(value, model):
        return value
    if not isinstance(value, Mapping):
        raise ConfigurationError(
            f"Expected {model.__name__} or a mapping, got {type(value).__name__}"
        )
    try:
        return model.model_validate(dict(value))
    except ValidationError as exc:
        fields = ", ".join(
            ".".join(str(p) for p in err["loc"]) for err in exc.errors()
        )
        raise ConfigurationError(
            f"Invalid {model.__name__}: {fields}"
        ) from exc
