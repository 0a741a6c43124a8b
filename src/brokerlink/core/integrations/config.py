# brokerlink/core/integrations/config.py
"""
Configuration models and loading for broker integrations.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from brokerlink.core.loader import load_yaml_files, substitute_env_vars

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("mqtt", "kafka")


@dataclass(frozen=True)
class IntegrationSpec:
    """
    A configured broker integration.

    Attributes:
        name: Unique identifier used by the HTTP layer.
        provider: Adapter that serves this integration (``mqtt`` or ``kafka``).
        access_token: Principal (username) for the broker, if any.
        refresh_token: Secret (password) for the broker, if any.
        settings: Provider settings (``brokerUrl``, ``brokers``, ...).
    """

    name: str
    provider: str
    access_token: str | None = None
    refresh_token: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)

    def credentials(self) -> dict[str, Any]:
        """Credentials mapping in the shape the adapters validate."""
        return {
            "accessToken": self.access_token or None,
            "refreshToken": self.refresh_token or None,
            "settings": dict(self.settings),
        }


@dataclass(frozen=True)
class IntegrationsConfig:
    integrations: list[IntegrationSpec] = field(default_factory=list)


def load_integrations_config(patterns: Iterable[str]) -> IntegrationsConfig:
    """
    Load integration definitions from YAML files.

    Expected YAML structure:
    ```yaml
    integrations:
      plant_mqtt:
        provider: mqtt
        access_token: "${MQTT_USERNAME:-}"
        refresh_token: "${MQTT_PASSWORD:-}"
        settings:
          brokerUrl: "${MQTT_URL:-mqtt://localhost:1883}"
          clientId: plant-dashboard
    ```

    Later files override earlier ones by integration name.

    Raises:
        ValueError: If an integration has no or an unknown provider, or an
            environment variable is missing.
    """
    yamls = load_yaml_files(patterns)

    raw_map: dict[str, dict[str, Any]] = {}
    for data in yamls:
        for name, raw in (data.get("integrations") or {}).items():
            raw_map[name] = raw or {}

    specs: list[IntegrationSpec] = []
    for name, raw in raw_map.items():
        provider = str(raw.get("provider", "")).strip().lower()
        if not provider:
            raise ValueError(f"Integration '{name}' missing required 'provider' field")
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Integration '{name}' has unsupported provider '{provider}'. "
                f"Supported: {list(SUPPORTED_PROVIDERS)}"
            )

        try:
            resolved = substitute_env_vars(
                {
                    "access_token": raw.get("access_token"),
                    "refresh_token": raw.get("refresh_token"),
                    "settings": raw.get("settings") or {},
                }
            )
        except ValueError as exc:
            raise ValueError(f"Integration '{name}' config error: {exc}") from exc

        specs.append(
            IntegrationSpec(
                name=name,
                provider=provider,
                access_token=resolved["access_token"],
                refresh_token=resolved["refresh_token"],
                settings=resolved["settings"],
            )
        )

    logger.info("Loaded %d integration(s): %s", len(specs), [s.name for s in specs])

    return IntegrationsConfig(integrations=specs)
