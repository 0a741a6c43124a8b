from brokerlink.core.integrations.config import (
    SUPPORTED_PROVIDERS,
    IntegrationSpec,
    IntegrationsConfig,
    load_integrations_config,
)
from brokerlink.core.integrations.registry import IntegrationsRegistry

__all__ = [
    "SUPPORTED_PROVIDERS",
    "IntegrationSpec",
    "IntegrationsConfig",
    "IntegrationsRegistry",
    "load_integrations_config",
]
