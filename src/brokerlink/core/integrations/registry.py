# brokerlink/core/integrations/registry.py
"""
Registry for configured integrations.
"""
from __future__ import annotations

import logging
from typing import Iterator

from brokerlink.core.integrations.config import IntegrationsConfig, IntegrationSpec

logger = logging.getLogger(__name__)


class IntegrationsRegistry:
    """Named access to integration specs for the HTTP layer and sync jobs."""

    def __init__(self) -> None:
        self._specs: dict[str, IntegrationSpec] = {}

    @classmethod
    def from_config(cls, cfg: IntegrationsConfig) -> "IntegrationsRegistry":
        registry = cls()
        for spec in cfg.integrations:
            registry.register(spec)
        return registry

    def register(self, spec: IntegrationSpec) -> None:
        """
        Register an integration.

        Raises:
            ValueError: If an integration with this name already exists.
        """
        if spec.name in self._specs:
            raise ValueError(f"Integration '{spec.name}' is already registered")

        self._specs[spec.name] = spec
        logger.info("Registered integration: %s (%s)", spec.name, spec.provider)

    def get(self, name: str) -> IntegrationSpec:
        """
        Raises:
            KeyError: If no integration with this name exists.
        """
        if name not in self._specs:
            raise KeyError(f"Integration '{name}' not found in registry")

        return self._specs[name]

    def has(self, name: str) -> bool:
        return name in self._specs

    def list(self) -> list[str]:
        return list(self._specs.keys())

    def items(self) -> Iterator[tuple[str, IntegrationSpec]]:
        yield from self._specs.items()

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    def __len__(self) -> int:
        return len(self._specs)
