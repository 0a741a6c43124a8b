# tests/core/integrations/test_integrations_registry.py
from __future__ import annotations

import pytest

from brokerlink.core.integrations import (
    IntegrationsConfig,
    IntegrationsRegistry,
    IntegrationSpec,
)


def spec(name: str, provider: str = "mqtt") -> IntegrationSpec:
    return IntegrationSpec(name=name, provider=provider)


class TestIntegrationsRegistry:
    def test_from_config(self):
        registry = IntegrationsRegistry.from_config(
            IntegrationsConfig(integrations=[spec("a"), spec("b", "kafka")])
        )

        assert registry.list() == ["a", "b"]
        assert registry.get("b").provider == "kafka"
        assert "a" in registry
        assert len(registry) == 2

    def test_register_duplicate_raises(self):
        registry = IntegrationsRegistry()
        registry.register(spec("a"))

        with pytest.raises(ValueError, match="already registered"):
            registry.register(spec("a", "kafka"))

    def test_get_nonexistent_raises(self):
        registry = IntegrationsRegistry()

        with pytest.raises(KeyError, match="not found"):
            registry.get("missing")
        assert registry.has("missing") is False

    def test_items_preserve_order(self):
        registry = IntegrationsRegistry()
        registry.register(spec("z"))
        registry.register(spec("a"))

        assert [name for name, _ in registry.items()] == ["z", "a"]
