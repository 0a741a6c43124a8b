# tests/api/test_health.py
from __future__ import annotations

from fastapi.testclient import TestClient

from brokerlink.core.config import Settings
from brokerlink.main import create_app


def test_health_without_config(tmp_path, adapter_registry) -> None:
    cfg = Settings(integrations_config_paths=[str(tmp_path / "*.yaml")])
    app = create_app(cfg=cfg, adapters=adapter_registry)

    with TestClient(app) as client:
        resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {
        "status": "healthy",
        "integrations": 0,
        "connections": {"mqtt": 0, "kafka": 0},
    }


def test_health_counts_pooled_connections(tmp_path, adapter_registry) -> None:
    (tmp_path / "integrations.yaml").write_text(
        "integrations:\n"
        "  plant_mqtt:\n"
        "    provider: mqtt\n"
        "    settings:\n"
        "      brokerUrl: mqtt://broker.test:1883\n"
    )
    cfg = Settings(integrations_config_paths=[str(tmp_path / "*.yaml")])
    app = create_app(cfg=cfg, adapters=adapter_registry)

    with TestClient(app) as client:
        assert client.post("/integrations/plant_mqtt/test").json()["connected"] is True
        resp = client.get("/health")

    assert resp.json()["integrations"] == 1
    assert resp.json()["connections"]["mqtt"] == 1
    assert len(adapter_registry.get("mqtt").registry) == 0
