# tests/core/integrations/test_integrations_config.py
from __future__ import annotations

import textwrap

import pytest

from brokerlink.core.integrations import IntegrationSpec, load_integrations_config


def write(path, body: str) -> str:
    path.write_text(textwrap.dedent(body))
    return str(path)


class TestLoadIntegrationsConfig:
    def test_loads_both_providers(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MQTT_PASSWORD", "s3cret")
        pattern = write(
            tmp_path / "integrations.yaml",
            """
            integrations:
              plant_mqtt:
                provider: MQTT
                access_token: dashboard
                refresh_token: "${MQTT_PASSWORD}"
                settings:
                  brokerUrl: mqtt://broker:1883
              events_kafka:
                provider: kafka
                settings:
                  brokers: ["kafka-1:9092"]
                  clientId: dashboard
            """,
        )

        cfg = load_integrations_config([pattern])

        by_name = {s.name: s for s in cfg.integrations}
        assert by_name["plant_mqtt"].provider == "mqtt"
        assert by_name["plant_mqtt"].refresh_token == "s3cret"
        assert by_name["events_kafka"].settings["brokers"] == ["kafka-1:9092"]
        assert by_name["events_kafka"].access_token is None

    def test_later_file_overrides_by_name(self, tmp_path):
        write(
            tmp_path / "a.yaml",
            """
            integrations:
              plant_mqtt:
                provider: mqtt
                settings: {brokerUrl: "mqtt://old"}
            """,
        )
        write(
            tmp_path / "b.yaml",
            """
            integrations:
              plant_mqtt:
                provider: mqtt
                settings: {brokerUrl: "mqtt://new"}
            """,
        )

        cfg = load_integrations_config([str(tmp_path / "*.yaml")])

        assert len(cfg.integrations) == 1
        assert cfg.integrations[0].settings["brokerUrl"] == "mqtt://new"

    def test_missing_provider_raises(self, tmp_path):
        pattern = write(
            tmp_path / "i.yaml",
            """
            integrations:
              broken:
                settings: {}
            """,
        )

        with pytest.raises(ValueError, match="missing required 'provider'"):
            load_integrations_config([pattern])

    def test_unsupported_provider_raises(self, tmp_path):
        pattern = write(
            tmp_path / "i.yaml",
            """
            integrations:
              queue:
                provider: amqp
            """,
        )

        with pytest.raises(ValueError, match="unsupported provider 'amqp'"):
            load_integrations_config([pattern])

    def test_missing_env_var_names_integration(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        pattern = write(
            tmp_path / "i.yaml",
            """
            integrations:
              plant_mqtt:
                provider: mqtt
                settings:
                  brokerUrl: "${NOT_SET_ANYWHERE}"
            """,
        )

        with pytest.raises(ValueError, match="Integration 'plant_mqtt' config error"):
            load_integrations_config([pattern])

    def test_no_files_is_empty(self, tmp_path):
        cfg = load_integrations_config([str(tmp_path / "*.yaml")])

        assert cfg.integrations == []


class TestIntegrationSpec:
    def test_credentials_shape(self):
        spec = IntegrationSpec(
            name="plant_mqtt",
            provider="mqtt",
            access_token="user",
            refresh_token="",
            settings={"brokerUrl": "mqtt://broker"},
        )

        assert spec.credentials() == {
            "accessToken": "user",
            "refreshToken": None,
            "settings": {"brokerUrl": "mqtt://broker"},
        }
