# tests/conftest.py
from __future__ import annotations

import pytest

from brokerlink.core.adapters.kafka import KafkaAdapter
from brokerlink.core.adapters.mqtt import MqttAdapter
from brokerlink.core.adapters.registry import AdapterRegistry
from tests.helpers.fakes import FakeKafkaCluster, FakeMqttBroker
from tests.helpers.runtime import make_kafka_pool, make_mqtt_pool


@pytest.fixture
def mqtt_broker() -> FakeMqttBroker:
    return FakeMqttBroker()


@pytest.fixture
def kafka_cluster() -> FakeKafkaCluster:
    return FakeKafkaCluster()


@pytest.fixture
def mqtt_credentials() -> dict:
    return {
        "accessToken": "dashboard",
        "refreshToken": "secret",
        "settings": {
            "brokerUrl": "mqtt://broker.test:1883",
            "clientId": "dashboard-1",
            "reconnectPeriod": 10,
            "connectTimeout": 2000,
        },
    }


@pytest.fixture
def kafka_credentials() -> dict:
    return {
        "settings": {
            "brokers": ["kafka-1:9092", "kafka-2:9092"],
            "clientId": "dashboard",
        },
    }


@pytest.fixture
def mqtt_adapter(mqtt_broker: FakeMqttBroker) -> MqttAdapter:
    return MqttAdapter(make_mqtt_pool(mqtt_broker))


@pytest.fixture
def kafka_adapter(kafka_cluster: FakeKafkaCluster) -> KafkaAdapter:
    return KafkaAdapter(make_kafka_pool(kafka_cluster), consume_timeout=0.1)


@pytest.fixture
def adapter_registry(
    mqtt_broker: FakeMqttBroker, kafka_cluster: FakeKafkaCluster
) -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register(MqttAdapter(make_mqtt_pool(mqtt_broker)))
    registry.register(KafkaAdapter(make_kafka_pool(kafka_cluster), consume_timeout=0.1))
    return registry
