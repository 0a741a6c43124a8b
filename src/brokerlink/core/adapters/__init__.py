from brokerlink.core.adapters.base import BrokerAdapter
from brokerlink.core.adapters.kafka import KafkaAdapter, KafkaDataType
from brokerlink.core.adapters.mqtt import MqttAdapter, MqttDataType
from brokerlink.core.adapters.registry import AdapterRegistry, build_adapter_registry

__all__ = [
    "AdapterRegistry",
    "BrokerAdapter",
    "KafkaAdapter",
    "KafkaDataType",
    "MqttAdapter",
    "MqttDataType",
    "build_adapter_registry",
]
