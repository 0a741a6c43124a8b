# brokerlink/contracts/__init__.py
from brokerlink.contracts.broker import (
    BufferedMessage,
    CloseCallback,
    ConnectionState,
    MessageCallback,
    PooledConnection,
    QoS,
    SubscriptionRecord,
)
from brokerlink.contracts.credentials import (
    KafkaCredentials,
    KafkaSettings,
    MqttCredentials,
    MqttSettings,
    SaslSettings,
    TlsSettings,
    WillSettings,
    parse_credentials,
)

__all__ = [
    "BufferedMessage",
    "CloseCallback",
    "ConnectionState",
    "MessageCallback",
    "PooledConnection",
    "QoS",
    "SubscriptionRecord",
    "KafkaCredentials",
    "KafkaSettings",
    "MqttCredentials",
    "MqttSettings",
    "SaslSettings",
    "TlsSettings",
    "WillSettings",
    "parse_credentials",
]
