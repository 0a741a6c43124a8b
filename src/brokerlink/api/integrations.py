from __future__ import annotations

import logging
from typing import Any, Awaitable, TypeVar

from fastapi import APIRouter, Body, HTTPException, Request

from brokerlink.core.adapters.base import BrokerAdapter
from brokerlink.core.adapters.kafka import KafkaAdapter
from brokerlink.core.adapters.mqtt import MqttAdapter
from brokerlink.core.adapters.registry import AdapterRegistry
from brokerlink.core.errors import (
    BrokerConnectionError,
    ConfigurationError,
    UnsupportedOperationError,
)
from brokerlink.core.integrations.config import IntegrationSpec
from brokerlink.core.integrations.registry import IntegrationsRegistry

logger = logging.getLogger(__name__)

router = APIRouter()

AdapterT = TypeVar("AdapterT", bound=BrokerAdapter)


def _runtime(request: Request) -> tuple[IntegrationsRegistry, AdapterRegistry]:
    integrations = getattr(request.app.state, "integrations", None)
    adapters = getattr(request.app.state, "adapters", None)

    if integrations is None or adapters is None:
        logger.error("Integration runtime not initialized correctly")
        raise HTTPException(
            status_code=500,
            detail="Integration runtime not initialized",
        )
    return integrations, adapters


def _resolve(request: Request, name: str) -> tuple[IntegrationSpec, BrokerAdapter]:
    integrations, adapters = _runtime(request)
    try:
        spec = integrations.get(name)
        return spec, adapters.get(spec.provider)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _resolve_as(
    request: Request, name: str, kind: type[AdapterT], operation: str
) -> tuple[IntegrationSpec, AdapterT]:
    spec, adapter = _resolve(request, name)
    if not isinstance(adapter, kind):
        raise HTTPException(
            status_code=400,
            detail=f"Integration '{name}' ({spec.provider}) does not support {operation}",
        )
    return spec, adapter


async def _guarded(name: str, operation: str, aw: Awaitable[Any]) -> Any:
    try:
        return await aw
    except (ConfigurationError, UnsupportedOperationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except BrokerConnectionError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Failed to %s for integration '%s'", operation, name)
        raise HTTPException(
            status_code=500,
            detail=f"{operation} failed",
        ) from exc


@router.get("")
async def list_integrations(request: Request) -> list[dict[str, str]]:
    """
    List configured integrations with their providers.
    """
    integrations, _ = _runtime(request)
    return [{"name": name, "provider": spec.provider} for name, spec in integrations.items()]


@router.post("/{name}/test")
async def test_integration(name: str, request: Request) -> dict[str, Any]:
    """
    Check connectivity. Always answers 200; failures report ``connected: false``.
    """
    spec, adapter = _resolve(request, name)
    connected = await adapter.test_connection(spec.credentials())
    return {"name": name, "connected": connected}


@router.post("/{name}/data/{data_type}")
async def fetch_data(
    name: str,
    data_type: str,
    request: Request,
    params: dict[str, Any] | None = Body(default=None),
) -> Any:
    spec, adapter = _resolve(request, name)
    return await _guarded(
        name,
        f"fetch {data_type}",
        adapter.fetch_data(spec.credentials(), data_type, params or {}),
    )


# -- MQTT ----------------------------------------------------------------------


@router.post("/{name}/publish")
async def publish(name: str, request: Request, message: dict[str, Any]) -> Any:
    spec, adapter = _resolve_as(request, name, MqttAdapter, "publish")
    return await _guarded(name, "publish", adapter.publish(spec.credentials(), message))


@router.post("/{name}/publish-batch")
async def publish_batch(name: str, request: Request, payload: Any = Body(...)) -> Any:
    """
    Publish a list of messages best effort.

    Accepts either a JSON array or ``{"messages": [...]}``.
    """
    spec, adapter = _resolve_as(request, name, MqttAdapter, "publish-batch")
    messages = payload.get("messages") if isinstance(payload, dict) else payload
    return await _guarded(
        name, "publish batch", adapter.publish_batch(spec.credentials(), messages)
    )


@router.post("/{name}/subscribe")
async def subscribe(name: str, request: Request, params: dict[str, Any]) -> Any:
    spec, adapter = _resolve_as(request, name, MqttAdapter, "subscribe")
    return await _guarded(name, "subscribe", adapter.subscribe(spec.credentials(), params))


@router.post("/{name}/unsubscribe")
async def unsubscribe(name: str, request: Request, params: dict[str, Any]) -> Any:
    spec, adapter = _resolve_as(request, name, MqttAdapter, "unsubscribe")
    return await _guarded(
        name, "unsubscribe", adapter.unsubscribe(spec.credentials(), params)
    )


# -- Kafka ---------------------------------------------------------------------


@router.post("/{name}/produce")
async def produce(name: str, request: Request, data: dict[str, Any]) -> Any:
    spec, adapter = _resolve_as(request, name, KafkaAdapter, "produce")
    return await _guarded(
        name, "produce", adapter.produce_messages(spec.credentials(), data)
    )


@router.post("/{name}/topics")
async def create_topic(name: str, request: Request, data: dict[str, Any]) -> Any:
    spec, adapter = _resolve_as(request, name, KafkaAdapter, "topic creation")
    return await _guarded(
        name, "create topic", adapter.create_topic(spec.credentials(), data)
    )


@router.delete("/{name}/topics/{topic}")
async def delete_topic(name: str, topic: str, request: Request) -> Any:
    spec, adapter = _resolve_as(request, name, KafkaAdapter, "topic deletion")
    return await _guarded(
        name, "delete topic", adapter.delete_topic(spec.credentials(), topic)
    )
