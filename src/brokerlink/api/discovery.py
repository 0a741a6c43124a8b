# brokerlink/api/discovery.py
"""
Root-level health endpoint.
"""
from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> dict:
    integrations = getattr(request.app.state, "integrations", None)
    adapters = getattr(request.app.state, "adapters", None)

    pooled = {}
    if adapters is not None:
        pooled = {name: len(adapter.registry) for name, adapter in adapters.items()}

    return {
        "status": "healthy",
        "integrations": len(integrations) if integrations else 0,
        "connections": pooled,
    }
