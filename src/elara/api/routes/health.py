"""Health check endpoint."""

from __future__ import annotations

import time

from fastapi import APIRouter, Request

router = APIRouter()

_start_time = time.time()


@router.get("/health")
async def health(request: Request) -> dict:
    """Status, uptime, loaded providers and gateway counters."""
    registry = request.app.state.registry
    gateway = request.app.state.gateway
    sessions = request.app.state.sessions
    shim = request.app.state.shim

    return {
        "status": "ok",
        "version": "1.0.0",
        "uptime_seconds": round(time.time() - _start_time, 1),
        "providers": registry.names(),
        "gateway_stats": gateway.stats.to_dict(),
        "sessions": len(sessions),
        "probes_intercepted": shim.probes,
    }
