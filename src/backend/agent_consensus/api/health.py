"""Health check endpoints."""
import asyncio
import logging

from fastapi import APIRouter

from agent_consensus.agent.session import Session
from agent_consensus.config import settings
from agent_consensus.services.backend_client import BackendClient

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "ok", "service": settings.app_name}


@router.get("/api/health/config")
async def config_check():
    """Diagnostic endpoint: shows the active configuration (no secrets)."""
    return {
        "backends": [b.backend_id for b in settings.backends],
        "comparator": settings.comparator,
        "round_deadline_seconds": settings.round_deadline_seconds,
        "default_timeout_seconds": settings.default_timeout_seconds,
        "max_retries": settings.max_retries,
    }


@router.get("/api/health/backends")
async def backend_readiness():
    """Probe every configured backend with a 1-token request."""
    client = BackendClient()
    backends = Session.from_settings(settings, client=client).backends
    results = await asyncio.gather(*(client.check_readiness(b) for b in backends))
    return {b.backend_id: ready for b, ready in zip(backends, results)}
