"""
Agent Consensus: FastAPI Backend
"""
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent_consensus.api import health, sessions
from agent_consensus.config import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Agent Consensus",
    description="Polls several language-model backends and ranks them by agreement",
    version="0.1.0",
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(health.router, tags=["health"])
app.include_router(sessions.router, prefix="/api/sessions", tags=["sessions"])


@app.on_event("startup")
async def startup():
    """Log configuration on startup."""
    # Log configuration (mask secrets)
    def _mask(val: str) -> str:
        if not val:
            return "(empty)"
        if len(val) <= 8:
            return "***"
        return val[:4] + "..." + val[-4:]

    logger.info("=== Agent Consensus Backend Starting ===")
    logger.info(f"  comparator        : {settings.comparator}")
    logger.info(f"  round deadline    : {settings.round_deadline_seconds}s")
    for b in settings.backends:
        key = os.environ.get(b.api_key_env, "")
        logger.info(f"  backend {b.backend_id:<10}: {b.model} @ {b.base_url} key={_mask(key)}")
        if not key:
            logger.warning(f"{b.api_key_env} is empty -- calls to {b.backend_id} will likely fail!")
