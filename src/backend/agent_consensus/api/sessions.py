"""
REST API for consensus sessions.

A thin wrapper over the Session Manager: every route either starts a
round or reads results that the engine has already produced.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException

from agent_consensus.agent.session import Session
from agent_consensus.config import settings
from agent_consensus.errors import SessionClosed
from agent_consensus.models.schemas import (
    HistoryEntry,
    QuestionSubmission,
    ReputationEntry,
    RoundResult,
    RoundSummary,
    SessionInfo,
    SessionState,
)

logger = logging.getLogger(__name__)
router = APIRouter()

# In-memory store for sessions; each session owns its own ledger
_sessions: Dict[str, Session] = {}
# Last access time per session, used for eviction
_session_timestamps: Dict[str, float] = {}


def get_session_factory() -> Callable[[], Session]:
    """Dependency: how new sessions are built. Overridden in tests."""
    return lambda: Session.from_settings(settings)


def _evict_expired_sessions(now: Optional[float] = None) -> None:
    """
    Drop sessions idle for longer than ``session_ttl_seconds``, and closed
    sessions untouched for longer than ``closed_session_ttl_seconds``.

    A session with a round in flight is never evicted.
    """
    now = time.time() if now is None else now
    expired = []
    for session_id, session in _sessions.items():
        if session.state == SessionState.ROUND_IN_FLIGHT:
            continue
        ttl = settings.closed_session_ttl_seconds if session.closed else settings.session_ttl_seconds
        if now - _session_timestamps.get(session_id, now) > ttl:
            expired.append(session_id)

    for session_id in expired:
        session = _sessions.pop(session_id)
        _session_timestamps.pop(session_id, None)
        session.close()
    if expired:
        logger.info(f"Evicted {len(expired)} expired session(s); {len(_sessions)} remaining")


def _get_session(session_id: str) -> Session:
    _evict_expired_sessions()
    session = _sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    _session_timestamps[session_id] = time.time()
    return session


def _info(session: Session) -> SessionInfo:
    return SessionInfo(
        session_id=session.session_id,
        state=session.state,
        backends=[b.backend_id for b in session.backends],
        rounds_completed=len(session.rounds),
    )


@router.post("", response_model=SessionInfo)
async def create_session(factory: Callable[[], Session] = Depends(get_session_factory)):
    """Start a new session with the configured roster."""
    session = factory()
    session.open()
    _evict_expired_sessions()
    _sessions[session.session_id] = session
    _session_timestamps[session.session_id] = time.time()
    logger.info(f"Session {session.session_id} opened with {len(session.backends)} backend(s)")
    return _info(session)


@router.get("/{session_id}", response_model=SessionInfo)
async def get_session(session_id: str):
    return _info(_get_session(session_id))


@router.post("/{session_id}/questions", response_model=RoundSummary)
async def submit_question(session_id: str, submission: QuestionSubmission):
    """Run one round. Blocks until the round is sealed and scored."""
    session = _get_session(session_id)
    try:
        return await session.submit_question(submission.text)
    except SessionClosed as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/{session_id}/leaderboard", response_model=List[ReputationEntry])
async def get_leaderboard(session_id: str):
    return _get_session(session_id).get_leaderboard()


@router.get("/{session_id}/rounds", response_model=List[RoundResult])
async def list_rounds(session_id: str):
    return _get_session(session_id).rounds


@router.get("/{session_id}/history/{backend_id}", response_model=List[HistoryEntry])
async def get_history(session_id: str, backend_id: str):
    """Chronological score deltas for one backend."""
    session = _get_session(session_id)
    if backend_id not in {b.backend_id for b in session.backends}:
        raise HTTPException(status_code=404, detail=f"Backend {backend_id} not in session")
    return [HistoryEntry(round_id=r, delta=d) for r, d in session.history(backend_id)]


@router.delete("/{session_id}", response_model=SessionInfo)
async def close_session(session_id: str):
    session = _get_session(session_id)
    session.close()
    return _info(session)
