# [Core: Consensus Engine]
"""
Session Manager: drives an interactive sequence of rounds.

Controls the per-round pipeline:
  1. Issue a Question for the next round
  2. Dispatch it to every backend (Round Coordinator)
  3. Score the sealed round (Scoring Engine)
  4. Apply the deltas (Reputation Ledger)
  5. Return a RoundSummary with the updated leaderboard

State machine:
  idle → awaiting_question → round_in_flight → round_complete
       → awaiting_question (loop) … → closed

The session owns its ledger; nothing else mutates it.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import List, Optional, Sequence, Tuple

from agent_consensus.agent.coordinator import RoundCoordinator
from agent_consensus.agent.ledger import ReputationLedger
from agent_consensus.config import Settings
from agent_consensus.errors import SessionClosed
from agent_consensus.models.schemas import (
    Backend,
    Question,
    ReputationEntry,
    RetryPolicy,
    RoundResult,
    RoundSummary,
    SessionState,
)
from agent_consensus.services.backend_client import BackendClient
from agent_consensus.tools.comparators import get_comparator
from agent_consensus.tools.scoring import ScoringEngine

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    SessionState.IDLE: {SessionState.AWAITING_QUESTION},
    SessionState.AWAITING_QUESTION: {SessionState.ROUND_IN_FLIGHT},
    SessionState.ROUND_IN_FLIGHT: {SessionState.ROUND_COMPLETE, SessionState.AWAITING_QUESTION},
    SessionState.ROUND_COMPLETE: {SessionState.AWAITING_QUESTION},
    SessionState.CLOSED: set(),
}


class Session:
    """
    One user-driven consensus session.

    Usage:
        session = Session.from_settings(settings)
        summary = await session.submit_question("Is the Earth round?")
        leaderboard = session.get_leaderboard()
        session.close()
    """

    def __init__(
        self,
        backends: Sequence[Backend],
        coordinator: RoundCoordinator,
        engine: ScoringEngine,
        ledger: Optional[ReputationLedger] = None,
        session_id: Optional[str] = None,
    ):
        if not backends:
            raise ValueError("A session needs at least one backend")
        ids = [b.backend_id for b in backends]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate backend ids in roster: {ids}")

        self.session_id = session_id or str(uuid.uuid4())[:8]
        self.backends: Tuple[Backend, ...] = tuple(backends)
        self.coordinator = coordinator
        self.engine = engine
        self.ledger = ledger if ledger is not None else ReputationLedger(ids)
        self._rounds: List[RoundResult] = []
        self._state = SessionState.IDLE
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: Optional[BackendClient] = None,
    ) -> "Session":
        """Build roster, client, coordinator and scoring engine from configuration."""
        backends = [
            Backend(
                backend_id=b.backend_id,
                model=b.model,
                base_url=b.base_url,
                api_key_env=b.api_key_env,
                timeout_seconds=b.timeout_seconds or settings.default_timeout_seconds,
                retry=RetryPolicy(
                    max_attempts=1 + (b.max_retries if b.max_retries is not None else settings.max_retries),
                    base_delay=settings.retry_base_delay,
                    max_delay=settings.retry_max_delay,
                    jitter=settings.retry_jitter,
                ),
                max_tokens=settings.max_tokens,
                temperature=settings.temperature,
                system_prompt=settings.system_prompt or None,
            )
            for b in settings.backends
        ]
        engine = ScoringEngine(
            comparator=get_comparator(settings.comparator),
            participation_penalty=settings.participation_penalty,
            reward_scale=settings.reward_scale,
            divergence_scale=settings.divergence_scale,
            agreement_threshold=settings.agreement_threshold,
        )
        coordinator = RoundCoordinator(
            client or BackendClient(),
            round_deadline=settings.round_deadline_seconds,
        )
        return cls(backends, coordinator, engine)

    # ──────────────────────────────────────────────
    # State
    # ──────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state == SessionState.CLOSED

    @property
    def rounds(self) -> List[RoundResult]:
        return list(self._rounds)

    def _transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal session transition {self._state.value} -> {target.value}")
        logger.debug(f"Session {self.session_id}: {self._state.value} -> {target.value}")
        self._state = target

    def open(self) -> None:
        """Move an idle session to awaiting_question."""
        if self.closed:
            raise SessionClosed(self.session_id)
        if self._state == SessionState.IDLE:
            self._transition(SessionState.AWAITING_QUESTION)

    def close(self) -> None:
        """Terminate the session. Safe to call from any state, more than once."""
        if not self.closed:
            logger.info(f"Session {self.session_id} closed after {len(self._rounds)} round(s)")
        self._state = SessionState.CLOSED

    # ──────────────────────────────────────────────
    # Rounds
    # ──────────────────────────────────────────────

    async def submit_question(self, text: str) -> RoundSummary:
        """
        Run one full round for a question from the front end.

        Rounds are serialised: a second call waits for the first to finish.

        Raises:
            SessionClosed: the session is closed, or was closed while the
                round was in flight (the round is then discarded unapplied)
            ValueError: the question text is blank
        """
        if not text or not text.strip():
            raise ValueError("question text must not be blank")
        if self.closed:
            raise SessionClosed(self.session_id)

        async with self._lock:
            self.open()
            round_id = len(self._rounds) + 1
            question = Question(text=text.strip(), round_number=round_id)
            self._transition(SessionState.ROUND_IN_FLIGHT)

            try:
                result = await self.coordinator.run_round(self.backends, question, round_id)
                if self.closed:
                    raise SessionClosed(self.session_id)
                assessment = self.engine.assess(result)
                self.ledger.apply(round_id, assessment.deltas)
            except BaseException:
                if not self.closed:
                    self._transition(SessionState.AWAITING_QUESTION)
                raise

            self._rounds.append(result)
            self._transition(SessionState.ROUND_COMPLETE)
            summary = RoundSummary(
                session_id=self.session_id,
                round_id=round_id,
                question=question,
                outcomes=list(result.entries),
                deltas=assessment.deltas,
                leaderboard=self.ledger.snapshot(),
                consensus_reached=assessment.consensus_reached,
                consensus_backend=assessment.consensus_backend,
                consensus_answer=assessment.consensus_answer,
            )
            self._transition(SessionState.AWAITING_QUESTION)
            return summary

    def get_leaderboard(self) -> List[ReputationEntry]:
        return self.ledger.snapshot()

    def history(self, backend_id: str) -> List[Tuple[int, float]]:
        return self.ledger.history(backend_id)
