# [Core: Consensus Engine]
"""
Round Coordinator: dispatches one question to every backend at once.

Each backend gets its own task. The tasks are joined at a single barrier
bounded by the round deadline; whatever is still running when the deadline
passes is cancelled and recorded as a timeout. A round is sealed only when
every registered backend has exactly one outcome.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Sequence

from agent_consensus.errors import IncompleteRoundResult
from agent_consensus.models.schemas import (
    Backend,
    BackendFailure,
    FailureKind,
    Outcome,
    Question,
    RoundResult,
)

logger = logging.getLogger(__name__)

# Time granted to cancelled tasks to release their connections
CANCEL_GRACE_SECONDS = 1.0


class BackendQuerier(Protocol):
    async def query(
        self, backend: Backend, question: Question, timeout: Optional[float] = None
    ) -> Outcome:
        ...


class RoundCoordinator:
    """
    Runs rounds against a roster of backends.

    Usage:
        coordinator = RoundCoordinator(BackendClient(), round_deadline=30.0)
        result = await coordinator.run_round(backends, question, round_id=1)
    """

    def __init__(
        self,
        client: BackendQuerier,
        round_deadline: float,
        cancel_grace: float = CANCEL_GRACE_SECONDS,
    ):
        if round_deadline <= 0:
            raise ValueError("round_deadline must be positive")
        self.client = client
        self.round_deadline = round_deadline
        self.cancel_grace = cancel_grace

    async def run_round(
        self,
        backends: Sequence[Backend],
        question: Question,
        round_id: int,
    ) -> RoundResult:
        """
        Query every backend concurrently and seal the round.

        Args:
            backends: The session roster (backend ids must be unique)
            question: The question for this round
            round_id: Identifier of the round within its session

        Returns:
            A sealed RoundResult with one entry per backend, in roster order
        """
        ids = [b.backend_id for b in backends]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate backend ids in roster: {ids}")

        started_at = datetime.now(timezone.utc)
        logger.info(
            f"Round {round_id}: dispatching to {len(backends)} backend(s), "
            f"deadline {self.round_deadline:.1f}s"
        )

        tasks: Dict[str, asyncio.Task] = {
            b.backend_id: asyncio.create_task(
                self.client.query(
                    b, question, timeout=min(b.timeout_seconds, self.round_deadline)
                ),
                name=f"round-{round_id}-{b.backend_id}",
            )
            for b in backends
        }

        try:
            if tasks:
                done, pending = await asyncio.wait(
                    tasks.values(), timeout=self.round_deadline
                )
            else:
                done, pending = set(), set()
        except asyncio.CancelledError:
            await self._cancel(tasks.values())
            raise

        if pending:
            late = sorted(bid for bid, t in tasks.items() if t in pending)
            logger.warning(f"Round {round_id}: deadline hit, cancelling {late}")
            await self._cancel(pending)

        entries: List[Outcome] = []
        for backend in backends:
            task = tasks[backend.backend_id]
            if task in done:
                entries.append(self._collect(task, backend, question))
            else:
                entries.append(BackendFailure(
                    backend_id=backend.backend_id,
                    question_id=question.question_id,
                    kind=FailureKind.TIMEOUT,
                    retries_exhausted=False,
                    error=f"round deadline of {self.round_deadline:.1f}s elapsed",
                    latency_ms=int(self.round_deadline * 1000),
                ))

        result = seal_round(
            round_id=round_id,
            question=question,
            backends=backends,
            entries=entries,
            started_at=started_at,
            deadline_hit=bool(pending),
        )
        logger.info(
            f"Round {round_id} sealed: {len(result.successes)} success(es), "
            f"{len(result.failures)} failure(s)"
        )
        return result

    async def _cancel(self, tasks) -> None:
        """Cancel tasks and give them a bounded window to unwind."""
        tasks = [t for t in tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=self.cancel_grace)

    @staticmethod
    def _collect(task: asyncio.Task, backend: Backend, question: Question) -> Outcome:
        """Read a finished task; a raised fault becomes a transport failure."""
        if task.cancelled():
            return BackendFailure(
                backend_id=backend.backend_id,
                question_id=question.question_id,
                kind=FailureKind.CANCELLED,
                error="cancelled",
            )
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Backend {backend.backend_id} raised instead of reporting a failure: {exc!r}",
                exc_info=exc,
            )
            return BackendFailure(
                backend_id=backend.backend_id,
                question_id=question.question_id,
                kind=FailureKind.TRANSPORT,
                error=str(exc) or type(exc).__name__,
            )
        return task.result()


def seal_round(
    round_id: int,
    question: Question,
    backends: Sequence[Backend],
    entries: Sequence[Outcome],
    started_at: Optional[datetime] = None,
    deadline_hit: bool = False,
) -> RoundResult:
    """
    Build an immutable RoundResult after checking completeness.

    Raises:
        IncompleteRoundResult: if any backend is missing, duplicated, or
            not part of the roster.
    """
    expected = [b.backend_id for b in backends]
    seen: Dict[str, int] = {}
    for entry in entries:
        seen[entry.backend_id] = seen.get(entry.backend_id, 0) + 1

    missing = [bid for bid in expected if bid not in seen]
    duplicates = [bid for bid, n in seen.items() if n > 1]
    unexpected = [bid for bid in seen if bid not in expected]
    if missing or duplicates or unexpected:
        raise IncompleteRoundResult(round_id, missing, duplicates, unexpected)

    order = {bid: i for i, bid in enumerate(expected)}
    kwargs = {}
    if started_at is not None:
        kwargs["started_at"] = started_at
    return RoundResult(
        round_id=round_id,
        question=question,
        entries=sorted(entries, key=lambda e: order[e.backend_id]),
        deadline_hit=deadline_hit,
        **kwargs,
    )
