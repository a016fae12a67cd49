# [Core: Consensus Engine]
"""
Reputation Ledger: running per-backend reputation for one session.

Deltas are applied one round at a time, exactly once per round, and in
round order. Every ``apply`` either lands completely or not at all, so a
rejected call leaves the ledger exactly as it was.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Tuple

from agent_consensus.errors import DuplicateRound
from agent_consensus.models.schemas import ReputationEntry, ScoreDelta, ScoreRationale


@dataclass
class _Account:
    backend_id: str
    cumulative_score: float = 0.0
    rounds_participated: int = 0
    rounds_failed: int = 0
    history: List[Tuple[int, float]] = field(default_factory=list)

    def to_entry(self) -> ReputationEntry:
        return ReputationEntry(
            backend_id=self.backend_id,
            cumulative_score=self.cumulative_score,
            rounds_participated=self.rounds_participated,
            rounds_failed=self.rounds_failed,
        )


class ReputationLedger:
    """
    Accumulates score deltas into per-backend reputation.

    Usage:
        ledger = ReputationLedger(["agent-1", "agent-2"])
        ledger.apply(1, deltas)
        for entry in ledger.snapshot():
            print(entry.backend_id, entry.cumulative_score)
    """

    def __init__(self, backend_ids: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._accounts: Dict[str, _Account] = {}
        self._applied: List[int] = []
        for backend_id in backend_ids:
            self._accounts.setdefault(backend_id, _Account(backend_id))

    @property
    def applied_rounds(self) -> List[int]:
        with self._lock:
            return list(self._applied)

    def apply(self, round_id: int, deltas: Sequence[ScoreDelta]) -> None:
        """
        Apply one round's deltas atomically.

        Raises:
            DuplicateRound: the round has already been applied
            ValueError: the round is older than the last applied round, a
                delta belongs to another round, or a backend appears twice
        """
        with self._lock:
            if round_id in self._applied:
                raise DuplicateRound(round_id)
            if self._applied and round_id < self._applied[-1]:
                raise ValueError(
                    f"Round {round_id} is older than the last applied round {self._applied[-1]}"
                )
            seen = set()
            for d in deltas:
                if d.round_id != round_id:
                    raise ValueError(
                        f"Delta for {d.backend_id} belongs to round {d.round_id}, not {round_id}"
                    )
                if d.backend_id in seen:
                    raise ValueError(f"Two deltas for {d.backend_id} in round {round_id}")
                seen.add(d.backend_id)

            # Validated; nothing below can fail halfway
            for d in deltas:
                account = self._accounts.setdefault(d.backend_id, _Account(d.backend_id))
                account.cumulative_score += d.delta
                account.rounds_participated += 1
                if d.rationale == ScoreRationale.NO_RESPONSE:
                    account.rounds_failed += 1
                account.history.append((round_id, d.delta))
            self._applied.append(round_id)

    def snapshot(self) -> List[ReputationEntry]:
        """Entries by cumulative score descending, ties by backend id ascending."""
        with self._lock:
            entries = [a.to_entry() for a in self._accounts.values()]
        return sorted(entries, key=lambda e: (-e.cumulative_score, e.backend_id))

    def history(self, backend_id: str) -> List[Tuple[int, float]]:
        """Chronological (round_id, delta) pairs; empty for an unknown backend."""
        with self._lock:
            account = self._accounts.get(backend_id)
            return list(account.history) if account else []

    def cumulative(self, backend_id: str) -> float:
        with self._lock:
            account = self._accounts.get(backend_id)
            return account.cumulative_score if account else 0.0
