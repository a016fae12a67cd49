"""Orchestration-layer errors.

Backend faults never surface as exceptions; they are carried as
``BackendFailure`` records inside a round. The errors below are the ones
that abort the requested operation and reach the caller.
"""
from __future__ import annotations

from typing import Iterable, List


class ConsensusError(Exception):
    """Base class for errors raised by the consensus engine."""


class DuplicateRound(ConsensusError):
    """Raised when a round id has already been applied to the ledger."""

    def __init__(self, round_id: int):
        super().__init__(f"Round {round_id} has already been applied")
        self.round_id = round_id


class SessionClosed(ConsensusError):
    """Raised when a closed session is asked to start a round."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is closed")
        self.session_id = session_id


class IncompleteRoundResult(ConsensusError):
    """Raised when a round cannot be sealed with one outcome per backend."""

    def __init__(
        self,
        round_id: int,
        missing: Iterable[str] = (),
        duplicates: Iterable[str] = (),
        unexpected: Iterable[str] = (),
    ):
        self.round_id = round_id
        self.missing: List[str] = sorted(missing)
        self.duplicates: List[str] = sorted(duplicates)
        self.unexpected: List[str] = sorted(unexpected)
        parts = []
        if self.missing:
            parts.append(f"missing={self.missing}")
        if self.duplicates:
            parts.append(f"duplicates={self.duplicates}")
        if self.unexpected:
            parts.append(f"unexpected={self.unexpected}")
        super().__init__(f"Round {round_id} is incomplete: {', '.join(parts)}")
