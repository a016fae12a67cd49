# [Core: Consensus Engine]
"""
Domain models for the consensus engine.

These Pydantic models define the data flowing from the backends, through a
round, into the scoring engine and the reputation ledger. Records that the
engine treats as immutable (questions, outcomes, sealed rounds, deltas) are
frozen; a round is never edited after it has been sealed.
"""
from __future__ import annotations

import random
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    RATE_LIMITED = "rate_limited"
    MALFORMED = "malformed"
    CANCELLED = "cancelled"

    @property
    def is_transient(self) -> bool:
        """Only transport faults and rate limiting are worth retrying."""
        return self in (FailureKind.TRANSPORT, FailureKind.RATE_LIMITED)


class ScoreRationale(str, Enum):
    AGREED_WITH_MAJORITY = "agreed-with-majority"
    WITHIN_CONSENSUS = "within-consensus"
    OUTLIER = "outlier"
    NO_SPREAD = "no-spread"
    INSUFFICIENT_DATA = "insufficient-data"
    NO_RESPONSE = "no-response"


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_QUESTION = "awaiting_question"
    ROUND_IN_FLIGHT = "round_in_flight"
    ROUND_COMPLETE = "round_complete"
    CLOSED = "closed"


# ──────────────────────────────────────────────
# Backends
# ──────────────────────────────────────────────

class RetryPolicy(BaseModel):
    """Bounded retry with exponential backoff and jitter."""
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(3, ge=1, description="Total attempts, first call included")
    base_delay: float = Field(0.5, ge=0.0, description="Delay before the first retry (seconds)")
    max_delay: float = Field(8.0, ge=0.0, description="Upper bound for any single delay")
    jitter: float = Field(0.25, ge=0.0, le=1.0, description="Relative jitter applied to each delay")

    def backoff(self, retry_number: int, rng: Optional[random.Random] = None) -> float:
        """Delay before retry ``retry_number`` (1 = first retry)."""
        rng = rng or random
        delay = min(self.max_delay, self.base_delay * (2 ** (retry_number - 1)))
        if self.jitter:
            delay *= rng.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return min(self.max_delay, max(0.0, delay))


class Backend(BaseModel):
    """One independently queried language-model endpoint."""
    model_config = ConfigDict(frozen=True)

    backend_id: str = Field(..., min_length=1, description="Stable identity within a session")
    model: str = Field("gpt-3.5-turbo", description="Model name sent to the endpoint")
    base_url: str = Field("https://api.openai.com/v1", description="OpenAI-compatible endpoint")
    api_key_env: str = Field("OPENAI_API_KEY", description="Env var holding the credential")
    timeout_seconds: float = Field(30.0, gt=0.0, description="Per-call timeout")
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    max_tokens: int = Field(256, ge=1)
    temperature: float = Field(0.0, ge=0.0)
    system_prompt: Optional[str] = None


# ──────────────────────────────────────────────
# Questions and outcomes
# ──────────────────────────────────────────────

class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    text: str = Field(..., min_length=1, description="Free-text prompt")
    round_number: int = Field(..., ge=1)
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("text")
    @classmethod
    def _reject_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("question text must not be blank")
        return v


class BackendResponse(BaseModel):
    """A successful answer from one backend."""
    model_config = ConfigDict(frozen=True)

    backend_id: str
    question_id: str
    text: str
    latency_ms: int = 0
    attempts: int = 1
    success: Literal[True] = True


class BackendFailure(BaseModel):
    """A classified failure from one backend."""
    model_config = ConfigDict(frozen=True)

    backend_id: str
    question_id: str
    kind: FailureKind
    attempts: int = 0
    retries_exhausted: bool = False
    error: str = ""
    latency_ms: int = 0
    success: Literal[False] = False


Outcome = Union[BackendResponse, BackendFailure]


class RoundResult(BaseModel):
    """One outcome per registered backend for a single question."""
    model_config = ConfigDict(frozen=True)

    round_id: int = Field(..., ge=1)
    question: Question
    entries: List[Outcome] = Field(default_factory=list, description="Roster order")
    started_at: datetime = Field(default_factory=_utcnow)
    sealed_at: datetime = Field(default_factory=_utcnow)
    deadline_hit: bool = False

    @property
    def backend_ids(self) -> List[str]:
        return [e.backend_id for e in self.entries]

    @property
    def successes(self) -> List[BackendResponse]:
        return [e for e in self.entries if isinstance(e, BackendResponse)]

    @property
    def failures(self) -> List[BackendFailure]:
        return [e for e in self.entries if isinstance(e, BackendFailure)]

    def outcome_for(self, backend_id: str) -> Outcome:
        for entry in self.entries:
            if entry.backend_id == backend_id:
                return entry
        raise KeyError(backend_id)


# ──────────────────────────────────────────────
# Scoring and reputation
# ──────────────────────────────────────────────

class ScoreDelta(BaseModel):
    model_config = ConfigDict(frozen=True)

    backend_id: str
    round_id: int
    delta: float
    rationale: ScoreRationale
    alignment: Optional[float] = Field(None, description="Consensus alignment, if computed")


class RoundAssessment(BaseModel):
    """Everything the scoring engine derives from one sealed round."""
    model_config = ConfigDict(frozen=True)

    round_id: int
    deltas: List[ScoreDelta] = Field(default_factory=list)
    alignments: Dict[str, float] = Field(default_factory=dict)
    consensus_reached: bool = False
    consensus_backend: Optional[str] = None
    consensus_answer: Optional[str] = None


class ReputationEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    backend_id: str
    cumulative_score: float = 0.0
    rounds_participated: int = 0
    rounds_failed: int = 0


class RoundSummary(BaseModel):
    """What the front end receives after every completed round."""
    session_id: str
    round_id: int
    question: Question
    outcomes: List[Outcome] = Field(default_factory=list)
    deltas: List[ScoreDelta] = Field(default_factory=list)
    leaderboard: List[ReputationEntry] = Field(default_factory=list)
    consensus_reached: bool = False
    consensus_backend: Optional[str] = None
    consensus_answer: Optional[str] = None


# ──────────────────────────────────────────────
# API Request / Response Models
# ──────────────────────────────────────────────

class QuestionSubmission(BaseModel):
    """API request to run one round."""
    text: str = Field(..., min_length=1, description="Question sent to every backend")


class SessionInfo(BaseModel):
    session_id: str
    state: SessionState
    backends: List[str] = Field(default_factory=list)
    rounds_completed: int = 0


class HistoryEntry(BaseModel):
    round_id: int
    delta: float
