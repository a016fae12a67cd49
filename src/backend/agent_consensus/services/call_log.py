# [Shared: Call Metrics]
"""
Call Log: per-attempt metrics for every backend call.

The backend client appends one record per attempt. Nothing else reads or
writes the log while a round is running, and appends never interleave on
the event loop, so the log needs no locking.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class CallRecord:
    """Record of a single attempt against a backend."""
    call_id: str
    backend_id: str
    question_id: str
    attempt: int = 1
    outcome: str = "ok"                    # "ok" or a FailureKind value
    latency_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    timestamp: float = 0.0


@dataclass
class CallLog:
    """
    Running log of all backend attempts for a session.

    Provides aggregate counts and per-backend latency for diagnostics.
    """
    calls: List[CallRecord] = field(default_factory=list)

    @property
    def call_count(self) -> int:
        return len(self.calls)

    @property
    def failure_count(self) -> int:
        return sum(1 for c in self.calls if c.outcome != "ok")

    @property
    def total_tokens(self) -> int:
        return sum(c.input_tokens + c.output_tokens for c in self.calls)

    def calls_for(self, backend_id: str) -> List[CallRecord]:
        return [c for c in self.calls if c.backend_id == backend_id]

    def mean_latency_ms(self) -> Dict[str, float]:
        """Map of backend_id → mean attempt latency."""
        backend_ids = sorted(set(c.backend_id for c in self.calls))
        result = {}
        for backend_id in backend_ids:
            calls = self.calls_for(backend_id)
            result[backend_id] = sum(c.latency_ms for c in calls) / len(calls)
        return result

    def to_dict(self) -> dict:
        """Serialize for JSON output."""
        return {
            "call_count": self.call_count,
            "failure_count": self.failure_count,
            "total_tokens": self.total_tokens,
            "mean_latency_ms": {
                k: round(v, 1) for k, v in self.mean_latency_ms().items()
            },
        }


def estimate_tokens(text: str) -> int:
    """
    Rough token count estimation (4 chars ≈ 1 token for English text).

    Good enough for comparing backends; not a billing figure.
    """
    return max(1, len(text) // 4)


def record_call(
    log: CallLog,
    backend_id: str,
    question_id: str,
    prompt: str,
    attempt: int,
    latency_ms: int,
    outcome: str = "ok",
    response: Optional[str] = None,
) -> CallRecord:
    """Append one attempt to the log."""
    record = CallRecord(
        call_id=f"{backend_id}_{question_id[:8]}_{attempt}_{len(log.calls)}",
        backend_id=backend_id,
        question_id=question_id,
        attempt=attempt,
        outcome=outcome,
        latency_ms=latency_ms,
        input_tokens=estimate_tokens(prompt),
        output_tokens=estimate_tokens(response) if response else 0,
        timestamp=time.time(),
    )
    log.calls.append(record)
    return record
