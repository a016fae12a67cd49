# [Core: Consensus Engine]
"""
Tool: Scoring Engine

Turns a sealed RoundResult into exactly one ScoreDelta per backend.

Algorithm:
  1. Failures get a fixed participation penalty ("no-response").
  2. With fewer than two successes there is nothing to compare; successes
     get zero ("insufficient-data").
  3. Otherwise every pair of successful answers is compared with the
     injected comparator, and each backend's consensus alignment is its
     mean agreement with all the others.
  4. Successes are ranked by alignment (ties broken by backend id). The top
     quartile is rewarded in proportion to its alignment, the bottom
     quartile is penalised in proportion to its divergence, and the middle
     gets zero. If every alignment is equal, nobody moves ("no-spread").

Quartiles are relative to the round, so the scale of the comparator and
the number of participating backends do not matter.
"""
from __future__ import annotations

import itertools
import logging
import math
from typing import Dict, List, Optional

from agent_consensus.models.schemas import (
    BackendResponse,
    RoundAssessment,
    RoundResult,
    ScoreDelta,
    ScoreRationale,
)
from agent_consensus.tools.comparators import Comparator

logger = logging.getLogger(__name__)

# Alignments closer than this are treated as equal
SPREAD_EPSILON = 1e-9


class ScoringEngine:
    """
    Scores rounds with a pluggable comparator.

    Usage:
        engine = ScoringEngine(get_comparator("token_jaccard"))
        deltas = engine.score(round_result)
    """

    def __init__(
        self,
        comparator: Comparator,
        participation_penalty: float = 0.25,
        reward_scale: float = 1.0,
        divergence_scale: float = 1.0,
        agreement_threshold: float = 0.5,
    ):
        # Outliers lose strictly more than backends that did not answer
        if participation_penalty <= 0:
            raise ValueError("participation_penalty must be positive")
        if divergence_scale <= 0:
            raise ValueError("divergence_scale must be positive")
        if reward_scale < 0:
            raise ValueError("reward_scale must not be negative")
        self.comparator = comparator
        self.participation_penalty = participation_penalty
        self.reward_scale = reward_scale
        self.divergence_scale = divergence_scale
        self.agreement_threshold = agreement_threshold

    def score(self, result: RoundResult) -> List[ScoreDelta]:
        """Exactly one ScoreDelta per entry of the round, in roster order."""
        return self.assess(result).deltas

    def assess(self, result: RoundResult) -> RoundAssessment:
        """Score a round and work out whether its backends reached consensus."""
        successes = sorted(result.successes, key=lambda r: r.backend_id)
        alignments = self.alignments(successes)
        per_backend: Dict[str, ScoreDelta] = {}

        for failure in result.failures:
            per_backend[failure.backend_id] = ScoreDelta(
                backend_id=failure.backend_id,
                round_id=result.round_id,
                delta=-self.participation_penalty,
                rationale=ScoreRationale.NO_RESPONSE,
            )

        if len(successes) < 2:
            for response in successes:
                per_backend[response.backend_id] = ScoreDelta(
                    backend_id=response.backend_id,
                    round_id=result.round_id,
                    delta=0.0,
                    rationale=ScoreRationale.INSUFFICIENT_DATA,
                )
        else:
            per_backend.update(self._rank(result.round_id, alignments))

        deltas = [per_backend[bid] for bid in result.backend_ids]

        consensus_backend: Optional[str] = None
        consensus_answer: Optional[str] = None
        if len(successes) >= 2:
            consensus_backend = _ranked(alignments)[0]
            consensus_answer = next(
                r.text for r in successes if r.backend_id == consensus_backend
            )
        agreeing = sum(1 for a in alignments.values() if a >= self.agreement_threshold)
        consensus_reached = len(successes) >= 2 and agreeing > len(result.entries) / 2

        logger.debug(
            f"Round {result.round_id} scored: "
            + ", ".join(f"{d.backend_id}={d.delta:+.3f} ({d.rationale.value})" for d in deltas)
        )
        return RoundAssessment(
            round_id=result.round_id,
            deltas=deltas,
            alignments=alignments,
            consensus_reached=consensus_reached,
            consensus_backend=consensus_backend,
            consensus_answer=consensus_answer,
        )

    def alignments(self, successes: List[BackendResponse]) -> Dict[str, float]:
        """
        Mean pairwise agreement of each successful backend with all others.

        Each unordered pair is compared once, in backend-id order, so the
        result does not depend on roster order.
        """
        if len(successes) < 2:
            return {}
        ordered = sorted(successes, key=lambda r: r.backend_id)
        totals = {r.backend_id: 0.0 for r in ordered}
        for a, b in itertools.combinations(ordered, 2):
            agreement = self._agreement(a.text, b.text)
            totals[a.backend_id] += agreement
            totals[b.backend_id] += agreement
        peers = len(ordered) - 1
        return {bid: total / peers for bid, total in totals.items()}

    def _agreement(self, a: str, b: str) -> float:
        value = float(self.comparator(a, b))
        if math.isnan(value):
            raise ValueError("comparator returned NaN")
        return min(1.0, max(0.0, value))

    def _rank(self, round_id: int, alignments: Dict[str, float]) -> Dict[str, ScoreDelta]:
        values = list(alignments.values())
        if max(values) - min(values) <= SPREAD_EPSILON:
            return {
                bid: ScoreDelta(
                    backend_id=bid,
                    round_id=round_id,
                    delta=0.0,
                    rationale=ScoreRationale.NO_SPREAD,
                    alignment=alignment,
                )
                for bid, alignment in alignments.items()
            }

        ranked = _ranked(alignments)
        k = max(1, len(ranked) // 4)
        top = set(ranked[:k])
        bottom = set(ranked[-k:])

        scored = {}
        for bid in ranked:
            alignment = alignments[bid]
            if bid in top:
                delta = self.reward_scale * alignment
                rationale = ScoreRationale.AGREED_WITH_MAJORITY
            elif bid in bottom:
                # Magnitude stays above the participation penalty
                delta = -(self.participation_penalty + self.divergence_scale * (1.0 - alignment))
                rationale = ScoreRationale.OUTLIER
            else:
                delta = 0.0
                rationale = ScoreRationale.WITHIN_CONSENSUS
            scored[bid] = ScoreDelta(
                backend_id=bid,
                round_id=round_id,
                delta=delta,
                rationale=rationale,
                alignment=alignment,
            )
        return scored


def _ranked(alignments: Dict[str, float]) -> List[str]:
    """Backend ids by alignment descending, ties by id ascending."""
    return sorted(alignments, key=lambda bid: (-alignments[bid], bid))
