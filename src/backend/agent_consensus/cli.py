"""
Interactive front end: ask questions, watch the reputation leaderboard.

Usage:
    agent-consensus                               # interactive prompt
    agent-consensus --comparator verdict
    agent-consensus -q "Is water wet?" -q "Is 7 prime?"   # non-interactive
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from agent_consensus.agent.session import Session
from agent_consensus.config import Settings
from agent_consensus.errors import ConsensusError
from agent_consensus.models.schemas import BackendResponse, ReputationEntry, RoundSummary

logger = logging.getLogger(__name__)

EXIT_WORDS = {"exit", "quit"}


def format_summary(summary: RoundSummary) -> str:
    """Render one round as a console table."""
    deltas = {d.backend_id: d for d in summary.deltas}
    header = f"{'Backend':<16} {'Outcome':<14} {'Delta':>8}  {'Rationale':<22} Answer"
    sep = "-" * len(header)
    lines = [f"\nRound {summary.round_id}: {summary.question.text}", sep, header, sep]
    for outcome in summary.outcomes:
        d = deltas[outcome.backend_id]
        if isinstance(outcome, BackendResponse):
            status = f"ok ({outcome.latency_ms}ms)"
            answer = outcome.text.replace("\n", " ")[:60]
        else:
            status = outcome.kind.value
            answer = outcome.error[:60]
        lines.append(
            f"{outcome.backend_id:<16} {status:<14} {d.delta:>+8.3f}  {d.rationale.value:<22} {answer}"
        )
    lines.append(sep)
    if summary.consensus_reached:
        lines.append(f"Consensus reached (led by {summary.consensus_backend}).")
    else:
        lines.append("No consensus this round.")
    return "\n".join(lines)


def format_leaderboard(entries: List[ReputationEntry]) -> str:
    header = f"{'#':>3} {'Backend':<16} {'Score':>9} {'Rounds':>7} {'Failed':>7}"
    sep = "-" * len(header)
    lines = ["\nLeaderboard", sep, header, sep]
    for rank, e in enumerate(entries, start=1):
        lines.append(
            f"{rank:>3} {e.backend_id:<16} {e.cumulative_score:>+9.3f} "
            f"{e.rounds_participated:>7} {e.rounds_failed:>7}"
        )
    return "\n".join(lines)


async def run_questions(session: Session, questions: List[str]) -> bool:
    """Ask each question in turn. Returns False if any round failed."""
    ok = True
    for question in questions:
        try:
            summary = await session.submit_question(question)
        except (ConsensusError, ValueError) as e:
            print(f"Round failed for {question!r}: {e}", file=sys.stderr)
            ok = False
            continue
        print(format_summary(summary))
    print(format_leaderboard(session.get_leaderboard()))
    return ok


async def run_interactive(session: Session) -> None:
    print("Welcome to Agent Consensus!")
    session.open()
    while True:
        text = await asyncio.to_thread(input, "\nEnter a question (or 'exit' to quit): ")
        text = text.strip()
        if not text:
            continue
        if text.lower() in EXIT_WORDS:
            break
        try:
            summary = await session.submit_question(text)
        except ConsensusError as e:
            print(f"Round failed: {e}")
            continue
        print(format_summary(summary))
        print(format_leaderboard(session.get_leaderboard()))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Poll several LLM backends and rank them by agreement")
    parser.add_argument("-q", "--question", action="append", default=[],
                        help="Ask this question and exit (repeatable)")
    parser.add_argument("--comparator", help="Override the configured comparator")
    parser.add_argument("--deadline", type=float, help="Override the round deadline (seconds)")
    args = parser.parse_args(argv)

    overrides = {}
    if args.comparator:
        overrides["comparator"] = args.comparator
    if args.deadline:
        overrides["round_deadline_seconds"] = args.deadline
    settings = Settings(**overrides)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        session = Session.from_settings(settings)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    ok = True
    try:
        if args.question:
            ok = asyncio.run(run_questions(session, args.question))
        else:
            asyncio.run(run_interactive(session))
    except (KeyboardInterrupt, EOFError):
        print()
    finally:
        session.close()
        call_log = getattr(session.coordinator.client, "call_log", None)
        if call_log is not None:
            logger.info(f"Backend calls: {call_log.to_dict()}")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
