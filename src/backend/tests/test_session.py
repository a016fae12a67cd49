from __future__ import annotations

import asyncio

import pytest

from agent_consensus.agent.session import Session
from agent_consensus.config import BackendSettings, Settings
from agent_consensus.errors import SessionClosed
from agent_consensus.models.schemas import FailureKind, ScoreRationale, SessionState
from agent_consensus.tools.comparators import verdict_agreement

AGREEING_SCRIPT = {
    "A": (0.01, "The transaction is valid."),
    "B": (0.02, "The transaction is valid!"),
    "C": (0.0, FailureKind.TIMEOUT),
}


@pytest.mark.asyncio
async def test_round_moves_session_back_to_awaiting(session_factory) -> None:
    session = session_factory(AGREEING_SCRIPT)
    assert session.state == SessionState.IDLE

    summary = await session.submit_question("Is 'pay Bob 5 coins' valid?")

    assert session.state == SessionState.AWAITING_QUESTION
    assert summary.round_id == 1
    assert summary.session_id == session.session_id
    assert [o.backend_id for o in summary.outcomes] == ["A", "B", "C"]
    assert [d.delta for d in summary.deltas] == [0.0, 0.0, -0.25]
    assert summary.consensus_reached is True
    assert summary.leaderboard[-1].backend_id == "C"
    assert len(session.rounds) == 1


@pytest.mark.asyncio
async def test_leaderboard_is_sum_of_round_deltas(session_factory) -> None:
    session = session_factory({
        "a": (0.0, "Yes, the transaction is valid and signed."),
        "b": (0.0, "Yes, the transaction is valid and signed!"),
        "c": (0.0, "Yes, the transaction is valid but unsigned."),
        "d": (0.0, "Absolutely not, it is a forgery."),
    })
    totals = {}

    for i in range(3):
        summary = await session.submit_question(f"Question {i}")
        for d in summary.deltas:
            totals[d.backend_id] = totals.get(d.backend_id, 0.0) + d.delta

    for entry in session.get_leaderboard():
        assert entry.cumulative_score == pytest.approx(totals[entry.backend_id])
        assert entry.rounds_participated == 3
    assert [r for r, _ in session.history("d")] == [1, 2, 3]
    assert session.ledger.applied_rounds == [1, 2, 3]


@pytest.mark.asyncio
async def test_failures_are_tracked_per_backend(session_factory) -> None:
    session = session_factory({
        "a": (0.0, "yes"),
        "b": (0.0, FailureKind.RATE_LIMITED),
    })

    summary = await session.submit_question("Anything?")

    deltas = {d.backend_id: d for d in summary.deltas}
    assert deltas["a"].rationale == ScoreRationale.INSUFFICIENT_DATA
    assert deltas["b"].rationale == ScoreRationale.NO_RESPONSE
    failed = {e.backend_id: e.rounds_failed for e in session.get_leaderboard()}
    assert failed == {"a": 0, "b": 1}


@pytest.mark.asyncio
async def test_closed_session_refuses_questions(session_factory) -> None:
    session = session_factory(AGREEING_SCRIPT)
    session.close()
    session.close()

    with pytest.raises(SessionClosed):
        await session.submit_question("Too late?")
    with pytest.raises(SessionClosed):
        session.open()
    assert session.state == SessionState.CLOSED
    assert session.rounds == []


@pytest.mark.asyncio
async def test_closing_mid_round_discards_the_round(session_factory) -> None:
    session = session_factory({"a": (0.2, "yes"), "b": (0.2, "yes")})

    task = asyncio.create_task(session.submit_question("Slow one?"))
    await asyncio.sleep(0.05)
    assert session.state == SessionState.ROUND_IN_FLIGHT
    session.close()

    with pytest.raises(SessionClosed):
        await task
    assert session.state == SessionState.CLOSED
    assert session.ledger.applied_rounds == []
    assert all(e.cumulative_score == 0.0 for e in session.get_leaderboard())


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
async def test_blank_question_is_rejected(session_factory, text) -> None:
    session = session_factory(AGREEING_SCRIPT)

    with pytest.raises(ValueError):
        await session.submit_question(text)

    assert session.state == SessionState.IDLE
    assert session.rounds == []


@pytest.mark.asyncio
async def test_coordinator_error_returns_session_to_awaiting(session_factory, monkeypatch) -> None:
    session = session_factory(AGREEING_SCRIPT)

    async def _explode(*args, **kwargs):
        raise RuntimeError("coordinator down")

    monkeypatch.setattr(session.coordinator, "run_round", _explode)
    with pytest.raises(RuntimeError):
        await session.submit_question("First?")
    assert session.state == SessionState.AWAITING_QUESTION

    monkeypatch.undo()
    summary = await session.submit_question("Second?")
    assert summary.round_id == 1


@pytest.mark.asyncio
async def test_concurrent_questions_run_one_after_another(session_factory) -> None:
    session = session_factory({"a": (0.05, "yes it is"), "b": (0.05, "yes it is")})

    first, second = await asyncio.gather(
        session.submit_question("One?"),
        session.submit_question("Two?"),
    )

    assert {first.round_id, second.round_id} == {1, 2}
    assert session.ledger.applied_rounds == [1, 2]
    assert [r.question.round_number for r in session.rounds] == [1, 2]


def test_roster_must_be_non_empty_and_unique(session_factory, backend_factory) -> None:
    template = session_factory({"a": (0.0, "x")})

    with pytest.raises(ValueError):
        Session([], template.coordinator, template.engine)
    with pytest.raises(ValueError):
        Session([backend_factory("a"), backend_factory("a")], template.coordinator, template.engine)


def test_from_settings_builds_roster_and_engine() -> None:
    settings = Settings(
        backends=[
            BackendSettings(backend_id="local", base_url="http://localhost:8000/v1", timeout_seconds=5),
            BackendSettings(backend_id="cloud", max_retries=0),
        ],
        default_timeout_seconds=12.0,
        max_retries=2,
        comparator="verdict",
        round_deadline_seconds=20.0,
        participation_penalty=0.5,
    )

    session = Session.from_settings(settings)

    local, cloud = session.backends
    assert local.timeout_seconds == 5
    assert local.retry.max_attempts == 3
    assert cloud.timeout_seconds == 12.0
    assert cloud.retry.max_attempts == 1
    assert session.engine.comparator is verdict_agreement
    assert session.engine.participation_penalty == 0.5
    assert session.coordinator.round_deadline == 20.0
    assert session.state == SessionState.IDLE


def test_from_settings_rejects_unknown_comparator() -> None:
    with pytest.raises(ValueError):
        Session.from_settings(Settings(comparator="telepathy"))
