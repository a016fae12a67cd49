from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Tuple, Union

import httpx
import pytest
from openai import AsyncOpenAI

from agent_consensus.agent.coordinator import RoundCoordinator
from agent_consensus.agent.session import Session
from agent_consensus.models.schemas import (
    Backend,
    BackendFailure,
    BackendResponse,
    FailureKind,
    Outcome,
    Question,
    RetryPolicy,
)
from agent_consensus.tools.comparators import token_jaccard
from agent_consensus.tools.scoring import ScoringEngine

ScriptStep = Tuple[float, Union[str, FailureKind, BaseException]]


class FakeQuerier:
    """
    Stands in for BackendClient.

    ``script`` maps backend_id → (delay_seconds, result) where result is the
    answer text, a FailureKind to report, or an exception to raise.
    """

    def __init__(self, script: Dict[str, ScriptStep]):
        self.script = dict(script)
        self.calls: List[Tuple[str, Optional[float]]] = []
        self.cancelled: List[str] = []

    async def query(self, backend: Backend, question: Question, timeout: Optional[float] = None) -> Outcome:
        self.calls.append((backend.backend_id, timeout))
        delay, result = self.script[backend.backend_id]
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self.cancelled.append(backend.backend_id)
            raise
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, FailureKind):
            return BackendFailure(
                backend_id=backend.backend_id,
                question_id=question.question_id,
                kind=result,
                attempts=1,
                retries_exhausted=result.is_transient,
                error=f"scripted {result.value}",
            )
        return BackendResponse(
            backend_id=backend.backend_id,
            question_id=question.question_id,
            text=result,
            latency_ms=int(delay * 1000),
        )


def make_backend(backend_id: str, **overrides) -> Backend:
    fields = {
        "backend_id": backend_id,
        "model": "test-model",
        "base_url": "http://backend.test/v1",
        "timeout_seconds": 5.0,
        "retry": RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05, jitter=0.0),
    }
    fields.update(overrides)
    return Backend(**fields)


def completion_body(text: Optional[str]) -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 0,
        "model": "test-model",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop",
            }
        ],
    }


@pytest.fixture
def backend_factory():
    return make_backend


@pytest.fixture
def question() -> Question:
    return Question(text="Is the transaction 'pay Bob 5 coins' valid?", round_number=1)


@pytest.fixture
def fake_querier():
    return FakeQuerier


@pytest.fixture
def openai_factory():
    """
    Build client factories that route the real AsyncOpenAI client through an
    httpx.MockTransport. Every created httpx client is recorded so tests can
    check it was closed.
    """
    created: List[httpx.AsyncClient] = []

    def build(handler):
        def factory(backend: Backend) -> AsyncOpenAI:
            http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            created.append(http_client)
            return AsyncOpenAI(
                api_key="test-key",
                base_url=backend.base_url,
                http_client=http_client,
                max_retries=0,
            )
        return factory

    build.created = created
    return build


@pytest.fixture
def session_factory():
    """Build a Session over a FakeQuerier with a real coordinator and engine."""

    def build(script: Dict[str, ScriptStep], deadline: float = 1.0, **engine_kwargs) -> Session:
        backends = [make_backend(bid) for bid in script]
        coordinator = RoundCoordinator(FakeQuerier(script), round_deadline=deadline, cancel_grace=0.5)
        engine = ScoringEngine(token_jaccard, **engine_kwargs)
        return Session(backends, coordinator, engine)

    return build
