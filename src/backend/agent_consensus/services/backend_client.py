# [Core: Consensus Engine]
"""
Backend Client: handles all communication with the model backends.

Every backend is reached through an OpenAI-compatible chat-completions
endpoint. ``query()`` never raises: each fault is classified into a
FailureKind and returned as a BackendFailure, so the round coordinator can
reason about completeness without exception-handling control flow.

Retry policy:
  - transport faults and rate limiting are retried with exponential
    backoff and jitter, up to ``backend.retry.max_attempts``
  - timeouts, malformed answers and cancellation are terminal
"""
from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from typing import Callable, Optional

import httpx
import openai
from openai import AsyncOpenAI

from agent_consensus.models.schemas import (
    Backend,
    BackendFailure,
    BackendResponse,
    FailureKind,
    Outcome,
    Question,
)
from agent_consensus.services.call_log import CallLog, record_call

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Backend], AsyncOpenAI]


class MalformedResponse(ValueError):
    """The backend answered, but the payload carries no usable text."""


def default_client_factory(backend: Backend) -> AsyncOpenAI:
    """Build a fresh API client for one query; the caller closes it."""
    return AsyncOpenAI(
        api_key=os.environ.get(backend.api_key_env) or "not-needed",
        base_url=backend.base_url,
        max_retries=0,
    )


def classify_error(exc: BaseException) -> FailureKind:
    """Map any fault raised while talking to a backend onto a FailureKind."""
    if isinstance(exc, asyncio.CancelledError):
        return FailureKind.CANCELLED
    # APITimeoutError subclasses APIConnectionError, so timeouts go first
    if isinstance(
        exc,
        (asyncio.TimeoutError, TimeoutError, openai.APITimeoutError, httpx.TimeoutException),
    ):
        return FailureKind.TIMEOUT
    if isinstance(exc, openai.RateLimitError):
        return FailureKind.RATE_LIMITED
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code == 429:
            return FailureKind.RATE_LIMITED
        if exc.status_code == 408 or exc.status_code >= 500:
            return FailureKind.TRANSPORT
        return FailureKind.MALFORMED
    if isinstance(exc, (openai.APIConnectionError, httpx.TransportError, ConnectionError)):
        return FailureKind.TRANSPORT
    return FailureKind.MALFORMED


class BackendClient:
    """
    Uniform interface for querying a backend.

    Usage:
        client = BackendClient()
        outcome = await client.query(backend, question, timeout=10.0)
        if outcome.success:
            print(outcome.text)
    """

    def __init__(
        self,
        client_factory: Optional[ClientFactory] = None,
        call_log: Optional[CallLog] = None,
        rng: Optional[random.Random] = None,
    ):
        self._client_factory = client_factory or default_client_factory
        self.call_log = call_log if call_log is not None else CallLog()
        self._rng = rng or random.Random()

    async def query(
        self,
        backend: Backend,
        question: Question,
        timeout: Optional[float] = None,
    ) -> Outcome:
        """
        Ask one backend one question.

        Args:
            backend: The backend to query
            question: The question of the current round
            timeout: Per-attempt timeout in seconds (default: backend.timeout_seconds)

        Returns:
            BackendResponse on success, BackendFailure otherwise
        """
        timeout = timeout if timeout is not None else backend.timeout_seconds
        policy = backend.retry
        start = time.monotonic()
        attempt = 0
        kind = FailureKind.MALFORMED
        last_error = ""

        try:
            async with self._client_factory(backend) as client:
                while attempt < policy.max_attempts:
                    attempt += 1
                    t0 = time.monotonic()
                    try:
                        text = await asyncio.wait_for(
                            self._complete(client, backend, question.text),
                            timeout=timeout,
                        )
                    except asyncio.CancelledError:
                        raise
                    except Exception as e:
                        kind = classify_error(e)
                        last_error = str(e) or type(e).__name__
                        self._record(backend, question, attempt, t0, kind.value)

                        if kind.is_transient and attempt < policy.max_attempts:
                            delay = policy.backoff(attempt, self._rng)
                            logger.warning(
                                f"[{backend.backend_id}] {kind.value} "
                                f"(attempt {attempt}/{policy.max_attempts}): {last_error}. "
                                f"Retrying in {delay:.2f}s..."
                            )
                            await asyncio.sleep(delay)
                            continue

                        logger.warning(
                            f"[{backend.backend_id}] {kind.value} "
                            f"(attempt {attempt}/{policy.max_attempts}): {last_error}"
                        )
                        break

                    self._record(backend, question, attempt, t0, "ok", response=text)
                    return BackendResponse(
                        backend_id=backend.backend_id,
                        question_id=question.question_id,
                        text=text,
                        latency_ms=_elapsed_ms(start),
                        attempts=attempt,
                    )
        except asyncio.CancelledError:
            # The client has been closed by the async-with on the way out
            logger.warning(f"[{backend.backend_id}] query cancelled after {attempt} attempt(s)")
            return BackendFailure(
                backend_id=backend.backend_id,
                question_id=question.question_id,
                kind=FailureKind.CANCELLED,
                attempts=attempt,
                retries_exhausted=False,
                error="cancelled",
                latency_ms=_elapsed_ms(start),
            )
        except Exception as e:
            # Client construction or teardown failed outside the attempt loop
            kind = classify_error(e)
            last_error = str(e) or type(e).__name__
            logger.error(f"[{backend.backend_id}] client error: {last_error}")

        return BackendFailure(
            backend_id=backend.backend_id,
            question_id=question.question_id,
            kind=kind,
            attempts=attempt,
            retries_exhausted=kind.is_transient and attempt >= policy.max_attempts,
            error=last_error,
            latency_ms=_elapsed_ms(start),
        )

    async def check_readiness(self, backend: Backend) -> bool:
        """
        Lightweight probe: sends a 1-token request.

        Returns True if the backend responds, False on any error.
        """
        try:
            async with self._client_factory(backend) as client:
                response = await asyncio.wait_for(
                    client.chat.completions.create(
                        model=backend.model,
                        messages=[{"role": "user", "content": "ping"}],
                        max_tokens=1,
                        temperature=0.0,
                    ),
                    timeout=backend.timeout_seconds,
                )
            return bool(getattr(response, "choices", None))
        except Exception as e:
            logger.debug(f"Readiness probe for {backend.backend_id} failed: {e}")
            return False

    async def _complete(self, client: AsyncOpenAI, backend: Backend, prompt: str) -> str:
        messages = []
        if backend.system_prompt:
            messages.append({"role": "system", "content": backend.system_prompt})
        messages.append({"role": "user", "content": prompt})

        response = await client.chat.completions.create(
            model=backend.model,
            messages=messages,
            max_tokens=backend.max_tokens,
            temperature=backend.temperature,
        )

        choices = getattr(response, "choices", None)
        if not choices:
            raise MalformedResponse("response carried no choices")
        content = choices[0].message.content
        if not content or not content.strip():
            raise MalformedResponse("response carried an empty completion")
        return content.strip()

    def _record(
        self,
        backend: Backend,
        question: Question,
        attempt: int,
        t0: float,
        outcome: str,
        response: Optional[str] = None,
    ) -> None:
        record_call(
            self.call_log,
            backend_id=backend.backend_id,
            question_id=question.question_id,
            prompt=question.text,
            attempt=attempt,
            latency_ms=_elapsed_ms(t0),
            outcome=outcome,
            response=response,
        )


def _elapsed_ms(since: float) -> int:
    return int((time.monotonic() - since) * 1000)
