import asyncio
import json
import logging
import os
import random
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from leadsense.errors import (
    AuthError,
    ForbiddenError,
    NotFoundError,
    ParseError,
    ProviderError,
    ProviderHTTPError,
    RateLimitError,
    ResponseShapeError,
)
from leadsense.llm.backoff import DEFAULT_POLICY, BackoffPolicy, ErrorKind, parse_retry_after
from leadsense.llm.providers import ProviderAdapter, ProviderConfig

logger = logging.getLogger("llm.executor")

DEFAULT_TIMEOUT = float(os.getenv("AI_HTTP_TIMEOUT_SECONDS", "30"))

Sleep = Callable[[float], Awaitable[None]]
T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def parse_structured(text: str, schema: Type[T], provider: str) -> T:
    """Parse provider text into ``schema``. Fenced markdown is tolerated."""
    clean = strip_code_fences(text)
    try:
        payload = json.loads(clean)
    except json.JSONDecodeError as exc:
        raise ParseError(provider, f"Failed to parse AI response as JSON: {exc}", body=text) from exc
    if not isinstance(payload, dict):
        raise ParseError(provider, "AI response JSON is not an object", body=text)
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise ParseError(provider, f"AI response missing expected fields: {exc}", body=text) from exc


@dataclass
class ExecutionResult(Generic[T]):
    data: T
    attempts: int


@dataclass
class AttemptProgress:
    """Attempts made so far on one provider, readable after the call is cancelled."""

    attempts: int = 0
    last_error: Optional[ProviderError] = None


class AIExecutor:
    """Drives a single provider through a bounded number of attempts."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        policy: BackoffPolicy = DEFAULT_POLICY,
        max_attempts: int = 5,
        sleep: Sleep = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._client = client
        self.policy = policy
        self.max_attempts = max_attempts
        self.sleep = sleep
        self.jitter = jitter

    async def execute(
        self,
        config: ProviderConfig,
        adapter: ProviderAdapter,
        prompt: str,
        schema: Type[T],
        *,
        lead_id: Optional[int] = None,
        progress: Optional[AttemptProgress] = None,
    ) -> ExecutionResult[T]:
        progress = progress or AttemptProgress()
        if self._client is not None:
            return await self._run(self._client, config, adapter, prompt, schema, lead_id, progress)
        async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
            return await self._run(client, config, adapter, prompt, schema, lead_id, progress)

    async def _run(
        self,
        client: httpx.AsyncClient,
        config: ProviderConfig,
        adapter: ProviderAdapter,
        prompt: str,
        schema: Type[T],
        lead_id: Optional[int],
        progress: AttemptProgress,
    ) -> ExecutionResult[T]:
        provider = config.provider
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            sleep=self.sleep,
            before_sleep=lambda state: self._log(
                "backoff",
                provider,
                state.attempt_number,
                lead_id,
                delay_ms=round(state.next_action.sleep * 1000),
            ),
            reraise=True,
        )

        attempts = 0
        try:
            async for attempt in retrying:
                attempts = attempt.retry_state.attempt_number
                progress.attempts = attempts
                with attempt:
                    self._log("attempt", provider, attempts - 1, lead_id, model_id=config.model_id)
                    try:
                        data = await self._attempt(client, config, adapter, prompt, schema)
                    except ProviderError as exc:
                        progress.last_error = exc
                        self._log_failure(exc, provider, attempts, lead_id)
                        raise
        except RateLimitError as exc:
            if attempts < self.max_attempts:
                exc.attempts = attempts
                raise
            exhausted = RateLimitError(
                provider,
                f"Rate limit exceeded for {provider} after {self.max_attempts} attempts",
                status_code=429,
                body=exc.body,
            )
            exhausted.attempts = attempts
            raise exhausted from exc
        except ProviderError as exc:
            exc.attempts = attempts
            raise

        self._log("success", provider, attempts - 1, lead_id)
        return ExecutionResult(data=data, attempts=attempts)

    def _wait(self, retry_state: RetryCallState) -> float:
        """Seconds to wait before the next attempt, from the failure just seen."""
        previous = retry_state.outcome.exception() if retry_state.outcome else None
        return self._delay_before(retry_state.attempt_number, previous) / 1000.0

    def _delay_before(self, attempt: int, previous: Optional[BaseException]) -> float:
        if isinstance(previous, RateLimitError):
            return self.policy.compute_delay(
                attempt - 1,
                ErrorKind.RATE_LIMITED,
                retry_after=previous.retry_after,
            )
        return self.policy.compute_delay(attempt, ErrorKind.FAILURE, jitter=self.jitter())

    def _log_failure(self, exc: ProviderError, provider: str, attempt: int, lead_id: Optional[int]) -> None:
        logger.warning(
            "ai_call",
            extra={
                "ai_call": {
                    "provider": provider,
                    "lead_id": lead_id,
                    "attempt": attempt,
                    "max_attempts": self.max_attempts,
                    "status": "error",
                    "kind": exc.kind,
                    "status_code": exc.status_code,
                    "error": str(exc),
                }
            },
        )

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        config: ProviderConfig,
        adapter: ProviderAdapter,
        prompt: str,
        schema: Type[T],
    ) -> T:
        provider = config.provider
        request = adapter.build_request(prompt, config)
        try:
            response = await client.request(
                request.method,
                request.url,
                headers=request.headers,
                params=request.params or None,
                json=request.json,
            )
        except httpx.HTTPError as exc:
            raise ProviderHTTPError(provider, f"Request to {provider} failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimitError(
                provider,
                f"Rate limit detected for {provider}",
                status_code=429,
                body=response.text,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )

        if not response.is_success:
            raise _classify_status(provider, response)

        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise ResponseShapeError(provider, f"{provider} returned a non-JSON body", body=response.text) from exc

        text = adapter.extract_text(payload)
        return parse_structured(text, schema, provider)

    def _log(self, status: str, provider: str, attempt: int, lead_id: Optional[int], **extra: Any) -> None:
        payload = {
            "provider": provider,
            "lead_id": lead_id,
            "attempt": attempt + 1,
            "max_attempts": self.max_attempts,
            "status": status,
        }
        payload.update(extra)
        logger.info("ai_call", extra={"ai_call": payload})


def _classify_status(provider: str, response: httpx.Response) -> ProviderError:
    status = response.status_code
    body = response.text
    if status == 401:
        return AuthError(
            provider,
            f"Authentication failed for {provider} - please verify your API key is correct and active.",
            status_code=status,
            body=body,
        )
    if status == 403:
        return ForbiddenError(
            provider,
            f"Access forbidden for {provider} - your API key may not have the required permissions.",
            status_code=status,
            body=body,
        )
    if status == 404:
        return NotFoundError(
            provider,
            f"{provider} returned 404 - this usually indicates an invalid model ID or endpoint.",
            status_code=status,
            body=body,
        )
    return ProviderHTTPError(
        provider,
        f"AI API error ({provider}): {status} {response.reason_phrase}. Details: {body}",
        status_code=status,
        body=body,
    )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable
