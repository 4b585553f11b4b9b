import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel

from leadsense.db import AISettings
from leadsense.errors import (
    ProviderError,
    ProviderExhaustedError,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
    RateLimitError,
)
from leadsense.llm.executor import AIExecutor, AttemptProgress
from leadsense.llm.gate import ensure_ai_enabled
from leadsense.llm.providers import DEEPSEEK, OPENAI, ProviderConfig, get_adapter, get_provider_config

logger = logging.getLogger("llm.tiered")

T = TypeVar("T", bound=BaseModel)

CredentialLookup = Callable[[str], Optional[ProviderConfig]]


@dataclass
class ProviderFailure:
    provider: str
    error: str
    kind: str
    attempts: int = 0

    def as_dict(self) -> dict:
        return {
            "provider": self.provider,
            "error": self.error,
            "kind": self.kind,
            "attempts": self.attempts,
        }


@dataclass
class GenerationResult(Generic[T]):
    data: T
    provider_used: str
    total_attempts: int
    failed_attempts: List[ProviderFailure] = field(default_factory=list)


def build_priority(settings: AISettings) -> List[str]:
    priority = [settings.primary_model_provider]
    if settings.fallback_openai_enabled and OPENAI not in priority:
        priority.append(OPENAI)
    if settings.fallback_deepseek_enabled and DEEPSEEK not in priority:
        priority.append(DEEPSEEK)
    return priority


class TieredGenerator:
    """Walks the configured provider priority list until one returns usable content."""

    def __init__(
        self,
        executor: Optional[AIExecutor] = None,
        *,
        credentials: CredentialLookup = get_provider_config,
        provider_timeout: Optional[float] = 90.0,
    ) -> None:
        self.executor = executor or AIExecutor()
        self.credentials = credentials
        self.provider_timeout = provider_timeout

    async def generate(
        self,
        prompt: str,
        schema: Type[T],
        settings: Optional[AISettings],
        *,
        lead_id: Optional[int] = None,
    ) -> GenerationResult[T]:
        settings = ensure_ai_enabled(settings, lead_id=lead_id)
        priority = build_priority(settings)
        self._log("start", lead_id, priority=priority)

        failures: List[ProviderFailure] = []
        for index, provider in enumerate(priority):
            config = self.credentials(provider)
            adapter = get_adapter(provider)
            if config is None or adapter is None:
                error = ProviderNotConfiguredError(provider)
                logger.warning("tiered_generation", extra={"tiered_generation": {
                    "lead_id": lead_id,
                    "provider": provider,
                    "status": "not_configured",
                }})
                failures.append(ProviderFailure(provider=provider, error=str(error), kind=error.error_type))
                continue

            try:
                result = await self._execute(config, adapter, prompt, schema, lead_id)
            except ProviderError as exc:
                failures.append(ProviderFailure(provider=provider, error=str(exc), kind=exc.kind, attempts=exc.attempts))
                self._log(
                    "provider_failed",
                    lead_id,
                    provider=provider,
                    error=str(exc),
                    remaining=len(priority) - index - 1,
                )
                if index < len(priority) - 1:
                    await self.executor.sleep(self.executor.policy.provider_switch_ms / 1000.0)
                continue

            self._log(
                "success",
                lead_id,
                provider=provider,
                attempts=result.attempts,
                failed_providers=[failure.provider for failure in failures],
            )
            return GenerationResult(
                data=result.data,
                provider_used=provider,
                total_attempts=result.attempts,
                failed_attempts=failures,
            )

        logger.error("tiered_generation", extra={"tiered_generation": {
            "lead_id": lead_id,
            "status": "exhausted",
            "providers": priority,
            "failures": [failure.as_dict() for failure in failures],
        }})
        raise ProviderExhaustedError(failures)

    async def _execute(self, config, adapter, prompt, schema, lead_id):
        progress = AttemptProgress()
        call = self.executor.execute(config, adapter, prompt, schema, lead_id=lead_id, progress=progress)
        if not self.provider_timeout:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self.provider_timeout)
        except asyncio.TimeoutError as exc:
            raise _timeout_failure(config.provider, progress, self.provider_timeout) from exc

    @staticmethod
    def _log(status: str, lead_id: Optional[int], **extra) -> None:
        payload = {"lead_id": lead_id, "status": status}
        payload.update(extra)
        logger.info("tiered_generation", extra={"tiered_generation": payload})


def _timeout_failure(provider: str, progress: AttemptProgress, timeout: float) -> ProviderError:
    """Failure for a provider cut off by the wall clock, keeping the attempts it made.

    A provider still backing off from 429s when time ran out is reported as
    rate limited, since that is what kept it from answering.
    """
    last = progress.last_error
    if isinstance(last, RateLimitError):
        error: ProviderError = RateLimitError(
            provider,
            f"Rate limit exceeded for {provider} after {progress.attempts} attempts",
            status_code=429,
            body=last.body,
        )
    else:
        error = ProviderTimeoutError(provider, f"{provider} did not finish within {timeout:.0f}s")
    error.attempts = progress.attempts
    return error
