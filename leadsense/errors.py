from typing import List, Optional


class EngagementError(Exception):
    """Base class for failures raised by the engagement engine."""


class ConfigurationError(EngagementError):
    error_type = "configuration_error"


class AISettingsMissingError(ConfigurationError):
    error_type = "ai_settings_missing"

    def __init__(self, message: str = "AI settings not configured. Please configure AI settings in the Integration Hub."):
        super().__init__(message)


class AIDisabledError(ConfigurationError):
    error_type = "ai_disabled"

    def __init__(self, message: str = "AI generation is currently disabled. Please enable AI in the Integration Hub."):
        super().__init__(message)


class ProviderNotConfiguredError(ConfigurationError):
    error_type = "provider_not_configured"

    def __init__(self, provider: str):
        super().__init__(f"No configuration or API key found for provider {provider}")
        self.provider = provider


class TemplateMissingError(ConfigurationError):
    error_type = "template_missing"

    def __init__(self, sequence_number: int):
        super().__init__(f"No active follow-up template for sequence number {sequence_number}")
        self.sequence_number = sequence_number


class ProviderError(EngagementError):
    """An AI provider call failed. ``body`` keeps the raw diagnostic payload."""

    kind = "provider_error"
    retryable = True

    def __init__(self, provider: str, message: str, *, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.body = body
        self.attempts = 0


class RateLimitError(ProviderError):
    kind = "rate_limited"

    def __init__(self, provider: str, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(provider, message, **kwargs)
        self.retry_after = retry_after


class AuthError(ProviderError):
    kind = "auth"
    retryable = False


class ForbiddenError(AuthError):
    kind = "forbidden"


class NotFoundError(ProviderError):
    kind = "not_found"
    retryable = False


class ProviderHTTPError(ProviderError):
    kind = "http_error"


class ResponseShapeError(ProviderError):
    kind = "response_shape"


class ParseError(ProviderError):
    kind = "parse"


class ProviderTimeoutError(ProviderError):
    kind = "timeout"


class ProviderExhaustedError(EngagementError):
    error_type = "providers_exhausted"

    def __init__(self, failures: List["ProviderFailure"]):  # noqa: F821 - defined in llm.tiered
        self.failures = failures
        if failures:
            summary = "; ".join(f"{failure.provider}: {failure.error}" for failure in failures)
        else:
            summary = "no providers in priority list"
        super().__init__(f"All AI models failed. Attempts: {summary}")


class DeliveryError(EngagementError):
    def __init__(self, channel: str, message: str):
        super().__init__(message)
        self.channel = channel


class SelectionQueryError(EngagementError):
    """The lead store could not be queried. Fatal to the whole batch."""


class StaleLeadError(EngagementError):
    """The lead changed underneath us (another run claimed it or its status moved)."""

    def __init__(self, lead_id: int):
        super().__init__(f"Lead {lead_id} was modified or claimed by another run")
        self.lead_id = lead_id


class InvalidTransitionError(EngagementError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move lead from '{current}' to '{target}'")
        self.current = current
        self.target = target
