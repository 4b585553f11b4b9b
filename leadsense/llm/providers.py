"""Request/response shapes for each supported AI provider."""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from leadsense.errors import ResponseShapeError

GEMINI = "GEMINI"
OPENAI = "OPENAI"
DEEPSEEK = "DEEPSEEK"

SYSTEM_PROMPT = (
    "You are an AI assistant for LeadSense CRM. "
    "Generate professional content and respond with valid JSON only."
)

TEMPERATURE = 0.3


@dataclass(frozen=True)
class ProviderConfig:
    provider: str
    model_id: str
    name: str
    api_key: str
    base_url: str


@dataclass
class ProviderRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)
    json: Dict[str, Any] = field(default_factory=dict)


class ProviderAdapter:
    provider: str = ""

    def build_request(self, prompt: str, config: ProviderConfig) -> ProviderRequest:  # pragma: no cover - override
        raise NotImplementedError

    def extract_text(self, data: Any) -> str:  # pragma: no cover - override
        raise NotImplementedError

    def _shape_error(self, what: str, data: Any) -> ResponseShapeError:
        return ResponseShapeError(
            self.provider,
            f"Invalid {self.provider.title()} response structure - no {what} found",
            body=repr(data)[:2000],
        )


class GeminiAdapter(ProviderAdapter):
    provider = GEMINI

    def build_request(self, prompt: str, config: ProviderConfig) -> ProviderRequest:
        return ProviderRequest(
            method="POST",
            url=f"{config.base_url}/v1beta/models/{config.model_id}:generateContent",
            headers={"Content-Type": "application/json"},
            params={"key": config.api_key},
            json={
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {
                    "temperature": TEMPERATURE,
                    "maxOutputTokens": 2000,
                    "topP": 0.8,
                    "topK": 40,
                },
            },
        )

    def extract_text(self, data: Any) -> str:
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise self._shape_error("text content", data) from None
        if not isinstance(text, str) or not text.strip():
            raise self._shape_error("text content", data)
        return text


class ChatCompletionsAdapter(ProviderAdapter):
    """OpenAI-compatible ``/v1/chat/completions`` endpoints."""

    def build_request(self, prompt: str, config: ProviderConfig) -> ProviderRequest:
        return ProviderRequest(
            method="POST",
            url=f"{config.base_url}/v1/chat/completions",
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": config.model_id,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                "temperature": TEMPERATURE,
                "max_tokens": 1500,
            },
        )

    def extract_text(self, data: Any) -> str:
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise self._shape_error("message content", data) from None
        if not isinstance(text, str) or not text.strip():
            raise self._shape_error("message content", data)
        return text


class OpenAIAdapter(ChatCompletionsAdapter):
    provider = OPENAI


class DeepSeekAdapter(ChatCompletionsAdapter):
    provider = DEEPSEEK


ADAPTERS: Dict[str, ProviderAdapter] = {
    GEMINI: GeminiAdapter(),
    OPENAI: OpenAIAdapter(),
    DEEPSEEK: DeepSeekAdapter(),
}

_DEFAULTS = {
    GEMINI: ("gemini-1.5-flash", "Google Gemini Flash", "https://generativelanguage.googleapis.com"),
    OPENAI: ("gpt-4o-mini", "OpenAI GPT-4o Mini", "https://api.openai.com"),
    DEEPSEEK: ("deepseek-chat", "DeepSeek Chat", "https://api.deepseek.com"),
}


def get_adapter(provider: str) -> Optional[ProviderAdapter]:
    return ADAPTERS.get(provider)


def get_provider_config(provider: str) -> Optional[ProviderConfig]:
    """Resolve model and credential for ``provider`` from the environment.

    Returns ``None`` for unknown providers or when no API key is set.
    """
    defaults = _DEFAULTS.get(provider)
    if not defaults:
        return None
    api_key = os.getenv(f"{provider}_API_KEY")
    if not api_key:
        return None
    model_id, name, base_url = defaults
    return ProviderConfig(
        provider=provider,
        model_id=os.getenv(f"{provider}_MODEL", model_id),
        name=name,
        api_key=api_key,
        base_url=os.getenv(f"{provider}_BASE_URL", base_url).rstrip("/"),
    )
