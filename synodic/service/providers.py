from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import httpx

from synodic.config import ProviderName, Settings
from synodic.logging import get_logger

logger = get_logger(__name__)

PERSONA = (
    "You are Synodic AI, a helpful and friendly AI assistant. "
    "Be conversational, engaging, and concise."
)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
CLAUDE_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
GEMINI_URL_TEMPLATE = (
    "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
)
HF_URL_TEMPLATE = "https://api-inference.huggingface.co/models/{model}"

_TIMEOUT_STATUSES = {408, 504}


@dataclass(frozen=True)
class ChatTurn:
    role: str
    content: str


class ProviderErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    UPSTREAM = "upstream"


class ProviderError(Exception):
    """Failure talking to an upstream vendor.

    ``message`` is the vendor's own text and must never reach a client.
    """

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        *,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code


def classify_failure(status_code: Optional[int], message: str) -> ProviderErrorKind:
    """Map an HTTP status and vendor message to an error kind.

    Status codes win; the message is only inspected when the status says
    nothing specific, since some vendors report quota exhaustion as a 400/403.
    """
    if status_code == 429:
        return ProviderErrorKind.RATE_LIMITED
    if status_code in _TIMEOUT_STATUSES:
        return ProviderErrorKind.TIMEOUT
    lowered = (message or "").lower()
    if "rate limit" in lowered or "quota" in lowered:
        return ProviderErrorKind.RATE_LIMITED
    if "timeout" in lowered or "timed out" in lowered:
        return ProviderErrorKind.TIMEOUT
    return ProviderErrorKind.UPSTREAM


class ProviderAdapter(ABC):
    """One upstream chat vendor behind a uniform ``send`` call."""

    name: ProviderName
    vendor_label: str = "Provider"

    def __init__(self, api_key: Optional[str], model: str, client: httpx.AsyncClient) -> None:
        self.api_key = api_key
        self.model = model
        self.client = client

    @abstractmethod
    def build_request(self, message: str, history: Sequence[ChatTurn]) -> Dict[str, Any]:
        """Return keyword arguments for ``client.post``."""

    @abstractmethod
    def parse_response(self, data: Any) -> Any:
        """Pull the generated text out of a successful response body."""

    def extract_error(self, data: Any) -> Optional[str]:
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict):
                message = error.get("message")
                if isinstance(message, str) and message:
                    return message
            elif isinstance(error, str) and error:
                return error
        return None

    async def send(self, message: str, history: Sequence[ChatTurn]) -> str:
        request = self.build_request(message, history)
        try:
            response = await self.client.post(**request)
        except httpx.TimeoutException as exc:
            raise ProviderError(ProviderErrorKind.TIMEOUT, f"{self.vendor_label} request timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                ProviderErrorKind.UPSTREAM, f"{self.vendor_label} request failed: {exc}"
            ) from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            message_text = self.extract_error(data) or f"{self.vendor_label} API error"
            raise ProviderError(
                classify_failure(response.status_code, message_text),
                message_text,
                status_code=response.status_code,
            )

        try:
            text = self.parse_response(data)
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(
                ProviderErrorKind.UPSTREAM,
                f"{self.vendor_label} returned an unexpected response shape",
                status_code=response.status_code,
            ) from exc
        if not isinstance(text, str):
            raise ProviderError(
                ProviderErrorKind.UPSTREAM,
                f"{self.vendor_label} returned no text",
                status_code=response.status_code,
            )
        return text.strip()

    async def close(self) -> None:
        await self.client.aclose()


class OpenAIAdapter(ProviderAdapter):
    name = ProviderName.OPENAI
    vendor_label = "OpenAI"

    def build_request(self, message: str, history: Sequence[ChatTurn]) -> Dict[str, Any]:
        messages = [{"role": "system", "content": PERSONA}]
        messages.extend({"role": turn.role, "content": turn.content} for turn in history)
        messages.append({"role": "user", "content": message})
        return {
            "url": OPENAI_URL,
            "headers": {"Authorization": f"Bearer {self.api_key}"},
            "json": {
                "model": self.model,
                "messages": messages,
                "temperature": 0.7,
                "max_tokens": 1000,
            },
        }

    def parse_response(self, data: Any) -> Any:
        return data["choices"][0]["message"]["content"]


class ClaudeAdapter(ProviderAdapter):
    name = ProviderName.CLAUDE
    vendor_label = "Claude"

    def build_request(self, message: str, history: Sequence[ChatTurn]) -> Dict[str, Any]:
        # The persona goes in its own field; the messages list holds turns only
        messages = [{"role": turn.role, "content": turn.content} for turn in history]
        messages.append({"role": "user", "content": message})
        return {
            "url": CLAUDE_URL,
            "headers": {
                "x-api-key": self.api_key or "",
                "anthropic-version": ANTHROPIC_VERSION,
            },
            "json": {
                "model": self.model,
                "max_tokens": 1000,
                "system": PERSONA,
                "messages": messages,
            },
        }

    def parse_response(self, data: Any) -> Any:
        return data["content"][0]["text"]


class GeminiAdapter(ProviderAdapter):
    name = ProviderName.GEMINI
    vendor_label = "Gemini"

    def build_request(self, message: str, history: Sequence[ChatTurn]) -> Dict[str, Any]:
        contents: List[Dict[str, Any]] = [
            {
                "role": "model" if turn.role == "assistant" else "user",
                "parts": [{"text": turn.content}],
            }
            for turn in history
        ]
        contents.append({"role": "user", "parts": [{"text": message}]})
        return {
            "url": GEMINI_URL_TEMPLATE.format(model=self.model),
            "params": {"key": self.api_key or ""},
            "json": {
                "contents": contents,
                "generationConfig": {
                    "temperature": 0.7,
                    "maxOutputTokens": 1000,
                    "topP": 0.95,
                },
                "systemInstruction": {
                    "parts": [{"text": f"{PERSONA} Keep responses brief and to the point."}]
                },
            },
        }

    def parse_response(self, data: Any) -> Any:
        return data["candidates"][0]["content"]["parts"][0]["text"]


class HuggingFaceAdapter(ProviderAdapter):
    name = ProviderName.HUGGINGFACE
    vendor_label = "Hugging Face"

    def build_prompt(self, message: str, history: Sequence[ChatTurn]) -> str:
        lines = [f"{PERSONA}\n\n"]
        for turn in history:
            speaker = "User" if turn.role == "user" else "Assistant"
            lines.append(f"{speaker}: {turn.content}\n")
        lines.append(f"User: {message}\nAssistant:")
        return "".join(lines)

    def build_request(self, message: str, history: Sequence[ChatTurn]) -> Dict[str, Any]:
        return {
            "url": HF_URL_TEMPLATE.format(model=self.model),
            "headers": {"Authorization": f"Bearer {self.api_key}"},
            "json": {
                "inputs": self.build_prompt(message, history),
                "parameters": {
                    "max_new_tokens": 500,
                    "temperature": 0.7,
                    "top_p": 0.95,
                    "return_full_text": False,
                },
            },
        }

    def parse_response(self, data: Any) -> Any:
        return data[0]["generated_text"]


ADAPTERS: Dict[ProviderName, type[ProviderAdapter]] = {
    ProviderName.OPENAI: OpenAIAdapter,
    ProviderName.CLAUDE: ClaudeAdapter,
    ProviderName.GEMINI: GeminiAdapter,
    ProviderName.HUGGINGFACE: HuggingFaceAdapter,
}


def build_provider(
    settings: Settings, client: Optional[httpx.AsyncClient] = None
) -> ProviderAdapter:
    """Build the adapter for the configured vendor.

    Exactly one adapter exists per process; it is chosen here at startup and
    never switched afterwards.
    """
    adapter_cls = ADAPTERS[settings.ai_provider]
    http_client = client or httpx.AsyncClient(
        timeout=settings.provider_timeout_seconds,
        follow_redirects=False,
    )
    logger.info(
        "provider_selected",
        provider=settings.ai_provider.value,
        model=settings.provider_model,
    )
    return adapter_cls(settings.ai_api_key, settings.provider_model, http_client)
