"""
OpenAI-compatible host client.

Serves the ``openai`` protocol: OpenAI itself plus compatible servers such as
LM Studio and OpenRouter, reached by pointing the SDK's ``base_url`` at the
host endpoint.
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any, Protocol, cast

import openai

from promptbox.core.config import HostProtocol
from promptbox.core.console import get_logger
from promptbox.providers import (
    AuthenticationError,
    CompletionOptions,
    ModelNotFoundError,
    PromptRequest,
    ProviderError,
    api_key_for,
    register_client,
)

if TYPE_CHECKING:
    from promptbox.core.hosts import HostDef

logger = get_logger(__name__)

# Keyless local servers still need a non-empty key for the SDK.
PLACEHOLDER_API_KEY = "not-needed"

_API_KEY_PATTERN = re.compile(r"sk-[A-Za-z0-9_\-]{20,}")

# Model context limits (tokens), matched by longest prefix.
OPENAI_CONTEXT_LIMITS: dict[str, int] = {
    "gpt-3.5-turbo-16k": 16_385,
    "gpt-3.5-turbo": 16_385,
    "gpt-4-32k": 32_768,
    "gpt-4-turbo": 128_000,
    "gpt-4-1106": 128_000,
    "gpt-4-0125": 128_000,
    "gpt-4o": 128_000,
    "gpt-4.1": 1_047_576,
    "gpt-4": 8_192,
}


def _redact_api_key(message: str, env_name: str | None) -> str:
    """Remove potential API keys from error messages."""
    api_key = os.environ.get(env_name, "") if env_name else ""
    if api_key and api_key in message:
        message = message.replace(api_key, "[REDACTED]")
    return _API_KEY_PATTERN.sub("[REDACTED]", message)


def lookup_context_limit(model: str, limits: dict[str, int] = OPENAI_CONTEXT_LIMITS) -> int | None:
    for prefix in sorted(limits, key=len, reverse=True):
        if model.startswith(prefix):
            return limits[prefix]
    return None


class _Delta(Protocol):
    content: str | None


class _StreamChoice(Protocol):
    delta: _Delta | None


class _StreamChunk(Protocol):
    choices: list[_StreamChoice]


def build_messages(request: PromptRequest) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if request.system:
        messages.append({"role": "system", "content": request.system})

    if request.images:
        content: list[dict[str, Any]] = [{"type": "text", "text": request.prompt}]
        content.extend({"type": "image_url", "image_url": {"url": image.data_url}} for image in request.images)
        messages.append({"role": "user", "content": content})
    else:
        messages.append({"role": "user", "content": request.prompt})
    return messages


def build_chat_params(request: PromptRequest) -> dict[str, Any]:
    """Map a request onto chat completion parameters."""
    opts: CompletionOptions = request.options
    params: dict[str, Any] = {
        "model": request.model,
        "messages": build_messages(request),
        "stream": True,
    }
    if opts.temperature is not None:
        params["temperature"] = opts.temperature
    if opts.top_p is not None:
        params["top_p"] = opts.top_p
    if opts.frequency_penalty is not None:
        params["frequency_penalty"] = opts.frequency_penalty
    if opts.presence_penalty is not None:
        params["presence_penalty"] = opts.presence_penalty
    if opts.max_tokens is not None:
        params["max_tokens"] = opts.max_tokens
    if opts.stop:
        params["stop"] = list(opts.stop)
    if opts.json_mode:
        params["response_format"] = {"type": "json_object"}
    return params


def translate_api_error(exc: Exception, host: HostDef) -> ProviderError:
    message = _redact_api_key(str(exc), host.api_key_env)
    if isinstance(exc, openai.AuthenticationError):
        return AuthenticationError(f"{host.name}: {message}")
    if isinstance(exc, openai.NotFoundError):
        return ModelNotFoundError(f"{host.name}: {message}")
    return ProviderError(f"{host.name} request failed: {message}")


@register_client(HostProtocol.OPENAI)
class OpenAICompatibleClient:
    """Chat completions client for any OpenAI-compatible endpoint."""

    def __init__(self, host: HostDef, client: Any | None = None) -> None:
        self.host = host
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            key = api_key_for(self.host, required=self.host.api_key_env is not None)
            self._client = openai.OpenAI(base_url=self.host.endpoint, api_key=key or PLACEHOLDER_API_KEY)
        return self._client

    def stream(self, request: PromptRequest) -> Iterator[str]:
        client = self._get_client()
        params = build_chat_params(request)
        logger.debug("POST %s chat.completions model=%s", self.host.endpoint, request.model)
        try:
            response = client.chat.completions.create(**params)
            for chunk in cast(Iterator[_StreamChunk], response):
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta and delta.content:
                    yield delta.content
        except openai.APIError as exc:
            raise translate_api_error(exc, self.host) from exc

    def context_limit(self, model: str) -> int | None:
        return lookup_context_limit(model)


__all__ = [
    "OPENAI_CONTEXT_LIMITS",
    "OpenAICompatibleClient",
    "build_chat_params",
    "build_messages",
    "lookup_context_limit",
    "translate_api_error",
]
