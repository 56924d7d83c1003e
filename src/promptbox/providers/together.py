"""
Together host client.

Uses Together's plain completions endpoint through the OpenAI SDK: the system
prompt and the prompt are sent as one text body.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

import openai

from promptbox.core.config import HostProtocol
from promptbox.core.console import get_logger
from promptbox.providers import PromptRequest, api_key_for, register_client
from promptbox.providers.openai import PLACEHOLDER_API_KEY, translate_api_error

if TYPE_CHECKING:
    from promptbox.core.hosts import HostDef

logger = get_logger(__name__)


def build_completion_params(request: PromptRequest) -> dict[str, Any]:
    opts = request.options
    prompt = f"{request.system}\n\n{request.prompt}" if request.system else request.prompt
    params: dict[str, Any] = {"model": request.model, "prompt": prompt, "stream": True}
    if opts.temperature is not None:
        params["temperature"] = opts.temperature
    if opts.top_p is not None:
        params["top_p"] = opts.top_p
    if opts.max_tokens is not None:
        params["max_tokens"] = opts.max_tokens
    if opts.stop:
        params["stop"] = list(opts.stop)
    extra: dict[str, Any] = {}
    if opts.top_k is not None:
        extra["top_k"] = opts.top_k
    if opts.frequency_penalty is not None:
        extra["repetition_penalty"] = opts.frequency_penalty
    if extra:
        params["extra_body"] = extra
    return params


@register_client(HostProtocol.TOGETHER)
class TogetherClient:
    """Streaming completions against the Together API."""

    def __init__(self, host: HostDef, client: Any | None = None) -> None:
        self.host = host
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            key = api_key_for(self.host, required=True)
            self._client = openai.OpenAI(base_url=self.host.endpoint, api_key=key or PLACEHOLDER_API_KEY)
        return self._client

    def stream(self, request: PromptRequest) -> Iterator[str]:
        client = self._get_client()
        if request.images:
            logger.warning("Host %s does not accept images; ignoring %d image(s)", self.host.name, len(request.images))
        try:
            for chunk in client.completions.create(**build_completion_params(request)):
                if chunk.choices and chunk.choices[0].text:
                    yield chunk.choices[0].text
        except openai.APIError as exc:
            raise translate_api_error(exc, self.host) from exc

    def context_limit(self, model: str) -> int | None:
        return None


__all__ = ["TogetherClient", "build_completion_params"]
