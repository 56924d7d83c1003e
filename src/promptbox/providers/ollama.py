"""
Ollama host client.

Talks to the native Ollama API: ``/api/generate`` streams newline-delimited
JSON, ``/api/show`` reports the model's ``num_ctx`` parameter.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from typing import IO, TYPE_CHECKING, Any
from urllib import error as urllib_error
from urllib import request as urllib_request

from promptbox.core.config import HostProtocol
from promptbox.core.console import get_logger
from promptbox.providers import ModelNotFoundError, PromptRequest, ProviderError, register_client

if TYPE_CHECKING:
    from promptbox.core.hosts import HostDef

logger = get_logger(__name__)

# Ollama's context size when the modelfile does not set num_ctx.
DEFAULT_CONTEXT_LIMIT = 2048
REQUEST_TIMEOUT = 300.0


def build_generate_payload(request: PromptRequest) -> dict[str, Any]:
    opts = request.options
    options = {
        "temperature": opts.temperature,
        "top_p": opts.top_p,
        "top_k": opts.top_k,
        "repeat_penalty": opts.frequency_penalty,
        "num_predict": opts.max_tokens,
        "stop": list(opts.stop) or None,
    }
    payload: dict[str, Any] = {
        "model": request.model,
        "prompt": request.prompt,
        "stream": True,
        "options": {key: value for key, value in options.items() if value is not None},
    }
    if request.system:
        payload["system"] = request.system
    if opts.json_mode:
        payload["format"] = "json"
    if request.images:
        payload["images"] = [image.data for image in request.images]
    return payload


def parse_num_ctx(parameters: str) -> int:
    """Read ``num_ctx`` from the ``parameters`` text of ``/api/show``."""
    for line in parameters.splitlines():
        name, _, value = line.strip().partition(" ")
        if name == "num_ctx":
            try:
                return int(value.strip())
            except ValueError as exc:
                raise ProviderError(f"Unparseable num_ctx value: {value.strip()!r}") from exc
    return DEFAULT_CONTEXT_LIMIT


@register_client(HostProtocol.OLLAMA)
class OllamaClient:
    """Client for an Ollama server."""

    def __init__(self, host: HostDef, timeout: float = REQUEST_TIMEOUT) -> None:
        self.host = host
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.host.endpoint.rstrip('/')}{path}"

    def _post(self, path: str, payload: dict[str, Any]) -> IO[bytes]:
        data = json.dumps(payload).encode("utf-8")
        req = urllib_request.Request(self._url(path), data=data, headers={"Content-Type": "application/json"})
        try:
            return urllib_request.urlopen(req, timeout=self.timeout)
        except urllib_error.HTTPError as exc:
            if exc.code == 404:
                raise ModelNotFoundError(f"Model {payload.get('model') or payload.get('name')} not found on {self.host.name}") from exc
            raise ProviderError(f"{self.host.name} returned HTTP {exc.code} for {path}") from exc
        except (urllib_error.URLError, TimeoutError, OSError) as exc:
            raise ProviderError(f"Cannot reach {self.host.name} at {self.host.endpoint}: {exc}") from exc

    def stream(self, request: PromptRequest) -> Iterator[str]:
        logger.debug("POST %s model=%s", self._url("/api/generate"), request.model)
        with self._post("/api/generate", build_generate_payload(request)) as response:
            for raw_line in response:
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    chunk = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise ProviderError(f"Malformed response line from {self.host.name}: {line[:80]!r}") from exc
                if chunk.get("error"):
                    raise ProviderError(f"{self.host.name}: {chunk['error']}")
                if chunk.get("response"):
                    yield chunk["response"]
                if chunk.get("done"):
                    break

    def context_limit(self, model: str) -> int | None:
        with self._post("/api/show", {"name": model}) as response:
            try:
                info = json.loads(response.read().decode("utf-8"))
            except json.JSONDecodeError as exc:
                raise ProviderError(f"Malformed /api/show response from {self.host.name}") from exc
        return parse_num_ctx(str(info.get("parameters", "")))


__all__ = [
    "DEFAULT_CONTEXT_LIMIT",
    "OllamaClient",
    "build_generate_payload",
    "parse_num_ctx",
]
