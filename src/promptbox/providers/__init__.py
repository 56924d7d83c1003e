"""
Host clients for promptbox.

Every host speaks one of a fixed set of wire protocols. Each protocol has one
client class implementing the same small contract:

    stream(request) -> Iterator[str]     # response text as it arrives
    context_limit(model) -> int | None   # known context window, if any

Usage:
    from promptbox.providers import PromptRequest, get_client

    client = get_client(resolved.host)
    for chunk in client.stream(PromptRequest(model=resolved.model, prompt=text)):
        print(chunk, end="")
"""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from promptbox.core.config import HostProtocol

if TYPE_CHECKING:
    from promptbox.core.arguments import ImageData
    from promptbox.core.hosts import HostDef


@dataclass(frozen=True, slots=True)
class CompletionOptions:
    """Request options, normalized across protocols.

    Each client maps these onto its own wire parameters.
    """

    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    max_tokens: int | None = None
    stop: tuple[str, ...] = ()
    json_mode: bool = False

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> CompletionOptions:
        """Build options from the free-form ``[model]`` keys; unknown keys are ignored."""
        stop = options.get("stop") or ()
        if isinstance(stop, str):
            stop = (stop,)
        return cls(
            temperature=options.get("temperature"),
            top_p=options.get("top_p"),
            top_k=options.get("top_k"),
            frequency_penalty=options.get("frequency_penalty"),
            presence_penalty=options.get("presence_penalty"),
            max_tokens=options.get("max_tokens"),
            stop=tuple(stop),
            json_mode=str(options.get("format", "")).lower() == "json",
        )


@dataclass(frozen=True, slots=True)
class PromptRequest:
    """Everything a host client needs to submit one prompt."""

    model: str
    prompt: str
    system: str | None = None
    options: CompletionOptions = field(default_factory=CompletionOptions)
    images: tuple[ImageData, ...] = ()


class ProviderError(Exception):
    """Base exception for host client errors."""

    pass


class AuthenticationError(ProviderError):
    """Raised when the host rejects or lacks credentials."""

    pass


class ModelNotFoundError(ProviderError):
    """Raised when the requested model is not available on the host."""

    pass


@runtime_checkable
class HostClient(Protocol):
    """Protocol every host client satisfies."""

    def stream(self, request: PromptRequest) -> Iterator[str]:
        """Submit the prompt and yield response text chunks.

        Raises:
            ProviderError: On transport or API errors
        """
        ...

    def context_limit(self, model: str) -> int | None:
        """Return the context window for ``model``, or None if unknown."""
        ...


ClientFactory = Callable[["HostDef"], HostClient]
CLIENT_REGISTRY: dict[HostProtocol, ClientFactory] = {}

_F = TypeVar("_F", bound=ClientFactory)


def register_client(protocol: HostProtocol) -> Callable[[_F], _F]:
    """Class decorator registering a client for a wire protocol."""

    def decorator(factory: _F) -> _F:
        CLIENT_REGISTRY[protocol] = factory
        return factory

    return decorator


def _ensure_clients_registered() -> None:
    """Import the client modules so their decorators run."""
    from promptbox.providers import ollama, openai, together  # noqa: F401


def get_client(host: HostDef) -> HostClient:
    """Create the client for ``host``'s protocol."""
    _ensure_clients_registered()
    factory = CLIENT_REGISTRY.get(host.protocol)
    if factory is None:
        raise ProviderError(f"No client for protocol {host.protocol.value} (host {host.name})")
    return factory(host)


def api_key_for(host: HostDef, *, required: bool = False) -> str | None:
    """Read the host's API key from the environment variable it names."""
    if not host.api_key_env:
        return None
    key = os.environ.get(host.api_key_env)
    if not key and required:
        raise AuthenticationError(f"{host.api_key_env} environment variable not set (host {host.name})")
    return key or None


__all__ = [
    "AuthenticationError",
    "CLIENT_REGISTRY",
    "CompletionOptions",
    "HostClient",
    "ModelNotFoundError",
    "PromptRequest",
    "ProviderError",
    "api_key_for",
    "get_client",
    "register_client",
]
