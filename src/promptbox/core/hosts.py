"""Host definitions and model reference resolution.

A model reference is either a bare name or ``{model, host}``. Resolution
dereferences aliases, picks a host (explicit pin, then name patterns, then the
configured default) and looks it up in the host registry: the built-in hosts
with config overrides merged in field by field, plus any custom hosts.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from promptbox.core.config import EffectiveConfig, HostOverride, HostProtocol, ModelRef, ModelSpec
from promptbox.core.console import get_logger
from promptbox.core.errors import ConfigError, ResolutionError

logger = get_logger(__name__)

DEFAULT_HOST = "ollama"
LM_STUDIO = "lm-studio"
OPENAI_MODEL_PREFIXES: tuple[str, ...] = ("gpt-3.5", "gpt-4")


class HostDef(BaseModel):
    """A named LLM-serving endpoint."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    endpoint: str
    protocol: HostProtocol
    limit_context_length: bool = False
    api_key_env: str | None = None


BUILTIN_HOSTS: dict[str, HostDef] = {
    "openai": HostDef(
        name="openai",
        endpoint="https://api.openai.com/v1",
        protocol=HostProtocol.OPENAI,
        limit_context_length=True,
        api_key_env="OPENAI_API_KEY",
    ),
    "ollama": HostDef(
        name="ollama",
        endpoint="http://localhost:11434",
        protocol=HostProtocol.OLLAMA,
        limit_context_length=True,
    ),
    "together": HostDef(
        name="together",
        endpoint="https://api.together.xyz/v1",
        protocol=HostProtocol.TOGETHER,
        api_key_env="TOGETHER_API_KEY",
    ),
    LM_STUDIO: HostDef(
        name=LM_STUDIO,
        endpoint="http://localhost:1234/v1",
        protocol=HostProtocol.OPENAI,
    ),
    "openrouter": HostDef(
        name="openrouter",
        endpoint="https://openrouter.ai/api/v1",
        protocol=HostProtocol.OPENAI,
        api_key_env="OPENROUTER_API_KEY",
    ),
}


def build_host_registry(
    overrides: Mapping[str, HostOverride],
    endpoint_overrides: Mapping[str, str] | None = None,
) -> dict[str, HostDef]:
    """Merge config host tables into the built-in hosts.

    ``endpoint_overrides`` (from the environment) replace built-in endpoints
    before the config tables are applied, so config still wins.
    """
    registry: dict[str, dict[str, Any]] = {
        name: host.model_dump() for name, host in BUILTIN_HOSTS.items()
    }
    for name, endpoint in (endpoint_overrides or {}).items():
        if name in registry:
            registry[name]["endpoint"] = endpoint

    for name, override in overrides.items():
        slot = registry.setdefault(name, {"name": name})
        for field_name in override.model_fields_set:
            slot[field_name] = getattr(override, field_name)

    hosts: dict[str, HostDef] = {}
    for name, values in registry.items():
        try:
            hosts[name] = HostDef.model_validate(values)
        except ValidationError as exc:
            raise ConfigError(
                f"Host '{name}' is incomplete; custom hosts need an endpoint and a protocol: {exc}"
            ) from exc
    return hosts


def select_host_name(model_name: str, default_host: str | None) -> str:
    """Pattern rules for references that don't pin a host."""
    if model_name.startswith(OPENAI_MODEL_PREFIXES):
        return "openai"
    if model_name == LM_STUDIO:
        return LM_STUDIO
    return default_host or DEFAULT_HOST


@dataclass(frozen=True)
class ResolvedModel:
    """A concrete (host, model, options) triple ready for a host client."""

    host: HostDef
    model: str
    options: dict[str, Any] = field(default_factory=dict)
    alias_chain: tuple[str, ...] = ()


def _ref_name(ref: ModelRef) -> str:
    return ref.model if isinstance(ref, ModelSpec) else ref


class ModelHostResolver:
    """Resolves a model reference against an EffectiveConfig. Pure; no I/O."""

    def __init__(self, endpoint_overrides: Mapping[str, str] | None = None) -> None:
        self.endpoint_overrides = dict(endpoint_overrides or {})

    def dereference(
        self, ref: ModelRef, aliases: Mapping[str, ModelRef]
    ) -> tuple[ModelRef, tuple[str, ...]]:
        """Follow aliases until a non-alias name or a host-pinned object.

        Returns the final reference and the alias names visited on the way.
        """
        chain: list[str] = []
        visited: set[str] = set()
        current = ref

        while True:
            if isinstance(current, ModelSpec) and current.host:
                break
            name = _ref_name(current)
            if name == LM_STUDIO or name not in aliases:
                break
            if name in visited:
                cycle = " -> ".join([*chain, name])
                raise ResolutionError(f"Model alias cycle detected: {cycle}")
            visited.add(name)
            chain.append(name)
            current = aliases[name]
            logger.debug("Alias %s -> %s", name, current)

        return current, tuple(chain)

    def resolve(self, model_ref: ModelRef | None, config: EffectiveConfig) -> ResolvedModel:
        ref = model_ref if model_ref else config.model.model
        if ref is None or not _ref_name(ref).strip():
            raise ResolutionError(
                "No model specified. Pass --model, set `model` in the template, "
                "or set [model] model in promptbox.toml."
            )

        aliases = config.model.alias
        if isinstance(ref, ModelSpec) and ref.host:
            final, chain = self.dereference(ref.model, aliases)
            model_name = _ref_name(final)
            host_name = ref.host
            logger.debug("Model %s pinned to host %s", model_name, host_name)
        else:
            final, chain = self.dereference(ref, aliases)
            model_name = _ref_name(final)
            if isinstance(final, ModelSpec) and final.host:
                host_name = final.host
                logger.debug("Alias chain %s pins host %s", " -> ".join(chain), host_name)
            else:
                host_name = select_host_name(model_name, config.default_host)
                logger.debug("Model %s routed to host %s", model_name, host_name)

        if not model_name:
            raise ResolutionError(f"Model reference {ref!r} resolves to an empty model name")

        registry = build_host_registry(config.host, self.endpoint_overrides)
        host = registry.get(host_name)
        if host is None:
            via = f" (via alias {' -> '.join(chain)})" if chain else ""
            raise ResolutionError(
                f"Unknown host '{host_name}' for model '{model_name}'{via}. "
                f"Known hosts: {', '.join(sorted(registry))}"
            )

        return ResolvedModel(
            host=host,
            model=model_name,
            options=config.model.options,
            alias_chain=chain,
        )


__all__ = [
    "BUILTIN_HOSTS",
    "DEFAULT_HOST",
    "HostDef",
    "LM_STUDIO",
    "ModelHostResolver",
    "ResolvedModel",
    "build_host_registry",
    "select_host_name",
]
