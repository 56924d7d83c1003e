"""Directory-cascade configuration.

Configuration lives in ``promptbox.toml`` fragments. Resolution starts in a
working directory and walks upward, reading the fragment in each directory and
in its ``promptbox/`` subdirectory, then appends the global fragment. The
ordered list (closest first) is merged field by field: the closest fragment
that sets a field wins.

Key components:
    - ConfigFragment: One parsed fragment file
    - EffectiveConfig: The merged result of a cascade
    - ConfigCascadeResolver: Discovery + merge
    - resolve_config(): Convenience wrapper used by the CLI
"""

from __future__ import annotations

import tomllib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from promptbox.core.console import get_logger
from promptbox.core.errors import ConfigError
from promptbox.core.settings import CONFIG_FILENAME, RuntimeSettings

logger = get_logger(__name__)

SUBDIRECTORY_NAME = "promptbox"
DEFAULT_RESERVE_OUTPUT = 256


# -----------------------------------------------------------------------------
# Fragment models
# -----------------------------------------------------------------------------


class HostProtocol(str, Enum):
    """Wire protocols a host can speak."""

    OPENAI = "openai"
    OLLAMA = "ollama"
    TOGETHER = "together"


class KeepSide(str, Enum):
    """Which side of oversized text survives trimming."""

    START = "start"
    END = "end"


class ArrayPriority(str, Enum):
    """Which elements of an array argument are trimmed first."""

    FIRST = "first"
    LAST = "last"
    EQUAL = "equal"


class ModelSpec(BaseModel):
    """Object form of a model reference. A set ``host`` pins the host."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    model: str
    host: str | None = None


ModelRef: TypeAlias = str | ModelSpec


class ContextPolicy(BaseModel):
    """How a prompt is fitted into the model's context window.

    Fields left unset inherit from less specific fragments; ``model_fields_set``
    records which ones a fragment actually provided.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    limit: int | None = Field(default=None, ge=1)
    reserve_output: int = Field(default=DEFAULT_RESERVE_OUTPUT, ge=0)
    keep: KeepSide = KeepSide.END
    trim_args: tuple[str, ...] | None = None
    array_priority: ArrayPriority = ArrayPriority.FIRST


class ModelDefaults(BaseModel):
    """The ``[model]`` table: default model, aliases, context policy.

    Any other key is a free-form request option (temperature, top_p, ...).
    """

    model_config = ConfigDict(frozen=True, extra="allow", protected_namespaces=())

    model: ModelRef | None = None
    alias: dict[str, ModelRef] = Field(default_factory=dict)
    context: ContextPolicy = Field(default_factory=ContextPolicy)

    @property
    def options(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class HostOverride(BaseModel):
    """A ``[host.<name>]`` table. Every field is optional so it can patch a built-in."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    endpoint: str | None = None
    protocol: HostProtocol | None = None
    limit_context_length: bool | None = None
    api_key_env: str | None = None


class ConfigFragment(BaseModel):
    """One configuration file before merging. ``None`` means "inherit"."""

    model_config = ConfigDict(frozen=True, extra="ignore", protected_namespaces=())

    origin: Path
    is_global: bool = False
    templates: tuple[str, ...] | None = None
    top_level: bool | None = None
    use_global_config: bool | None = None
    default_host: str | None = None
    model: ModelDefaults | None = None
    host: dict[str, HostOverride] = Field(default_factory=dict)

    @property
    def directory(self) -> Path:
        return self.origin.parent


# -----------------------------------------------------------------------------
# Merged configuration
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class EffectiveConfig:
    """The merged view of every fragment that applies to a directory."""

    start_dir: Path
    fragments: tuple[ConfigFragment, ...] = ()
    templates: tuple[str, ...] = ()
    templates_base: Path | None = None
    top_level: bool = False
    use_global_config: bool = True
    default_host: str | None = None
    model: ModelDefaults = field(default_factory=ModelDefaults)
    host: Mapping[str, HostOverride] = field(default_factory=dict)

    @property
    def context(self) -> ContextPolicy:
        return self.model.context

    @property
    def template_search_paths(self) -> tuple[Path, ...]:
        """Directories searched for templates, closest first."""
        base = self.templates_base or self.start_dir
        if not self.templates:
            return (base,)
        return tuple((base / Path(entry).expanduser()).resolve() for entry in self.templates)

    @property
    def sources(self) -> tuple[Path, ...]:
        return tuple(fragment.origin for fragment in self.fragments)


def merge_context_policies(layers: Iterable[ContextPolicy]) -> ContextPolicy:
    """Merge policies closest first; only explicitly set fields count."""
    merged: dict[str, Any] = {}
    for policy in layers:
        for name in policy.model_fields_set:
            merged.setdefault(name, getattr(policy, name))
    return ContextPolicy.model_validate(merged)


def merge_model_defaults(layers: Iterable[ModelDefaults]) -> ModelDefaults:
    """Merge ``[model]`` tables closest first.

    Aliases and free-form options merge per key; the context policy merges per field.
    """
    model_ref: ModelRef | None = None
    alias: dict[str, ModelRef] = {}
    options: dict[str, Any] = {}
    contexts: list[ContextPolicy] = []

    for layer in layers:
        if model_ref is None and layer.model is not None:
            model_ref = layer.model
        for name, ref in layer.alias.items():
            alias.setdefault(name, ref)
        for key, value in layer.options.items():
            options.setdefault(key, value)
        contexts.append(layer.context)

    data: dict[str, Any] = {**options, "alias": alias, "context": merge_context_policies(contexts)}
    if model_ref is not None:
        data["model"] = model_ref
    return ModelDefaults.model_validate(data)


def merge_host_overrides(layers: Iterable[Mapping[str, HostOverride]]) -> dict[str, HostOverride]:
    """Merge ``[host.*]`` tables closest first, per host name and per field."""
    merged: dict[str, dict[str, Any]] = {}
    for hosts in layers:
        for name, override in hosts.items():
            slot = merged.setdefault(name, {})
            for field_name in override.model_fields_set:
                slot.setdefault(field_name, getattr(override, field_name))
    return {name: HostOverride.model_validate(values) for name, values in merged.items()}


def _first_set(fragments: Iterable[ConfigFragment], attr: str) -> tuple[ConfigFragment | None, Any]:
    for fragment in fragments:
        value = getattr(fragment, attr)
        if value is not None:
            return fragment, value
    return None, None


def merge_fragments(start_dir: Path, fragments: Iterable[ConfigFragment]) -> EffectiveConfig:
    """Merge fragments ordered closest first into one EffectiveConfig."""
    ordered = tuple(fragments)

    templates_owner, templates = _first_set(ordered, "templates")
    if templates_owner is not None:
        templates_base = templates_owner.directory
    else:
        templates = ()
        templates_base = ordered[0].directory if ordered else start_dir

    _, top_level = _first_set(ordered, "top_level")
    _, default_host = _first_set(ordered, "default_host")

    return EffectiveConfig(
        start_dir=start_dir,
        fragments=ordered,
        templates=tuple(templates),
        templates_base=templates_base,
        top_level=bool(top_level),
        use_global_config=not any(f.use_global_config is False for f in ordered),
        default_host=default_host,
        model=merge_model_defaults(f.model for f in ordered if f.model is not None),
        host=merge_host_overrides(f.host for f in ordered),
    )


# -----------------------------------------------------------------------------
# Discovery
# -----------------------------------------------------------------------------


def load_fragment(path: Path, *, is_global: bool = False) -> ConfigFragment:
    """Parse and validate one fragment file."""
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc

    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Syntax error in {path}: {exc}") from exc

    data = {key: value for key, value in data.items() if key not in ("origin", "is_global")}
    try:
        return ConfigFragment.model_validate({**data, "origin": path, "is_global": is_global})
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc


def _level_candidates(directory: Path) -> tuple[Path, ...]:
    # The directory's own fragment outranks its promptbox/ subdirectory.
    return (directory / CONFIG_FILENAME, directory / SUBDIRECTORY_NAME / CONFIG_FILENAME)


class ConfigCascadeResolver:
    """Discovers fragments from a directory upward and merges them.

    Each call to :meth:`resolve` reads the filesystem afresh; nothing is cached.
    """

    def __init__(self, global_path: Path | None = None) -> None:
        self.global_path = global_path

    def discover(self, start_dir: Path) -> list[ConfigFragment]:
        """Return the applicable fragments ordered closest first."""
        fragments: list[ConfigFragment] = []
        seen: set[Path] = set()
        current = start_dir.resolve()

        while True:
            for candidate in _level_candidates(current):
                if candidate.is_file():
                    fragment = load_fragment(candidate)
                    logger.debug("Found config fragment %s", candidate)
                    fragments.append(fragment)
                    seen.add(candidate.resolve())

            if any(fragment.top_level for fragment in fragments):
                logger.debug("Stopping cascade at %s (top_level)", current)
                break
            if current.parent == current:
                break
            current = current.parent

        if any(fragment.use_global_config is False for fragment in fragments):
            logger.debug("Global config disabled by a directory fragment")
            return fragments

        global_path = self.global_path
        if global_path is not None and global_path.is_file() and global_path.resolve() not in seen:
            logger.debug("Using global config %s", global_path)
            fragments.append(load_fragment(global_path, is_global=True))

        return fragments

    def resolve(self, start_dir: Path) -> EffectiveConfig:
        start = start_dir.resolve()
        config = merge_fragments(start, self.discover(start))
        logger.debug(
            "Effective config for %s from %d fragment(s): templates=%s default_host=%s",
            start,
            len(config.fragments),
            [str(path) for path in config.template_search_paths],
            config.default_host,
        )
        return config


def resolve_config(start_dir: Path, settings: RuntimeSettings | None = None) -> EffectiveConfig:
    """Resolve the effective configuration for ``start_dir``."""
    runtime = settings or RuntimeSettings()
    return ConfigCascadeResolver(runtime.global_config_path).resolve(start_dir)


__all__ = [
    "ArrayPriority",
    "ConfigCascadeResolver",
    "ConfigFragment",
    "ContextPolicy",
    "DEFAULT_RESERVE_OUTPUT",
    "EffectiveConfig",
    "HostOverride",
    "HostProtocol",
    "KeepSide",
    "ModelDefaults",
    "ModelRef",
    "ModelSpec",
    "load_fragment",
    "merge_context_policies",
    "merge_fragments",
    "merge_host_overrides",
    "merge_model_defaults",
    "resolve_config",
]
