"""Prompt template discovery, parsing and rendering.

Templates are ``<name>.pb.toml`` files found in the effective template search
paths. Rendering uses Jinja2 with StrictUndefined so a missing variable is an
error instead of an empty string.

This module provides:
- PromptTemplate / PromptOption: the template file schema
- find_template: locate and load a template by name
- TemplateRenderer: compile and render template sources
- references_variable: check whether a template uses a variable
"""

from __future__ import annotations

import json
import tomllib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import jinja2
from jinja2 import Environment, FileSystemLoader, StrictUndefined, meta
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from promptbox.core.config import EffectiveConfig, ModelDefaults
from promptbox.core.console import get_logger
from promptbox.core.errors import RenderError, TemplateError

logger = get_logger(__name__)

TEMPLATE_SUFFIX = ".pb.toml"


class OptionType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOL = "bool"
    FILE = "file"
    IMAGE = "image"


class PromptOption(BaseModel):
    """One ``[options.<name>]`` entry of a template."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    option_type: OptionType = Field(default=OptionType.STRING, alias="type")
    description: str = ""
    array: bool = False
    optional: bool = False
    default: Any = None

    @property
    def required(self) -> bool:
        return self.option_type is not OptionType.BOOL and self.default is None and not self.optional


class PromptTemplate(BaseModel):
    """Schema of a ``.pb.toml`` template file."""

    model_config = ConfigDict(frozen=True, extra="ignore", protected_namespaces=())

    description: str = ""
    template: str | None = None
    template_path: str | None = None
    system: str | None = None
    system_path: str | None = None
    model: ModelDefaults | None = None
    options: dict[str, PromptOption] = Field(default_factory=dict)


@dataclass(frozen=True)
class ParsedTemplate:
    """A loaded template with its prompt and system sources read in."""

    name: str
    path: Path
    definition: PromptTemplate
    source: str
    system: str | None = None

    @property
    def directory(self) -> Path:
        return self.path.parent


def _read_source(base: Path, inline: str | None, relative: str | None, what: str) -> str | None:
    if inline is not None:
        return inline
    if relative is None:
        return None
    path = base / relative
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise TemplateError(f"Cannot read {what} file {path}: {exc}") from exc


def load_template(path: Path, name: str | None = None) -> ParsedTemplate:
    """Load a template file and the prompt/system text it points to."""
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise TemplateError(f"Cannot read template {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise TemplateError(f"Syntax error in template {path}: {exc}") from exc

    try:
        definition = PromptTemplate.model_validate(data)
    except ValidationError as exc:
        raise TemplateError(f"Invalid template {path}: {exc}") from exc

    source = _read_source(path.parent, definition.template, definition.template_path, "template")
    if source is None:
        raise TemplateError(f"Template {path} is missing both `template` and `template_path`")
    system = _read_source(path.parent, definition.system, definition.system_path, "system prompt")

    template_name = name or path.name.removesuffix(TEMPLATE_SUFFIX)
    return ParsedTemplate(name=template_name, path=path, definition=definition, source=source, system=system)


def find_template(config: EffectiveConfig, name: str) -> ParsedTemplate:
    """Find ``name`` in the template search paths, closest first."""
    filename = f"{name}{TEMPLATE_SUFFIX}"
    searched = config.template_search_paths
    for directory in searched:
        candidate = directory / filename
        if candidate.is_file():
            logger.debug("Using template %s", candidate)
            return load_template(candidate, name)

    locations = ", ".join(str(directory) for directory in searched)
    raise TemplateError(f"Template '{name}' not found. Searched: {locations}")


def list_templates(config: EffectiveConfig) -> dict[str, Path]:
    """Map every visible template name to its file; closer directories shadow farther ones."""
    found: dict[str, Path] = {}
    for directory in config.template_search_paths:
        if not directory.is_dir():
            continue
        for path in sorted(directory.rglob(f"*{TEMPLATE_SUFFIX}")):
            name = path.relative_to(directory).as_posix().removesuffix(TEMPLATE_SUFFIX)
            found.setdefault(name, path)
    return found


class TemplateRenderer:
    """Compiles and renders template sources with a shared Jinja2 environment.

    The loader searches ``search_paths`` so templates can ``{% include %}``
    partials stored next to them.
    """

    def __init__(self, search_paths: Sequence[Path] = ()) -> None:
        self.env = Environment(
            loader=FileSystemLoader([str(path) for path in search_paths]),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=False,
        )
        self.env.filters["tojson"] = json.dumps

    def compile(self, source: str, name: str = "<template>") -> jinja2.Template:
        try:
            return self.env.from_string(source)
        except jinja2.TemplateSyntaxError as exc:
            raise RenderError(f"Syntax error in {name} (line {exc.lineno}): {exc.message}") from exc

    def render(self, template: jinja2.Template, context: Mapping[str, Any], name: str = "<template>") -> str:
        try:
            return template.render(**context)
        except jinja2.TemplateError as exc:
            raise RenderError(f"Failed to render {name}: {exc}") from exc

    def render_source(self, source: str, context: Mapping[str, Any], name: str = "<template>") -> str:
        return self.render(self.compile(source, name), context, name)

    def references_variable(self, source: str, variable: str) -> bool:
        try:
            parsed = self.env.parse(source)
        except jinja2.TemplateSyntaxError as exc:
            raise RenderError(f"Syntax error (line {exc.lineno}): {exc.message}") from exc
        return variable in meta.find_undeclared_variables(parsed)


__all__ = [
    "OptionType",
    "ParsedTemplate",
    "PromptOption",
    "PromptTemplate",
    "TEMPLATE_SUFFIX",
    "TemplateRenderer",
    "find_template",
    "list_templates",
    "load_template",
]
