"""Template arguments: CLI parsing and file/image loading.

Each ``[options.<name>]`` of a template becomes a ``--<name>`` option of the
``run`` command. Positional leftovers are extra prompt text.
"""

from __future__ import annotations

import base64
import mimetypes
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click

from promptbox.core.errors import ArgumentError
from promptbox.core.templates import OptionType, PromptOption

EXTRA_PARAM = "extra_prompt"

_CLICK_TYPES: dict[OptionType, click.ParamType] = {
    OptionType.STRING: click.STRING,
    OptionType.NUMBER: click.FLOAT,
    OptionType.INTEGER: click.INT,
    OptionType.FILE: click.Path(path_type=Path, dir_okay=False),
    OptionType.IMAGE: click.Path(path_type=Path, dir_okay=False),
}


@dataclass(frozen=True)
class FileArgument:
    """A file passed to a template. Renders as its contents."""

    filename: str
    path: str
    contents: str

    def __str__(self) -> str:
        return self.contents


@dataclass(frozen=True)
class ImageData:
    """A base64-encoded image sent alongside the prompt."""

    path: Path
    mime_type: str
    data: str

    @classmethod
    def from_path(cls, path: Path) -> ImageData:
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise ArgumentError(f"Cannot read image {path}: {exc}") from exc
        mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return cls(path=path, mime_type=mime_type, data=base64.b64encode(raw).decode("ascii"))

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass
class ParsedArguments:
    values: dict[str, Any] = field(default_factory=dict)
    images: list[ImageData] = field(default_factory=list)
    extra: list[str] = field(default_factory=list)


def read_file_argument(base_dir: Path, path: Path) -> FileArgument:
    full_path = (base_dir / path).resolve()
    try:
        contents = full_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ArgumentError(f"Could not read file {path}: {exc}") from exc
    return FileArgument(filename=path.name, path=str(path), contents=contents)


def _param_name(option_name: str) -> str:
    return option_name.replace("-", "_")


def build_option_command(options: Mapping[str, PromptOption]) -> click.Command:
    """Build a click command whose options mirror a template's options."""
    params: list[click.Parameter] = []
    for name, option in options.items():
        declarations = [f"--{name}", _param_name(name)]
        if option.option_type is OptionType.BOOL:
            params.append(
                click.Option(declarations, is_flag=True, default=bool(option.default), help=option.description)
            )
            continue
        kwargs: dict[str, Any] = {
            "type": _CLICK_TYPES[option.option_type],
            "multiple": option.array,
            "required": option.required,
            "help": option.description,
        }
        # An explicit default=None counts as a default on newer click releases.
        if option.default is not None:
            kwargs["default"] = option.default
        params.append(click.Option(declarations, **kwargs))
    params.append(click.Argument([EXTRA_PARAM], nargs=-1))
    return click.Command("run", params=params)


def parse_template_arguments(
    options: Mapping[str, PromptOption],
    argv: Sequence[str],
    base_dir: Path,
) -> ParsedArguments:
    """Parse ``argv`` against the template options and load file/image values."""
    command = build_option_command(options)
    try:
        ctx = command.make_context("run", list(argv))
    except click.UsageError as exc:
        raise ArgumentError(exc.format_message()) from exc

    parsed = ParsedArguments(extra=list(ctx.params.pop(EXTRA_PARAM, ())))
    for name, option in options.items():
        raw = ctx.params.get(_param_name(name))
        match option.option_type:
            case OptionType.FILE:
                if option.array:
                    parsed.values[name] = [read_file_argument(base_dir, Path(p)) for p in raw or ()]
                else:
                    parsed.values[name] = read_file_argument(base_dir, Path(raw)) if raw else None
            case OptionType.IMAGE:
                paths = list(raw or ()) if option.array else ([raw] if raw else [])
                parsed.images.extend(ImageData.from_path((base_dir / Path(p)).resolve()) for p in paths)
            case _:
                if option.array:
                    parsed.values[name] = list(raw) if raw else list(option.default or [])
                else:
                    parsed.values[name] = raw
    return parsed


__all__ = [
    "FileArgument",
    "ImageData",
    "ParsedArguments",
    "build_option_command",
    "parse_template_arguments",
    "read_file_argument",
]
