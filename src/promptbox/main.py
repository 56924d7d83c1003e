from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import NoReturn

import typer
from rich import box
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import __version__
from .core.config import KeepSide, ModelSpec, resolve_config
from .core.console import console, setup_logging, stderr_console
from .core.errors import PromptboxError, TemplateError
from .core.hosts import build_host_registry
from .core.pipeline import RunOverrides, prepare_prompt, submit_prompt
from .core.settings import RuntimeSettings, load_env_file
from .core.templates import list_templates, load_template
from .providers import ProviderError

app = typer.Typer(help="promptbox: fill prompt templates and send them to LLM hosts.", no_args_is_help=True)
logger = logging.getLogger(__name__)


class OutputFormat(str, Enum):
    TEXT = "text"
    JSON = "json"


@dataclass
class AppState:
    settings: RuntimeSettings
    logger: logging.Logger


def _fail(exc: Exception) -> NoReturn:
    stderr_console.print(
        Panel(Text(str(exc)), title=f"[bold red]{type(exc).__name__}[/bold red]", border_style="red")
    )
    raise typer.Exit(code=1)


def _state(ctx: typer.Context) -> AppState:
    if isinstance(ctx.obj, AppState):
        return ctx.obj
    settings = RuntimeSettings()
    return AppState(settings=settings, logger=setup_logging(level=settings.log_level))


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging."),
) -> None:
    env_file = load_env_file()
    settings = RuntimeSettings()
    app_logger = setup_logging(level=settings.log_level, verbose=debug)
    if env_file is not None:
        app_logger.debug("Loaded environment from %s", env_file)
    ctx.obj = AppState(settings=settings, logger=app_logger)


def _read_stdin() -> str | None:
    if sys.stdin is None or sys.stdin.isatty():
        return None
    return sys.stdin.read() or None


@app.command("run", context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def run(
    ctx: typer.Context,
    template: str = typer.Argument(..., help="The template to run."),
    model: str | None = typer.Option(
        None, "--model", "-m", envvar="PROMPTBOX_MODEL", help="Override the model used by the template."
    ),
    host: str | None = typer.Option(
        None, "--host", envvar="PROMPTBOX_MODEL_HOST", help="Send the request to this model host."
    ),
    temperature: float | None = typer.Option(
        None, "--temperature", "-t", help="Override the temperature passed to the model."
    ),
    pre: str | None = typer.Option(None, "--pre", help="Prepend this text to the template."),
    post: str | None = typer.Option(None, "--post", help="Append this text to the template."),
    print_prompt: bool = typer.Option(False, "--print-prompt", help="Print the generated prompt."),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Print the generated prompt and exit without submitting it."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print the prompt and the model parameters."),
    output_format: OutputFormat | None = typer.Option(None, "--format", help="Ask the model for JSON output."),
    overflow_keep: KeepSide | None = typer.Option(
        None, "--overflow-keep", help="Which side of the context to keep when trimming."
    ),
    context_limit: int | None = typer.Option(
        None, "--context-limit", min=1, help="Set a lower context size limit for the model."
    ),
    reserve_output: int | None = typer.Option(
        None, "--reserve-output", min=0, help="Tokens to leave free for the response (default 256)."
    ),
) -> None:
    """Render TEMPLATE with its options and stream the model's answer.

    Template options follow the template name (`--name value`); any other
    positional text, and piped stdin, is added to the prompt.
    """
    state = _state(ctx)
    overrides = RunOverrides(
        model=model,
        host=host,
        temperature=temperature,
        prepend=pre,
        append=post,
        output_format=output_format.value if output_format is OutputFormat.JSON else None,
        overflow_keep=overflow_keep,
        context_limit=context_limit,
        reserve_output=reserve_output,
        stdin_text=_read_stdin(),
    )

    try:
        prepared = prepare_prompt(Path.cwd(), template, ctx.args, overrides, state.settings)
    except (PromptboxError, ProviderError) as exc:
        _fail(exc)

    resolved = prepared.resolved
    if verbose:
        stderr_console.print(
            f"Model: {resolved.model} on {resolved.host.name} ({resolved.host.protocol.value})", markup=False
        )
        stderr_console.print(f"Options: {prepared.options}", markup=False, highlight=False)
        budget = "none" if prepared.trim.target is None else str(prepared.trim.target)
        stderr_console.print(f"Prompt tokens: {prepared.trim.tokens} (budget {budget})", markup=False)

    if print_prompt or verbose or dry_run:
        if prepared.system:
            stderr_console.print(f"== System:\n{prepared.system}\n", markup=False, highlight=False)
        stderr_console.print(f"== Prompt:\n{prepared.prompt}\n\n== Result:", markup=False, highlight=False)

    if dry_run:
        return

    try:
        for chunk in submit_prompt(prepared):
            console.out(chunk, end="", highlight=False)
    except (PromptboxError, ProviderError) as exc:
        console.out("")
        _fail(exc)
    console.out("")


@app.command("config")
def show_config(
    ctx: typer.Context,
    directory: Path | None = typer.Option(None, "--dir", "-d", help="Resolve for this directory instead of the cwd."),
) -> None:
    """Show the effective configuration and the fragments it came from."""
    state = _state(ctx)
    try:
        config = resolve_config(directory or Path.cwd(), state.settings)
        hosts = build_host_registry(config.host, state.settings.endpoint_overrides())
    except PromptboxError as exc:
        _fail(exc)

    sources = [str(path) for path in config.sources] or ["(none)"]
    console.print(Panel("\n".join(sources), title="Config fragments (closest first)", box=box.SIMPLE))

    model = config.model.model
    model_text = f"{model.model} @ {model.host}" if isinstance(model, ModelSpec) else str(model or "(unset)")
    policy = config.context

    table = Table(title="Effective config", box=box.SIMPLE, expand=True)
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_row("templates", ", ".join(str(p) for p in config.template_search_paths))
    table.add_row("default_host", config.default_host or "(ollama)")
    table.add_row("model", model_text)
    for name, ref in sorted(config.model.alias.items()):
        target = f"{ref.model} @ {ref.host}" if isinstance(ref, ModelSpec) and ref.host else str(
            ref.model if isinstance(ref, ModelSpec) else ref
        )
        table.add_row(f"alias.{name}", target)
    for key, value in sorted(config.model.options.items()):
        table.add_row(f"model.{key}", str(value))
    table.add_row("context.limit", str(policy.limit) if policy.limit is not None else "(host default)")
    table.add_row("context.reserve_output", str(policy.reserve_output))
    table.add_row("context.keep", policy.keep.value)
    table.add_row("context.trim_args", ", ".join(policy.trim_args) if policy.trim_args is not None else "(whole prompt)")
    table.add_row("context.array_priority", policy.array_priority.value)
    console.print(table)

    host_table = Table(title="Hosts", box=box.SIMPLE, expand=True)
    host_table.add_column("Name", style="cyan", no_wrap=True)
    host_table.add_column("Protocol")
    host_table.add_column("Endpoint")
    host_table.add_column("Limit context")
    host_table.add_column("API key env")
    for name, host in sorted(hosts.items()):
        host_table.add_row(
            name, host.protocol.value, host.endpoint, "yes" if host.limit_context_length else "no", host.api_key_env or ""
        )
    console.print(host_table)


@app.command("templates")
def show_templates(ctx: typer.Context) -> None:
    """List the templates visible from the current directory."""
    state = _state(ctx)
    try:
        config = resolve_config(Path.cwd(), state.settings)
    except PromptboxError as exc:
        _fail(exc)

    table = Table(title="Templates", box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Description", style="white")
    table.add_column("Path", style="dim")
    for name, path in sorted(list_templates(config).items()):
        description: str | Text
        try:
            description = load_template(path, name).definition.description or "—"
        except TemplateError as exc:
            description = Text(str(exc), style="red")
        table.add_row(name, description, str(path))
    console.print(table)


@app.command("version")
def show_version() -> None:
    """Print the promptbox version."""
    console.print(__version__)


def cli() -> None:
    app()


if __name__ == "__main__":
    cli()
