"""Prompt preparation for one invocation.

Runs the stages in order: configuration cascade, template lookup, argument
parsing, model/host resolution, context budget trimming and the final render.
Nothing here talks to a host except the optional context size lookup;
submission happens in :func:`submit_prompt`.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from promptbox.core.arguments import ImageData, parse_template_arguments
from promptbox.core.config import (
    ContextPolicy,
    EffectiveConfig,
    KeepSide,
    ModelDefaults,
    ModelRef,
    ModelSpec,
    merge_context_policies,
    merge_model_defaults,
    resolve_config,
)
from promptbox.core.console import get_logger
from promptbox.core.context import ContextBudgetTrimmer, TrimResult
from promptbox.core.hosts import ModelHostResolver, ResolvedModel
from promptbox.core.settings import RuntimeSettings
from promptbox.core.templates import ParsedTemplate, TemplateRenderer, find_template
from promptbox.core.tokens import TokenCounter
from promptbox.providers import CompletionOptions, PromptRequest, ProviderError, get_client

logger = get_logger(__name__)

EXTRA_VARIABLE = "extra"

ContextLimitLookup = Callable[[ResolvedModel], "int | None"]


@dataclass(frozen=True)
class RunOverrides:
    """Per-invocation overrides coming from the command line."""

    model: str | None = None
    host: str | None = None
    temperature: float | None = None
    prepend: str | None = None
    append: str | None = None
    output_format: str | None = None
    overflow_keep: KeepSide | None = None
    context_limit: int | None = None
    reserve_output: int | None = None
    stdin_text: str | None = None

    def context_policy(self) -> ContextPolicy:
        values = {
            "keep": self.overflow_keep,
            "limit": self.context_limit,
            "reserve_output": self.reserve_output,
        }
        return ContextPolicy.model_validate({k: v for k, v in values.items() if v is not None})

    def request_options(self) -> dict[str, Any]:
        values = {"temperature": self.temperature, "format": self.output_format}
        return {k: v for k, v in values.items() if v is not None}


@dataclass(frozen=True)
class PreparedPrompt:
    """A fully rendered prompt and the host it is headed to."""

    template: ParsedTemplate
    resolved: ResolvedModel
    options: CompletionOptions
    policy: ContextPolicy
    prompt: str
    system: str
    trim: TrimResult
    images: tuple[ImageData, ...] = field(default_factory=tuple)

    def to_request(self) -> PromptRequest:
        return PromptRequest(
            model=self.resolved.model,
            prompt=self.prompt,
            system=self.system or None,
            options=self.options,
            images=self.images,
        )


def host_context_limit(resolved: ResolvedModel) -> int | None:
    """Ask the host client for the model's context size, if the host allows it."""
    if not resolved.host.limit_context_length:
        return None
    try:
        return get_client(resolved.host).context_limit(resolved.model)
    except ProviderError as exc:
        logger.warning("Could not determine context size for %s on %s: %s", resolved.model, resolved.host.name, exc)
        return None


def select_model_ref(defaults: ModelDefaults, overrides: RunOverrides) -> ModelRef | None:
    """Pick the model reference: CLI model, else template/config default; ``--host`` pins it."""
    ref: ModelRef | None = overrides.model or defaults.model
    if overrides.host is None:
        return ref
    if ref is None:
        return None
    name = ref.model if isinstance(ref, ModelSpec) else ref
    return ModelSpec(model=name, host=overrides.host)


def _join_extra(extra: Sequence[str], stdin_text: str | None) -> str:
    parts = [part for part in extra if part]
    if stdin_text:
        parts.append(stdin_text)
    return "\n\n".join(parts)


def prepare_prompt(
    base_dir: Path,
    template_name: str,
    argv: Sequence[str] = (),
    overrides: RunOverrides | None = None,
    settings: RuntimeSettings | None = None,
    *,
    config: EffectiveConfig | None = None,
    tokenizer: TokenCounter | None = None,
    limit_lookup: ContextLimitLookup = host_context_limit,
) -> PreparedPrompt:
    """Resolve, render and trim a template invocation without submitting it."""
    overrides = overrides or RunOverrides()
    settings = settings or RuntimeSettings()
    config = config or resolve_config(base_dir, settings)

    template = find_template(config, template_name)
    arguments = parse_template_arguments(template.definition.options, argv, base_dir)

    layers = [template.definition.model, config.model]
    model_defaults = merge_model_defaults(layer for layer in layers if layer is not None)
    effective = dataclasses.replace(config, model=model_defaults)

    resolver = ModelHostResolver(settings.endpoint_overrides())
    resolved = resolver.resolve(select_model_ref(model_defaults, overrides), effective)
    options = CompletionOptions.from_mapping({**resolved.options, **overrides.request_options()})
    policy = merge_context_policies([overrides.context_policy(), model_defaults.context])

    renderer = TemplateRenderer([template.directory, *config.template_search_paths])
    source = template.source
    if overrides.prepend:
        source = f"{overrides.prepend}\n\n{source}"
    extra = _join_extra(arguments.extra, overrides.stdin_text)
    extra_context: dict[str, Any] = {EXTRA_VARIABLE: extra}
    # Extra text is passed as a variable so it is never parsed as template syntax.
    if extra and not renderer.references_variable(source, EXTRA_VARIABLE):
        source = f"{source}\n\n{{{{ {EXTRA_VARIABLE} }}}}"
    if overrides.append:
        source = f"{source}\n\n{overrides.append}"

    compiled = renderer.compile(source, template.name)
    system = ""
    if template.system:
        system = renderer.render_source(template.system, {**arguments.values, **extra_context}, f"{template.name} (system)")

    def render(values: Mapping[str, Any]) -> str:
        return renderer.render(compiled, {**values, **extra_context}, template.name)

    trimmer = ContextBudgetTrimmer(tokenizer)
    known_limit = None if policy.limit is not None else limit_lookup(resolved)
    result = trimmer.trim(
        arguments.values,
        policy,
        render,
        known_limit=known_limit,
        fixed_tokens=trimmer.tokenizer.count(system),
    )
    if result.over_budget:
        logger.warning(
            "Prompt is still %d tokens after trimming; budget is %d. The host may truncate or reject it.",
            result.tokens,
            result.target,
        )
    elif result.trimmed:
        logger.info("Trimmed prompt to %d tokens (budget %d)", result.tokens, result.target)

    return PreparedPrompt(
        template=template,
        resolved=resolved,
        options=options,
        policy=policy,
        prompt=result.prompt,
        system=system,
        trim=result,
        images=tuple(arguments.images),
    )


def submit_prompt(prepared: PreparedPrompt) -> Iterator[str]:
    """Send a prepared prompt to its host and yield the response text."""
    client = get_client(prepared.resolved.host)
    return client.stream(prepared.to_request())


__all__ = [
    "PreparedPrompt",
    "RunOverrides",
    "host_context_limit",
    "prepare_prompt",
    "select_model_ref",
    "submit_prompt",
]
