"""Context budget enforcement.

The trimmer fits a rendered prompt into ``limit - reserve_output`` tokens by
shortening argument values (or, with no ``trim_args``, the rendered text
itself). Rendering is reached only through a caller-supplied render function, so the
trimmer knows nothing about template syntax. Because removing array elements
also removes the template text around them, the prompt is re-rendered and
re-measured after every pass; the number of passes is bounded and an
over-budget result is returned rather than raised.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any

from promptbox.core.arguments import FileArgument
from promptbox.core.config import ArrayPriority, ContextPolicy, KeepSide
from promptbox.core.console import get_logger
from promptbox.core.tokens import TokenCounter, Tokenizer

logger = get_logger(__name__)

MAX_TRIM_PASSES = 6

RenderFn = Callable[[Mapping[str, Any]], str]


@dataclass(frozen=True)
class TrimResult:
    """Outcome of fitting a prompt to its budget."""

    arguments: Mapping[str, Any]
    prompt: str
    tokens: int
    target: int | None
    passes: int = 0

    @property
    def trimmed(self) -> bool:
        return self.passes > 0

    @property
    def over_budget(self) -> bool:
        return self.target is not None and self.tokens > self.target


def _blob_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, FileArgument):
        return value.contents
    return None


def _with_text(value: Any, text: str) -> Any:
    if isinstance(value, FileArgument):
        return replace(value, contents=text)
    return text


def cut_text(text: str, chars: int, keep: KeepSide) -> str:
    """Remove ``chars`` characters from the side opposite ``keep``."""
    if chars <= 0:
        return text
    if chars >= len(text):
        return ""
    if keep is KeepSide.END:
        return text[chars:]
    return text[: len(text) - chars]


def _trim_scalar(value: Any, chars: int, keep: KeepSide) -> tuple[Any, int]:
    text = _blob_text(value) or ""
    cut = min(chars, len(text))
    if cut <= 0:
        return value, 0
    return _with_text(value, cut_text(text, cut, keep)), cut


def _drop_from_edge(items: list[Any], chars: int, keep: KeepSide, from_end: bool) -> tuple[list[Any], int]:
    remaining = list(items)
    removed = 0
    while remaining and removed < chars:
        index = -1 if from_end else 0
        size = len(_blob_text(remaining[index]) or "")
        if size <= chars - removed:
            remaining.pop(index)
            removed += size
        else:
            remaining[index], cut = _trim_scalar(remaining[index], chars - removed, keep)
            removed += cut
    return remaining, removed


def _trim_evenly(items: list[Any], chars: int, keep: KeepSide, unit: int) -> tuple[list[Any], int]:
    texts = [_blob_text(item) or "" for item in items]
    removed = 0
    while removed < chars:
        largest = max(range(len(texts)), key=lambda i: len(texts[i]))
        if not texts[largest]:
            break
        cut = min(unit, len(texts[largest]), chars - removed)
        texts[largest] = cut_text(texts[largest], cut, keep)
        removed += cut
    return [_with_text(item, text) for item, text in zip(items, texts)], removed


def trim_array(
    items: Sequence[Any],
    chars: int,
    keep: KeepSide,
    priority: ArrayPriority,
    unit: int = 1,
) -> tuple[list[Any], int]:
    """Remove about ``chars`` characters from an array argument.

    Returns the new element list and the number of characters removed.
    """
    match priority:
        case ArrayPriority.FIRST:
            return _drop_from_edge(list(items), chars, keep, from_end=True)
        case ArrayPriority.LAST:
            return _drop_from_edge(list(items), chars, keep, from_end=False)
        case ArrayPriority.EQUAL:
            return _trim_evenly(list(items), chars, keep, max(1, unit))
    raise ValueError(f"Unknown array priority: {priority}")


class ContextBudgetTrimmer:
    """Reduces argument values until the rendered prompt fits the token budget."""

    def __init__(self, tokenizer: TokenCounter | None = None, max_passes: int = MAX_TRIM_PASSES) -> None:
        self.tokenizer = tokenizer or Tokenizer()
        self.max_passes = max_passes

    @staticmethod
    def budget(policy: ContextPolicy, known_limit: int | None = None, fixed_tokens: int = 0) -> int | None:
        """Token target for the rendered text, or ``None`` when no limit is known."""
        limit = policy.limit if policy.limit is not None else known_limit
        if limit is None:
            return None
        return limit - policy.reserve_output - fixed_tokens

    def trim(
        self,
        arguments: Mapping[str, Any],
        policy: ContextPolicy,
        render: RenderFn,
        *,
        known_limit: int | None = None,
        fixed_tokens: int = 0,
    ) -> TrimResult:
        """Fit ``arguments`` to the budget described by ``policy``.

        ``fixed_tokens`` counts text that is sent with the prompt but not
        produced by ``render`` (the rendered system prompt). When the prompt
        already fits, the original mapping is returned untouched.
        """
        target = self.budget(policy, known_limit, fixed_tokens)
        text = render(arguments)
        tokens = self.tokenizer.count(text)

        if target is None:
            logger.debug("No context limit known; skipping trimming")
            return TrimResult(arguments, text, tokens, None)
        if tokens <= target:
            return TrimResult(arguments, text, tokens, target)

        logger.debug("Prompt is %d tokens, budget %d; trimming", tokens, target)
        if policy.trim_args is None:
            return self._trim_rendered(arguments, text, tokens, target, policy)
        return self._trim_arguments(arguments, text, tokens, target, policy, render)

    def _chars_needed(self, text: str, tokens: int, target: int) -> tuple[int, float]:
        ratio = len(text) / tokens if tokens else 1.0
        return math.ceil((tokens - target) * ratio), ratio

    def _trim_rendered(
        self,
        arguments: Mapping[str, Any],
        text: str,
        tokens: int,
        target: int,
        policy: ContextPolicy,
    ) -> TrimResult:
        passes = 0
        while tokens > target and text and passes < self.max_passes:
            passes += 1
            needed, ratio = self._chars_needed(text, tokens, target)
            text = cut_text(text, needed, policy.keep)
            tokens = self.tokenizer.count(text)
            logger.debug("Pass %d: cut %d chars (%.2f chars/token), now %d tokens", passes, needed, ratio, tokens)
        return TrimResult(arguments, text, tokens, target, passes)

    def _trim_value(self, value: Any, chars: int, policy: ContextPolicy, ratio: float) -> tuple[Any, int]:
        if isinstance(value, (list, tuple)):
            if not value or any(_blob_text(item) is None for item in value):
                return value, 0
            items, removed = trim_array(value, chars, policy.keep, policy.array_priority, unit=round(ratio))
            if not removed and len(items) == len(value):
                return value, 0
            return items, removed
        if _blob_text(value) is None:
            return value, 0
        return _trim_scalar(value, chars, policy.keep)

    def _trim_arguments(
        self,
        arguments: Mapping[str, Any],
        text: str,
        tokens: int,
        target: int,
        policy: ContextPolicy,
        render: RenderFn,
    ) -> TrimResult:
        current = dict(arguments)
        trim_args = policy.trim_args or ()
        passes = 0

        while tokens > target and passes < self.max_passes:
            passes += 1
            needed, ratio = self._chars_needed(text, tokens, target)
            changed = False
            # Each named argument absorbs as much of the deficit as it can
            # before the next one is touched.
            for name in trim_args:
                if needed <= 0:
                    break
                if name not in current:
                    continue
                value, removed = self._trim_value(current[name], needed, policy, ratio)
                if value is not current[name]:
                    current[name] = value
                    changed = True
                needed -= removed

            if not changed:
                logger.debug("Nothing left to trim in %s", ", ".join(trim_args))
                break

            text = render(current)
            tokens = self.tokenizer.count(text)
            logger.debug("Pass %d: %d tokens after trimming (%.2f chars/token)", passes, tokens, ratio)

        return TrimResult(current, text, tokens, target, passes)


__all__ = [
    "ContextBudgetTrimmer",
    "MAX_TRIM_PASSES",
    "RenderFn",
    "TrimResult",
    "cut_text",
    "trim_array",
]
