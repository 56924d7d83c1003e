"""Approximate, model-agnostic token counting.

One fixed tiktoken encoding is used for every target model; exact per-model
counts are not a goal. When the encoding cannot be loaded (tiktoken fetches
its ranks on first use) counting falls back to a fixed character heuristic.
"""

from __future__ import annotations

import math
from typing import Protocol, Sequence

import tiktoken

from promptbox.core.console import get_logger

logger = get_logger(__name__)

ENCODING_NAME = "cl100k_base"
CHARS_PER_TOKEN = 4


class _EncoderProtocol(Protocol):
    def encode(self, text: str, *, disallowed_special: Sequence[str] | set[str] | tuple[str, ...] = ()) -> list[int]:
        ...


class TokenCounter(Protocol):
    def count(self, text: str) -> int:
        ...


class Tokenizer:
    """Token estimator backed by a fixed tiktoken encoding with heuristic fallback."""

    def __init__(self) -> None:
        self._encoder: _EncoderProtocol | None = None
        self._loaded = False

    def count(self, text: str) -> int:
        if not text:
            return 0
        encoder = self._get_encoder()
        if encoder is None:
            return self._heuristic_tokens(text)
        try:
            return len(encoder.encode(text, disallowed_special=()))
        except Exception as exc:
            logger.warning("Token counting failed (%s); using heuristic estimate.", exc)
            return self._heuristic_tokens(text)

    def _heuristic_tokens(self, text: str) -> int:
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    def _load_encoding(self) -> _EncoderProtocol | None:
        try:
            return tiktoken.get_encoding(ENCODING_NAME)
        except Exception as exc:
            logger.warning(
                "Failed to load %s encoding (%s); falling back to heuristic token estimates.",
                ENCODING_NAME,
                exc,
            )
            return None

    def _get_encoder(self) -> _EncoderProtocol | None:
        if not self._loaded:
            self._encoder = self._load_encoding()
            self._loaded = True
        return self._encoder


__all__ = ["CHARS_PER_TOKEN", "ENCODING_NAME", "TokenCounter", "Tokenizer"]
