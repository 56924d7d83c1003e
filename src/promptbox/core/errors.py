"""Core error types for promptbox.

Every failure that should stop an invocation derives from PromptboxError so
the CLI can report it in one place. Messages carry enough context (fragment
path, alias chain, host name) to fix the configuration without re-running.
"""

from __future__ import annotations


class PromptboxError(RuntimeError):
    """Base class for all promptbox failures."""


class ConfigError(PromptboxError):
    """Raised when a configuration fragment is malformed or contradictory."""


class ResolutionError(PromptboxError):
    """Raised when a model reference cannot be resolved to a host and model.

    Used for:
    - Alias cycles
    - Unknown host names
    - No model specified anywhere
    """


class TemplateError(PromptboxError):
    """Raised when a template cannot be found or its file is invalid."""


class RenderError(PromptboxError):
    """Raised when a template fails to render."""


class ArgumentError(PromptboxError):
    """Raised when a template argument cannot be loaded."""


__all__ = [
    "ArgumentError",
    "ConfigError",
    "PromptboxError",
    "RenderError",
    "ResolutionError",
    "TemplateError",
]
