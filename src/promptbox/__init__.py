"""promptbox - fill prompt templates and send them to LLM hosts.

Templates live in TOML files discovered through a cascade of directory
configuration; prompts are trimmed to fit the target model's context window.

Exports:
    __version__: Package version string.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
