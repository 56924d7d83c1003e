"""Environment-driven runtime settings.

These are per-process knobs read from the environment (``PROMPTBOX_*``). They
are separate from the directory cascade: settings choose where the global
fragment lives and can override built-in host endpoints, while the cascade
carries everything users keep in ``promptbox.toml`` files.
"""

from __future__ import annotations

from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_FILENAME = "promptbox.toml"
DOTENV_FILENAME = ".env"


def default_global_config_path() -> Path:
    return Path.home() / ".config" / "promptbox" / CONFIG_FILENAME


def load_env_file() -> Path | None:
    """Export variables from the nearest ``.env`` at or above the working directory.

    Variables already set in the environment are left alone. API keys named by
    a host's ``api_key_env`` and the endpoint overrides can live there.
    """
    found = find_dotenv(DOTENV_FILENAME, usecwd=True)
    if not found:
        return None
    load_dotenv(found, override=False)
    return Path(found)


class RuntimeSettings(BaseSettings):
    """Process-level settings with environment overrides."""

    model_config = SettingsConfigDict(
        env_prefix="PROMPTBOX_",
        extra="ignore",
        populate_by_name=True,
        protected_namespaces=(),
    )

    config: Path = Field(
        default_factory=default_global_config_path,
        description="Location of the global configuration fragment.",
    )
    ollama_host: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PROMPTBOX_OLLAMA_HOST", "OLLAMA_HOST"),
        description="Endpoint for the built-in ollama host.",
    )
    lm_studio_host: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PROMPTBOX_LM_STUDIO_HOST", "LM_STUDIO_HOST"),
        description="Endpoint for the built-in lm-studio host.",
    )
    log_level: str = Field(default="WARNING", description="Log level for promptbox output.")

    def endpoint_overrides(self) -> dict[str, str]:
        """Built-in host endpoints replaced from the environment."""
        overrides: dict[str, str] = {}
        if self.ollama_host:
            overrides["ollama"] = self.ollama_host
        if self.lm_studio_host:
            overrides["lm-studio"] = self.lm_studio_host
        return overrides

    @property
    def global_config_path(self) -> Path:
        return self.config.expanduser()


__all__ = [
    "CONFIG_FILENAME",
    "DOTENV_FILENAME",
    "RuntimeSettings",
    "default_global_config_path",
    "load_env_file",
]
