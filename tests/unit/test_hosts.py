"""Tests for host registry and model reference resolution."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from promptbox.core.config import (
    ConfigCascadeResolver,
    EffectiveConfig,
    HostOverride,
    HostProtocol,
    ModelDefaults,
    ModelSpec,
)
from promptbox.core.errors import ConfigError, ResolutionError
from promptbox.core.hosts import (
    BUILTIN_HOSTS,
    LM_STUDIO,
    ModelHostResolver,
    build_host_registry,
    select_host_name,
)

WriteFile = Callable[[Path, str], Path]


def make_config(
    tmp_path: Path,
    *,
    model: dict[str, Any] | None = None,
    default_host: str | None = None,
    host: dict[str, HostOverride] | None = None,
) -> EffectiveConfig:
    return EffectiveConfig(
        start_dir=tmp_path,
        default_host=default_host,
        model=ModelDefaults.model_validate(model or {}),
        host=host or {},
    )


class TestHostSelection:
    @pytest.mark.parametrize("name", ["gpt-4", "gpt-4-turbo", "gpt-3.5-turbo", "gpt-4o-mini"])
    def test_openai_prefixes(self, name: str) -> None:
        assert select_host_name(name, "together") == "openai"

    def test_lm_studio_name(self) -> None:
        assert select_host_name(LM_STUDIO, "together") == LM_STUDIO

    def test_default_host_then_ollama(self) -> None:
        assert select_host_name("llama3", "together") == "together"
        assert select_host_name("llama3", None) == "ollama"

    def test_pinned_host_ignores_patterns_and_default(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, default_host="ollama")

        resolved = ModelHostResolver().resolve(ModelSpec(model="gpt-4", host="together"), config)

        assert resolved.host.name == "together"
        assert resolved.model == "gpt-4"

    def test_gpt4_routes_to_openai_despite_default(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, default_host="ollama")

        resolved = ModelHostResolver().resolve("gpt-4-turbo", config)

        assert resolved.host.name == "openai"
        assert resolved.host.protocol is HostProtocol.OPENAI

    def test_lm_studio_bypasses_alias_table(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, model={"alias": {"lm-studio": "llama3"}}, default_host="together")

        resolved = ModelHostResolver().resolve("lm-studio", config)

        assert resolved.host.name == LM_STUDIO
        assert resolved.model == "lm-studio"
        assert resolved.alias_chain == ()


class TestAliases:
    def test_chain_to_pinned_object(self, tmp_path: Path) -> None:
        config = make_config(
            tmp_path,
            model={"alias": {"a": "b", "b": {"model": "m", "host": "together"}}},
        )

        resolved = ModelHostResolver().resolve("a", config)

        assert resolved.host.name == "together"
        assert resolved.model == "m"
        assert resolved.alias_chain == ("a", "b")

    def test_object_without_host_keeps_dereferencing(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, model={"alias": {"a": {"model": "b"}, "b": "gpt-4"}})

        resolved = ModelHostResolver().resolve("a", config)

        assert resolved.host.name == "openai"
        assert resolved.model == "gpt-4"

    def test_pinned_reference_still_dereferences_name(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, model={"alias": {"fast": "gpt-4"}})

        resolved = ModelHostResolver().resolve(ModelSpec(model="fast", host="ollama"), config)

        assert resolved.host.name == "ollama"
        assert resolved.model == "gpt-4"

    def test_cycle_is_reported(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, model={"alias": {"a": "b", "b": "a"}})

        with pytest.raises(ResolutionError, match="a -> b -> a"):
            ModelHostResolver().resolve("a", config)

    def test_self_alias_is_a_cycle(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, model={"alias": {"a": "a"}})

        with pytest.raises(ResolutionError, match="cycle"):
            ModelHostResolver().resolve("a", config)

    def test_default_model_from_config(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, model={"model": "fast", "alias": {"fast": "llama3"}, "temperature": 0.3})

        resolved = ModelHostResolver().resolve(None, config)

        assert resolved.model == "llama3"
        assert resolved.host.name == "ollama"
        assert resolved.options == {"temperature": 0.3}


class TestResolutionErrors:
    def test_no_model(self, tmp_path: Path) -> None:
        with pytest.raises(ResolutionError, match="No model specified"):
            ModelHostResolver().resolve(None, make_config(tmp_path))

    def test_unknown_host(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, default_host="nowhere")

        with pytest.raises(ResolutionError, match="Unknown host 'nowhere'") as exc_info:
            ModelHostResolver().resolve("llama3", config)
        assert "ollama" in str(exc_info.value)


class TestRegistry:
    def test_builtins_present(self) -> None:
        registry = build_host_registry({})

        assert set(BUILTIN_HOSTS) <= set(registry)
        assert registry["ollama"].protocol is HostProtocol.OLLAMA
        assert registry["openai"].limit_context_length is True

    def test_endpoint_override_keeps_protocol(self) -> None:
        registry = build_host_registry({"ollama": HostOverride(endpoint="http://gpu-box:11434")})

        assert registry["ollama"].endpoint == "http://gpu-box:11434"
        assert registry["ollama"].protocol is HostProtocol.OLLAMA
        assert registry["ollama"].limit_context_length is True

    def test_custom_host(self) -> None:
        override = HostOverride(endpoint="http://box:8080/v1", protocol=HostProtocol.OPENAI, api_key_env="BOX_KEY")

        registry = build_host_registry({"box": override})

        assert registry["box"].name == "box"
        assert registry["box"].limit_context_length is False
        assert registry["box"].api_key_env == "BOX_KEY"

    def test_incomplete_custom_host(self) -> None:
        with pytest.raises(ConfigError, match="Host 'box' is incomplete"):
            build_host_registry({"box": HostOverride(endpoint="http://box")})

    def test_environment_endpoint_loses_to_config(self) -> None:
        env = {"ollama": "http://env:1", "lm-studio": "http://env:2/v1"}

        registry = build_host_registry({"ollama": HostOverride(endpoint="http://cfg:1")}, env)

        assert registry["ollama"].endpoint == "http://cfg:1"
        assert registry["lm-studio"].endpoint == "http://env:2/v1"

    def test_resolver_applies_environment_endpoints(self, tmp_path: Path) -> None:
        resolver = ModelHostResolver({"ollama": "http://env:11434"})

        resolved = resolver.resolve("llama3", make_config(tmp_path))

        assert resolved.host.endpoint == "http://env:11434"


class TestEndToEnd:
    def test_nested_project(self, tmp_path: Path, write_file: WriteFile) -> None:
        write_file(
            tmp_path / "proj" / "promptbox.toml",
            """
            top_level = true
            default_host = "together"

            [model]
            model = "fast"
            temperature = 0.5

            [model.alias]
            fast = "mixtral"
            smart = "gpt-4"

            [host.together]
            endpoint = "http://together-proxy/v1"
            """,
        )
        write_file(
            tmp_path / "proj" / "sub" / "promptbox.toml",
            """
            [model]
            temperature = 0.1

            [model.alias]
            fast = { model = "llama3", host = "ollama" }
            """,
        )

        config = ConfigCascadeResolver().resolve(tmp_path / "proj" / "sub")
        resolver = ModelHostResolver()

        fast = resolver.resolve(None, config)
        assert (fast.host.name, fast.model) == ("ollama", "llama3")
        assert fast.options == {"temperature": 0.1}

        smart = resolver.resolve("smart", config)
        assert (smart.host.name, smart.model) == ("openai", "gpt-4")

        plain = resolver.resolve("qwen", config)
        assert plain.host.name == "together"
        assert plain.host.endpoint == "http://together-proxy/v1"
        assert plain.host.protocol is HostProtocol.TOGETHER
