from __future__ import annotations

import sys
import textwrap
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from rich.console import Console
from typer.testing import CliRunner

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from promptbox.core.tokens import Tokenizer  # noqa: E402

WriteFile = Callable[[Path, str], Path]


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def isolate_config(tmp_path: Path, monkeypatch: Any) -> Path:
    """Point the global config at a temp path so tests don't read user state."""
    cfg_path = tmp_path / "global" / "promptbox.toml"
    monkeypatch.setenv("PROMPTBOX_CONFIG", str(cfg_path))
    for name in ("OLLAMA_HOST", "LM_STUDIO_HOST", "PROMPTBOX_MODEL", "PROMPTBOX_MODEL_HOST", "PROMPTBOX_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    return cfg_path


@pytest.fixture(autouse=True)
def ignore_dotenv(monkeypatch: Any) -> None:
    """Keep CLI runs from exporting a stray .env into the test process."""
    monkeypatch.setattr("promptbox.main.load_env_file", lambda: None)


@pytest.fixture(autouse=True)
def offline_tokenizer(monkeypatch: Any) -> None:
    """Never download tiktoken ranks in tests; use the fixed heuristic."""
    monkeypatch.setattr(Tokenizer, "_load_encoding", lambda self: None)


@pytest.fixture(autouse=True)
def capture_console(monkeypatch: Any) -> Console:
    """Use an in-memory Rich console during tests."""
    test_console = Console(record=True, width=200)
    import promptbox.core.console as core_console
    import promptbox.main as pb_main

    monkeypatch.setattr(core_console, "console", test_console)
    monkeypatch.setattr(pb_main, "console", test_console)
    return test_console


@pytest.fixture(autouse=True)
def capture_stderr(monkeypatch: Any) -> Console:
    test_console = Console(record=True, width=200, stderr=True)
    import promptbox.core.console as core_console
    import promptbox.main as pb_main

    monkeypatch.setattr(core_console, "stderr_console", test_console)
    monkeypatch.setattr(pb_main, "stderr_console", test_console)
    return test_console


@pytest.fixture
def write_file() -> WriteFile:
    """Write dedented text to a path, creating parent directories."""

    def _write(path: Path, text: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(text).lstrip(), encoding="utf-8")
        return path

    return _write
