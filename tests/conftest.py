"""Shared test fixtures: isolated settings and fake agent binaries.

Agent binaries are replaced by small Python scripts that speak the native
protocol on stdio.  Each script is written to ``tmp_path`` with a shebang
pointing at the interpreter running the tests, so no real agent has to be
installed.
"""

from __future__ import annotations

import sys
import textwrap
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from agentrelay.daemon.settings import RelaySettings, _get_settings_cached

FakeAgentFactory = Callable[[str, str], Path]


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Iterator[None]:
    _get_settings_cached.cache_clear()
    yield
    _get_settings_cached.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> RelaySettings:
    """Settings with short timeouts and no agent binary configured."""
    return RelaySettings(
        _env_file=None,
        working_dir=str(tmp_path),
        install_dir=str(tmp_path / "no-such-dir"),
        terminate_grace_seconds=1.0,
        server_startup_timeout=5.0,
        request_timeout=5.0,
    )


@pytest.fixture
def fake_agent(tmp_path: Path) -> FakeAgentFactory:
    """Return a factory writing an executable Python script as an agent binary.

    ``body`` is dedented, so it can be written as an indented triple-quoted
    string.  The script's directory is ``tmp_path / "bin"``.
    """

    def _write(name: str, body: str) -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        path = bin_dir / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        path.chmod(0o755)
        return path

    return _write
