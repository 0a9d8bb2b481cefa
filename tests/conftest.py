"""Shared pytest fixtures and configuration."""

import tempfile
from pathlib import Path
from typing import Callable, Generator

import pytest

from xdgwrap.core import WrapContext


@pytest.fixture
def temp_home() -> Generator[Path, None, None]:
    """Create a temporary home directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def storage_root() -> Generator[Path, None, None]:
    """A storage root outside the temporary home, not yet created."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "xdgwrap"


@pytest.fixture
def wrap_ctx(temp_home: Path, storage_root: Path) -> WrapContext:
    """Context for a program called 'bar'."""
    return WrapContext(home=temp_home, storage_root=storage_root, identity="bar")


@pytest.fixture
def isolated_env(
    temp_home: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Path:
    """Point HOME at the temporary home and keep XDG lookups out of it."""
    monkeypatch.setenv("HOME", str(temp_home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.delenv("XDG_DATA_HOME", raising=False)
    monkeypatch.delenv("XDGWRAP_DIR", raising=False)
    return temp_home


@pytest.fixture
def make_program(tmp_path: Path) -> Callable[[str, str], Path]:
    """Factory writing an executable shell script outside the home directory."""

    def _make(name: str, body: str) -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        script = bin_dir / name
        script.write_text(f"#!/bin/sh\n{body}\n")
        script.chmod(0o755)
        return script

    return _make
