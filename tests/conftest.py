"""Pytest configuration for velosetup tests."""

from __future__ import annotations

import socket
import stat
import sys
from pathlib import Path
from typing import Callable

import pytest

from velosetup.deploy.plan import BinarySource, DeploymentMode, DeploymentPlan
from velosetup.settings import Settings


FAKE_SOURCE = Path(__file__).parent / "fake_velociraptor.py"


def write_fake_binary(path: Path) -> Path:
    """Install the fake server as an executable script at ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!{sys.executable}\n" + FAKE_SOURCE.read_text(encoding="utf-8"), encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def fake_binary(tmp_path: Path) -> Path:
    """An executable fake Velociraptor binary."""
    return write_fake_binary(tmp_path / "bin" / "velociraptor")


@pytest.fixture
def free_port() -> Callable[[], int]:
    """Factory returning an unused localhost TCP port."""
    return get_free_port


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings tuned for fast local tests against the fake binary."""
    return Settings(
        install_path=tmp_path / "server",
        data_dir=tmp_path / "data",
        log_dir=tmp_path / "logs",
        min_binary_size=1,
        download_attempts=3,
        retry_delay=0,
        probe_interval=0.1,
        readiness_timeout=15.0,
        probe_scheme="http",
    )


@pytest.fixture
def make_plan(tmp_path: Path, fake_binary: Path, free_port) -> Callable[..., DeploymentPlan]:
    """Factory for plans that use the fake binary on free ports."""

    def _make(**overrides) -> DeploymentPlan:
        values = dict(
            mode=DeploymentMode.STANDALONE,
            binary_source=BinarySource.EXISTING,
            binary_path=fake_binary,
            bind_port=free_port(),
            frontend_port=free_port(),
            install_path=tmp_path / "server",
        )
        values.update(overrides)
        return DeploymentPlan(**values)

    return _make
