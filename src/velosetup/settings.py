"""Runtime settings loaded from the environment.

Values come from ``VELOSETUP_*`` environment variables, optionally seeded from
a ``.env`` file in the working directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


DEFAULT_HOME = Path.home() / ".velosetup"


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    return Path(value).expanduser() if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass
class Settings:
    """Tunables shared by the orchestrator, registry and CLI."""

    install_path: Path = DEFAULT_HOME / "server"
    data_dir: Path = DEFAULT_HOME
    log_dir: Path = DEFAULT_HOME / "logs"
    log_level: str = "INFO"
    github_repo: str = "Velocidex/velociraptor"
    min_binary_size: int = 1024 * 1024
    download_attempts: int = 3
    retry_delay: float = 5.0
    probe_interval: float = 1.0
    readiness_timeout: float = 30.0
    probe_scheme: str = "https"
    secret_min_length: int = 16
    secret_min_classes: int = 3

    @property
    def tools_dir(self) -> Path:
        return self.data_dir / "tools"

    @property
    def artifacts_dir(self) -> Path:
        return self.data_dir / "artifacts"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``VELOSETUP_*`` variables (and ``.env``)."""
        load_dotenv()
        data_dir = _env_path("VELOSETUP_HOME", DEFAULT_HOME)
        return cls(
            install_path=_env_path("VELOSETUP_INSTALL_PATH", data_dir / "server"),
            data_dir=data_dir,
            log_dir=_env_path("VELOSETUP_LOG_DIR", data_dir / "logs"),
            log_level=os.getenv("VELOSETUP_LOG_LEVEL", "INFO").upper(),
            github_repo=os.getenv("VELOSETUP_GITHUB_REPO", "Velocidex/velociraptor"),
            min_binary_size=_env_int("VELOSETUP_MIN_BINARY_SIZE", 1024 * 1024),
            download_attempts=_env_int("VELOSETUP_DOWNLOAD_ATTEMPTS", 3),
            retry_delay=_env_float("VELOSETUP_RETRY_DELAY", 5.0),
            probe_interval=_env_float("VELOSETUP_PROBE_INTERVAL", 1.0),
            readiness_timeout=_env_float("VELOSETUP_READINESS_TIMEOUT", 30.0),
            probe_scheme=os.getenv("VELOSETUP_PROBE_SCHEME", "https"),
            secret_min_length=_env_int("VELOSETUP_SECRET_MIN_LENGTH", 16),
            secret_min_classes=_env_int("VELOSETUP_SECRET_MIN_CLASSES", 3),
        )
