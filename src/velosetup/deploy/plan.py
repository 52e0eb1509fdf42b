"""Deployment plan: the immutable description of what to deploy and how."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from velosetup.errors import ConfigError


DEFAULT_GUI_PORT = 8889
DEFAULT_FRONTEND_PORT = 8000


class DeploymentMode(str, Enum):
    """How the server is laid out."""

    STANDALONE = "standalone"
    SERVER = "server"
    CLUSTER = "cluster"
    CLOUD = "cloud"
    CONTAINER = "container"


class BinarySource(str, Enum):
    """Where the server binary comes from."""

    DOWNLOAD = "download"
    EXISTING = "existing"
    CUSTOM_PATH = "custom_path"
    BUILD_FROM_SOURCE = "build_from_source"


SUPPORTED_MODES = (DeploymentMode.STANDALONE, DeploymentMode.SERVER)


def default_bind_address(mode: DeploymentMode) -> str:
    """Standalone stays on loopback; a server listens on all interfaces."""
    return "0.0.0.0" if mode == DeploymentMode.SERVER else "127.0.0.1"


@dataclass(frozen=True)
class DeploymentPlan:
    """What to deploy and where.

    A plan is frozen: once handed to the orchestrator it cannot change.
    Use :meth:`with_changes` to derive a modified copy for a new run.
    """

    mode: DeploymentMode = DeploymentMode.STANDALONE
    binary_source: BinarySource = BinarySource.DOWNLOAD
    bind_address: Optional[str] = None
    bind_port: int = DEFAULT_GUI_PORT
    install_path: Path = field(default_factory=lambda: Path.home() / ".velosetup" / "server")
    frontend_port: int = DEFAULT_FRONTEND_PORT
    binary_path: Optional[Path] = None
    datastore_path: Optional[Path] = None
    offline: bool = False
    admin_username: str = "admin"
    open_browser: bool = False

    def __post_init__(self) -> None:
        # Coerce plain strings so plans built from CLI args or JSON behave the same
        object.__setattr__(self, "mode", DeploymentMode(self.mode))
        object.__setattr__(self, "binary_source", BinarySource(self.binary_source))
        object.__setattr__(self, "install_path", Path(self.install_path))
        if self.binary_path is not None:
            object.__setattr__(self, "binary_path", Path(self.binary_path))
        if self.datastore_path is not None:
            object.__setattr__(self, "datastore_path", Path(self.datastore_path))

    @property
    def effective_bind_address(self) -> str:
        return self.bind_address or default_bind_address(self.mode)

    @property
    def effective_datastore(self) -> Path:
        return self.datastore_path or (self.install_path / "datastore")

    @property
    def config_path(self) -> Path:
        return self.install_path / "server.config.yaml"

    @property
    def client_config_path(self) -> Path:
        return self.install_path / "client.config.yaml"

    @property
    def log_directory(self) -> Path:
        return self.install_path / "logs"

    def with_changes(self, **changes: Any) -> "DeploymentPlan":
        return replace(self, **changes)

    def validate(self) -> None:
        """Reject plans that cannot run.

        Raises:
            ConfigError: If the mode, source or network binding is unusable.
        """
        if self.mode not in SUPPORTED_MODES:
            raise ConfigError(
                f"Deployment mode '{self.mode.value}' is not implemented",
                hint="Use 'standalone' or 'server'.",
            )

        if self.binary_source == BinarySource.BUILD_FROM_SOURCE:
            raise ConfigError(
                "Building the server from source is not supported",
                hint="Download a release or point at an existing binary.",
            )

        if self.binary_source == BinarySource.DOWNLOAD and self.offline:
            raise ConfigError(
                "Cannot download the server binary without outbound network access",
                hint="Use --source existing with --binary-path.",
            )

        if (
            self.binary_source in (BinarySource.EXISTING, BinarySource.CUSTOM_PATH)
            and self.binary_path is None
        ):
            raise ConfigError(
                f"Binary source '{self.binary_source.value}' requires a binary path"
            )

        try:
            ipaddress.ip_address(self.effective_bind_address)
        except ValueError as e:
            raise ConfigError(f"Invalid bind address: {self.effective_bind_address}") from e

        for name, port in (("bind_port", self.bind_port), ("frontend_port", self.frontend_port)):
            if not isinstance(port, int) or not 1 <= port <= 65535:
                raise ConfigError(f"Invalid {name}: {port}")

        if self.bind_port == self.frontend_port:
            raise ConfigError(
                f"GUI port and frontend port must differ (both {self.bind_port})"
            )

        if not self.admin_username:
            raise ConfigError("Admin username must not be empty")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "binarySource": self.binary_source.value,
            "bindAddress": self.effective_bind_address,
            "bindPort": self.bind_port,
            "frontendPort": self.frontend_port,
            "installPath": str(self.install_path),
            "binaryPath": str(self.binary_path) if self.binary_path else None,
            "datastorePath": str(self.effective_datastore),
            "offline": self.offline,
            "adminUsername": self.admin_username,
        }
