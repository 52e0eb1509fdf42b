"""Server configuration generation.

Produces the Velociraptor server config from a :class:`DeploymentPlan`.
The plan-derived document is deterministic; only ``metadata.generated_at``
varies between runs.
"""

from __future__ import annotations

import copy
import ipaddress
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from velosetup.deploy.plan import DeploymentPlan
from velosetup.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_VERSION = 1
DATASTORE_IMPLEMENTATION = "FileBaseDataStore"

REQUIRED_KEYS = (
    "version",
    "server_type",
    "bind_address",
    "bind_port",
    "gui",
    "datastore",
    "tools",
)
ALLOWED_KEYS = set(REQUIRED_KEYS) | {"logging", "metadata"}


@dataclass
class ToolConfigEntry:
    """A tool exposed to the server through the config ``tools`` map."""

    enabled: bool
    path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "path": self.path}


@dataclass
class ServerConfig:
    """Typed view of the server config document."""

    server_type: str
    bind_address: str
    bind_port: int
    gui_bind_address: str
    gui_bind_port: int
    datastore_location: str
    log_directory: str
    datastore_implementation: str = DATASTORE_IMPLEMENTATION
    tools: Dict[str, ToolConfigEntry] = field(default_factory=dict)
    version: int = CONFIG_VERSION
    generated_at: float = field(default_factory=time.time)

    def semantic_dict(self) -> Dict[str, Any]:
        """Config content without timestamps, in a stable key order."""
        return {
            "version": self.version,
            "server_type": self.server_type,
            "bind_address": self.bind_address,
            "bind_port": self.bind_port,
            "gui": {
                "bind_address": self.gui_bind_address,
                "bind_port": self.gui_bind_port,
            },
            "datastore": {
                "implementation": self.datastore_implementation,
                "location": self.datastore_location,
            },
            "logging": {"output_directory": self.log_directory},
            "tools": {name: self.tools[name].to_dict() for name in sorted(self.tools)},
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.semantic_dict()
        data["metadata"] = {"generated_at": int(self.generated_at)}
        return data

    @property
    def ports(self) -> list[tuple[str, int]]:
        return [
            (self.bind_address, self.bind_port),
            (self.gui_bind_address, self.gui_bind_port),
        ]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ServerConfig":
        """Validated parse. Anything outside the known shape is rejected."""
        if not isinstance(data, Mapping):
            raise ConfigError(f"Config must be a mapping, got {type(data).__name__}")

        missing = [key for key in REQUIRED_KEYS if key not in data]
        if missing:
            raise ConfigError(f"Config is missing required keys: {', '.join(missing)}")

        unknown = sorted(set(data) - ALLOWED_KEYS - _PASSTHROUGH_KEYS)
        if unknown:
            raise ConfigError(f"Config has unknown keys: {', '.join(unknown)}")

        try:
            gui = data["gui"]
            datastore = data["datastore"]
            tools = {
                str(name): ToolConfigEntry(
                    enabled=_expect(entry["enabled"], bool, f"tools.{name}.enabled"),
                    path=entry.get("path"),
                )
                for name, entry in (data["tools"] or {}).items()
            }
            return cls(
                version=_expect(data["version"], int, "version"),
                server_type=_expect(data["server_type"], str, "server_type"),
                bind_address=_expect(data["bind_address"], str, "bind_address"),
                bind_port=_expect(data["bind_port"], int, "bind_port"),
                gui_bind_address=_expect(gui["bind_address"], str, "gui.bind_address"),
                gui_bind_port=_expect(gui["bind_port"], int, "gui.bind_port"),
                datastore_implementation=_expect(
                    datastore["implementation"], str, "datastore.implementation"
                ),
                datastore_location=_expect(datastore["location"], str, "datastore.location"),
                log_directory=(data.get("logging") or {}).get("output_directory", ""),
                tools=tools,
                generated_at=float((data.get("metadata") or {}).get("generated_at", 0)),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ConfigError(f"Malformed config document: {e}") from e


# Sections the binary's own `config generate` output adds (certificates, keys,
# client settings). They are carried through untouched.
_PASSTHROUGH_KEYS = {
    "Client",
    "API",
    "GUI",
    "CA",
    "Frontend",
    "Datastore",
    "Logging",
    "Monitoring",
    "api_config",
    "defaults",
    "obfuscation_nonce",
    "server_type_config",
}


def _expect(value: Any, kind: type, name: str) -> Any:
    # bool is an int subclass; never accept it for integer fields
    if kind is int and isinstance(value, bool):
        raise ConfigError(f"Config field {name} must be int, got bool")
    if not isinstance(value, kind):
        raise ConfigError(
            f"Config field {name} must be {kind.__name__}, got {type(value).__name__}"
        )
    return value


def _check_address(address: str, name: str) -> str:
    try:
        ipaddress.ip_address(address)
    except ValueError as e:
        raise ConfigError(f"Cannot substitute {name}: invalid address '{address}'") from e
    return address


def _check_port(port: Any, name: str) -> int:
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise ConfigError(f"Cannot substitute {name}: invalid port '{port}'")
    return port


def generate_config(
    plan: DeploymentPlan,
    tools: Optional[Mapping[str, ToolConfigEntry]] = None,
) -> ServerConfig:
    """Build the server config for a plan.

    Args:
        plan: The deployment plan.
        tools: Optional ``{name: ToolConfigEntry}`` map from the tool registry.

    Returns:
        The generated config. Calling twice with the same inputs yields the
        same :meth:`ServerConfig.semantic_dict`.

    Raises:
        ConfigError: If a template field cannot be substituted.
    """
    address = _check_address(plan.effective_bind_address, "bind_address")
    datastore = str(plan.effective_datastore)
    if not datastore:
        raise ConfigError("Cannot substitute datastore.location: empty path")

    config = ServerConfig(
        server_type=plan.mode.value,
        bind_address=address,
        bind_port=_check_port(plan.frontend_port, "bind_port"),
        gui_bind_address=address,
        gui_bind_port=_check_port(plan.bind_port, "gui.bind_port"),
        datastore_location=datastore,
        log_directory=str(plan.log_directory),
        tools=dict(tools or {}),
    )
    logger.debug(f"Generated config for {plan.mode.value} on {address}:{plan.bind_port}")
    return config


def merge_generated(generated_yaml: str, config: ServerConfig) -> Dict[str, Any]:
    """Overlay the plan-derived config on the binary's generated config.

    The binary produces certificates and keys; the plan decides addresses,
    ports, datastore and tools.
    """
    try:
        base = yaml.safe_load(generated_yaml) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Binary produced unparseable config: {e}") from e
    if not isinstance(base, dict):
        raise ConfigError("Binary produced a config that is not a mapping")

    merged = copy.deepcopy(base)
    merged.update(config.to_dict())

    # Keep the binary's own sections in step with the plan
    if isinstance(merged.get("GUI"), dict):
        merged["GUI"]["bind_address"] = config.gui_bind_address
        merged["GUI"]["bind_port"] = config.gui_bind_port
    if isinstance(merged.get("Frontend"), dict):
        merged["Frontend"]["bind_address"] = config.bind_address
        merged["Frontend"]["bind_port"] = config.bind_port
    if isinstance(merged.get("Datastore"), dict):
        merged["Datastore"]["location"] = config.datastore_location
        merged["Datastore"]["filestore_directory"] = config.datastore_location
    return merged


def write_config(config: ServerConfig | Mapping[str, Any], path: Path) -> Path:
    """Write a config document as YAML, preserving key order."""
    data = config.to_dict() if isinstance(config, ServerConfig) else dict(config)
    path.parent.mkdir(parents=True, exist_ok=True)
    content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    path.write_text(content, encoding="utf-8")
    logger.info(f"Wrote config: {path}")
    return path


def load_config(path: Path) -> ServerConfig:
    """Read and validate a config file.

    Raises:
        ConfigError: If the file is missing, unparseable or the wrong shape.
    """
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"Config {path} is not valid YAML: {e}") from e
    return ServerConfig.from_dict(data)
