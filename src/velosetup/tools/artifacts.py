"""
Integration artifacts - expose installed tools to the server.

Each tool gets one Velociraptor artifact definition, ``Custom.Tools.<Name>``,
that declares the tool so the server can serve it to clients. Files are keyed
by tool name: writing again replaces the previous definition.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "Custom.Tools."


def safe_name(tool_name: str) -> str:
    """Artifact-safe form of a tool name (letters, digits, underscores)."""
    cleaned = re.sub(r"[^A-Za-z0-9_]+", "_", tool_name).strip("_")
    return cleaned or "tool"


def artifact_name(tool_name: str) -> str:
    return f"{ARTIFACT_PREFIX}{safe_name(tool_name)}"


def artifact_path(artifacts_dir: Path, tool_name: str) -> Path:
    return Path(artifacts_dir) / f"{safe_name(tool_name)}.yaml"


def _file_sha256(path: Path) -> Optional[str]:
    if not path.is_file():
        return None
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def build_artifact(tool_name: str, category: str, tool_path: Path, description: str = "") -> dict:
    """Build the artifact definition for an installed tool."""
    tool_path = Path(tool_path)
    tool = {
        "name": tool_name,
        "url": tool_path.resolve().as_uri(),
        "serve_locally": True,
    }
    expected_hash = _file_sha256(tool_path)
    if expected_hash:
        tool["expected_hash"] = expected_hash

    return {
        "name": artifact_name(tool_name),
        "description": description or f"Makes {tool_name} ({category}) available to clients.",
        "type": "CLIENT",
        "tools": [tool],
        "parameters": [{"name": "ToolName", "default": tool_name}],
        "sources": [
            {
                "query": (
                    "SELECT * FROM Artifact.Generic.Utils.FetchBinary("
                    "ToolName=ToolName)"
                ),
            }
        ],
    }


def write_artifact(
    artifacts_dir: Path,
    tool_name: str,
    category: str,
    tool_path: Path,
    description: str = "",
) -> Path:
    """Write (or replace) the artifact for a tool and return its path."""
    path = artifact_path(artifacts_dir, tool_name)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = build_artifact(tool_name, category, tool_path, description)

    # Write-then-rename so readers never see a half-written definition
    temp = path.with_suffix(".yaml.tmp")
    temp.write_text(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8")
    temp.replace(path)

    logger.info(f"Wrote integration artifact {data['name']} -> {path}")
    return path


def remove_artifact(artifacts_dir: Path, tool_name: str) -> bool:
    """Delete a tool's artifact. Returns True if a file was removed."""
    path = artifact_path(artifacts_dir, tool_name)
    if path.exists():
        path.unlink()
        logger.info(f"Removed integration artifact {path}")
        return True
    return False
