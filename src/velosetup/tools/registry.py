"""
Tool Integration Registry - tracks optional tools and their linkage to the server.

This is the shared catalog that:
- Tracks which tools are registered and installed
- Serializes installs so the same tool is never installed twice at once
- Writes integration artifacts for installed, integrated tools
- Exports and merges registry documents
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from velosetup.deploy.config import ToolConfigEntry
from velosetup.errors import (
    AlreadyInProgressError,
    ConfigError,
    DeploymentError,
    NotFoundError,
)
from velosetup.tools import artifacts
from velosetup.tools.catalog import ToolCategory, default_catalog, parse_category
from velosetup.tools.document import (
    DOCUMENT_VERSION,
    CategorySection,
    InstallState,
    RegistryDocument,
    ToolState,
    parse_document,
)
from velosetup.tools.installer import DownloadInstaller, ToolInstaller

logger = logging.getLogger(__name__)

# Allowed install-state transitions; installs always pass through INSTALLING
TRANSITIONS = {
    InstallState.NOT_INSTALLED: {InstallState.INSTALLING},
    InstallState.INSTALLING: {InstallState.INSTALLED, InstallState.FAILED},
    InstallState.INSTALLED: {InstallState.INSTALLING},
    InstallState.FAILED: {InstallState.INSTALLING},
}


@dataclass
class ToolEntry:
    """A registered tool and its install/integration state."""

    name: str
    category: ToolCategory
    install_state: InstallState = InstallState.NOT_INSTALLED
    integration_enabled: bool = False
    artifact_path: Optional[str] = None

    source_url: Optional[str] = None
    install_path: Optional[str] = None
    description: str = ""
    error_message: Optional[str] = None
    registered_at: float = field(default_factory=time.time)

    @property
    def installed(self) -> bool:
        return self.install_state == InstallState.INSTALLED

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "category": self.category.value,
            "installState": self.install_state.value,
            "integrationEnabled": self.integration_enabled,
            "artifactPath": self.artifact_path,
            "sourceUrl": self.source_url,
            "installPath": self.install_path,
            "description": self.description,
            "errorMessage": self.error_message,
            "registeredAt": int(self.registered_at * 1000),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ToolEntry":
        return cls(
            name=data["name"],
            category=ToolCategory(data["category"]),
            install_state=InstallState(data.get("installState", "not_installed")),
            integration_enabled=data.get("integrationEnabled", False),
            artifact_path=data.get("artifactPath"),
            source_url=data.get("sourceUrl"),
            install_path=data.get("installPath"),
            description=data.get("description", ""),
            error_message=data.get("errorMessage"),
            registered_at=data.get("registeredAt", time.time() * 1000) / 1000,
        )


class ToolRegistry:
    """
    Catalog of optional tools and their linkage state.

    One registry instance is shared by everything that needs it; pass it by
    reference rather than reaching for a global.
    """

    def __init__(
        self,
        data_dir: Path,
        install_path: Optional[Path] = None,
        artifacts_dir: Optional[Path] = None,
        installer: Optional[ToolInstaller] = None,
        auto_integrate: bool = False,
        create_artifacts: bool = True,
    ):
        self.data_dir = Path(data_dir)
        self.install_path = Path(install_path) if install_path else self.data_dir / "tools"
        self.artifacts_dir = Path(artifacts_dir) if artifacts_dir else self.data_dir / "artifacts"
        self.auto_integrate = auto_integrate
        self.create_artifacts = create_artifacts

        self._installer = installer or DownloadInstaller()
        self._tools: dict[str, ToolEntry] = {}
        self._category_enabled: dict[ToolCategory, bool] = {c: True for c in ToolCategory}

        self._load()

    @property
    def registry_file(self) -> Path:
        return self.data_dir / "tools.json"

    def _load(self):
        """Load registry state from disk."""
        if not self.registry_file.exists():
            return
        try:
            with open(self.registry_file, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read tool registry {self.registry_file}: {e}") from e

        try:
            self.auto_integrate = data.get("autoIntegrate", self.auto_integrate)
            self.create_artifacts = data.get("createArtifacts", self.create_artifacts)
            categories = {
                ToolCategory(name): bool(enabled)
                for name, enabled in data.get("categories", {}).items()
            }
            entries = [ToolEntry.from_dict(tool_data) for tool_data in data.get("tools", [])]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ConfigError(f"Malformed tool registry {self.registry_file}: {e!r}") from e

        self._category_enabled.update(categories)
        for entry in entries:
            if entry.install_state == InstallState.INSTALLING:
                # The process that was installing it is gone
                entry.install_state = InstallState.FAILED
                entry.error_message = "Install interrupted"
            self._tools[entry.name] = entry

        logger.info(f"Loaded {len(self._tools)} registered tools")

    def _save(self):
        """Save registry state to disk."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        data = {
            "version": DOCUMENT_VERSION,
            "autoIntegrate": self.auto_integrate,
            "createArtifacts": self.create_artifacts,
            "categories": {c.value: enabled for c, enabled in self._category_enabled.items()},
            "tools": [t.to_dict() for t in sorted(self._tools.values(), key=lambda t: t.name)],
        }
        temp = self.registry_file.with_suffix(".json.tmp")
        with open(temp, "w") as f:
            json.dump(data, f, indent=2)
        temp.replace(self.registry_file)

    def _require(self, name: str) -> ToolEntry:
        entry = self._tools.get(name)
        if entry is None:
            raise NotFoundError(f"Tool not registered: {name}")
        return entry

    def _transition(self, entry: ToolEntry, state: InstallState):
        if state not in TRANSITIONS[entry.install_state]:
            raise RuntimeError(
                f"Illegal install transition for {entry.name}: "
                f"{entry.install_state.value} -> {state.value}"
            )
        logger.debug(f"[{entry.name}] {entry.install_state.value} -> {state.value}")
        entry.install_state = state

    def register(
        self,
        name: str,
        category: Union[ToolCategory, str],
        source_url: Optional[str] = None,
        description: str = "",
    ) -> ToolEntry:
        """
        Register a tool, or update the metadata of an existing one.

        Raises:
            ConfigError: Empty name or unknown category.
        """
        if not name or not name.strip():
            raise ConfigError("Tool name must not be empty")
        try:
            category = category if isinstance(category, ToolCategory) else parse_category(category)
        except ValueError as e:
            raise ConfigError(str(e)) from e

        entry = self._tools.get(name)
        if entry is None:
            entry = ToolEntry(name=name, category=category, source_url=source_url, description=description)
            self._tools[name] = entry
            logger.info(f"Registered tool: {name} ({category.value})")
        else:
            entry.category = category
            if source_url is not None:
                entry.source_url = source_url
            if description:
                entry.description = description
            self._sync_artifact(entry)

        self._save()
        return entry

    def register_defaults(self) -> list[ToolEntry]:
        """Register every built-in catalog tool that is not registered yet."""
        added = []
        for tools in default_catalog().values():
            for tool in tools:
                if tool.name not in self._tools:
                    added.append(self.register(
                        tool.name, tool.category, tool.source_url, tool.description,
                    ))
        return added

    async def install(self, name: str) -> ToolEntry:
        """
        Install a tool: NOT_INSTALLED/FAILED -> INSTALLING -> INSTALLED or FAILED.

        Installing an already installed tool is a no-op.

        Raises:
            NotFoundError: Unknown tool, or its source is missing.
            AlreadyInProgressError: This tool is being installed right now.
            TransientError, IntegrityError: The install itself failed.
        """
        entry = self._require(name)

        if entry.install_state == InstallState.INSTALLED:
            if entry.install_path:
                logger.info(f"[{name}] Already installed")
                return entry
            logger.warning(f"[{name}] Marked installed but has no install path; reinstalling")
        if entry.install_state == InstallState.INSTALLING:
            raise AlreadyInProgressError(f"Install of {name} is already in progress")

        # No await between the check above and this transition
        self._transition(entry, InstallState.INSTALLING)
        entry.error_message = None
        self._save()

        dest_dir = self.install_path / entry.category.value / artifacts.safe_name(name)
        try:
            installed_path = await self._installer.install(name, entry.source_url, dest_dir)
        except DeploymentError as e:
            self._transition(entry, InstallState.FAILED)
            entry.error_message = f"{e.kind}: {e.message}"
            self._save()
            logger.error(f"[{name}] Install failed ({e.kind}): {e.message}")
            raise
        except BaseException as e:
            self._transition(entry, InstallState.FAILED)
            entry.error_message = f"{type(e).__name__}: {e}"
            self._save()
            raise

        self._transition(entry, InstallState.INSTALLED)
        entry.install_path = str(installed_path)
        if self.auto_integrate:
            entry.integration_enabled = True
        self._sync_artifact(entry)

        if self._tools.get(name) is entry:
            self._save()
        logger.info(f"[{name}] Installed")
        return entry

    def set_integration(self, name: str, enabled: bool) -> ToolEntry:
        """
        Enable or disable server integration for a tool.

        Disabling removes the artifact; the install state is untouched.
        """
        entry = self._require(name)
        entry.integration_enabled = bool(enabled)
        self._sync_artifact(entry)
        self._save()
        return entry

    def set_category_enabled(self, category: Union[ToolCategory, str], enabled: bool):
        category = ToolCategory(category)
        self._category_enabled[category] = bool(enabled)
        for entry in self._tools.values():
            if entry.category == category:
                self._sync_artifact(entry)
        self._save()

    def remove(self, name: str) -> bool:
        """Remove a tool and its artifact. The only way an entry is destroyed."""
        entry = self._tools.get(name)
        if entry is None:
            return False
        if entry.install_state == InstallState.INSTALLING:
            raise AlreadyInProgressError(f"Cannot remove {name} while it is installing")

        artifacts.remove_artifact(self.artifacts_dir, name)
        del self._tools[name]
        self._save()
        logger.info(f"Removed tool: {name}")
        return True

    def get(self, name: str) -> Optional[ToolEntry]:
        return self._tools.get(name)

    def list_tools(self, category: Optional[Union[ToolCategory, str]] = None) -> list[ToolEntry]:
        entries = sorted(self._tools.values(), key=lambda t: t.name)
        if category is not None:
            category = ToolCategory(category)
            entries = [t for t in entries if t.category == category]
        return entries

    def names(self) -> set[str]:
        return set(self._tools)

    def _should_have_artifact(self, entry: ToolEntry) -> bool:
        return (
            self.create_artifacts
            and entry.installed
            and entry.integration_enabled
            and entry.install_path is not None
            and self._category_enabled.get(entry.category, True)
        )

    def _sync_artifact(self, entry: ToolEntry):
        """Write or remove the artifact so it matches the entry's state."""
        if self._should_have_artifact(entry):
            path = artifacts.write_artifact(
                self.artifacts_dir,
                entry.name,
                entry.category.value,
                Path(entry.install_path),
                entry.description,
            )
            entry.artifact_path = str(path)
        else:
            artifacts.remove_artifact(self.artifacts_dir, entry.name)
            entry.artifact_path = None

    def tool_config_entries(self) -> dict[str, ToolConfigEntry]:
        """The ``tools`` map for the server config: installed tools only."""
        return {
            entry.name: ToolConfigEntry(
                enabled=entry.integration_enabled and self._category_enabled[entry.category],
                path=entry.install_path,
            )
            for entry in self.list_tools()
            if entry.installed and entry.install_path
        }

    def export_config(self) -> RegistryDocument:
        """Export the registry as a document."""
        categories = {}
        for category in ToolCategory:
            entries = [t for t in self.list_tools() if t.category == category]
            categories[category] = CategorySection(
                enabled=self._category_enabled[category],
                tools=[t.name for t in entries],
                states={
                    t.name: ToolState(
                        install_state=t.install_state,
                        integration_enabled=t.integration_enabled,
                    )
                    for t in entries
                },
            )
        return RegistryDocument(
            version=DOCUMENT_VERSION,
            install_path=str(self.install_path),
            auto_integrate=self.auto_integrate,
            create_artifacts=self.create_artifacts,
            categories=categories,
        )

    def import_config(
        self,
        document: Union[RegistryDocument, Mapping[str, Any], str, bytes],
    ) -> list[str]:
        """
        Merge a registry document into this registry.

        Tools are matched by name. Imported tools overwrite install state and
        integration flags; tools missing from the document are kept.

        Returns:
            Names of tools that were created or updated.

        Raises:
            ConfigError: The document is malformed.
        """
        doc = parse_document(document)

        if doc.install_path != str(self.install_path):
            logger.info(
                f"Imported document uses install path {doc.install_path}; "
                f"keeping {self.install_path}"
            )
        self.auto_integrate = doc.auto_integrate
        self.create_artifacts = doc.create_artifacts

        touched = []
        for category, section in doc.categories.items():
            self._category_enabled[category] = section.enabled
            for name in section.tools:
                entry = self._tools.get(name)
                if entry is None:
                    entry = ToolEntry(name=name, category=category)
                    self._tools[name] = entry
                else:
                    entry.category = category

                state = section.states.get(name)
                if state is not None:
                    self._apply_imported_state(entry, state)
                touched.append(name)

        for entry in self._tools.values():
            self._sync_artifact(entry)
        self._save()
        logger.info(f"Imported {len(touched)} tools ({len(self._tools)} registered)")
        return touched

    def _apply_imported_state(self, entry: ToolEntry, state: ToolState):
        if entry.install_state == InstallState.INSTALLING:
            logger.warning(f"[{entry.name}] Install in progress; imported state ignored")
            return

        entry.integration_enabled = state.integration_enabled
        target = state.install_state
        if target == InstallState.INSTALLING:
            # An in-flight install elsewhere means nothing here
            target = InstallState.NOT_INSTALLED
        elif target == InstallState.INSTALLED and not entry.install_path:
            logger.warning(
                f"[{entry.name}] Imported as installed but not installed locally; "
                f"recording as not installed"
            )
            target = InstallState.NOT_INSTALLED

        if target == entry.install_state:
            return
        if target == InstallState.NOT_INSTALLED:
            entry.install_state = target
            entry.install_path = None
            return
        # INSTALLED or FAILED: recorded as a completed install attempt
        if entry.install_state != InstallState.INSTALLING:
            self._transition(entry, InstallState.INSTALLING)
        self._transition(entry, target)
