"""
Tool Integration Registry for optional third-party tools.

Tracks which tools are registered and installed, and writes the
integration artifacts that expose them to the server.
"""

from .catalog import CatalogTool, ToolCategory, default_catalog
from .document import InstallState, RegistryDocument
from .installer import DownloadInstaller, ToolInstaller
from .registry import ToolEntry, ToolRegistry

__all__ = [
    "CatalogTool",
    "ToolCategory",
    "default_catalog",
    "InstallState",
    "RegistryDocument",
    "DownloadInstaller",
    "ToolInstaller",
    "ToolEntry",
    "ToolRegistry",
]
