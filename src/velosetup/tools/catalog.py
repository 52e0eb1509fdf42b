"""
Tool catalog - the fixed tool categories and the built-in tool list.

To add a built-in tool:
1. Append a CatalogTool to DEFAULT_TOOLS under the right category
2. Give it a source_url if it can be downloaded directly
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ToolCategory(str, Enum):
    """The eight fixed tool categories."""
    FORENSICS = "forensics"
    ANALYSIS = "analysis"
    COLLECTION = "collection"
    INCIDENT_RESPONSE = "incident_response"
    MALWARE_ANALYSIS = "malware_analysis"
    THREAT_HUNTING = "threat_hunting"
    NETWORK = "network"
    UTILITIES = "utilities"


@dataclass(frozen=True)
class CatalogTool:
    """A well-known tool that can be registered with one call."""
    name: str
    category: ToolCategory
    description: str = ""
    homepage_url: str = ""
    source_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "category": self.category.value,
            "description": self.description,
            "homepageUrl": self.homepage_url,
            "sourceUrl": self.source_url,
        }


DEFAULT_TOOLS: tuple[CatalogTool, ...] = (
    CatalogTool(
        "volatility3", ToolCategory.FORENSICS,
        "Memory forensics framework",
        "https://github.com/volatilityfoundation/volatility3",
    ),
    CatalogTool(
        "plaso", ToolCategory.FORENSICS,
        "Super timeline creation from disk images",
        "https://github.com/log2timeline/plaso",
    ),
    CatalogTool(
        "chainsaw", ToolCategory.ANALYSIS,
        "Rapid search and hunting through Windows event logs",
        "https://github.com/WithSecureLabs/chainsaw",
    ),
    CatalogTool(
        "hayabusa", ToolCategory.ANALYSIS,
        "Windows event log fast forensics timeline generator",
        "https://github.com/Yamato-Security/hayabusa",
    ),
    CatalogTool(
        "kape", ToolCategory.COLLECTION,
        "Triage collection and processing",
        "https://www.kroll.com/kape",
    ),
    CatalogTool(
        "winpmem", ToolCategory.COLLECTION,
        "Physical memory acquisition for Windows",
        "https://github.com/Velocidex/WinPmem",
    ),
    CatalogTool(
        "autoruns", ToolCategory.INCIDENT_RESPONSE,
        "Persistence location enumeration",
        "https://learn.microsoft.com/sysinternals/downloads/autoruns",
    ),
    CatalogTool(
        "yara", ToolCategory.MALWARE_ANALYSIS,
        "Pattern matching for malware identification",
        "https://github.com/VirusTotal/yara",
    ),
    CatalogTool(
        "capa", ToolCategory.MALWARE_ANALYSIS,
        "Capability detection in executable files",
        "https://github.com/mandiant/capa",
    ),
    CatalogTool(
        "sigma", ToolCategory.THREAT_HUNTING,
        "Generic signature format for SIEM rules",
        "https://github.com/SigmaHQ/sigma",
    ),
    CatalogTool(
        "zeek", ToolCategory.NETWORK,
        "Network traffic analysis",
        "https://github.com/zeek/zeek",
    ),
    CatalogTool(
        "7zip", ToolCategory.UTILITIES,
        "Archive extraction for collected evidence",
        "https://www.7-zip.org/",
    ),
)


def default_catalog() -> dict[ToolCategory, list[CatalogTool]]:
    """Built-in tools grouped by category. Every category is present."""
    catalog: dict[ToolCategory, list[CatalogTool]] = {c: [] for c in ToolCategory}
    for tool in DEFAULT_TOOLS:
        catalog[tool.category].append(tool)
    return catalog


def parse_category(value: str) -> ToolCategory:
    """Parse a category name; raises ValueError for unknown names."""
    try:
        return ToolCategory(value.lower())
    except ValueError:
        valid = ", ".join(c.value for c in ToolCategory)
        raise ValueError(f"Unknown tool category '{value}' (expected one of: {valid})") from None
