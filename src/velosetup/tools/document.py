"""Registry export/import document.

The document is validated with pydantic and fails closed: unknown keys,
unknown categories or duplicated tool names are rejected.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, List, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from velosetup.errors import ConfigError
from velosetup.tools.catalog import ToolCategory


DOCUMENT_VERSION = 1


class InstallState(str, Enum):
    """Install state of a registered tool."""

    NOT_INSTALLED = "not_installed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    FAILED = "failed"


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ToolState(_Strict):
    install_state: InstallState = Field(alias="installState")
    integration_enabled: bool = Field(default=False, alias="integrationEnabled")


class CategorySection(_Strict):
    enabled: bool = True
    tools: List[str] = Field(default_factory=list)
    states: Dict[str, ToolState] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _states_match_tools(self) -> "CategorySection":
        stray = sorted(set(self.states) - set(self.tools))
        if stray:
            raise ValueError(f"states given for tools not listed: {', '.join(stray)}")
        return self


class RegistryDocument(_Strict):
    version: int = DOCUMENT_VERSION
    install_path: str = Field(alias="installPath")
    auto_integrate: bool = Field(default=False, alias="autoIntegrate")
    create_artifacts: bool = Field(default=True, alias="createArtifacts")
    categories: Dict[ToolCategory, CategorySection] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _unique_tool_names(self) -> "RegistryDocument":
        seen: Dict[str, ToolCategory] = {}
        for category, section in self.categories.items():
            for name in section.tools:
                if name in seen:
                    raise ValueError(
                        f"tool '{name}' listed in both {seen[name].value} and {category.value}"
                    )
                seen[name] = category
        return self

    def tool_names(self) -> List[str]:
        return [name for section in self.categories.values() for name in section.tools]

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


def parse_document(document: Union[RegistryDocument, Mapping[str, Any], str, bytes]) -> RegistryDocument:
    """Validate a registry document from a model, mapping or JSON text.

    Raises:
        ConfigError: If the document does not have the expected shape.
    """
    if isinstance(document, RegistryDocument):
        return document
    try:
        if isinstance(document, (str, bytes)):
            return RegistryDocument.model_validate_json(document)
        return RegistryDocument.model_validate(dict(document))
    except ValidationError as e:
        raise ConfigError(f"Invalid registry document: {e}") from e
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid registry document: {e}") from e
