"""
Definition lookup ("fishing")

A Fishable answers lookups by name, id or canonical URL, optionally with a
``|version`` suffix, filtered by artifact kind.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class FhirType(str, Enum):
    """Artifact kinds a lookup can be filtered by"""

    PROFILE = "Profile"
    EXTENSION = "Extension"
    VALUE_SET = "ValueSet"
    CODE_SYSTEM = "CodeSystem"
    INSTANCE = "Instance"
    INVARIANT = "Invariant"
    RULE_SET = "RuleSet"
    MAPPING = "Mapping"
    RESOURCE = "Resource"
    TYPE = "Type"
    LOGICAL = "Logical"


STRUCTURE_TYPES = (
    FhirType.RESOURCE,
    FhirType.LOGICAL,
    FhirType.TYPE,
    FhirType.PROFILE,
    FhirType.EXTENSION,
)


class Metadata(BaseModel):
    """Summary of a definition, enough to resolve types without loading it"""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: Optional[str] = None
    sd_type: Optional[str] = Field(default=None, alias="sdType")
    url: Optional[str] = None
    parent: Optional[str] = None
    abstract: Optional[bool] = None
    version: Optional[str] = None
    resource_type: Optional[str] = Field(default=None, alias="resourceType")
    kind: Optional[str] = None
    derivation: Optional[str] = None

    @classmethod
    def from_definition(cls, definition: Dict[str, Any]) -> "Metadata":
        """Extract metadata from a definition's JSON"""
        return cls(
            id=definition.get("id", ""),
            name=definition.get("name"),
            sd_type=definition.get("type"),
            url=definition.get("url"),
            parent=definition.get("baseDefinition"),
            abstract=definition.get("abstract"),
            version=definition.get("version"),
            resource_type=definition.get("resourceType"),
            kind=definition.get("kind"),
            derivation=definition.get("derivation"),
        )


class Fishable(ABC):
    """Lookup capability shared by every definition source"""

    @abstractmethod
    def fish_for_fhir(self, item: str, *types: FhirType) -> Optional[Dict[str, Any]]:
        """
        Find a definition's JSON

        Args:
            item: Name, id or canonical URL
            types: Kinds to search; all kinds when empty

        Returns:
            A copy of the definition JSON, or None
        """

    @abstractmethod
    def fish_for_metadata(self, item: str, *types: FhirType) -> Optional[Metadata]:
        """Find a definition's metadata"""


def _split_version(item: str):
    base, _, version = item.partition("|")
    return base, version or None


def fish_for_fhir_best_version(
    fisher: Fishable, item: str, *types: FhirType
) -> Optional[Dict[str, Any]]:
    """
    Fish for a definition, falling back to any version

    If ``item`` carries a ``|version`` and no exact match exists, the
    unversioned item is looked up instead. A warning is logged when the
    version found differs from the one requested.
    """
    result = fisher.fish_for_fhir(item, *types)
    if result is None and item and "|" in item:
        base, version = _split_version(item)
        result = fisher.fish_for_fhir(base, *types)
        found = result.get("version") if result else None
        if version is not None and found is not None and version != found:
            logger.warning(
                f"The {base} definition was specified with version {version}, "
                f"but version {found} was found"
            )
    return result


def fish_for_metadata_best_version(
    fisher: Optional[Fishable], item: str, *types: FhirType
) -> Optional[Metadata]:
    """Metadata counterpart of fish_for_fhir_best_version"""
    if fisher is None:
        return None
    metadata = fisher.fish_for_metadata(item, *types)
    if metadata is None and item and "|" in item:
        base, version = _split_version(item)
        metadata = fisher.fish_for_metadata(base, *types)
        found = metadata.version if metadata else None
        if version is not None and found is not None and version != found:
            logger.warning(
                f"The {base} definition was specified with version {version}, "
                f"but version {found} was found"
            )
    return metadata
