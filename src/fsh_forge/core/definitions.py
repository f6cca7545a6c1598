"""
Base definitions

In-memory tables of externally loaded definitions (resources, types,
profiles, extensions, logical models, value sets, code systems), plus the
structure cache the resolver is constructed with.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .fishable import FhirType, Fishable, Metadata

logger = logging.getLogger(__name__)

FISHING_ORDER = [
    FhirType.RESOURCE,
    FhirType.LOGICAL,
    FhirType.TYPE,
    FhirType.PROFILE,
    FhirType.EXTENSION,
    FhirType.VALUE_SET,
    FhirType.CODE_SYSTEM,
]

_TABLES = {
    FhirType.RESOURCE: "resources",
    FhirType.LOGICAL: "logicals",
    FhirType.TYPE: "types",
    FhirType.PROFILE: "profiles",
    FhirType.EXTENSION: "extensions",
    FhirType.VALUE_SET: "value_sets",
    FhirType.CODE_SYSTEM: "code_systems",
}


class StructureCache:
    """
    Resolved StructureDefinition JSON, keyed by FHIR version and canonical URL

    One cache belongs to one compilation; pass a fresh instance to get an
    independent one.
    """

    def __init__(self):
        self._entries: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def get(self, fhir_version: str, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get((fhir_version, key))
        return copy.deepcopy(entry) if entry is not None else None

    def put(self, fhir_version: str, key: str, definition: Dict[str, Any]) -> None:
        self._entries[(fhir_version, key)] = copy.deepcopy(definition)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._entries


class FHIRDefinitions(Fishable):
    """
    Loaded base definitions

    Each definition is indexed by id, name and url. Lookups return deep
    copies, so callers can mutate results freely.
    """

    def __init__(self, fhir_version: str = "4.0.1"):
        self.fhir_version = fhir_version
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.logicals: Dict[str, Dict[str, Any]] = {}
        self.types: Dict[str, Dict[str, Any]] = {}
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.extensions: Dict[str, Dict[str, Any]] = {}
        self.value_sets: Dict[str, Dict[str, Any]] = {}
        self.code_systems: Dict[str, Dict[str, Any]] = {}

    def size(self) -> int:
        return sum(len(self._unique(table)) for table in _TABLES.values())

    def _unique(self, table: str) -> List[Dict[str, Any]]:
        seen = []
        for definition in getattr(self, table).values():
            if not any(definition is s for s in seen):
                seen.append(definition)
        return seen

    def all(self, fhir_type: FhirType) -> List[Dict[str, Any]]:
        return [copy.deepcopy(d) for d in self._unique(_TABLES[fhir_type])]

    def add(self, definition: Dict[str, Any]) -> None:
        """Classify and index one definition; unsupported resources are ignored"""
        resource_type = definition.get("resourceType")
        table = None
        if resource_type == "StructureDefinition":
            kind = definition.get("kind")
            if (
                definition.get("type") == "Extension"
                and definition.get("baseDefinition")
                != "http://hl7.org/fhir/StructureDefinition/Element"
            ):
                table = self.extensions
            elif kind in ("primitive-type", "complex-type", "datatype"):
                table = self.types
            elif kind == "resource":
                table = self.profiles if definition.get("derivation") == "constraint" else self.resources
            elif kind == "logical":
                table = self.logicals if definition.get("derivation") == "specialization" else self.profiles
        elif resource_type == "ValueSet":
            table = self.value_sets
        elif resource_type == "CodeSystem":
            table = self.code_systems

        if table is None:
            logger.debug(f"Skipping unsupported definition {definition.get('id')}")
            return
        for key in ("id", "name", "url"):
            if definition.get(key):
                table[definition[key]] = definition

    def _get(self, item: str, table: Dict[str, Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        base, _, version = (item or "").partition("|")
        definition = table.get(base)
        if definition is not None and (not version or version == definition.get("version")):
            return definition
        return None

    def fish_for_fhir(self, item: str, *types: FhirType) -> Optional[Dict[str, Any]]:
        for fhir_type in sorted(types or FISHING_ORDER, key=_fishing_position):
            if fhir_type not in _TABLES:
                continue
            definition = self._get(item, getattr(self, _TABLES[fhir_type]))
            if definition is not None:
                return copy.deepcopy(definition)
        return None

    def fish_for_metadata(self, item: str, *types: FhirType) -> Optional[Metadata]:
        for fhir_type in sorted(types or FISHING_ORDER, key=_fishing_position):
            if fhir_type not in _TABLES:
                continue
            definition = self._get(item, getattr(self, _TABLES[fhir_type]))
            if definition is not None:
                return Metadata.from_definition(definition)
        return None


def _fishing_position(fhir_type: FhirType) -> int:
    return FISHING_ORDER.index(fhir_type) if fhir_type in FISHING_ORDER else len(FISHING_ORDER)


def load_definitions_from_dir(
    directory: Union[str, Path], definitions: Optional[FHIRDefinitions] = None
) -> FHIRDefinitions:
    """
    Load every JSON definition (and every Bundle entry) in a directory tree

    Args:
        directory: Directory to scan recursively for ``*.json``
        definitions: Definitions to add to; a new instance when omitted

    Raises:
        FileNotFoundError: The directory does not exist
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Definitions directory not found: {directory}")
    definitions = definitions if definitions is not None else FHIRDefinitions()

    count = 0
    for path in sorted(directory.rglob("*.json")):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping {path}: invalid JSON ({e})")
            continue
        if not isinstance(data, dict):
            continue
        if data.get("resourceType") == "Bundle":
            for entry in data.get("entry", []):
                resource = entry.get("resource")
                if isinstance(resource, dict):
                    definitions.add(resource)
                    count += 1
        else:
            definitions.add(data)
            count += 1
    logger.info(f"Loaded {count} definitions from {directory}")
    return definitions
