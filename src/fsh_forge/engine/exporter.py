"""
StructureDefinition export

Compiles every profile, extension, logical model and resource in the tank.
Parents defined in the tank are compiled first. A missing or circular
parent fails only the artifact that needs it.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..config import ForgeConfig
from ..core.definitions import FHIRDefinitions, StructureCache
from ..core.diagnostics import DiagnosticCollector
from ..core.errors import CircularParentError, ForgeError, ParentNotDefinedError
from ..core.fishable import FhirType, Fishable, Metadata
from ..core.master_fisher import MasterFisher
from ..core.structure import StructureDefinition
from .rule_engine import RuleEngine
from .tank import Extension, FshStructure, FSHTank, Logical, Profile, Resource

logger = logging.getLogger(__name__)

DEFAULT_PARENTS = {
    Profile: "Resource",
    Extension: "Extension",
    Logical: "Base",
    Resource: "DomainResource",
}

# Parent properties that do not carry over to a derived definition
INHERITED_PROPS_TO_KEEP = ("mapping", "context", "contextInvariant")


class Package(Fishable):
    """Exported StructureDefinitions, fishable by name, id and url"""

    def __init__(self, config: Optional[ForgeConfig] = None):
        self.config = config or ForgeConfig()
        self.profiles: List[Dict[str, Any]] = []
        self.extensions: List[Dict[str, Any]] = []
        self.logicals: List[Dict[str, Any]] = []
        self.resources: List[Dict[str, Any]] = []

    def _tables(self, types) -> List[List[Dict[str, Any]]]:
        tables = {
            FhirType.PROFILE: self.profiles,
            FhirType.EXTENSION: self.extensions,
            FhirType.LOGICAL: self.logicals,
            FhirType.RESOURCE: self.resources,
        }
        return [tables[t] for t in (types or tuple(tables)) if t in tables]

    def add(self, entity: FshStructure, definition: Dict[str, Any]) -> None:
        if isinstance(entity, Extension):
            self.extensions.append(definition)
        elif isinstance(entity, Logical):
            self.logicals.append(definition)
        elif isinstance(entity, Resource):
            self.resources.append(definition)
        else:
            self.profiles.append(definition)

    def all(self) -> List[Dict[str, Any]]:
        return self.profiles + self.extensions + self.logicals + self.resources

    def _find(self, item: str, *types: FhirType) -> Optional[Dict[str, Any]]:
        base, _, version = item.partition("|")
        for table in self._tables(types):
            for definition in table:
                if base in (definition.get("id"), definition.get("name"), definition.get("url")):
                    if not version or version == definition.get("version"):
                        return definition
        return None

    def fish_for_fhir(self, item: str, *types: FhirType) -> Optional[Dict[str, Any]]:
        definition = self._find(item, *types)
        return copy.deepcopy(definition) if definition is not None else None

    def fish_for_metadata(self, item: str, *types: FhirType) -> Optional[Metadata]:
        definition = self._find(item, *types)
        return Metadata.from_definition(definition) if definition is not None else None

    def write(self, output_dir: Union[str, Path]) -> List[Path]:
        """Write one ``StructureDefinition-<id>.json`` per definition"""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        written = []
        for definition in self.all():
            path = output_dir / f"StructureDefinition-{definition['id']}.json"
            with open(path, "w", encoding="utf-8") as f:
                json.dump(definition, f, indent=2, ensure_ascii=False)
            written.append(path)
        return written


class StructureDefinitionExporter:
    """
    Compiles the tank into a Package

    Args:
        tank: Authoring working set
        fhir: Base definitions
        config: Project configuration
        collector: Diagnostics sink
        cache: Resolved-structure cache; one per compilation
    """

    def __init__(
        self,
        tank: FSHTank,
        fhir: FHIRDefinitions,
        config: Optional[ForgeConfig] = None,
        collector: Optional[DiagnosticCollector] = None,
        cache: Optional[StructureCache] = None,
    ):
        self.tank = tank
        self.fhir = fhir
        self.config = config or ForgeConfig()
        self.collector = collector if collector is not None else DiagnosticCollector()
        self.pkg = Package(self.config)
        self.fisher = MasterFisher(tank, fhir, self.pkg, cache or StructureCache())
        self.engine = RuleEngine(
            self.fisher, tank, self.collector, self.config.strict_slice_ordering
        )
        self._failed: Dict[str, ForgeError] = {}

    def export(self) -> Package:
        for entity in self.tank.all_structures():
            self._export_guarded(entity, [])
        return self.pkg

    def _export_guarded(self, entity: FshStructure, chain: List[str]) -> Optional[Dict[str, Any]]:
        if entity.name in self._failed:
            return None
        try:
            return self.export_structure(entity, chain)
        except ForgeError as e:
            self._failed[entity.name] = e
            self.collector.add_error(e, entity.name, source=entity.source_info)
            return None

    def _parent_name(self, entity: FshStructure) -> str:
        parent = entity.parent or DEFAULT_PARENTS[type(entity)]
        return self.tank.resolve_alias(parent)

    def export_structure(
        self, entity: FshStructure, chain: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """
        Compile one artifact, compiling its tank parent first

        Raises:
            ParentNotDefinedError: The parent cannot be found or failed to compile
            CircularParentError: The parent chain loops back to this artifact
        """
        chain = chain or []
        existing = self.pkg.fish_for_fhir(entity.name)
        if existing is not None:
            return existing

        parent_name = self._parent_name(entity)
        parent_entity = self.tank.fish(
            parent_name, FhirType.PROFILE, FhirType.EXTENSION, FhirType.LOGICAL, FhirType.RESOURCE
        )
        if parent_entity is not None and self.pkg.fish_for_metadata(parent_entity.name) is None:
            if parent_entity.name in chain + [entity.name]:
                cycle = chain + [entity.name]
                raise CircularParentError(cycle[cycle.index(parent_entity.name) :] + [parent_entity.name])
            if self._export_guarded(parent_entity, chain + [entity.name]) is None:
                failure = self._failed.get(parent_entity.name)
                if isinstance(failure, CircularParentError):
                    raise CircularParentError(failure.chain)
                raise ParentNotDefinedError(entity.name, parent_name)

        sd = self.fisher.fish_for_structure(parent_name)
        if sd is None:
            raise ParentNotDefinedError(entity.name, parent_name)

        self.set_metadata(sd, entity)
        self.engine.apply_rules(sd, entity.rules, entity.name)
        for element in sd.elements:
            for message in element.validate():
                self.collector.add_warning(message, entity.name, element.id, entity.source_info)

        definition = sd.to_json()
        self.pkg.add(entity, definition)
        logger.info(f"Exported {type(entity).__name__} {entity.name}")
        return definition

    def set_metadata(self, sd: StructureDefinition, entity: FshStructure) -> None:
        """Turn a copy of the parent into the new definition's starting point"""
        parent_url = sd.url
        sd.other = {k: v for k, v in sd.other.items() if k in INHERITED_PROPS_TO_KEEP}
        sd.id = entity.id
        sd.name = entity.name
        sd.url = self.tank.url_for(entity)
        sd.title = entity.title
        sd.description = entity.description
        sd.version = self.config.version
        sd.status = self.config.status
        sd.fhir_version = self.config.fhir_version
        sd.abstract = False
        sd.base_definition = parent_url
        if self.config.publisher:
            sd.other["publisher"] = self.config.publisher

        if isinstance(entity, (Logical, Resource)):
            sd.derivation = "specialization"
            sd.kind = "logical" if isinstance(entity, Logical) else "resource"
            sd.type = sd.url if isinstance(entity, Logical) else entity.name
            self._rename_root(sd, entity.id if isinstance(entity, Logical) else entity.name)
            if isinstance(entity, Logical) and entity.characteristics:
                sd.other["extension"] = [
                    {
                        "url": "http://hl7.org/fhir/tools/StructureDefinition/type-characteristics",
                        "valueCode": c,
                    }
                    for c in entity.characteristics
                ]
        else:
            sd.derivation = "constraint"

        if isinstance(entity, Extension):
            sd.other["context"] = [
                {"type": "element", "expression": c} for c in entity.contexts
            ] or sd.other.get("context") or [{"type": "element", "expression": "Element"}]

        root = sd.elements[0] if sd.elements else None
        if root is not None and not isinstance(entity, Profile):
            if entity.title:
                root.short = entity.title
            if entity.description:
                root.definition = entity.description
        if isinstance(entity, Extension):
            url_element = sd.find_element("Extension.url")
            if url_element is not None:
                url_element.values["fixedUri"] = sd.url

    def _rename_root(self, sd: StructureDefinition, new_root: str) -> None:
        old_root = sd.path_type
        for element in sd.elements:
            element.id = new_root + element.id[len(old_root) :]
            if element.base is None:
                element.base = {"path": element.path, "min": element.min, "max": element.max}


def compile_project(
    config: ForgeConfig,
    tank: FSHTank,
    fhir: FHIRDefinitions,
    collector: Optional[DiagnosticCollector] = None,
) -> Package:
    """Compile a tank with its own structure cache"""
    exporter = StructureDefinitionExporter(tank, fhir, config, collector, StructureCache())
    return exporter.export()
