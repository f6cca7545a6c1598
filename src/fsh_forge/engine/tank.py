"""
Authoring working set

Profiles, extensions, logical models, resources, invariants and rule sets
as already-parsed records, loaded from YAML or JSON documents. The tank
answers metadata lookups for artifacts that have not been exported yet.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from ..core.fishable import FhirType, Fishable, Metadata
from ..core.rules import Rule, SourceInfo, parse_rule
from ..core.values import FshCode

logger = logging.getLogger(__name__)

_PARAM_PATTERN = re.compile(r"\{(\w+)\}")


class FshEntity(BaseModel):
    name: str
    id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    source_info: Optional[SourceInfo] = None

    def model_post_init(self, __context: Any) -> None:
        if self.id is None:
            self.id = self.name


class FshStructure(FshEntity):
    """Common shape of every artifact compiled into a StructureDefinition"""

    parent: Optional[str] = None
    rules: List[Rule] = Field(default_factory=list)

    @field_validator("rules", mode="before")
    @classmethod
    def _parse_rules(cls, value):
        return [parse_rule(r) if isinstance(r, dict) else r for r in value or []]


class Profile(FshStructure):
    pass


class Extension(FshStructure):
    """Extension definition; ``contexts`` are element paths or resource names"""

    contexts: List[str] = Field(default_factory=list)


class Logical(FshStructure):
    characteristics: List[str] = Field(default_factory=list)


class Resource(FshStructure):
    pass


class Invariant(FshEntity):
    """``obeys`` target; ``severity`` is error or warning"""

    human: Optional[str] = None
    severity: Optional[FshCode] = None
    expression: Optional[str] = None
    xpath: Optional[str] = None

    @field_validator("severity", mode="before")
    @classmethod
    def _parse_severity(cls, value):
        if isinstance(value, str):
            return FshCode(code=value.lstrip("#"))
        return value


class RuleSet(BaseModel):
    """
    Named group of rules, expanded in place by ``insert``

    With ``params``, rule text may reference ``{param}``; the raw records are
    kept and substituted before parsing.
    """

    name: str
    params: List[str] = Field(default_factory=list)
    rules: List[Dict[str, Any]] = Field(default_factory=list)
    source_info: Optional[SourceInfo] = None

    def expand(self, values: Optional[List[str]] = None) -> List[Any]:
        """
        Rules with parameters substituted

        Raises:
            ValueError: Wrong number of parameter values
        """
        values = values or []
        if len(values) != len(self.params):
            raise ValueError(
                f"Incorrect number of parameters applied to RuleSet {self.name}: "
                f"expected {len(self.params)}, got {len(values)}"
            )
        substitutions = dict(zip(self.params, values))
        return [parse_rule(_substitute(r, substitutions)) for r in self.rules]


def _substitute(value: Any, substitutions: Dict[str, str]) -> Any:
    if isinstance(value, str):
        return _PARAM_PATTERN.sub(lambda m: substitutions.get(m.group(1), m.group(0)), value)
    if isinstance(value, dict):
        return {k: _substitute(v, substitutions) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(v, substitutions) for v in value]
    return value


class FshDocument(BaseModel):
    """One authoring document"""

    aliases: Dict[str, str] = Field(default_factory=dict)
    profiles: List[Profile] = Field(default_factory=list)
    extensions: List[Extension] = Field(default_factory=list)
    logicals: List[Logical] = Field(default_factory=list)
    resources: List[Resource] = Field(default_factory=list)
    invariants: List[Invariant] = Field(default_factory=list)
    rule_sets: List[RuleSet] = Field(default_factory=list)
    file: Optional[str] = None


_KIND_ATTRIBUTES = {
    FhirType.PROFILE: "profiles",
    FhirType.EXTENSION: "extensions",
    FhirType.LOGICAL: "logicals",
    FhirType.RESOURCE: "resources",
    FhirType.INVARIANT: "invariants",
    FhirType.RULE_SET: "rule_sets",
}


class FSHTank(Fishable):
    """
    The authoring working set

    Args:
        docs: Loaded documents
        canonical: Canonical base URL of the project
    """

    def __init__(self, docs: List[FshDocument], canonical: str = "http://example.org"):
        self.docs = docs
        self.canonical = canonical.rstrip("/")

    def _all(self, attribute: str) -> List[Any]:
        return [entity for doc in self.docs for entity in getattr(doc, attribute)]

    def all_profiles(self) -> List[Profile]:
        return self._all("profiles")

    def all_extensions(self) -> List[Extension]:
        return self._all("extensions")

    def all_logicals(self) -> List[Logical]:
        return self._all("logicals")

    def all_resources(self) -> List[Resource]:
        return self._all("resources")

    def all_invariants(self) -> List[Invariant]:
        return self._all("invariants")

    def all_rule_sets(self) -> List[RuleSet]:
        return self._all("rule_sets")

    def all_structures(self) -> List[FshStructure]:
        return (
            self.all_profiles() + self.all_extensions() + self.all_logicals() + self.all_resources()
        )

    def resolve_alias(self, item: str) -> str:
        for doc in self.docs:
            if item in doc.aliases:
                return doc.aliases[item]
        return item

    def url_for(self, entity: FshEntity) -> str:
        return f"{self.canonical}/StructureDefinition/{entity.id}"

    def fish(self, item: str, *types: FhirType) -> Optional[Any]:
        """Find an authoring entity by name, id or url"""
        item = self.resolve_alias(item)
        base = item.split("|", 1)[0]
        for fhir_type in types or tuple(_KIND_ATTRIBUTES):
            attribute = _KIND_ATTRIBUTES.get(fhir_type)
            if attribute is None:
                continue
            for entity in self._all(attribute):
                if base == entity.name or base == getattr(entity, "id", None):
                    return entity
                if isinstance(entity, FshStructure) and base == self.url_for(entity):
                    return entity
        return None

    def fish_for_fhir(self, item: str, *types: FhirType) -> Optional[Dict[str, Any]]:
        """The tank holds no FHIR JSON"""
        return None

    def fish_for_metadata(self, item: str, *types: FhirType) -> Optional[Metadata]:
        entity = self.fish(item, *types)
        if not isinstance(entity, FshStructure):
            return None
        metadata = Metadata(
            id=entity.id,
            name=entity.name,
            url=self.url_for(entity),
            parent=self.resolve_alias(entity.parent) if entity.parent else None,
            resource_type="StructureDefinition",
            abstract=False,
        )
        if isinstance(entity, Extension):
            metadata.sd_type = "Extension"
            metadata.parent = metadata.parent or "Extension"
        elif isinstance(entity, Logical):
            metadata.sd_type = metadata.url
            metadata.parent = metadata.parent or "Base"
            metadata.kind = "logical"
            metadata.derivation = "specialization"
        elif isinstance(entity, Resource):
            metadata.sd_type = entity.name
            metadata.parent = metadata.parent or "DomainResource"
            metadata.kind = "resource"
            metadata.derivation = "specialization"
        return metadata


def load_document(path: Union[str, Path]) -> FshDocument:
    """
    Load an authoring document from YAML or JSON

    Raises:
        FileNotFoundError: The file does not exist
        ValueError: The suffix is not .yaml, .yml or .json
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Document not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f) or {}
        elif path.suffix == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported document format: {path.suffix}")

    doc = FshDocument(**data)
    doc.file = str(path)
    for entity in doc.profiles + doc.extensions + doc.logicals + doc.resources:
        for rule in entity.rules:
            if rule.source_info is None:
                rule.source_info = SourceInfo(file=str(path))
            elif rule.source_info.file is None:
                rule.source_info.file = str(path)
    return doc


def load_documents(paths: List[Union[str, Path]]) -> List[FshDocument]:
    """Load documents and every ``*.yaml``/``*.yml``/``*.json`` in given directories"""
    docs = []
    for path in paths:
        path = Path(path)
        if path.is_dir():
            files = sorted(
                p for p in path.rglob("*") if p.suffix in (".yaml", ".yml", ".json")
            )
            docs.extend(load_document(p) for p in files)
        else:
            docs.append(load_document(path))
    return docs
