"""Rule application and export"""

from .tank import (
    FSHTank,
    FshDocument,
    Profile,
    Extension,
    Logical,
    Resource,
    Invariant,
    RuleSet,
    load_document,
    load_documents,
)
from .rule_engine import RuleEngine, check_rule_coverage
from .exporter import Package, StructureDefinitionExporter, compile_project

__all__ = [
    "FSHTank",
    "FshDocument",
    "Profile",
    "Extension",
    "Logical",
    "Resource",
    "Invariant",
    "RuleSet",
    "load_document",
    "load_documents",
    "RuleEngine",
    "check_rule_coverage",
    "Package",
    "StructureDefinitionExporter",
    "compile_project",
]
