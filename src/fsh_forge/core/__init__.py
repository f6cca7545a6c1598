"""fsh-forge core: element trees, values, rules and lookup"""

from .errors import (
    ForgeError,
    CardinalityError,
    TypeConstraintError,
    AssignmentError,
    SlicingError,
    StructuralError,
    BindingError,
    MetadataError,
    InvalidCardinalityError,
    WideningCardinalityError,
    NarrowingRootCardinalityError,
    InvalidSumOfSliceMinsError,
    InvalidMaxOfSliceError,
    InvalidTypeError,
    TypeNotFoundError,
    ValueAlreadyAssignedError,
    ValueAlreadyFixedError,
    MismatchedTypeError,
    DuplicateSliceError,
    CannotResolvePathError,
    ParentNotDefinedError,
    CircularParentError,
    ElementAlreadyDefinedError,
)
from .fishable import FhirType, Fishable, Metadata
from .values import (
    FshCode,
    FshQuantity,
    FshRatio,
    FshRange,
    FshReference,
    FshCanonical,
    to_fhir_json,
)
from .path import parse_fsh_path, assemble_fsh_path, resolve_soft_indexing
from .diff import compute_diff, apply_diff
from .rules import (
    Flags,
    SourceInfo,
    OnlyRuleType,
    CardRule,
    FlagRule,
    OnlyRule,
    AssignmentRule,
    ContainsItem,
    ContainsRule,
    ObeysRule,
    CaretValueRule,
    InsertRule,
    BindingRule,
    MappingRule,
    AddElementRule,
    Rule,
    parse_rule,
)
from .element import ElementDefinition, ElementType
from .structure import StructureDefinition
from .definitions import FHIRDefinitions, StructureCache, load_definitions_from_dir
from .master_fisher import MasterFisher
from .diagnostics import Diagnostic, DiagnosticCollector, Severity

__all__ = [
    # Errors
    "ForgeError",
    "CardinalityError",
    "TypeConstraintError",
    "AssignmentError",
    "SlicingError",
    "StructuralError",
    "BindingError",
    "MetadataError",
    "InvalidCardinalityError",
    "WideningCardinalityError",
    "NarrowingRootCardinalityError",
    "InvalidSumOfSliceMinsError",
    "InvalidMaxOfSliceError",
    "InvalidTypeError",
    "TypeNotFoundError",
    "ValueAlreadyAssignedError",
    "ValueAlreadyFixedError",
    "MismatchedTypeError",
    "DuplicateSliceError",
    "CannotResolvePathError",
    "ParentNotDefinedError",
    "CircularParentError",
    "ElementAlreadyDefinedError",
    # Lookup
    "FhirType",
    "Fishable",
    "Metadata",
    "FHIRDefinitions",
    "StructureCache",
    "load_definitions_from_dir",
    "MasterFisher",
    # Values
    "FshCode",
    "FshQuantity",
    "FshRatio",
    "FshRange",
    "FshReference",
    "FshCanonical",
    "to_fhir_json",
    # Paths and diffs
    "parse_fsh_path",
    "assemble_fsh_path",
    "resolve_soft_indexing",
    "compute_diff",
    "apply_diff",
    # Rules
    "Flags",
    "SourceInfo",
    "OnlyRuleType",
    "CardRule",
    "FlagRule",
    "OnlyRule",
    "AssignmentRule",
    "ContainsItem",
    "ContainsRule",
    "ObeysRule",
    "CaretValueRule",
    "InsertRule",
    "BindingRule",
    "MappingRule",
    "AddElementRule",
    "Rule",
    "parse_rule",
    # Trees
    "ElementDefinition",
    "ElementType",
    "StructureDefinition",
    # Diagnostics
    "Diagnostic",
    "DiagnosticCollector",
    "Severity",
]
