"""
fsh-forge - compiles FHIR profiles, extensions, logical models and
resources into StructureDefinitions

Supports:
- Applying authoring rules to base definitions
- Snapshot and differential export
"""

__version__ = "0.1.0"

from .core import (
    # Errors
    ForgeError,
    # Core classes
    ElementDefinition,
    StructureDefinition,
    FHIRDefinitions,
    MasterFisher,
    DiagnosticCollector,
    load_definitions_from_dir,
)
from .config import ForgeConfig, load_config_from_file
from .engine import FSHTank, RuleEngine, compile_project, load_document

__all__ = [
    "__version__",
    # Errors
    "ForgeError",
    # Core
    "ElementDefinition",
    "StructureDefinition",
    "FHIRDefinitions",
    "MasterFisher",
    "DiagnosticCollector",
    "load_definitions_from_dir",
    # Configuration
    "ForgeConfig",
    "load_config_from_file",
    # Engine
    "FSHTank",
    "RuleEngine",
    "compile_project",
    "load_document",
]
