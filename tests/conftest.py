"""
Shared fixtures

The definitions directory holds a small R4 subset: the base types, a few
datatypes and the Observation, Patient, Group and Practitioner resources.
"""

import copy
from pathlib import Path

import pytest

from fsh_forge.core.definitions import load_definitions_from_dir
from fsh_forge.core.diagnostics import DiagnosticCollector
from fsh_forge.core.master_fisher import MasterFisher

FIXTURES = Path(__file__).parent / "fixtures"
DEFINITIONS_DIR = FIXTURES / "definitions"


@pytest.fixture(scope="session")
def base_definitions():
    return load_definitions_from_dir(DEFINITIONS_DIR)


@pytest.fixture
def definitions(base_definitions):
    """Definitions a test may add to"""
    return copy.deepcopy(base_definitions)


@pytest.fixture
def fisher(definitions):
    return MasterFisher(fhir=definitions)


@pytest.fixture
def observation(fisher):
    return fisher.fish_for_structure("Observation")


@pytest.fixture
def patient(fisher):
    return fisher.fish_for_structure("Patient")


@pytest.fixture
def collector():
    return DiagnosticCollector()
