"""
Authoring Working Set Unit Tests
"""

import json

import pytest
import yaml

from fsh_forge.core.fishable import FhirType
from fsh_forge.core.rules import CardRule
from fsh_forge.engine.tank import (
    Extension,
    FshDocument,
    FSHTank,
    Invariant,
    Logical,
    Profile,
    Resource,
    RuleSet,
    load_document,
    load_documents,
)

DOCUMENT = {
    "aliases": {"$obs": "Observation"},
    "profiles": [
        {
            "name": "MyObservation",
            "id": "my-observation",
            "parent": "$obs",
            "rules": [{"kind": "card", "path": "note", "min": 1, "max": "1"}],
        }
    ],
    "extensions": [{"name": "MyExt", "contexts": ["Observation"]}],
    "logicals": [{"name": "MyModel"}],
    "resources": [{"name": "MyResource"}],
    "invariants": [{"name": "obs-1", "severity": "#error", "human": "Needs a value"}],
    "rule_sets": [{"name": "Common", "rules": [{"kind": "flag", "path": "status"}]}],
}


@pytest.fixture
def tank():
    return FSHTank([FshDocument(**DOCUMENT)], "http://example.org/fhir/")


class TestRuleSet:
    """Test rule set expansion"""

    def test_substitution(self):
        """Test every occurrence of a parameter is replaced"""
        rule_set = RuleSet(
            name="Card",
            params=["path", "max"],
            rules=[{"kind": "card", "path": "{path}", "min": 0, "max": "{max}"}],
        )
        (rule,) = rule_set.expand(["note", "1"])
        assert isinstance(rule, CardRule)
        assert (rule.path, rule.max) == ("note", "1")

    def test_unknown_placeholder_kept(self):
        """Test braces that are not parameters are left alone"""
        rule_set = RuleSet(
            name="Caret",
            rules=[{"kind": "caret", "caret_path": "short", "value": "{not a param}"}],
        )
        (rule,) = rule_set.expand()
        assert rule.value == "{not a param}"

    def test_wrong_count(self):
        """Test a parameter count mismatch"""
        rule_set = RuleSet(name="Card", params=["max"], rules=[])
        with pytest.raises(ValueError, match="expected 1, got 2"):
            rule_set.expand(["1", "2"])

    def test_records_unchanged(self):
        """Test expansion leaves the stored records alone"""
        rule_set = RuleSet(name="Card", params=["max"], rules=[{"kind": "card", "max": "{max}"}])
        rule_set.expand(["1"])
        assert rule_set.rules == [{"kind": "card", "max": "{max}"}]


class TestEntities:
    """Test entity records"""

    def test_id_defaults_to_name(self):
        """Test the id falls back to the name"""
        assert Profile(name="MyObservation").id == "MyObservation"
        assert Profile(name="MyObservation", id="my-obs").id == "my-obs"

    def test_rules_parsed(self):
        """Test rule dicts become rule records"""
        profile = Profile(name="P", rules=[{"kind": "card", "path": "note", "max": "1"}])
        assert isinstance(profile.rules[0], CardRule)

    def test_invariant_severity(self):
        """Test a severity string becomes a code"""
        assert Invariant(name="obs-1", severity="#warning").severity.code == "warning"


class TestFSHTank:
    """Test tank lookups"""

    def test_fish_by_name_id_and_url(self, tank):
        """Test each key finds the entity"""
        assert tank.fish("MyObservation").id == "my-observation"
        assert tank.fish("my-observation").name == "MyObservation"
        assert tank.fish("http://example.org/fhir/StructureDefinition/my-observation").name == (
            "MyObservation"
        )

    def test_fish_by_kind(self, tank):
        """Test the kind filter"""
        assert tank.fish("MyExt", FhirType.PROFILE) is None
        assert isinstance(tank.fish("MyExt", FhirType.EXTENSION), Extension)
        assert isinstance(tank.fish("Common", FhirType.RULE_SET), RuleSet)
        assert isinstance(tank.fish("obs-1", FhirType.INVARIANT), Invariant)

    def test_url_for(self, tank):
        """Test canonical URLs use the id"""
        assert tank.url_for(tank.fish("MyObservation")) == (
            "http://example.org/fhir/StructureDefinition/my-observation"
        )

    def test_aliases(self, tank):
        """Test aliases resolve in lookups and parents"""
        assert tank.resolve_alias("$obs") == "Observation"
        assert tank.resolve_alias("Patient") == "Patient"
        assert tank.fish_for_metadata("MyObservation").parent == "Observation"

    def test_no_json(self, tank):
        """Test the tank holds no FHIR JSON"""
        assert tank.fish_for_fhir("MyObservation") is None

    def test_profile_metadata(self, tank):
        """Test a profile's type is left to the resolver"""
        md = tank.fish_for_metadata("MyObservation")
        assert md.sd_type is None
        assert md.url == "http://example.org/fhir/StructureDefinition/my-observation"

    def test_extension_metadata(self, tank):
        """Test an extension defaults to the Extension parent"""
        md = tank.fish_for_metadata("MyExt")
        assert (md.sd_type, md.parent) == ("Extension", "Extension")

    def test_logical_metadata(self, tank):
        """Test a logical model's type is its URL"""
        md = tank.fish_for_metadata("MyModel")
        assert md.sd_type == "http://example.org/fhir/StructureDefinition/MyModel"
        assert (md.parent, md.kind, md.derivation) == ("Base", "logical", "specialization")

    def test_resource_metadata(self, tank):
        """Test a resource's type is its name"""
        md = tank.fish_for_metadata("MyResource")
        assert (md.sd_type, md.parent, md.kind) == ("MyResource", "DomainResource", "resource")

    def test_non_structure_metadata(self, tank):
        """Test invariants and rule sets have no metadata"""
        assert tank.fish_for_metadata("obs-1") is None
        assert tank.fish_for_metadata("Common") is None

    def test_all_structures(self, tank):
        """Test every structure kind is listed"""
        assert [type(s) for s in tank.all_structures()] == [Profile, Extension, Logical, Resource]


class TestLoadDocument:
    """Test loading documents"""

    def test_yaml(self, tmp_path):
        """Test a YAML document with rule source locations"""
        path = tmp_path / "profiles.yaml"
        path.write_text(yaml.safe_dump(DOCUMENT), encoding="utf-8")
        doc = load_document(path)
        assert doc.file == str(path)
        assert doc.profiles[0].rules[0].source_info.file == str(path)

    def test_json(self, tmp_path):
        """Test a JSON document keeps given line numbers"""
        data = {
            "profiles": [
                {
                    "name": "P",
                    "rules": [{"kind": "card", "path": "note", "max": "1", "source_info": {"start_line": 4}}],
                }
            ]
        }
        path = tmp_path / "profiles.json"
        path.write_text(json.dumps(data), encoding="utf-8")
        source = load_document(path).profiles[0].rules[0].source_info
        assert (source.file, source.start_line) == (str(path), 4)

    def test_empty_yaml(self, tmp_path):
        """Test an empty document"""
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_document(path).profiles == []

    def test_missing(self, tmp_path):
        """Test a file that does not exist"""
        with pytest.raises(FileNotFoundError):
            load_document(tmp_path / "missing.yaml")

    def test_unsupported_suffix(self, tmp_path):
        """Test an unknown format"""
        path = tmp_path / "profiles.fsh"
        path.write_text("Profile: P", encoding="utf-8")
        with pytest.raises(ValueError, match="Unsupported document format"):
            load_document(path)

    def test_load_documents(self, tmp_path):
        """Test directories are scanned for documents"""
        (tmp_path / "a.yaml").write_text(yaml.safe_dump({"profiles": [{"name": "A"}]}), encoding="utf-8")
        nested = tmp_path / "nested"
        nested.mkdir()
        (nested / "b.json").write_text(json.dumps({"profiles": [{"name": "B"}]}), encoding="utf-8")
        (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")
        docs = load_documents([tmp_path])
        assert [p.name for d in docs for p in d.profiles] == ["A", "B"]
