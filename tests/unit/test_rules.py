"""
Rule Record Unit Tests
"""

from typing import List

import pytest
from pydantic import TypeAdapter, ValidationError

from fsh_forge.core.rules import (
    AddElementRule,
    AssignmentRule,
    BindingRule,
    CardRule,
    ContainsItem,
    ContainsRule,
    Flags,
    OnlyRule,
    Rule,
    SourceInfo,
    flag_codes,
    merge_flags,
    parse_flag_codes,
    parse_rule,
)
from fsh_forge.core.values import FshCode


class TestParseRule:
    """Test rule parsing"""

    def test_card_rule(self):
        """Test a cardinality rule with flags"""
        rule = parse_rule(
            {"kind": "card", "path": "subject", "min": 1, "max": "1", "flags": {"must_support": True}}
        )
        assert isinstance(rule, CardRule)
        assert rule.min == 1
        assert rule.flags.must_support is True

    def test_only_rule(self):
        """Test a type restriction"""
        rule = parse_rule(
            {"kind": "only", "path": "subject", "types": [{"type": "Patient", "is_reference": True}]}
        )
        assert isinstance(rule, OnlyRule)
        assert rule.types[0].is_reference

    def test_assignment_with_code(self):
        """Test an assignment carrying a tagged code"""
        rule = parse_rule(
            {
                "kind": "assignment",
                "path": "code",
                "value": {"value_type": "code", "code": "1234-5", "system": "http://loinc.org"},
                "exactly": True,
            }
        )
        assert isinstance(rule, AssignmentRule)
        assert rule.value == FshCode(code="1234-5", system="http://loinc.org")
        assert rule.exactly

    def test_contains_items(self):
        """Test contains items keep their own cardinality"""
        rule = parse_rule(
            {"kind": "contains", "path": "component", "items": [{"name": "a", "min": 1, "max": "1"}]}
        )
        assert isinstance(rule, ContainsRule)
        assert rule.items[0].max == "1"

    def test_binding_default_strength(self):
        """Test bindings default to required"""
        rule = parse_rule({"kind": "binding", "path": "status", "value_set": "ObservationStatus"})
        assert isinstance(rule, BindingRule)
        assert rule.strength == "required"

    def test_unknown_kind(self):
        """Test an unknown kind is rejected"""
        with pytest.raises(ValueError, match="Unknown rule kind: path"):
            parse_rule({"kind": "path", "path": "status"})

    def test_missing_payload(self):
        """Test a rule without its required payload"""
        with pytest.raises(ValidationError):
            parse_rule({"kind": "obeys", "path": "status"})

    def test_tagged_union(self):
        """Test the union dispatches on kind"""
        rules = TypeAdapter(List[Rule]).validate_python(
            [{"kind": "flag", "path": "status"}, {"kind": "insert", "rule_set": "Common"}]
        )
        assert [r.kind for r in rules] == ["flag", "insert"]


class TestRuleValues:
    """Test the values a rule accepts"""

    @pytest.mark.parametrize("max", ["*", "0", "12", ""])
    def test_valid_max(self, max):
        """Test a max is a whole number, * or empty"""
        assert CardRule(path="note", max=max).max == max
        assert ContainsItem(name="s", max=max).max == max

    @pytest.mark.parametrize("max", ["many", "-1", "1.5", "1..2"])
    def test_invalid_max(self, max):
        """Test a max that is not a cardinality"""
        with pytest.raises(ValidationError):
            CardRule(path="note", max=max)
        with pytest.raises(ValidationError):
            ContainsItem(name="s", max=max)
        with pytest.raises(ValidationError):
            AddElementRule(path="note", max=max)

    def test_unknown_strength(self):
        """Test a binding strength outside the four defined ones"""
        with pytest.raises(ValidationError):
            BindingRule(path="status", value_set="http://example.org/vs", strength="strong")
        with pytest.raises(ValidationError):
            parse_rule({"kind": "binding", "value_set": "http://example.org/vs", "strength": "strong"})


class TestFlags:
    """Test flag helpers"""

    def test_flag_codes(self):
        """Test set flags render as codes"""
        assert flag_codes(Flags(must_support=True, summary=True)) == ["MS", "SU"]
        assert flag_codes(Flags()) == []

    def test_parse_flag_codes(self):
        """Test codes parse back to flags"""
        flags = parse_flag_codes(["?!", "TU"])
        assert flags.modifier is True
        assert flags.trial_use is True
        assert flags.must_support is None

    def test_parse_unknown_flag(self):
        """Test an unknown code"""
        with pytest.raises(ValueError, match="Unknown flag: XX"):
            parse_flag_codes(["MS", "XX"])

    def test_merge(self):
        """Test merging keeps flags set on either side"""
        merged = merge_flags(Flags(must_support=True), Flags(summary=True))
        assert flag_codes(merged) == ["MS", "SU"]

    def test_is_empty(self):
        """Test an empty flag set"""
        assert Flags().is_empty()
        assert not Flags(draft=True).is_empty()


class TestSourceInfo:
    """Test source locations"""

    def test_single_line(self):
        """Test a single-line location"""
        assert str(SourceInfo(file="profiles.yaml", start_line=4)) == "profiles.yaml:4"

    def test_line_range(self):
        """Test a multi-line location"""
        info = SourceInfo(file="profiles.yaml", start_line=4, end_line=6)
        assert str(info) == "profiles.yaml:4 - 6"

    def test_file_only(self):
        """Test a location without lines"""
        assert str(SourceInfo(file="profiles.yaml")) == "profiles.yaml"
