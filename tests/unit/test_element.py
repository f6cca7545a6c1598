"""
ElementDefinition Unit Tests

Tests cardinality, slicing, value assignment, unfolding, type constraints,
flags and bindings against the Observation and Patient definitions
"""

import logging

import pytest

from fsh_forge.core.diff import apply_diff
from fsh_forge.core.element import ElementDefinition, ElementType
from fsh_forge.core.errors import (
    BindingStrengthError,
    CodedTypeNotFoundError,
    DuplicateSliceError,
    FixedToPatternError,
    InvalidCardinalityError,
    InvalidElementForSlicingError,
    InvalidMappingError,
    InvalidMaxOfSliceError,
    InvalidMustSupportError,
    InvalidSumOfSliceMinsError,
    InvalidTypeError,
    InvalidUriError,
    MismatchedTypeError,
    MultipleStandardsStatusError,
    NarrowingRootCardinalityError,
    NoSingleTypeError,
    NonAbstractParentOfSpecializationError,
    SliceTypeRemovalError,
    SlicingDefinitionError,
    SlicingNotDefinedError,
    TypeNotFoundError,
    ValueAlreadyAssignedError,
    ValueAlreadyFixedError,
    WideningCardinalityError,
)
from fsh_forge.core.rules import Flags, OnlyRuleType
from fsh_forge.core.values import FshCode, FshQuantity, FshReference


@pytest.fixture
def profile(observation):
    """Observation as the starting point of a profile"""
    observation.derivation = "constraint"
    return observation


def slice_components(sd, *names):
    component = sd.find_element("Observation.component")
    component.slice_it("pattern", "code", False, "open")
    return [component.add_slice(name) for name in names]


class TestCardinality:
    """Test constrain_cardinality"""

    def test_narrow_cardinality(self, observation):
        """Test narrowing within the current range"""
        category = observation.find_element("Observation.category")
        category.constrain_cardinality(1, "5")
        assert category.min == 1
        assert category.max == "5"

    def test_max_must_be_number(self, observation):
        """Test a max that is neither a number nor *"""
        category = observation.find_element("Observation.category")
        with pytest.raises(InvalidCardinalityError) as exc_info:
            category.constrain_cardinality(0, "many")
        assert "max is many" in str(exc_info.value)
        assert (category.min, category.max) == (0, "*")

    def test_widening_is_rejected(self, observation):
        """Test widening leaves the element unchanged"""
        category = observation.find_element("Observation.category")
        category.constrain_cardinality(1, "5")
        with pytest.raises(WideningCardinalityError) as exc_info:
            category.constrain_cardinality(0, "10")
        assert exc_info.value.original_min == 1
        assert exc_info.value.original_max == "5"
        assert category.min == 1
        assert category.max == "5"

    def test_min_greater_than_max(self, observation):
        """Test min > max"""
        category = observation.find_element("Observation.category")
        with pytest.raises(InvalidCardinalityError):
            category.constrain_cardinality(3, "2")

    def test_keep_current_bounds(self, observation):
        """Test omitted bounds keep their current values"""
        category = observation.find_element("Observation.category")
        category.constrain_cardinality(None, "3")
        assert (category.min, category.max) == (0, "3")
        category.constrain_cardinality(1, "")
        assert (category.min, category.max) == (1, "3")

    def test_same_cardinality_is_allowed(self, observation):
        """Test constraining to the current range"""
        status = observation.find_element("Observation.status")
        status.constrain_cardinality(1, "1")
        assert (status.min, status.max) == (1, "1")

    def test_slice_mins_raise_sliced_element_min(self, observation):
        """Test slice mins add up into the sliced element's min"""
        systolic, diastolic = slice_components(observation, "Systolic", "Diastolic")
        systolic.constrain_cardinality(1, "1")
        diastolic.constrain_cardinality(1, "1")
        component = observation.find_element("Observation.component")
        assert component.min == 2
        assert component.max == "*"

    def test_sum_of_slice_mins(self, observation):
        """Test slice mins may not exceed the sliced element's max"""
        component = observation.find_element("Observation.component")
        component.constrain_cardinality(0, "2")
        a, b, c = slice_components(observation, "A", "B", "C")
        a.constrain_cardinality(1, "2")
        b.constrain_cardinality(1, "2")
        with pytest.raises(InvalidSumOfSliceMinsError) as exc_info:
            c.constrain_cardinality(1, "2")
        assert exc_info.value.sum_mins == 3
        assert exc_info.value.sliced_element_id == "Observation.component"
        assert (c.min, c.max) == (0, "2")
        assert (component.min, component.max) == (2, "2")

    def test_slice_max_within_sliced_max(self, observation):
        """Test a slice's max may not exceed the sliced element's max"""
        component = observation.find_element("Observation.component")
        component.constrain_cardinality(0, "3")
        (a,) = slice_components(observation, "A")
        with pytest.raises(InvalidMaxOfSliceError) as exc_info:
            a.constrain_cardinality(0, "5")
        assert exc_info.value.slice_name == "A"

    def test_narrowing_root_below_slice_max(self, observation):
        """Test the sliced element cannot be narrowed below a bounded slice max"""
        (a,) = slice_components(observation, "A")
        a.constrain_cardinality(0, "3")
        component = observation.find_element("Observation.component")
        with pytest.raises(NarrowingRootCardinalityError) as exc_info:
            component.constrain_cardinality(0, "2")
        assert exc_info.value.existing_slice == "Observation.component:A"
        assert component.max == "*"

    def test_unbounded_slices_are_reduced(self, observation, caplog):
        """Test unbounded slice maxes are reduced to the new max with a warning"""
        a, b = slice_components(observation, "A", "B")
        component = observation.find_element("Observation.component")
        with caplog.at_level(logging.WARNING):
            component.constrain_cardinality(0, "1")
        assert a.max == "1"
        assert b.max == "1"
        assert "has been reduced" in caplog.text
        assert "A,B" in caplog.text

    def test_connected_elements_follow(self, fisher, observation):
        """Test matching elements inside slices are narrowed too"""
        (systolic,) = slice_components(observation, "Systolic")
        systolic.unfold(fisher)
        observation.find_element("Observation.component.value[x]").constrain_cardinality(1, "1")
        connected = observation.find_element("Observation.component:Systolic.value[x]")
        assert (connected.min, connected.max) == (1, "1")

    def test_narrowing_root_conflicts_with_connected(self, fisher, observation):
        """Test a connected element's min blocks narrowing the max below it"""
        (systolic,) = slice_components(observation, "Systolic")
        systolic.unfold(fisher)
        observation.find_element("Observation.component:Systolic.value[x]").constrain_cardinality(1, "1")
        with pytest.raises(NarrowingRootCardinalityError):
            observation.find_element("Observation.component.value[x]").constrain_cardinality(0, "0")


class TestCardinalityErrorOrder:
    """Test which error is reported when several checks fail"""

    def test_invalid_before_max_of_slice(self, observation):
        """Test min > max is reported before the slice max check"""
        component = observation.find_element("Observation.component")
        component.constrain_cardinality(0, "3")
        (a,) = slice_components(observation, "A")
        with pytest.raises(InvalidCardinalityError):
            a.constrain_cardinality(5, "4")

    def test_max_of_slice_before_widening(self, observation):
        """Test the slice max check is reported before widening"""
        component = observation.find_element("Observation.component")
        component.constrain_cardinality(0, "3")
        (a,) = slice_components(observation, "A")
        assert a.max == "3"
        with pytest.raises(InvalidMaxOfSliceError):
            a.constrain_cardinality(0, "5")

    def test_widening_before_narrowing_root(self, observation):
        """Test widening is reported before slice conflicts"""
        (a,) = slice_components(observation, "A")
        a.constrain_cardinality(1, "3")
        component = observation.find_element("Observation.component")
        assert component.min == 1
        with pytest.raises(WideningCardinalityError):
            component.constrain_cardinality(0, "2")


class TestSlicing:
    """Test slice_it and add_slice"""

    def test_slice_and_add(self, observation):
        """Test slicing and adding a slice"""
        component = observation.find_element("Observation.component")
        slicing = component.slice_it("pattern", "code", False, "open")
        assert slicing.discriminator[0].type == "pattern"
        assert slicing.discriminator[0].path == "code"
        assert slicing.rules == "open"

        systolic = component.add_slice("SystolicBP")
        assert systolic.id == "Observation.component:SystolicBP"
        assert systolic.path == "Observation.component"
        assert systolic.slice_name == "SystolicBP"
        assert (systolic.min, systolic.max) == (0, "*")
        ids = [e.id for e in observation.elements]
        assert ids.index(systolic.id) == ids.index("Observation.component.referenceRange") + 1

    def test_duplicate_slice(self, observation):
        """Test adding a slice name twice"""
        component = observation.find_element("Observation.component")
        component.slice_it("pattern", "code", False, "open")
        component.add_slice("SystolicBP")
        with pytest.raises(DuplicateSliceError) as exc_info:
            component.add_slice("SystolicBP")
        assert exc_info.value.slice_name == "SystolicBP"
        assert len(component.get_slices()) == 1

    def test_slices_keep_insertion_order(self, observation):
        """Test later slices follow earlier ones"""
        systolic, diastolic = slice_components(observation, "Systolic", "Diastolic")
        ids = [e.id for e in observation.elements]
        assert ids.index(diastolic.id) == ids.index(systolic.id) + 1

    def test_reslice(self, observation):
        """Test adding a slice to a slice"""
        (systolic,) = slice_components(observation, "Systolic")
        reslice = systolic.add_slice("Home")
        assert reslice.id == "Observation.component:Systolic/Home"
        assert reslice.slice_name == "Systolic/Home"
        assert reslice.find_parent_slice() is systolic

    def test_single_element_cannot_be_sliced(self, observation):
        """Test slicing an element with max 1"""
        with pytest.raises(InvalidElementForSlicingError):
            observation.find_element("Observation.status").slice_it("value", "$this")

    def test_choice_can_be_sliced(self, observation):
        """Test slicing a choice element"""
        value = observation.find_element("Observation.value[x]")
        value.slice_it("type", "$this")
        assert value.slicing.ordered is False

    def test_slicing_cannot_loosen(self, observation):
        """Test ordered and rules cannot be loosened"""
        component = observation.find_element("Observation.component")
        component.slice_it("pattern", "code", True, "closed")
        with pytest.raises(SlicingDefinitionError):
            component.slice_it("pattern", "code", False)
        with pytest.raises(SlicingDefinitionError):
            component.slice_it("pattern", "code", None, "open")

    def test_slicing_adds_discriminators(self, observation):
        """Test a new discriminator is appended to existing slicing"""
        component = observation.find_element("Observation.component")
        component.slice_it("pattern", "code")
        component.slice_it("value", "code.coding.code")
        assert [d.path for d in component.slicing.discriminator] == ["code", "code.coding.code"]

    def test_slice_without_slicing(self, observation):
        """Test adding a slice before slicing is defined"""
        with pytest.raises(SlicingNotDefinedError):
            observation.find_element("Observation.component").add_slice("Systolic")

    def test_typed_slice(self, observation):
        """Test a slice created with a type"""
        value = observation.find_element("Observation.value[x]")
        value.slice_it("type", "$this")
        quantity = value.add_slice("valueQuantity", ElementType(code="Quantity"))
        assert [t.code for t in quantity.type] == ["Quantity"]


class TestUnfold:
    """Test unfolding children from type definitions"""

    def test_unfold_codeable_concept(self, fisher, observation):
        """Test unfolding a CodeableConcept element"""
        added = observation.find_element("Observation.code").unfold(fisher)
        assert [e.id for e in added] == [
            "Observation.code.id",
            "Observation.code.extension",
            "Observation.code.coding",
            "Observation.code.text",
        ]
        ids = [e.id for e in observation.elements]
        start = ids.index("Observation.code") + 1
        assert ids[start : start + 4] == [e.id for e in added]
        assert all(e.structure is observation for e in added)

    def test_unfolded_children_have_no_diff(self, fisher, observation):
        """Test unfolded children start from their inherited state"""
        added = observation.find_element("Observation.code").unfold(fisher)
        assert not any(e.has_diff() for e in added)

    def test_unfold_choice_with_several_types(self, fisher, patient):
        """Test a choice with several types does not unfold"""
        before = [e.id for e in patient.elements]
        assert patient.find_element("Patient.deceased[x]").unfold(fisher) == []
        assert [e.id for e in patient.elements] == before

    def test_unfold_slice_copies_sliced_children(self, fisher, observation):
        """Test a slice copies the children of its sliced element"""
        (systolic,) = slice_components(observation, "Systolic")
        added = systolic.unfold(fisher)
        assert "Observation.component:Systolic.code" in [e.id for e in added]
        assert "Observation.component:Systolic.value[x]" in [e.id for e in added]

    def test_unfold_content_reference(self, fisher, observation):
        """Test a contentReference element copies the referenced children"""
        element = observation.find_element("Observation.component.referenceRange")
        added = element.unfold(fisher)
        assert "Observation.component.referenceRange.low" in [e.id for e in added]
        assert element.content_reference is None
        assert [t.code for t in element.type] == ["BackboneElement"]


class TestAssignValue:
    """Test fixed[x] and pattern[x] assignment"""

    def test_fix_code(self, observation):
        """Test fixing a code, twice with the same value"""
        status = observation.find_element("Observation.status")
        status.assign_value("final", True)
        status.assign_value("final", True)
        assert status.values["fixedCode"] == "final"

    def test_fix_different_code(self, observation):
        """Test fixing a different value"""
        status = observation.find_element("Observation.status")
        status.assign_value("final", True)
        with pytest.raises(ValueAlreadyFixedError) as exc_info:
            status.assign_value("amended", True)
        assert exc_info.value.found_value == '"final"'
        assert "already fixed" in str(exc_info.value)
        assert status.values["fixedCode"] == "final"

    def test_pattern_after_fixed(self, observation):
        """Test a pattern cannot replace a fixed value"""
        status = observation.find_element("Observation.status")
        status.assign_value(FshCode(code="final"), True)
        with pytest.raises(FixedToPatternError):
            status.assign_value(FshCode(code="final"))

    def test_pattern_codeable_concept(self, observation):
        """Test a code assigned to a CodeableConcept"""
        code = observation.find_element("Observation.code")
        code.assign_value(FshCode(code="1234-5", system="http://loinc.org"))
        assert code.values["patternCodeableConcept"] == {
            "coding": [{"code": "1234-5", "system": "http://loinc.org"}]
        }

    def test_pattern_can_be_extended(self, observation):
        """Test a pattern is replaced by a value that matches it"""
        code = observation.find_element("Observation.code")
        code.assign_value(FshCode(code="1234-5", system="http://loinc.org"))
        code.assign_value(FshCode(code="1234-5", system="http://loinc.org", display="Test"))
        coding = code.values["patternCodeableConcept"]["coding"][0]
        assert coding["display"] == "Test"

    def test_conflicting_pattern(self, observation):
        """Test a pattern that conflicts with the existing one"""
        code = observation.find_element("Observation.code")
        code.assign_value(FshCode(code="1234-5", system="http://loinc.org"))
        with pytest.raises(ValueAlreadyAssignedError):
            code.assign_value(FshCode(code="9999-9", system="http://loinc.org"))

    def test_child_conflicts_with_parent_pattern(self, fisher, observation):
        """Test a child value implied by a parent pattern"""
        code = observation.find_element("Observation.code")
        code.assign_value(FshCode(code="1234-5", system="http://loinc.org"))
        system = observation.find_element_by_path("code.coding.system", fisher)
        with pytest.raises(ValueAlreadyAssignedError):
            system.assign_value("http://snomed.info/sct")
        system.assign_value("http://loinc.org")
        assert system.values["patternUri"] == "http://loinc.org"

    def test_quantity(self, observation):
        """Test a quantity with a UCUM unit"""
        low = observation.find_element("Observation.referenceRange.low")
        low.assign_value(
            FshQuantity(value=5, unit=FshCode(code="mg", system="http://unitsofmeasure.org"))
        )
        assert low.values["patternQuantity"] == {
            "value": 5,
            "code": "mg",
            "system": "http://unitsofmeasure.org",
        }

    def test_quantity_specialization(self, fisher, observation):
        """Test a quantity on a Quantity specialization uses the specialization's name"""
        low = observation.find_element("Observation.referenceRange.low")
        low.type = [ElementType(code="Age")]
        low.assign_value(
            FshQuantity(value=5, unit=FshCode(code="a", system="http://unitsofmeasure.org")), False, fisher
        )
        assert low.values == {
            "patternAge": {"value": 5, "code": "a", "system": "http://unitsofmeasure.org"}
        }

    def test_quantity_on_other_type(self, observation):
        """Test a quantity on an element that is not a quantity"""
        with pytest.raises(MismatchedTypeError):
            observation.find_element("Observation.status").assign_value(
                FshQuantity(value=5, unit=FshCode(code="mg", system="http://unitsofmeasure.org"))
            )

    def test_reference(self, fisher, observation):
        """Test a reference"""
        subject = observation.find_element("Observation.subject")
        subject.assign_value(FshReference(reference="Patient/123"), False, fisher)
        assert subject.values["patternReference"] == {"reference": "Patient/123"}

    def test_mismatched_type(self, observation):
        """Test a boolean on a CodeableConcept"""
        with pytest.raises(MismatchedTypeError):
            observation.find_element("Observation.code").assign_value(True)

    def test_invalid_string_for_type(self, observation):
        """Test a string that is not a valid date"""
        effective = observation.find_element("Observation.effective[x]")
        with pytest.raises(MismatchedTypeError):
            effective.assign_value("yesterday")
        effective.assign_value("2024-01-15")
        assert effective.values["patternDateTime"] == "2024-01-15"

    def test_no_single_type(self, observation):
        """Test assigning to an element with several types"""
        with pytest.raises(NoSingleTypeError):
            observation.find_element("Observation.value[x]").assign_value("text")

    def test_integer(self, fisher, observation):
        """Test numbers on an integer type slice"""
        integer = observation.find_element_by_path("valueInteger", fisher)
        integer.assign_value(5)
        assert integer.values["patternInteger"] == 5
        with pytest.raises(MismatchedTypeError):
            integer.assign_value(2.5)

    def test_invalid_code_system(self, observation):
        """Test a system that is not a URI on a CodeableConcept"""
        with pytest.raises(InvalidUriError):
            observation.find_element("Observation.code").assign_value(
                FshCode(code="x", system="not a uri")
            )


class TestConstrainType:
    """Test type restriction"""

    def test_only_quantity(self, fisher, observation):
        """Test restricting a choice to one type"""
        value = observation.find_element("Observation.value[x]")
        value.constrain_type([OnlyRuleType(type="Quantity")], fisher)
        assert [t.code for t in value.type] == ["Quantity"]

    def test_several_types(self, fisher, observation):
        """Test restricting a choice to two types"""
        value = observation.find_element("Observation.value[x]")
        value.constrain_type(
            [OnlyRuleType(type="string"), OnlyRuleType(type="CodeableConcept")], fisher
        )
        assert [t.code for t in value.type] == ["CodeableConcept", "string"]

    def test_profile_of_type(self, fisher, observation):
        """Test a constraint of a type becomes a profile"""
        value = observation.find_element("Observation.value[x]")
        value.constrain_type([OnlyRuleType(type="Age")], fisher)
        assert [t.code for t in value.type] == ["Quantity"]
        assert value.type[0].profile == ["http://hl7.org/fhir/StructureDefinition/Age"]

    def test_reference_target(self, fisher, observation):
        """Test narrowing reference targets"""
        subject = observation.find_element("Observation.subject")
        subject.constrain_type([OnlyRuleType(type="Patient", is_reference=True)], fisher)
        assert subject.type[0].code == "Reference"
        assert subject.type[0].target_profile == ["http://hl7.org/fhir/StructureDefinition/Patient"]

    def test_reference_target_not_allowed(self, fisher, observation):
        """Test a reference target outside the current targets"""
        subject = observation.find_element("Observation.subject")
        with pytest.raises(InvalidTypeError):
            subject.constrain_type([OnlyRuleType(type="Practitioner", is_reference=True)], fisher)

    def test_unknown_type(self, fisher, observation):
        """Test a type that cannot be found"""
        with pytest.raises(TypeNotFoundError):
            observation.find_element("Observation.value[x]").constrain_type(
                [OnlyRuleType(type="NoSuchType")], fisher
            )

    def test_type_not_allowed(self, fisher, observation):
        """Test a type that matches none of the current types"""
        with pytest.raises(InvalidTypeError):
            observation.find_element("Observation.value[x]").constrain_type(
                [OnlyRuleType(type="HumanName")], fisher
            )

    def test_specialization_of_non_abstract_type(self, fisher, observation):
        """Test code cannot replace string"""
        with pytest.raises(NonAbstractParentOfSpecializationError):
            observation.find_element("Observation.note").constrain_type(
                [OnlyRuleType(type="code")], fisher
            )

    def test_connected_slices_follow(self, fisher, observation):
        """Test slice copies of the element are restricted too"""
        (systolic,) = slice_components(observation, "Systolic")
        systolic.unfold(fisher)
        observation.find_element("Observation.component.value[x]").constrain_type(
            [OnlyRuleType(type="Quantity")], fisher
        )
        connected = observation.find_element("Observation.component:Systolic.value[x]")
        assert [t.code for t in connected.type] == ["Quantity"]

    def test_slice_type_removal(self, fisher, observation):
        """Test a restriction that would leave a slice without types"""
        (systolic,) = slice_components(observation, "Systolic")
        systolic.unfold(fisher)
        observation.find_element("Observation.component:Systolic.value[x]").constrain_type(
            [OnlyRuleType(type="string")], fisher
        )
        with pytest.raises(SliceTypeRemovalError):
            observation.find_element("Observation.component.value[x]").constrain_type(
                [OnlyRuleType(type="Quantity")], fisher
            )


class TestFlags:
    """Test apply_flags"""

    def test_must_support(self, profile):
        """Test must-support"""
        status = profile.find_element("Observation.status")
        status.apply_flags(Flags(must_support=True))
        assert status.must_support is True

    def test_must_support_on_specialization(self, observation):
        """Test must-support is not allowed outside profiles"""
        with pytest.raises(InvalidMustSupportError):
            observation.find_element("Observation.status").apply_flags(Flags(must_support=True))

    def test_must_support_reaches_slice_copies(self, fisher, profile):
        """Test must-support propagates to copies inside slices, not to slices"""
        (systolic,) = slice_components(profile, "Systolic")
        systolic.unfold(fisher)
        profile.find_element("Observation.component.code").apply_flags(Flags(must_support=True))
        assert profile.find_element("Observation.component:Systolic.code").must_support is True
        profile.find_element("Observation.component").apply_flags(Flags(must_support=True))
        assert systolic.must_support is None

    def test_summary_and_modifier(self, observation):
        """Test summary and modifier flags"""
        note = observation.find_element("Observation.note")
        note.apply_flags(Flags(summary=True, modifier=True))
        assert note.is_summary is True
        assert note.is_modifier is True

    def test_standards_status(self, observation):
        """Test a standards status becomes an extension"""
        note = observation.find_element("Observation.note")
        note.apply_flags(Flags(trial_use=True))
        assert note.extension[-1]["valueCode"] == "trial-use"
        note.apply_flags(Flags(normative=True))
        assert [e["valueCode"] for e in note.extension] == ["normative"]

    def test_multiple_standards_status(self, observation):
        """Test two standards statuses at once"""
        with pytest.raises(MultipleStandardsStatusError):
            observation.find_element("Observation.note").apply_flags(
                Flags(trial_use=True, draft=True)
            )


class TestBinding:
    """Test bind_to_vs"""

    def test_bind(self, observation):
        """Test binding a coded element"""
        category = observation.find_element("Observation.category")
        category.bind_to_vs("http://example.org/ValueSet/categories", "required")
        assert category.binding.value_set == "http://example.org/ValueSet/categories"
        assert category.binding.strength == "required"

    def test_binding_cannot_weaken(self, observation):
        """Test a weaker strength is rejected"""
        status = observation.find_element("Observation.status")
        with pytest.raises(BindingStrengthError):
            status.bind_to_vs("http://example.org/ValueSet/status", "extensible")

    def test_unknown_strength(self, observation):
        """Test a strength that is not a binding strength"""
        category = observation.find_element("Observation.category")
        with pytest.raises(BindingStrengthError, match="strong is not one of"):
            category.bind_to_vs("http://example.org/ValueSet/categories", "strong")
        assert category.binding.strength == "preferred"

    def test_binding_requires_coded_type(self, observation):
        """Test binding a Reference"""
        with pytest.raises(CodedTypeNotFoundError):
            observation.find_element("Observation.subject").bind_to_vs(
                "http://example.org/ValueSet/subjects", "required"
            )

    def test_binding_requires_uri(self, observation):
        """Test a value set that is not a URI"""
        with pytest.raises(InvalidUriError):
            observation.find_element("Observation.category").bind_to_vs("not a uri", "required")


class TestConstraintsAndMappings:
    """Test apply_constraint and apply_mapping"""

    def test_constraint_is_appended(self, observation):
        """Test an invariant is added after the inherited ones"""
        root = observation.elements[0]
        index = root.apply_constraint("obs-1", "error", "Must have a value", "value.exists()")
        assert index == 1
        assert root.constraint[1]["key"] == "obs-1"

    def test_mapping(self, observation):
        """Test a mapping is appended"""
        status = observation.find_element("Observation.status")
        status.apply_mapping("v2", "OBX-11", "Result status")
        assert status.mapping[-1] == {"identity": "v2", "map": "OBX-11", "comment": "Result status"}

    def test_mapping_requires_map(self, observation):
        """Test a mapping without a map"""
        with pytest.raises(InvalidMappingError):
            observation.find_element("Observation.status").apply_mapping("v2", None)


class TestDifferential:
    """Test element baselines and diffs"""

    def test_unchanged_element(self, observation):
        """Test an inherited element has no diff"""
        status = observation.find_element("Observation.status")
        assert not status.has_diff()
        assert status.calculate_diff() == {"id": "Observation.status", "path": "Observation.status"}

    def test_unchanged_slice_keeps_slice_name(self, observation):
        """Test an unchanged slice has no diff but its diff still names the slice"""
        (a,) = slice_components(observation, "A")
        a.capture_original()
        assert not a.has_diff()
        assert a.calculate_diff() == {
            "id": "Observation.component:A",
            "path": "Observation.component",
            "sliceName": "A",
        }

    def test_changed_element(self, observation):
        """Test a changed element's diff"""
        category = observation.find_element("Observation.category")
        category.constrain_cardinality(1, "5")
        assert category.has_diff()
        assert category.calculate_diff() == {
            "id": "Observation.category",
            "path": "Observation.category",
            "min": 1,
            "max": "5",
        }

    def test_diff_reproduces_element(self, observation):
        """Test applying the diff to the baseline gives the current element"""
        status = observation.find_element("Observation.status")
        status.assign_value("final", True)
        status.apply_mapping("v2", "OBX-11")
        status.short = None
        assert apply_diff(status.original, status.calculate_diff()) == status.to_json()

    def test_new_element_diff(self):
        """Test an element without baseline diffs against nothing"""
        element = ElementDefinition("Thing.name")
        element.min = 0
        assert element.calculate_diff() == {"id": "Thing.name", "path": "Thing.name", "min": 0}

    def test_json_round_trip(self, observation):
        """Test from_json keeps unknown and value properties"""
        status = observation.find_element("Observation.status")
        json = status.to_json()
        json["fixedCode"] = "final"
        json["requirements"] = "Needed"
        element = ElementDefinition.from_json(json)
        assert element.values == {"fixedCode": "final"}
        assert element.other["requirements"] == "Needed"
        assert element.to_json() == json
