"""
fsh-forge error definitions

Errors raised by element and structure operations, grouped by cause:
CardinalityError, TypeConstraintError, AssignmentError, SlicingError,
StructuralError, BindingError and MetadataError.
"""

from typing import Any, Dict, List, Optional


class ForgeError(Exception):
    """fsh-forge base exception"""

    fhir_references: List[str] = []

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Category bases


class CardinalityError(ForgeError):
    """
    Cardinality error

    Occurs when a min/max constraint is invalid, widens the current range,
    or conflicts with slices already defined on the element
    """

    fhir_references = ["http://hl7.org/fhir/R4/profiling.html#cardinality"]


class TypeConstraintError(ForgeError):
    """
    Type constraint error

    Occurs when a type restriction names an unknown type or one that does not
    specialize any currently allowed type
    """

    fhir_references = [
        "http://hl7.org/fhir/R4/elementdefinition-definitions.html#ElementDefinition.type"
    ]


class AssignmentError(ForgeError):
    """
    Value assignment error

    Occurs when a fixed[x] or pattern[x] value cannot be set on an element
    """

    fhir_references = [
        "http://hl7.org/fhir/R4/elementdefinition-definitions.html#ElementDefinition.fixed_x_",
        "http://hl7.org/fhir/R4/elementdefinition-definitions.html#ElementDefinition.pattern_x_",
    ]


class SlicingError(ForgeError):
    """
    Slicing error

    Occurs when slicing is defined on an element that cannot be sliced, or a
    slice conflicts with the existing slicing
    """

    fhir_references = ["http://hl7.org/fhir/R4/profiling.html#slicing"]


class StructuralError(ForgeError):
    """
    Structural error

    Occurs when a path cannot be resolved or a parent definition is missing
    """

    fhir_references = ["https://www.hl7.org/fhir/R4/profiling.html#resources"]


class BindingError(ForgeError):
    """Terminology binding error"""

    fhir_references = [
        "http://hl7.org/fhir/R4/elementdefinition-definitions.html#ElementDefinition.binding"
    ]


class MetadataError(ForgeError):
    """Element flag, mapping or identifier error"""

    pass


# Cardinality


class InvalidCardinalityError(CardinalityError):
    fhir_references = [
        "http://hl7.org/fhir/R4/elementdefinition-definitions.html#ElementDefinition.min"
    ]

    def __init__(self, min: int, max: str):
        if max == "*" or str(max).isdigit():
            message = f"The min must be <= max, but min {min} is > max {max}."
        else:
            message = f"The max must be a whole number or *, but max is {max}."
        super().__init__(message, {"min": min, "max": max})
        self.min = min
        self.max = max


class WideningCardinalityError(CardinalityError):
    def __init__(self, original_min: int, original_max: str, new_min: int, new_max: str):
        super().__init__(
            "Cardinality constraints cannot widen the cardinality.  "
            f"{new_min}..{new_max} is wider than {original_min}..{original_max}.",
            {
                "original_min": original_min,
                "original_max": original_max,
                "new_min": new_min,
                "new_max": new_max,
            },
        )
        self.original_min = original_min
        self.original_max = original_max
        self.new_min = new_min
        self.new_max = new_max


class NarrowingRootCardinalityError(CardinalityError):
    def __init__(
        self,
        root_element: str,
        existing_slice: str,
        new_min: int,
        new_max: str,
        slice_min: int,
        slice_max: str,
    ):
        super().__init__(
            f"Cardinality on {root_element} cannot be narrowed to {new_min}..{new_max} "
            f"due to existing slice {existing_slice} with cardinality {slice_min}..{slice_max}.",
            {
                "root_element": root_element,
                "existing_slice": existing_slice,
                "new_min": new_min,
                "new_max": new_max,
                "slice_min": slice_min,
                "slice_max": slice_max,
            },
        )
        self.root_element = root_element
        self.existing_slice = existing_slice
        self.new_min = new_min
        self.new_max = new_max
        self.slice_min = slice_min
        self.slice_max = slice_max


class InvalidSumOfSliceMinsError(CardinalityError):
    fhir_references = ["http://www.hl7.org/fhir/profiling.html#slice-cardinality"]

    def __init__(self, sum_mins: int, max: str, sliced_element_id: str):
        super().__init__(
            "The sum of mins of slices must be <= max of sliced element, but sum of mins "
            f"({sum_mins}) > max ({max}) of {sliced_element_id}.",
            {"sum_mins": sum_mins, "max": max, "sliced_element_id": sliced_element_id},
        )
        self.sum_mins = sum_mins
        self.max = max
        self.sliced_element_id = sliced_element_id


class InvalidMaxOfSliceError(CardinalityError):
    fhir_references = ["http://www.hl7.org/fhir/profiling.html#slice-cardinality"]

    def __init__(self, slice_max: str, slice_name: str, sliced_element_max: str):
        super().__init__(
            "No individual slice may have max > max of sliced element, but max of slice "
            f"{slice_name} ({slice_max}) > max of sliced element ({sliced_element_max}).",
            {
                "slice_max": slice_max,
                "slice_name": slice_name,
                "sliced_element_max": sliced_element_max,
            },
        )
        self.slice_max = slice_max
        self.slice_name = slice_name
        self.sliced_element_max = sliced_element_max


# Types


class TypeNotFoundError(TypeConstraintError):
    def __init__(self, unfound_type: str):
        super().__init__(
            f'No definition for the type "{unfound_type}" could be found.',
            {"type": unfound_type},
        )
        self.unfound_type = unfound_type


def allowed_types_to_string(types: List[Any]) -> str:
    """
    Render allowed types as a list of choices, for example
    ``Condition or Reference(Patient | Practitioner)``
    """
    if not types:
        return "<none>"
    strings: List[str] = []
    for t in types:
        if t.code == "Reference":
            strings.append(f"Reference({' | '.join(t.target_profile or [])})")
        elif t.profile:
            strings.extend(t.profile)
        else:
            strings.append(t.code)
    return " or ".join(strings)


class InvalidTypeError(TypeConstraintError):
    def __init__(self, invalid_type: str, allowed_types: List[Any]):
        super().__init__(
            f'The type "{invalid_type}" does not match any of the allowed types: '
            f"{allowed_types_to_string(allowed_types)}",
            {"type": invalid_type},
        )
        self.invalid_type = invalid_type
        self.allowed_types = allowed_types


class NonAbstractParentOfSpecializationError(TypeConstraintError):
    def __init__(self, invalid_type: str, non_abstract_parent: str):
        super().__init__(
            f"The type {non_abstract_parent} is not abstract, so it cannot be constrained "
            f"to the specialization {invalid_type}.",
            {"type": invalid_type, "parent": non_abstract_parent},
        )
        self.invalid_type = invalid_type
        self.non_abstract_parent = non_abstract_parent


class InvalidChoiceTypeRulePathError(TypeConstraintError):
    fhir_references = ["http://hl7.org/fhir/R4/formats.html#choice"]

    def __init__(self, path: str, rule_kind: str):
        super().__init__(
            f"As a FHIR choice data type, the specified {path} for {rule_kind} must end with '[x]'.",
            {"path": path, "rule_kind": rule_kind},
        )
        self.path = path
        self.rule_kind = rule_kind


class SliceTypeRemovalError(TypeConstraintError):
    def __init__(self, root_path: str, slice_id: str):
        super().__init__(
            f"Type constraint on {root_path} would eliminate all types on slice {slice_id}",
            {"root_path": root_path, "slice_id": slice_id},
        )
        self.root_path = root_path
        self.slice_id = slice_id


# Assignment


class MismatchedTypeError(AssignmentError):
    def __init__(self, value_type: str, value: Any, element_type: str):
        super().__init__(
            f"Cannot fix {value_type} value: {value}. Value does not match element type: {element_type}",
            {"value_type": value_type, "value": str(value), "element_type": element_type},
        )
        self.value_type = value_type
        self.value = value
        self.element_type = element_type


class NoSingleTypeError(AssignmentError):
    def __init__(self, value_type: str):
        super().__init__(
            f"Cannot assign {value_type} value on this element since this element does not have a single type",
            {"value_type": value_type},
        )
        self.value_type = value_type


class ValueAlreadyAssignedError(AssignmentError):
    verb = "assign"
    state = "assigned"

    def __init__(self, requested_value: Any, element_type: str, found_value: Any):
        super().__init__(
            f"Cannot {self.verb} {requested_value} to this element; a different "
            f"{element_type} is already {self.state}: {found_value}.",
            {
                "requested_value": requested_value,
                "element_type": element_type,
                "found_value": found_value,
            },
        )
        self.requested_value = requested_value
        self.element_type = element_type
        self.found_value = found_value


class ValueAlreadyFixedError(ValueAlreadyAssignedError):
    verb = "fix"
    state = "fixed"


class FixedToPatternError(AssignmentError):
    def __init__(self, fixed_property: str):
        super().__init__(
            "Cannot assign this element using a pattern; as it is already assigned in the "
            f"StructureDefinition using {fixed_property}. Since fixed[x] requires exact matches, "
            "while pattern[x] allows for variation in unspecified properties, fixed[x] cannot be "
            "replaced by pattern[x] since it would loosen the constraint.",
            {"fixed_property": fixed_property},
        )
        self.fixed_property = fixed_property


class UnitMismatchError(AssignmentError):
    fhir_references = ["http://hl7.org/fhir/R4/datatypes.html#Range"]

    def __init__(self, unit_1: Optional[str], unit_2: Optional[str]):
        super().__init__(
            f"The quantities must have matching units, but their units are {unit_1} and {unit_2}.",
            {"units": [unit_1, unit_2]},
        )


class CodeAndSystemMismatchError(AssignmentError):
    fhir_references = ["http://hl7.org/fhir/R4/datatypes.html#Range"]

    def __init__(
        self,
        code_1: Optional[str],
        code_2: Optional[str],
        system_1: Optional[str],
        system_2: Optional[str],
    ):
        super().__init__(
            f"The quantities must have matching codes and systems, but their codes are {code_1} "
            f"and {code_2} and their systems are {system_1} and {system_2}.",
            {"codes": [code_1, code_2], "systems": [system_1, system_2]},
        )


class InvalidRangeValueError(AssignmentError):
    fhir_references = ["http://hl7.org/fhir/R4/datatypes-definitions.html#Range"]

    def __init__(self, low: float, high: float):
        super().__init__(
            f"The low must be <= high, but low {low} is > high {high}.",
            {"low": low, "high": high},
        )


class ValueConflictsWithClosedSlicingError(AssignmentError):
    def __init__(self, requested_value: Any):
        super().__init__(
            f"Cannot assign {requested_value} to this element since it conflicts with all "
            "values of the closed slicing.",
            {"requested_value": requested_value},
        )
        self.requested_value = requested_value


class InvalidUriError(AssignmentError):
    def __init__(self, not_uri: str):
        super().__init__(f'Resolved value "{not_uri}" is not a valid URI.', {"value": not_uri})
        self.not_uri = not_uri


class InvalidDateTimeError(AssignmentError):
    fhir_references = ["http://hl7.org/fhir/R4/datatypes.html#dateTime"]

    def __init__(self, non_date: str):
        super().__init__(
            f"The string {non_date} does not represent a valid FHIR dateTime.",
            {"value": non_date},
        )


# Slicing


class InvalidElementForSlicingError(SlicingError):
    fhir_references = [
        "http://hl7.org/fhir/elementdefinition-definitions.html#ElementDefinition.slicing"
    ]

    def __init__(self, path: str):
        super().__init__(
            f"Cannot slice element '{path}' since FHIR only allows slicing on choice elements "
            "(e.g., value[x]) or elements with max > 1",
            {"path": path},
        )
        self.path = path


class DuplicateSliceError(SlicingError):
    def __init__(self, structure: str, element: str, slice_name: str):
        super().__init__(
            f"Slice named {slice_name} already exists on element {element} of {structure}",
            {"structure": structure, "element": element, "slice_name": slice_name},
        )
        self.slice_name = slice_name


class SlicingDefinitionError(SlicingError):
    fhir_references = ["http://hl7.org/fhir/R4/profiling.html#reslicing"]

    def __init__(self, property: str, old_value: Any, new_value: Any):
        super().__init__(
            f"Cannot constraint slicing property '{property}' from {old_value} to {new_value}.",
            {"property": property, "old_value": old_value, "new_value": new_value},
        )
        self.property = property


class SlicingNotDefinedError(SlicingError):
    def __init__(self, id: str, slice_name: str):
        super().__init__(
            f"Cannot create {slice_name} slice. No slicing found for {id}.",
            {"id": id, "slice_name": slice_name},
        )


class InvalidExtensionSliceError(SlicingError):
    def __init__(self, slice_name: str):
        super().__init__(
            f"The slice {slice_name} on extension must reference an existing extension, "
            "or fix a url if the extension is defined inline.",
            {"slice_name": slice_name},
        )


# Structural


class CannotResolvePathError(StructuralError):
    def __init__(self, path: str):
        super().__init__(f"Cannot resolve path {path} to an element", {"path": path})
        self.path = path


class ParentNotDefinedError(StructuralError):
    def __init__(self, child_name: str, parent_name: str):
        super().__init__(
            f"Parent {parent_name} not found for {child_name}",
            {"child": child_name, "parent": parent_name},
        )
        self.child_name = child_name
        self.parent_name = parent_name


class CircularParentError(StructuralError):
    def __init__(self, chain: List[str]):
        super().__init__(
            f"Circular dependency detected in parent chain: {' < '.join(chain)}",
            {"chain": chain},
        )
        self.chain = chain


class InvalidElementAccessError(StructuralError):
    def __init__(self, path: str):
        super().__init__(
            f"Cannot directly access differential or snapshot with path: {path}. "
            "Elements should be targeted for modification by their path.",
            {"path": path},
        )


class ElementAlreadyDefinedError(StructuralError):
    def __init__(self, element_id: str):
        super().__init__(
            f"Cannot define element {element_id} because it has already been defined",
            {"id": element_id},
        )
        self.element_id = element_id


class InvariantNotDefinedError(StructuralError):
    def __init__(self, name: str):
        super().__init__(f"Cannot apply invariant {name}: no such invariant defined", {"name": name})
        self.name = name


class RuleSetNotDefinedError(StructuralError):
    def __init__(self, name: str):
        super().__init__(f"Unable to find definition for RuleSet {name}", {"name": name})
        self.name = name


class CircularInsertError(StructuralError):
    def __init__(self, chain: List[str]):
        super().__init__(
            f"Inserting RuleSet {chain[-1]} would cause a circular dependency: {' > '.join(chain)}",
            {"chain": chain},
        )
        self.chain = chain


# Binding


class BindingStrengthError(BindingError):
    fhir_references = ["http://hl7.org/fhir/R4/terminologies.html#strength"]

    def __init__(self, found_strength: Optional[str], requested_strength: str):
        if found_strength is None:
            message = (
                f"Binding strength {requested_strength} is not one of "
                "example, preferred, extensible, required."
            )
        else:
            message = f"Cannot override {found_strength} binding with {requested_strength} binding."
        super().__init__(
            message,
            {"found": found_strength, "requested": requested_strength},
        )


class CodedTypeNotFoundError(BindingError):
    def __init__(self, found_types: List[str]):
        super().__init__(
            f"Cannot bind value set to {','.join(found_types)}; must be coded (code, Coding, "
            "CodeableConcept, Quantity), or the data types (string, uri).",
            {"found_types": found_types},
        )


# Flags, mappings and identifiers


class MultipleStandardsStatusError(MetadataError):
    fhir_references = [
        "http://hl7.org/fhir/extension-structuredefinition-standards-status.html"
    ]

    def __init__(self, element: str):
        super().__init__(
            f"Cannot apply multiple standards status on {element}", {"element": element}
        )


class InvalidMustSupportError(MetadataError):
    fhir_references = ["http://hl7.org/fhir/R4/profiling.html#mustsupport"]

    def __init__(self, structure: str, element: str):
        super().__init__(
            f"The MustSupport flag is not permitted on element {element} of {structure} "
            "(allowed only in Profiles).",
            {"structure": structure, "element": element},
        )


class InvalidMappingError(MetadataError):
    fhir_references = [
        "https://www.hl7.org/fhir/elementdefinition-definitions.html#ElementDefinition.mapping"
    ]

    def __init__(self):
        super().__init__(
            "Invalid mapping, mapping.identity and mapping.map are 1..1 and must be set."
        )


class InvalidFHIRIdError(MetadataError):
    fhir_references = ["https://www.hl7.org/fhir/datatypes.html#id"]

    def __init__(self, bad_id: str):
        super().__init__(
            f'The string "{bad_id}" does not represent a valid FHIR id. FHIR ids may contain any '
            "combination of upper- or lower-case ASCII letters ('A'..'Z', and 'a'..'z'), numerals "
            "('0'..'9'), '-' and '.', with a length limit of 64 characters.",
            {"id": bad_id},
        )


class InvalidCanonicalUrlError(MetadataError):
    def __init__(self, entity_name: str):
        super().__init__(
            f"Cannot use canonical URL of {entity_name} because it does not exist. "
            f"Be sure that {entity_name} exists and it has a URL.",
            {"entity": entity_name},
        )
