"""
Element Node

One ElementDefinition in a StructureDefinition's element list. It carries
cardinality, types, fixed/pattern values, slicing, flags, bindings,
constraints and mappings, and exposes the constraint operations that rules
are applied through. Every operation checks the FHIR profiling contract
before changing anything and raises a ForgeError subclass on violation.

Tree navigation (parent, children, slices) goes through the owning
StructureDefinition, held as a plain back-reference in ``structure``.
"""

import copy
import logging
import re
from json import dumps
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .diff import compute_diff, changed_props, order_props, prop_for_key
from .errors import (
    BindingStrengthError,
    CannotResolvePathError,
    CodedTypeNotFoundError,
    DuplicateSliceError,
    FixedToPatternError,
    InvalidCanonicalUrlError,
    InvalidCardinalityError,
    InvalidChoiceTypeRulePathError,
    InvalidElementForSlicingError,
    InvalidFHIRIdError,
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
    ValueConflictsWithClosedSlicingError,
    WideningCardinalityError,
)
from .fishable import (
    FhirType,
    Fishable,
    Metadata,
    fish_for_fhir_best_version,
    fish_for_metadata_best_version,
)
from .path import parse_fsh_path, set_property_by_path, split_on_path_periods
from .values import (
    FshCanonical,
    FshCode,
    FshQuantity,
    FshRange,
    FshRatio,
    FshReference,
    fsh_value_to_string,
    to_fhir_json,
)

logger = logging.getLogger(__name__)

STANDARDS_STATUS_URL = (
    "http://hl7.org/fhir/StructureDefinition/structuredefinition-standards-status"
)
FHIR_TYPE_URL = "http://hl7.org/fhir/StructureDefinition/structuredefinition-fhir-type"
QUANTITY_URL = "http://hl7.org/fhir/StructureDefinition/Quantity"

ALLOWED_SLICING_RULES = ["closed", "open", "openAtEnd"]
ALLOWED_DISCRIMINATOR_TYPES = ["value", "exists", "pattern", "type", "profile"]
BINDING_STRENGTHS = ["example", "preferred", "extensible", "required"]
BINDABLE_TYPES = [
    "code",
    "Coding",
    "CodeableConcept",
    "CodeableReference",
    "Quantity",
    "string",
    "uri",
]

URI_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:\S*$")
ID_PATTERN = re.compile(r"^[A-Za-z0-9\-\.]{1,64}$")
FHIRPATH_PRIMITIVE = re.compile(r"^http://hl7\.org/fhirpath/System\.")

_YEAR = r"([0-9]([0-9]([0-9][1-9]|[1-9]0)|[1-9]00)|[1-9]000)"
_TIME = r"([01][0-9]|2[0-3]):[0-5][0-9]:([0-5][0-9]|60)(\.[0-9]+)?"
_ZONE = r"(Z|(\+|-)((0[0-9]|1[0-3]):[0-5][0-9]|14:00))"
STRING_PATTERNS = {
    "uri": re.compile(r"^\S*$"),
    "url": re.compile(r"^\S*$"),
    "canonical": re.compile(r"^\S*$"),
    "base64Binary": re.compile(r"^(\s*([0-9a-zA-Z+/=]){4}\s*)*$"),
    "instant": re.compile(
        rf"^{_YEAR}-(0[1-9]|1[0-2])-(0[1-9]|[1-2][0-9]|3[0-1])T{_TIME}{_ZONE}$"
    ),
    "date": re.compile(rf"^{_YEAR}(-(0[1-9]|1[0-2])(-(0[1-9]|[1-2][0-9]|3[0-1]))?)?$"),
    "dateTime": re.compile(
        rf"^{_YEAR}(-(0[1-9]|1[0-2])(-(0[1-9]|[1-2][0-9]|3[0-1])(T{_TIME}{_ZONE})?)?)?$"
    ),
    "time": re.compile(rf"^{_TIME}$"),
    "oid": re.compile(r"^urn:oid:[0-2](\.(0|[1-9][0-9]*))+$"),
    "id": ID_PATTERN,
    "code": re.compile(r"^[^\s]+( [^\s]+)*$"),
    "markdown": re.compile(r"^\s*(\S|\s)*$"),
    "uuid": re.compile(r".*"),
    "integer64": re.compile(r"^[-]?\d+$"),
    "string": re.compile(r".*", re.DOTALL),
}


def is_uri(value: str) -> bool:
    return bool(URI_PATTERN.match(value or ""))


def is_reference_type(code: Optional[str]) -> bool:
    return code in ("Reference", "CodeableReference")


def is_match(obj: Any, source: Any) -> bool:
    """
    Partial deep match: every property of ``source`` is present in ``obj``

    Every entry of a list in ``source`` must match some entry of the
    corresponding list in ``obj``.
    """
    if isinstance(source, dict):
        return isinstance(obj, dict) and all(
            key in obj and is_match(obj[key], value) for key, value in source.items()
        )
    if isinstance(source, list):
        return isinstance(obj, list) and all(
            any(is_match(o, s) for o in obj) for s in source
        )
    return obj == source


def _upper_first(value: str) -> str:
    return value[:1].upper() + value[1:]


def _max_exceeds(max_a: str, max_b: str) -> bool:
    """True if max_a allows more repetitions than max_b"""
    if max_b == "*":
        return False
    return max_a == "*" or int(max_a) > int(max_b)


class ElementType(BaseModel):
    """ElementDefinition.type entry"""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    actual_code: Optional[str] = Field(default=None, alias="code")
    code_ext: Optional[Dict[str, Any]] = Field(default=None, alias="_code")
    extension: Optional[List[Dict[str, Any]]] = None
    profile: Optional[List[str]] = None
    profile_ext: Optional[List[Any]] = Field(default=None, alias="_profile")
    target_profile: Optional[List[str]] = Field(default=None, alias="targetProfile")
    target_profile_ext: Optional[List[Any]] = Field(default=None, alias="_targetProfile")

    @property
    def code(self) -> Optional[str]:
        """Type code; FHIRPath system types report their FHIR type from the fhir-type extension"""
        for ext in (self.code_ext or {}).get("extension", []) + (self.extension or []):
            if ext.get("url") == FHIR_TYPE_URL:
                return ext.get("valueUrl") or ext.get("valueUri")
        return self.actual_code

    @property
    def is_reference(self) -> bool:
        return is_reference_type(self.code)

    @property
    def is_canonical(self) -> bool:
        return self.code == "canonical"

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, json: Dict[str, Any]) -> "ElementType":
        return cls.model_validate(copy.deepcopy(json))


class SlicingDiscriminator(BaseModel):
    type: str
    path: str


class ElementSlicing(BaseModel):
    model_config = ConfigDict(extra="allow")

    discriminator: Optional[List[SlicingDiscriminator]] = None
    description: Optional[str] = None
    ordered: Optional[bool] = None
    rules: Optional[str] = None


class ElementBinding(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    strength: Optional[str] = None
    description: Optional[str] = None
    value_set: Optional[str] = Field(default=None, alias="valueSet")


class TypeMatch:
    """A rule type matched against one of an element's current types"""

    def __init__(self, metadata: Metadata, code: str, type_name: str):
        self.metadata = metadata
        self.code = code
        self.type_name = type_name


# JSON property name -> attribute name for properties the engine works with directly
_ATTRIBUTES = {
    "extension": "extension",
    "sliceName": "slice_name",
    "slicing": "slicing",
    "short": "short",
    "definition": "definition",
    "min": "min",
    "max": "max",
    "base": "base",
    "contentReference": "content_reference",
    "type": "type",
    "constraint": "constraint",
    "mustSupport": "must_support",
    "isModifier": "is_modifier",
    "isSummary": "is_summary",
    "binding": "binding",
    "mapping": "mapping",
}


class ElementDefinition:
    """
    Element Node

    ``values`` holds the typed value properties (fixed[x], pattern[x],
    defaultValue[x], minValue[x], maxValue[x]) by their JSON names.
    ``other`` holds the remaining ElementDefinition properties, including
    ``_prop`` primitive extensions, by their JSON names.
    """

    def __init__(self, id: str = ""):
        self.structure = None
        self.extension: Optional[List[Dict[str, Any]]] = None
        self.slice_name: Optional[str] = None
        self.slicing: Optional[ElementSlicing] = None
        self.short: Optional[str] = None
        self.definition: Optional[str] = None
        self.min: Optional[int] = None
        self.max: Optional[str] = None
        self.base: Optional[Dict[str, Any]] = None
        self.content_reference: Optional[str] = None
        self.type: Optional[List[ElementType]] = None
        self.constraint: Optional[List[Dict[str, Any]]] = None
        self.must_support: Optional[bool] = None
        self.is_modifier: Optional[bool] = None
        self.is_summary: Optional[bool] = None
        self.binding: Optional[ElementBinding] = None
        self.mapping: Optional[List[Dict[str, Any]]] = None
        self.values: Dict[str, Any] = {}
        self.other: Dict[str, Any] = {}
        self._original: Optional[Dict[str, Any]] = None
        self.id = id

    @property
    def id(self) -> str:
        return self._id

    @id.setter
    def id(self, id: str) -> None:
        self._id = id
        self.path = ".".join(
            part.split(":", 1)[0] for part in split_on_path_periods(id)
        )

    def __repr__(self):
        return f"ElementDefinition({self.id!r})"

    # Serialization

    def to_json(self) -> Dict[str, Any]:
        j: Dict[str, Any] = {"id": self.id, "path": self.path}
        for key, attr in _ATTRIBUTES.items():
            value = getattr(self, attr)
            if value is None:
                continue
            if key == "type":
                j[key] = [t.to_json() for t in value]
            elif isinstance(value, BaseModel):
                j[key] = value.model_dump(by_alias=True, exclude_none=True)
            else:
                j[key] = copy.deepcopy(value)
        j.update(copy.deepcopy(self.values))
        j.update(copy.deepcopy(self.other))
        return order_props(j)

    @classmethod
    def from_json(
        cls, json: Dict[str, Any], capture_original: bool = True
    ) -> "ElementDefinition":
        ed = cls(json.get("id") or json.get("path", ""))
        for key, value in json.items():
            if key in ("id", "path"):
                continue
            ed._set_json(key, copy.deepcopy(value))
        if capture_original:
            ed.capture_original()
        return ed

    def _set_json(self, key: str, value: Any) -> None:
        if key == "type":
            self.type = [ElementType.from_json(t) for t in value]
        elif key == "slicing":
            self.slicing = ElementSlicing.model_validate(value)
        elif key == "binding":
            self.binding = ElementBinding.model_validate(value)
        elif key in _ATTRIBUTES:
            setattr(self, _ATTRIBUTES[key], value)
        elif not key.startswith("_") and prop_for_key(key) in (
            "fixed[x]",
            "pattern[x]",
            "defaultValue[x]",
            "minValue[x]",
            "maxValue[x]",
        ):
            self.values[key] = value
        else:
            self.other[key] = value

    def clone(self, clear_original: bool = True) -> "ElementDefinition":
        """Deep copy sharing the owning structure; the copy's baseline is cleared by default"""
        cloned = ElementDefinition.from_json(self.to_json(), capture_original=False)
        cloned.structure = self.structure
        if not clear_original:
            cloned._original = copy.deepcopy(self._original)
        return cloned

    # Differential

    def capture_original(self) -> None:
        """Take the baseline snapshot that later diffs are computed against"""
        self._original = self.to_json()

    def clear_original(self) -> None:
        self._original = None

    @property
    def original(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._original)

    def has_diff(self) -> bool:
        """
        True if any property differs from the baseline

        A slice, or an element that has slices, also differs when any of its
        children differ.
        """
        if changed_props(self._original or {}, self.to_json()):
            return True
        if self.slice_name or self.get_slices():
            return any(child.has_diff() for child in self.children())
        return False

    def calculate_diff(self) -> Dict[str, Any]:
        """Differential against the baseline; see ``diff.compute_diff``"""
        return compute_diff(self._original, self.to_json())

    # Navigation

    def _elements(self) -> List["ElementDefinition"]:
        return self.structure.elements if self.structure is not None else []

    def _find(self, id: str) -> Optional["ElementDefinition"]:
        return self.structure.find_element(id) if self.structure is not None else None

    def parent(self) -> Optional["ElementDefinition"]:
        parent_id = self.id[: self.id.rfind(".")] if "." in self.id else ""
        return self._find(parent_id) if parent_id else None

    def get_all_parents(self) -> List["ElementDefinition"]:
        parents = []
        parent = self.parent()
        while parent is not None:
            parents.append(parent)
            parent = parent.parent()
        return parents

    def children(self, direct_only: bool = False) -> List["ElementDefinition"]:
        depth = len(self.path.split("."))
        return [
            e
            for e in self._elements()
            if e is not self
            and e.id.startswith(f"{self.id}.")
            and (not direct_only or len(e.path.split(".")) == depth + 1)
        ]

    def get_slices(self) -> List["ElementDefinition"]:
        separator = "/" if self.slice_name else ":"
        return [
            e
            for e in self._elements()
            if e is not self and e.path == self.path and e.id.startswith(f"{self.id}{separator}")
        ]

    def sliced_element(self) -> Optional["ElementDefinition"]:
        if self.slice_name:
            return self._find(self.id[: self.id.rfind(":")])
        return None

    def find_parent_slice(self) -> Optional["ElementDefinition"]:
        """For a reslice ``a:s/r``, the slice ``a:s``"""
        if not self.slice_name:
            return None
        sliced = self.sliced_element()
        names = self.slice_name.split("/")[:-1]
        for i in range(len(names), 0, -1):
            name = "/".join(names[:i])
            for el in self._elements():
                if el.slice_name == name and el.sliced_element() is sliced:
                    return el
        return None

    def find_connected_elements(self, post_path: str = "") -> List["ElementDefinition"]:
        """
        Elements that must stay consistent with this one

        These are the matching elements inside every non-empty slice of this
        element or of any ancestor. For ``Observation.component.code`` that
        includes ``Observation.component:Systolic.code``.
        """
        connected = [
            e
            for e in (
                self._find(f"{s.id}{post_path}")
                for s in self.get_slices()
                if s.max != "0"
            )
            if e is not None
        ]
        parent = self.parent()
        if parent is not None:
            last = split_on_path_periods(self.id)[-1]
            connected.extend(parent.find_connected_elements(f".{last}{post_path}"))
        return connected

    def is_array_or_choice(self) -> bool:
        return (
            (self.max is not None and (self.max == "*" or int(self.max) > 1))
            or (self.base is not None and self.base.get("max") not in (None, "0", "1"))
            or self.id.endswith("[x]")
        )

    def find_types_by_code(self, *codes: str) -> List[ElementType]:
        return [t for t in self.type or [] if t.code in codes]

    def validate(self) -> List[str]:
        """Problems that do not stop export, as messages"""
        problems = []
        if self.slicing is not None:
            if self.slicing.rules is not None and self.slicing.rules not in ALLOWED_SLICING_RULES:
                problems.append(
                    f"{self.id}: slicing.rules value {self.slicing.rules} is not one of "
                    f"{', '.join(ALLOWED_SLICING_RULES)}"
                )
            for d in self.slicing.discriminator or []:
                if d.type not in ALLOWED_DISCRIMINATOR_TYPES:
                    problems.append(
                        f"{self.id}: slicing.discriminator.type value {d.type} is not one of "
                        f"{', '.join(ALLOWED_DISCRIMINATOR_TYPES)}"
                    )
        return problems

    # Cardinality

    def constrain_cardinality(self, min: Optional[int], max: Optional[str]) -> None:
        """
        Narrow the element's cardinality

        Args:
            min: New min, or None to keep the current min
            max: New max ("*" or a number), or None/"" to keep the current max

        Raises:
            InvalidCardinalityError: min > max, or max is not a number or "*"
            InvalidMaxOfSliceError: A slice's max exceeds its sliced element's max
            WideningCardinalityError: The range is not within the current range
            NarrowingRootCardinalityError: The range conflicts with existing slices
            InvalidSumOfSliceMinsError: Slice mins would exceed the sliced element's max
        """
        max_given = max not in (None, "")
        if min is None:
            min = self.min if self.min is not None else 0
        if not max_given:
            max = self.max if self.max is not None else "*"
        if max != "*" and not str(max).isdigit():
            raise InvalidCardinalityError(min, max)
        unbounded = max == "*"
        max_int = None if unbounded else int(max)

        if not unbounded and min > max_int:
            raise InvalidCardinalityError(min, max)

        sliced = self.sliced_element()
        parent_slice = self.find_parent_slice()
        list_element = parent_slice or sliced
        if (
            max_given
            and list_element is not None
            and list_element.max is not None
            and _max_exceeds(max, list_element.max)
        ):
            raise InvalidMaxOfSliceError(max, self.slice_name, list_element.max)

        if self.min is not None and min < self.min:
            raise WideningCardinalityError(self.min, self.max, min, max)
        if self.max is not None and _max_exceeds(max, self.max):
            raise WideningCardinalityError(self.min, self.max, min, max)

        # Slices of this element must fit the new max
        reduced: List[ElementDefinition] = []
        if self.slicing is not None and not unbounded:
            running = 0
            for s in self.get_slices():
                running += s.min or 0
                if running > max_int:
                    raise NarrowingRootCardinalityError(
                        self.path, s.id, min, max, s.min, s.max or "*"
                    )
                if s.max == "*" or s.max is None:
                    reduced.append(s)
                elif int(s.max) > max_int:
                    raise NarrowingRootCardinalityError(
                        self.path, s.id, min, max, s.min, s.max
                    )

        connected = [
            ce
            for ce in self.find_connected_elements()
            if not (ce.path == self.path and ce.id.startswith(self.id))
        ]
        for ce in connected:
            if (ce.max not in (None, "*") and min > int(ce.max)) or (
                ce.min is not None and not unbounded and max_int < ce.min
            ):
                raise NarrowingRootCardinalityError(
                    self.path, ce.id, min, max, ce.min, ce.max or "*"
                )

        new_parent_min = None
        if sliced is not None:
            siblings = [
                el
                for el in self._elements()
                if el is not self
                and el.slice_name
                and el.sliced_element() is sliced
                and el.find_parent_slice() is parent_slice
            ]
            new_parent_min = min + sum(el.min or 0 for el in siblings)
            if list_element.max not in (None, "*") and new_parent_min > int(list_element.max):
                raise InvalidSumOfSliceMinsError(
                    new_parent_min, list_element.max, list_element.id
                )

        if reduced:
            for s in reduced:
                s.max = max
            logger.warning(
                f"At least one slice of {self.id} has a max greater than the overall element max. "
                f"The max of the following slice(s) has been reduced to match the max of {self.id}: "
                f"{','.join(s.slice_name for s in reduced)}"
            )
        if new_parent_min is not None and new_parent_min > (list_element.min or 0):
            list_element.constrain_cardinality(new_parent_min, "")
        for ce in connected:
            ce_min = _larger(min, ce.min or 0)
            if unbounded:
                ce_max = ce.max
            elif ce.max not in (None, "*"):
                ce_max = str(_smaller(max_int, int(ce.max)))
            else:
                ce_max = max
            ce.constrain_cardinality(ce_min, ce_max)
        self.min, self.max = min, max

    # Types

    def get_type_lineage(
        self, type_name: str, fisher: Fishable, seen_urls: Optional[List[str]] = None
    ) -> List[Metadata]:
        """Metadata for a type and each of its ancestors, nearest first"""
        seen_urls = seen_urls if seen_urls is not None else []
        results: List[Metadata] = []
        current = type_name
        while current is not None:
            if current in seen_urls:
                break
            result = fisher.fish_for_metadata(current)
            if result is None and "|" in current:
                name, _, version = current.partition("|")
                result = fisher.fish_for_metadata(name)
                if result is not None and result.version not in (None, version):
                    logger.warning(
                        f"{type_name} is based on {name} version {version}, "
                        f"but version {result.version} was found"
                    )
            if result is None:
                break
            if result.url:
                if result.url in seen_urls:
                    break
                seen_urls.append(result.url)
            results.append(result)
            current = result.parent
        return results

    def _get_target_type(self, target: Optional[str], fisher: Fishable) -> Optional[ElementType]:
        if not target:
            return None
        target_md = fisher.fish_for_metadata(
            target,
            FhirType.RESOURCE,
            FhirType.LOGICAL,
            FhirType.TYPE,
            FhirType.PROFILE,
            FhirType.EXTENSION,
        )
        if target_md is None:
            raise TypeNotFoundError(target)
        found = next(
            (
                t
                for t in self.type or []
                if t.code == target_md.id
                or target_md.url in (t.profile or [])
                or target_md.url in (t.target_profile or [])
            ),
            None,
        )
        if found is None:
            raise InvalidTypeError(target, self.type or [])
        target_type = found.model_copy(deep=True)
        if target_md.url in (target_type.profile or []):
            target_type.profile = [target_md.url]
        elif target_md.url in (target_type.target_profile or []):
            target_type.target_profile = [target_md.url]
        return target_type

    def _find_type_match(self, rule_type, target_types: List[ElementType], fisher: Fishable) -> TypeMatch:
        type_name = rule_type.type.split("|", 1)[0] if rule_type.is_canonical else rule_type.type
        lineage = self.get_type_lineage(type_name, fisher)
        if not lineage:
            raise TypeNotFoundError(rule_type.type)

        def find_target(code: str, md: Metadata) -> Optional[ElementType]:
            return next(
                (
                    t
                    for t in target_types
                    if t.code == code and (t.target_profile is None or md.url in t.target_profile)
                ),
                None,
            )

        matched: Optional[ElementType] = None
        specializes_non_abstract = False
        for md in lineage:
            if rule_type.is_reference:
                matched = find_target("Reference", md) or find_target("CodeableReference", md)
            elif rule_type.is_canonical:
                matched = find_target("canonical", md)
            elif rule_type.is_codeable_reference:
                matched = find_target("CodeableReference", md)
            else:
                for t in target_types:
                    unprofiled = t.code == md.id and not t.profile
                    profiled = bool(t.profile) and md.url in t.profile and any(
                        a.sd_type == t.code for a in self.get_type_lineage(md.sd_type, fisher)
                    )
                    logical = (
                        self.structure is not None
                        and self.structure.kind == "logical"
                        and t.code is not None
                        and t.code == md.sd_type
                    )
                    specializes_non_abstract = (
                        unprofiled
                        and not md.abstract
                        and md.id != lineage[0].id
                        and md.id != lineage[0].sd_type
                    )
                    if unprofiled or profiled or logical:
                        matched = t
                        break
            if matched is not None:
                break

        if matched is None:
            raise InvalidTypeError(_rule_type_string(rule_type), target_types)
        if specializes_non_abstract:
            raise NonAbstractParentOfSpecializationError(rule_type.type, matched.code)
        return TypeMatch(lineage[0].model_copy(), matched.code, type_name)

    def _apply_profiles(
        self, new_type: ElementType, target_type: Optional[ElementType], matches: List[TypeMatch]
    ) -> None:
        profiles: List[str] = []
        target_profiles: List[str] = []
        for match in matches:
            md = match.metadata
            if md.id == new_type.code:
                continue
            if is_reference_type(match.code) and not is_reference_type(md.sd_type):
                target_profiles.append(md.url)
            elif match.code == "canonical" and md.sd_type != "canonical":
                target_profiles.append(md.url)
            elif (
                self.structure is not None
                and self.structure.kind == "logical"
                and new_type.code == md.sd_type == md.url
            ):
                continue
            else:
                profiles.append(md.url)

        if target_type is None:
            if target_profiles:
                new_type.target_profile = target_profiles
            if profiles:
                new_type.profile = profiles
            return

        # Splice the matches in place of the targeted profile
        if target_profiles:
            existing = new_type.target_profile or []
            anchor = (target_type.target_profile or [None])[0]
            if anchor in existing:
                i = existing.index(anchor)
                new_type.target_profile = existing[:i] + target_profiles + existing[i + 1 :]
            else:
                new_type.target_profile = existing + target_profiles
        if profiles:
            existing = new_type.profile or []
            anchor = (target_type.profile or [None])[0]
            if anchor in existing:
                i = existing.index(anchor)
                new_type.profile = existing[:i] + profiles + existing[i + 1 :]
            else:
                new_type.profile = existing + profiles

    def _apply_type_intersection(
        self, element_type: ElementType, target_type: Optional[ElementType], matches: List[TypeMatch]
    ) -> List[ElementType]:
        grouped: Dict[str, List[TypeMatch]] = {}
        for match in matches:
            code = (
                match.code
                if is_reference_type(match.code) or match.code == "canonical"
                else match.metadata.sd_type
            )
            grouped.setdefault(code, []).append(match)

        intersection = []
        for code, code_matches in grouped.items():
            new_type = element_type.model_copy(deep=True)
            if not FHIRPATH_PRIMITIVE.match(element_type.actual_code or ""):
                new_type.actual_code = code
            self._apply_profiles(new_type, target_type, code_matches)
            intersection.append(new_type)
        return intersection

    def _find_type_intersection(
        self,
        left_types: List[ElementType],
        right_types: List[ElementType],
        target_type: Optional[ElementType],
        fisher: Fishable,
    ) -> List[ElementType]:
        from .rules import OnlyRuleType

        intersection: List[ElementType] = []
        for left in left_types:
            matches = []
            for name in left.profile or [left.code]:
                try:
                    matches.append(self._find_type_match(OnlyRuleType(type=name), right_types, fisher))
                except (TypeNotFoundError, InvalidTypeError, NonAbstractParentOfSpecializationError):
                    continue
            intersection.extend(self._apply_type_intersection(left, target_type, matches))
        return intersection

    def constrain_type(
        self,
        types: List[Any],
        fisher: Fishable,
        target: Optional[str] = None,
        rule_path: Optional[str] = None,
    ) -> None:
        """
        Restrict the element's types

        Each rule type must resolve and specialize (or reference) one of the
        current types. Current types no rule type matches are dropped.

        Args:
            types: OnlyRuleType entries
            fisher: Definition lookup
            target: Restrict only the current type matching this name or profile
            rule_path: Path of the rule, used in error messages

        Raises:
            TypeNotFoundError: A type or the target cannot be found
            InvalidTypeError: A type does not match any current type
            NonAbstractParentOfSpecializationError: A type specializes a non-abstract current type
            SliceTypeRemovalError: A slice would be left with no types
        """
        target_type = self._get_target_type(target, fisher)
        target_types = [target_type] if target_type is not None else list(self.type or [])

        type_matches: Dict[str, List[TypeMatch]] = {t.code: [] for t in target_types}
        for rule_type in types:
            match = self._find_type_match(rule_type, target_types, fisher)
            if (
                rule_type.is_canonical or rule_type.is_reference or rule_type.is_codeable_reference
            ) and "|" in rule_type.type:
                match.metadata.url = f"{match.metadata.url}|{rule_type.type.split('|', 1)[1]}"
            type_matches[match.code].append(match)

        new_types: List[ElementType] = []
        for element_type in self.type or []:
            if element_type.code not in type_matches:
                new_types.append(element_type.model_copy(deep=True))
                continue
            matches = type_matches[element_type.code]
            if matches:
                new_types.extend(
                    self._apply_type_intersection(element_type, target_type, matches)
                )

        for new_type in new_types:
            new_type.profile_ext = None
            new_type.target_profile_ext = None

        connected = self.find_connected_elements()
        if self.path.endswith("[x]"):
            connected = [ce for ce in connected if ce.id.endswith("[x]")]
        changes: List[Tuple[ElementDefinition, List[ElementType]]] = []
        for ce in connected:
            intersection = self._find_type_intersection(
                new_types, ce.type or [], target_type, fisher
            )
            if not intersection:
                raise SliceTypeRemovalError(rule_path or self.path, ce.id)
            changes.append((ce, intersection))
        for ce, intersection in changes:
            ce.type = intersection

        self.type = new_types

    # Flags, bindings, constraints, mappings

    def apply_flags(self, flags) -> None:
        """
        Set flags from a Flags value

        Only True flags are applied; flags are never cleared.

        Raises:
            MultipleStandardsStatusError: More than one standards status is set
            InvalidMustSupportError: Must-support on an element of a specialization
        """
        statuses = [
            code
            for flag, code in (
                (flags.trial_use, "trial-use"),
                (flags.normative, "normative"),
                (flags.draft, "draft"),
            )
            if flag
        ]
        if len(statuses) > 1:
            raise MultipleStandardsStatusError(self.id)
        if (
            flags.must_support
            and self.structure is not None
            and self.structure.derivation == "specialization"
        ):
            raise InvalidMustSupportError(self.structure.name, self.id)

        connected = self.find_connected_elements()
        if flags.must_support:
            self.must_support = True
            for ce in connected:
                if ce.slice_name is None:
                    ce.must_support = True
        if flags.summary:
            self.is_summary = True
            for ce in connected:
                ce.is_summary = True
        if flags.modifier:
            self.is_modifier = True
            for ce in connected:
                ce.is_modifier = True
        if statuses:
            status = {"url": STANDARDS_STATUS_URL, "valueCode": statuses[0]}
            extensions = list(self.extension or [])
            index = next(
                (i for i, e in enumerate(extensions) if e.get("url") == STANDARDS_STATUS_URL), None
            )
            if index is None:
                extensions.append(status)
            else:
                extensions[index] = status
            self.extension = extensions

    def bind_to_vs(self, vs_uri: Optional[str], strength: str) -> None:
        """
        Bind the element to a value set

        Raises:
            CodedTypeNotFoundError: The element has no bindable type
            BindingStrengthError: The strength is unknown or the binding would be weakened
            InvalidUriError: The value set URL is not a URI
        """
        if strength not in BINDING_STRENGTHS:
            raise BindingStrengthError(None, strength)
        if not self.find_types_by_code(*BINDABLE_TYPES):
            raise CodedTypeNotFoundError([t.code for t in self.type or []])
        current = self.binding.strength if self.binding is not None else None
        if current and BINDING_STRENGTHS.index(strength) < BINDING_STRENGTHS.index(current):
            raise BindingStrengthError(current, strength)

        for ce in self.find_connected_elements():
            if ce.binding is not None and ce.binding.value_set == vs_uri:
                try:
                    ce.bind_to_vs(vs_uri, strength)
                except BindingStrengthError:
                    # a slice may keep a stronger binding than its list element
                    continue

        list_element = self.sliced_element()
        if (
            list_element is not None
            and list_element.binding is not None
            and list_element.binding.value_set == vs_uri
            and list_element.binding.strength
            and BINDING_STRENGTHS.index(strength)
            < BINDING_STRENGTHS.index(list_element.binding.strength)
        ):
            raise BindingStrengthError(list_element.binding.strength, strength)

        if vs_uri is None:
            self.binding = ElementBinding(strength=strength)
            return
        if not is_uri(vs_uri.split("|", 1)[0]):
            raise InvalidUriError(vs_uri)
        self.binding = ElementBinding(strength=strength, value_set=vs_uri)

    def apply_constraint(
        self,
        key: Optional[str],
        severity: Optional[str],
        human: Optional[str],
        expression: Optional[str] = None,
        xpath: Optional[str] = None,
        source: Optional[str] = None,
    ) -> int:
        """Append an invariant; returns its index in ``constraint``"""
        constraint = {
            k: v
            for k, v in (
                ("key", key),
                ("severity", severity),
                ("human", human),
                ("expression", expression),
                ("xpath", xpath),
                ("source", source),
            )
            if v
        }
        self.constraint = list(self.constraint or []) + [constraint]
        return len(self.constraint) - 1

    def apply_mapping(
        self,
        identity: Optional[str],
        map: Optional[str],
        comment: Optional[str] = None,
        language: Optional[FshCode] = None,
    ) -> None:
        if identity is None or map is None:
            raise InvalidMappingError()
        if not ID_PATTERN.match(identity):
            raise InvalidFHIRIdError(identity)
        mapping: Dict[str, Any] = {"identity": identity, "map": map}
        if comment:
            mapping["comment"] = comment
        if language is not None:
            mapping["language"] = language.code
        self.mapping = list(self.mapping or []) + [mapping]

    def set_instance_property_by_path(self, path: str, value: Any, fisher: Optional[Fishable] = None) -> None:
        """
        Set an ElementDefinition property from a caret path (``^short``, ``^code[0]``)

        Raises:
            CannotResolvePathError: The path is malformed or targets id/path
            InvalidCanonicalUrlError: A Canonical value cannot be resolved
        """
        parts = parse_fsh_path(path)
        top = parts[0].base
        if top in ("id", "path"):
            raise CannotResolvePathError(path)
        json = self.to_json()
        fhir_value = to_fhir_json(value, parts[-1].base, resolve_canonical_url(value, fisher))
        set_property_by_path(json, path, fhir_value)
        if top in json:
            self._set_json(top, json[top])

    # Values

    def assigned_by_direct_parent(self) -> Any:
        parent = self.parent()
        if parent is None:
            return None
        key = next(
            (k for k in parent.values if k.startswith("fixed") or k.startswith("pattern")), None
        )
        if key is None or not isinstance(parent.values[key], dict):
            return None
        return parent.values[key].get(self.path[len(parent.path) + 1 :])

    def assigned_by_any_parent(self) -> Any:
        """Value implied for this element by a fixed/pattern value on any ancestor"""
        parent = self.parent()
        if parent is None:
            return None
        value = self.assigned_by_direct_parent()
        if value is not None:
            return value
        parent_value = parent.assigned_by_any_parent()
        child_key = self.path[len(parent.path) + 1 :]
        if isinstance(parent_value, list):
            items = [pv.get(child_key) if isinstance(pv, dict) else None for pv in parent_value]
            if items and all(item == items[0] for item in items):
                return items[0]
            return items
        if isinstance(parent_value, dict):
            return parent_value.get(child_key)
        return None

    def _has_single_type(self) -> bool:
        return len(self.type or []) == 1

    def _type_satisfies_target_profile(self, sd_type: Optional[str], fisher: Fishable) -> bool:
        target_profiles = self.type[0].target_profile
        if not sd_type or not target_profiles:
            return True
        valid_types = []
        for tp in target_profiles:
            md = fish_for_metadata_best_version(fisher, tp)
            if md is not None and md.sd_type:
                valid_types.append(md.sd_type)
        return any(md.sd_type in valid_types for md in self.get_type_lineage(sd_type, fisher))

    def _is_quantity_type(self, code: str, fisher: Optional[Fishable]) -> bool:
        if code == "Quantity":
            return True
        sd = fisher.fish_for_fhir(code, FhirType.TYPE) if fisher is not None else None
        return sd is not None and sd.get("baseDefinition") == QUANTITY_URL

    def assign_value(self, value: Any, exactly: bool = False, fisher: Optional[Fishable] = None) -> None:
        """
        Assign a fixed[x] (exactly) or pattern[x] value

        Assigning the value already present is a no-op. Under pattern
        semantics a composite value may extend an existing pattern with more
        fields.

        Args:
            value: bool, number, str, or one of the Fsh* value types
            exactly: fixed[x] when True, pattern[x] otherwise
            fisher: Definition lookup for references, canonicals and type specializations

        Raises:
            NoSingleTypeError: The element does not have exactly one type
            FixedToPatternError: A pattern is requested but a fixed value exists
            MismatchedTypeError: The value does not fit the element's type
            ValueAlreadyFixedError: A different value is already fixed
            ValueAlreadyAssignedError: A different value is already assigned
        """
        value_type = _value_type_name(value)
        if not self._has_single_type():
            raise NoSingleTypeError(value_type)
        if not exactly:
            fixed_key = next(
                (k for k, v in self.values.items() if k.startswith("fixed") and v is not None),
                None,
            )
            if fixed_key is not None:
                raise FixedToPatternError(fixed_key)

        code = self.type[0].code
        if isinstance(value, bool):
            self._assign_fhir_value(fsh_value_to_string(value), value, exactly, "boolean")
        elif isinstance(value, (int, float)):
            self._assign_number(value, exactly)
        elif isinstance(value, str):
            self._assign_string(value, exactly)
        elif isinstance(value, FshCode):
            self._assign_fsh_code(value, exactly, fisher)
        elif isinstance(value, FshQuantity):
            provided = code if code != "Quantity" and self._is_quantity_type(code, fisher) else "Quantity"
            self._assign_fhir_value(str(value), value.to_fhir_quantity(), exactly, provided)
        elif isinstance(value, FshRatio):
            self._assign_fhir_value(str(value), value.to_fhir_ratio(), exactly, "Ratio")
        elif isinstance(value, FshRange):
            self._assign_fhir_value(str(value), value.to_fhir_range(), exactly, "Range")
        elif isinstance(value, FshReference):
            sd_type = None
            md = fisher.fish_for_metadata(value.reference) if fisher is not None else None
            if md is not None:
                sd_type = md.sd_type or md.resource_type
            if (
                code == "Reference"
                and fisher is not None
                and not self._type_satisfies_target_profile(sd_type, fisher)
            ):
                raise InvalidTypeError(f"Reference({sd_type})", self.type)
            self._assign_fhir_value(str(value), value.to_fhir_reference(), exactly, "Reference")
        elif isinstance(value, FshCanonical):
            url = resolve_canonical_url(value, fisher) + (f"|{value.version}" if value.version else "")
            self._assign_string(url, exactly)
        else:
            raise MismatchedTypeError(value_type, value, code)

        # An element named by a value/pattern discriminator must be present in its slice
        for slice_el in [e for e in [self] + list(reversed(self.get_all_parents())) if e.slice_name]:
            sliced = slice_el.sliced_element()
            if sliced is None or sliced.slicing is None:
                continue
            if self.min == 0 and any(
                d.path != "$this"
                and f"{sliced.path}.{d.path}" == self.path
                and d.type in ("value", "pattern")
                for d in sliced.slicing.discriminator or []
            ):
                self.constrain_cardinality(1, "")

    def _assign_number(self, value: Any, exactly: bool) -> None:
        code = self.type[0].code
        is_int = float(value).is_integer()
        if (
            code == "decimal"
            or (code == "integer" and is_int)
            or (code == "unsignedInt" and is_int and value >= 0)
            or (code == "positiveInt" and is_int and value > 0)
        ):
            number = int(value) if code != "decimal" and is_int else value
            self._assign_fhir_value(fsh_value_to_string(value), number, exactly, code)
        elif code == "integer64" and is_int:
            self._assign_fhir_value(str(int(value)), str(int(value)), exactly, code)
        else:
            raise MismatchedTypeError("number", value, code)

    def _assign_string(self, value: str, exactly: bool) -> None:
        code = self.type[0].code
        pattern = STRING_PATTERNS.get(code)
        if pattern is None or not pattern.match(value):
            raise MismatchedTypeError("string", value, code)
        self._assign_fhir_value(f'"{value}"', value, exactly, code)

    def _assign_fsh_code(self, value: FshCode, exactly: bool, fisher: Optional[Fishable]) -> None:
        code = self.type[0].code
        as_string = code in ("code", "string", "uri")
        if value.system and not is_uri(value.system.split("|", 1)[0]):
            if not as_string:
                raise InvalidUriError(value.system)
            logger.warning(
                f"The fully qualified code {value.system}#{value.code} is invalid because the "
                f"specified system is not a URI. Since {self.path} is a {code}, the system will "
                "not be used."
            )

        if as_string:
            self._assign_fhir_value(str(value), value.code, exactly, code)
        elif code == "CodeableConcept":
            self._assign_fhir_value(str(value), value.to_fhir_codeable_concept(), exactly, code)
        elif code == "Coding":
            self._assign_fhir_value(str(value), value.to_fhir_coding(), exactly, code)
        elif self._is_quantity_type(code, fisher):
            existing = (
                self.values.get(f"fixed{_upper_first(code)}")
                or self.values.get(f"pattern{_upper_first(code)}")
                or self.assigned_by_any_parent()
            )
            quantity = value.to_fhir_quantity()
            if isinstance(existing, dict):
                for key in ("value", "comparator"):
                    if existing.get(key) is not None:
                        quantity[key] = existing[key]
            self._assign_fhir_value(str(value), quantity, exactly, code)
        else:
            raise MismatchedTypeError("code", value, code)

    def _assign_fhir_value(self, fsh_value: str, fhir_value: Any, exactly: bool, type_code: str) -> None:
        if not any(t.code == type_code for t in self.type or []):
            raise MismatchedTypeError(type_code, fsh_value, self.type[0].code)

        fixed_key = f"fixed{_upper_first(type_code)}"
        pattern_key = f"pattern{_upper_first(type_code)}"
        if self.values.get(fixed_key) is not None:
            current, error_class = self.values[fixed_key], ValueAlreadyFixedError
        elif self.values.get(pattern_key) is not None:
            current, error_class = self.values[pattern_key], ValueAlreadyAssignedError
        else:
            current, error_class = self.assigned_by_any_parent(), ValueAlreadyAssignedError

        if current is not None and not isinstance(current, list):
            matches = is_match(fhir_value, current) if isinstance(fhir_value, dict) else fhir_value == current
            if not matches:
                raise error_class(fsh_value, type_code, _json_text(current))

        self._check_assigned_value_against_children(self, fhir_value)
        sliced = self.sliced_element()
        if sliced is not None:
            sliced._check_assigned_value_against_children(sliced, fhir_value)

        if exactly:
            self.values[fixed_key] = copy.deepcopy(fhir_value)
            self.values.pop(pattern_key, None)
        else:
            self.values[pattern_key] = copy.deepcopy(fhir_value)

    def _check_assigned_value_against_children(self, current: "ElementDefinition", fhir_value: Any) -> None:
        direct = current.children(direct_only=True)
        i = 0
        while i < len(direct):
            child = direct[i]
            self._check_assigned_value_against_child(child, fhir_value)
            self._check_assigned_value_against_children(child, fhir_value)
            if child.slicing is not None and child.slicing.rules == "closed":
                slices = child.get_slices()
                invalid = 0
                for s in slices:
                    try:
                        self._check_assigned_value_against_child(s, fhir_value)
                        self._check_assigned_value_against_children(s, fhir_value)
                    except ValueAlreadyAssignedError:
                        invalid += 1
                if slices and invalid >= len(slices):
                    raise ValueConflictsWithClosedSlicingError(_json_text(fhir_value))
            i += len(child.get_slices()) + 1 if child.slicing is not None else 1

    def _check_assigned_value_against_child(self, child: "ElementDefinition", fhir_value: Any) -> None:
        if not child.type:
            return
        child_code = child.type[0].code
        child_value = child.values.get(f"fixed{_upper_first(child_code)}")
        if child_value is None:
            child_value = child.values.get(f"pattern{_upper_first(child_code)}")
        if child_value is None:
            return
        candidates = [fhir_value]
        for part in child.path[len(self.path) + 1 :].split("."):
            next_candidates = []
            for candidate in candidates:
                found = candidate.get(part) if isinstance(candidate, dict) else None
                if isinstance(found, list):
                    next_candidates.extend(found)
                else:
                    next_candidates.append(found)
            candidates = next_candidates
        for candidate in candidates:
            if candidate is None:
                continue
            ok = is_match(candidate, child_value) if isinstance(candidate, dict) else candidate == child_value
            if not ok:
                raise ValueAlreadyAssignedError(candidate, child_code, _json_text(child_value))

    # Slicing

    def slice_it(
        self,
        discriminator_type: str,
        discriminator_path: str,
        ordered: Optional[bool] = None,
        rules: Optional[str] = None,
    ) -> ElementSlicing:
        """
        Define or extend slicing on this element

        Raises:
            InvalidElementForSlicingError: The element is neither repeating nor a choice
            SlicingDefinitionError: ordered or rules would be loosened
        """
        if not self.is_array_or_choice():
            raise InvalidElementForSlicingError(self.id)
        if self.slice_name:
            logger.warning(f"{self.id} is a slice. Slices should not have slicing info added to them.")

        if self.slicing is None or not self.slicing.discriminator:
            self.slicing = ElementSlicing(
                discriminator=[SlicingDiscriminator(type=discriminator_type, path=discriminator_path)],
                ordered=ordered if ordered is not None else False,
                rules=rules if rules is not None else "open",
            )
            return self.slicing

        slicing = self.slicing.model_copy(deep=True)
        if slicing.ordered and ordered is False:
            raise SlicingDefinitionError("ordered", True, False)
        if rules is not None and (
            (slicing.rules == "closed" and rules != "closed")
            or (slicing.rules == "openAtEnd" and rules == "open")
        ):
            raise SlicingDefinitionError("rules", slicing.rules, rules)
        if ordered is not None:
            slicing.ordered = ordered
        if rules is not None:
            slicing.rules = rules
        if not any(
            d.type == discriminator_type and d.path == discriminator_path
            for d in slicing.discriminator
        ):
            slicing.discriminator.append(
                SlicingDiscriminator(type=discriminator_type, path=discriminator_path)
            )
        self.slicing = slicing
        return self.slicing

    def add_slice(self, name: str, type: Optional[ElementType] = None) -> "ElementDefinition":
        """
        Add a named slice (or a reslice, when this element is itself a slice)

        The slice is inserted after this element's existing children and slices.

        Raises:
            SlicingNotDefinedError: No slicing is defined and this is not a slice
            DuplicateSliceError: A slice with this name exists
        """
        if self.slicing is None and not self.slice_name:
            raise SlicingNotDefinedError(self.id, name)

        new_slice = self.clone(clear_original=True)
        new_slice.slicing = None
        new_slice.id = f"{self.id}/{name}" if self.slice_name else f"{self.id}:{name}"
        if self._find(new_slice.id) is not None:
            raise DuplicateSliceError(self.structure.name, self.id, name)

        new_slice.min = None
        new_slice.max = None
        new_slice.must_support = None
        new_slice.capture_original()
        new_slice.slice_name = f"{self.slice_name}/{name}" if self.slice_name else name

        discriminator = (self.slicing.discriminator or [None])[0] if self.slicing else None
        if (
            self.path.endswith("[x]")
            and len(self.type or []) == 1
            and discriminator is not None
            and discriminator.type == "type"
            and discriminator.path == "$this"
        ):
            new_slice.min = self.min
        else:
            new_slice.min = 0
        new_slice.max = self.max
        if type is not None:
            new_slice.type = [type]
        self.structure.add_element(new_slice)
        return new_slice

    # Unfolding

    def _rebase(self, elements: List["ElementDefinition"], old_prefix: str) -> List["ElementDefinition"]:
        rebased = []
        for e in elements:
            cloned = e.clone()
            cloned.id = self.id + cloned.id[len(old_prefix) :]
            cloned.structure = self.structure
            cloned.capture_original()
            rebased.append(cloned)
        return rebased

    def unfold(self, fisher: Fishable) -> List["ElementDefinition"]:
        """
        Materialize this element's children from its type's definition

        Slices copy the children of their sliced element. Elements with a
        contentReference copy the children of the referenced element.
        Nothing happens when the element has zero or several types.

        Returns:
            The inserted elements, in definition order
        """
        from .structure import StructureDefinition

        is_choice = self.id.endswith("[x]")
        single = len(self.type or []) == 1
        if not (
            (single and (not is_choice or len(self.type[0].profile or []) <= 1))
            or self.content_reference
        ):
            return []

        profiles = self.type[0].profile or [] if single else []
        profile = None
        if len(profiles) > 1:
            logger.warning(
                f"Multiple profiles present on element {self.id}. "
                "Base element type will be used instead of any profiles."
            )
        elif len(profiles) == 1:
            profile = profiles[0]

        new_elements: List[ElementDefinition] = []
        if self.content_reference:
            json = fisher.fish_for_fhir(self.structure.type, FhirType.RESOURCE, FhirType.LOGICAL)
            if json is not None:
                definition = StructureDefinition.from_json(json)
                ref_id = self.content_reference[self.content_reference.index("#") + 1 :]
                referenced = definition.find_element(ref_id)
                if referenced is not None:
                    new_elements = self._rebase(referenced.children(), referenced.id)
                    if new_elements:
                        self.type = [t.model_copy(deep=True) for t in referenced.type or []]
                        self.content_reference = None
        elif self.slice_name:
            sliced = self.sliced_element()
            sliced_profiles = (
                sliced.type[0].profile if sliced is not None and len(sliced.type or []) == 1 else None
            )
            if sliced is not None and (profile is None or sliced_profiles == [profile]):
                new_elements = []
                for e in sliced.children():
                    capture = e.slice_name is None or not e.path.endswith(".extension")
                    cloned = e.clone(clear_original=capture)
                    cloned.id = self.id + cloned.id[len(sliced.id) :]
                    cloned.structure = self.structure
                    if capture:
                        cloned.capture_original()
                    new_elements.append(cloned)

        if not new_elements and single:
            kinds = [FhirType.RESOURCE, FhirType.TYPE, FhirType.PROFILE, FhirType.EXTENSION]
            if self.structure is not None and self.structure.kind == "logical":
                kinds.insert(0, FhirType.LOGICAL)
            json = fish_for_fhir_best_version(fisher, profile or self.type[0].code, *kinds)
            if json is None and profile is not None:
                logger.warning(
                    f"Could not find profile {profile}; using {self.type[0].code} instead"
                )
                json = fisher.fish_for_fhir(self.type[0].code, *kinds)
            if json is not None:
                definition = StructureDefinition.from_json(json)
                new_elements = self._rebase(definition.elements[1:], definition.path_type)

        if new_elements:
            self.structure.add_elements(new_elements)
        return new_elements

    def unfold_choice_element_types(self, fisher: Fishable) -> List["ElementDefinition"]:
        """Materialize the children shared by every type of a choice element"""
        from .structure import StructureDefinition

        names = []
        for t in self.type or []:
            names.extend(t.profile if t.profile else [t.code])
        ancestries = [[md.url for md in self.get_type_lineage(n, fisher)] for n in names]
        shared = [url for url in ancestries[0] if all(url in a for a in ancestries[1:])] if ancestries else []
        if not shared:
            logger.error(f"Could not unfold choice element {self.id}: choices have no common ancestor.")
            return []
        ancestor = StructureDefinition.from_json(fisher.fish_for_fhir(shared[0]))
        new_elements = self._rebase(ancestor.elements[1:], ancestor.path_type)
        self.structure.add_elements(new_elements)
        return new_elements

    # Added elements (logical models and custom resources)

    def apply_add_element_rule(self, rule, fisher: Fishable) -> None:
        """
        Initialize a newly added element from an add-element rule

        Raises:
            CannotResolvePathError: The element's parent is not defined
            InvalidChoiceTypeRulePathError: Several types without a [x] path
        """
        if self.parent() is None:
            raise CannotResolvePathError(rule.path)

        self.base = {
            "path": f"{self.structure.path_type}.{rule.path}",
            "min": rule.min,
            "max": rule.max,
        }
        element_sd = fisher.fish_for_fhir("Element", FhirType.TYPE)
        if element_sd is not None:
            root = (element_sd.get("snapshot") or {}).get("element", [{}])[0]
            constraints = []
            for c in root.get("constraint", []):
                c = copy.deepcopy(c)
                c.setdefault("source", "http://hl7.org/fhir/StructureDefinition/Element")
                constraints.append(c)
            if constraints:
                self.constraint = constraints
        self.capture_original()

        non_references = [t for t in rule.types if not (t.is_reference or t.is_canonical or t.is_codeable_reference)]
        if len(non_references) > 1 and not self.path.endswith("[x]"):
            raise InvalidChoiceTypeRulePathError(rule.path, "add-element")

        initial: List[ElementType] = []
        for t in rule.types:
            if t.is_reference:
                code = "Reference"
            elif t.is_canonical:
                code = "canonical"
            elif t.is_codeable_reference:
                code = "CodeableReference"
            else:
                md = fisher.fish_for_metadata(t.type)
                code = md.sd_type if md is not None and md.sd_type else t.type
            if not any(e.code == code for e in initial):
                initial.append(ElementType(code=code))
        self.type = initial
        self.constrain_type(rule.types, fisher)
        self.constrain_cardinality(rule.min, rule.max)
        self.apply_flags(rule.flags)
        self.short = rule.short
        self.definition = rule.definition or rule.short
        if rule.content_reference:
            self.content_reference = rule.content_reference
            self.type = None


# constrain_cardinality's parameters shadow the min/max builtins
def _larger(a: int, b: int) -> int:
    return a if a >= b else b


def _smaller(a: int, b: int) -> int:
    return a if a <= b else b


def _json_text(value: Any) -> str:
    return dumps(value)


def _value_type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, BaseModel) and hasattr(value, "value_type"):
        return value.value_type
    return type(value).__name__


def _rule_type_string(rule_type) -> str:
    if rule_type.is_reference:
        return f"Reference({rule_type.type})"
    if rule_type.is_canonical:
        return f"Canonical({rule_type.type})"
    if rule_type.is_codeable_reference:
        return f"CodeableReference({rule_type.type})"
    return rule_type.type


def resolve_canonical_url(value: Any, fisher: Optional[Fishable]) -> Optional[str]:
    """URL of the entity a Canonical value names; None for other values"""
    if not isinstance(value, FshCanonical):
        return None
    md = (
        fisher.fish_for_metadata(
            value.entity_name,
            FhirType.RESOURCE,
            FhirType.LOGICAL,
            FhirType.TYPE,
            FhirType.PROFILE,
            FhirType.EXTENSION,
            FhirType.VALUE_SET,
            FhirType.CODE_SYSTEM,
            FhirType.INSTANCE,
        )
        if fisher is not None
        else None
    )
    if md is None or not md.url:
        raise InvalidCanonicalUrlError(value.entity_name)
    return md.url
