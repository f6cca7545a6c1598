"""
FSH value types

Composite values that assignment and caret rules carry, with conversion to
their FHIR JSON shapes.
"""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field

from .errors import CodeAndSystemMismatchError, InvalidRangeValueError, UnitMismatchError


class FshCode(BaseModel):
    """
    A code, written ``system#code "display"`` in FSH

    The system may carry a version: ``http://loinc.org|2.74``.
    """

    value_type: Literal["code"] = "code"
    code: str
    system: Optional[str] = None
    display: Optional[str] = None

    def __str__(self) -> str:
        code = f'"{self.code}"' if any(c.isspace() for c in self.code) else self.code
        text = f"{self.system or ''}#{code}"
        return f'{text} "{self.display}"' if self.display else text

    def to_fhir_coding(self) -> Dict[str, Any]:
        coding: Dict[str, Any] = {}
        if self.code:
            coding["code"] = self.code
        if self.system:
            if "|" in self.system:
                system, version = self.system.split("|", 1)
                coding["system"] = system
                coding["version"] = version
            else:
                coding["system"] = self.system
        if self.display:
            coding["display"] = self.display
        return coding

    def to_fhir_codeable_concept(self) -> Dict[str, Any]:
        return {"coding": [self.to_fhir_coding()]}

    def to_fhir_quantity(self) -> Dict[str, Any]:
        """Quantity with this code as its unit; display becomes the human unit"""
        quantity: Dict[str, Any] = {}
        if self.code:
            quantity["code"] = self.code
        if self.system:
            quantity["system"] = self.system
        if self.display:
            quantity["unit"] = self.display
        return quantity


class FshQuantity(BaseModel):
    value_type: Literal["quantity"] = "quantity"
    value: float
    unit: Optional[FshCode] = None

    def __str__(self) -> str:
        text = _number_str(self.value)
        if self.unit is not None and self.unit.code is not None:
            text += f" '{self.unit.code}'"
        return text

    def to_fhir_quantity(self) -> Dict[str, Any]:
        quantity: Dict[str, Any] = {"value": _number(self.value)}
        if self.unit is not None:
            quantity.update(self.unit.to_fhir_quantity())
        return quantity


class FshRatio(BaseModel):
    value_type: Literal["ratio"] = "ratio"
    numerator: FshQuantity
    denominator: FshQuantity

    def __str__(self) -> str:
        return f"{self.numerator} : {self.denominator}"

    def to_fhir_ratio(self) -> Dict[str, Any]:
        return {
            "numerator": self.numerator.to_fhir_quantity(),
            "denominator": self.denominator.to_fhir_quantity(),
        }


class FshRange(BaseModel):
    """
    Low and high quantities

    Both bounds must share a unit and low must not exceed high.
    """

    value_type: Literal["range"] = "range"
    low: Optional[FshQuantity] = None
    high: Optional[FshQuantity] = None

    def __str__(self) -> str:
        low = str(self.low) if self.low is not None else ""
        high = str(self.high) if self.high is not None else ""
        return f"{low} .. {high}"

    def to_fhir_range(self) -> Dict[str, Any]:
        """
        Convert to a FHIR Range

        Raises:
            InvalidRangeValueError: low is greater than high
            UnitMismatchError: The bounds carry different human units
            CodeAndSystemMismatchError: The bounds carry different unit codes or systems
        """
        result: Dict[str, Any] = {}
        if self.low is not None:
            result["low"] = self.low.to_fhir_quantity()
        if self.high is not None:
            result["high"] = self.high.to_fhir_quantity()
        if self.low is not None and self.high is not None:
            low, high = result["low"], result["high"]
            if low["value"] > high["value"]:
                raise InvalidRangeValueError(low["value"], high["value"])
            if low.get("unit") != high.get("unit"):
                raise UnitMismatchError(low.get("unit"), high.get("unit"))
            if low.get("code") != high.get("code") or low.get("system") != high.get("system"):
                raise CodeAndSystemMismatchError(
                    low.get("code"), high.get("code"), low.get("system"), high.get("system")
                )
        return result


class FshReference(BaseModel):
    value_type: Literal["reference"] = "reference"
    reference: str
    display: Optional[str] = None

    def __str__(self) -> str:
        display = f' "{self.display}"' if self.display else ""
        return f"Reference({self.reference}){display}"

    def to_fhir_reference(self) -> Dict[str, Any]:
        reference: Dict[str, Any] = {"reference": self.reference}
        if self.display:
            reference["display"] = self.display
        return reference


class FshCanonical(BaseModel):
    """``Canonical(Name)`` or ``Canonical(Name|version)``"""

    value_type: Literal["canonical"] = "canonical"
    entity_name: str
    version: Optional[str] = None

    def __str__(self) -> str:
        version = f"|{self.version}" if self.version else ""
        return f"Canonical({self.entity_name}{version})"


FshValue = Annotated[
    Union[FshCode, FshQuantity, FshRatio, FshRange, FshReference, FshCanonical],
    Field(discriminator="value_type"),
]

AssignableValue = Union[FshValue, bool, int, float, str]


def _number(value: float) -> Union[int, float]:
    return int(value) if float(value).is_integer() else value


def _number_str(value: float) -> str:
    return str(_number(value))


def fsh_value_to_string(value: Any) -> str:
    """Render a value the way it would appear in FSH source"""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, float):
        return _number_str(value)
    return str(value)


# Primitive code-typed properties of StructureDefinition and ElementDefinition
CODE_PROPERTIES = {
    "status",
    "kind",
    "derivation",
    "fhirVersion",
    "strength",
    "severity",
    "rules",
    "language",
    "mode",
    "valueCode",
    "type",
    "representation",
    "aggregation",
    "versioning",
}
CODEABLE_CONCEPT_PROPERTIES = {"jurisdiction", "concept", "valueCodeableConcept"}


def to_fhir_json(value: Any, property_name: str, canonical_url: Optional[str] = None) -> Any:
    """
    Convert a caret-rule value to JSON for the property it is assigned to

    Codes become a plain code, a Coding or a CodeableConcept depending on the
    property. Canonicals need their already-resolved URL.
    """
    if isinstance(value, FshCode):
        if property_name in CODE_PROPERTIES:
            return value.code
        if property_name in CODEABLE_CONCEPT_PROPERTIES:
            return value.to_fhir_codeable_concept()
        return value.to_fhir_coding()
    if isinstance(value, FshQuantity):
        return value.to_fhir_quantity()
    if isinstance(value, FshRatio):
        return value.to_fhir_ratio()
    if isinstance(value, FshRange):
        return value.to_fhir_range()
    if isinstance(value, FshReference):
        return value.to_fhir_reference()
    if isinstance(value, FshCanonical):
        version = f"|{value.version}" if value.version else ""
        return f"{canonical_url}{version}"
    return value
