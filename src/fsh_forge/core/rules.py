"""
Rule records

Already-parsed authoring rules, as a tagged union over ``kind``. The engine
dispatches on the tag; each variant carries a target ``path`` and the
payload of its operation, plus the source location used in diagnostics.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .values import FshCode, FshValue

# "*" or a whole number; empty keeps the current max
CardMax = Annotated[str, Field(pattern=r"^(\*|\d+)?$")]
BindingStrength = Literal["example", "preferred", "extensible", "required"]


class SourceInfo(BaseModel):
    """Where a rule was written"""

    file: Optional[str] = None
    start_line: Optional[int] = None
    end_line: Optional[int] = None

    def __str__(self) -> str:
        if self.start_line is None:
            return self.file or ""
        lines = (
            f"{self.start_line}"
            if self.end_line in (None, self.start_line)
            else f"{self.start_line} - {self.end_line}"
        )
        return f"{self.file or ''}:{lines}"


class Flags(BaseModel):
    """
    Element flags a rule can set

    Embedded by value in the card, flag, contains and add-element rules.
    """

    must_support: Optional[bool] = None
    summary: Optional[bool] = None
    modifier: Optional[bool] = None
    trial_use: Optional[bool] = None
    normative: Optional[bool] = None
    draft: Optional[bool] = None

    def is_empty(self) -> bool:
        return not any(self.model_dump().values())


FLAG_CODES = {
    "must_support": "MS",
    "summary": "SU",
    "modifier": "?!",
    "trial_use": "TU",
    "normative": "N",
    "draft": "D",
}


def flag_codes(flags: Flags) -> List[str]:
    """Authoring-language codes of the set flags, e.g. ["MS", "SU"]"""
    return [code for field, code in FLAG_CODES.items() if getattr(flags, field)]


def parse_flag_codes(codes: List[str]) -> Flags:
    by_code = {code: field for field, code in FLAG_CODES.items()}
    unknown = [c for c in codes if c not in by_code]
    if unknown:
        raise ValueError(f"Unknown flag: {', '.join(unknown)}")
    return Flags(**{by_code[c]: True for c in codes})


def merge_flags(first: Flags, second: Flags) -> Flags:
    """Flags set in either operand"""
    return Flags(
        **{
            field: True if getattr(first, field) or getattr(second, field) else None
            for field in FLAG_CODES
        }
    )


class OnlyRuleType(BaseModel):
    """One entry of a type restriction: ``Quantity``, ``Reference(Patient)``, ..."""

    type: str
    is_reference: bool = False
    is_canonical: bool = False
    is_codeable_reference: bool = False


class RuleBase(BaseModel):
    path: str = ""
    source_info: Optional[SourceInfo] = None


class CardRule(RuleBase):
    """``* path min..max`` with optional flags"""

    kind: Literal["card"] = "card"
    min: Optional[int] = None
    max: Optional[CardMax] = None
    flags: Flags = Field(default_factory=Flags)


class FlagRule(RuleBase):
    kind: Literal["flag"] = "flag"
    flags: Flags = Field(default_factory=Flags)


class OnlyRule(RuleBase):
    kind: Literal["only"] = "only"
    types: List[OnlyRuleType] = Field(default_factory=list)


class AssignmentRule(RuleBase):
    """``* path = value`` (pattern) or ``* path = value (exactly)`` (fixed)"""

    kind: Literal["assignment"] = "assignment"
    value: Union[FshValue, bool, int, float, str]
    exactly: bool = False


class ContainsItem(BaseModel):
    """A named slice, optionally typed (``extension contains MyExt named ext 0..1``)"""

    name: str
    type: Optional[str] = None
    min: Optional[int] = None
    max: Optional[CardMax] = None
    flags: Flags = Field(default_factory=Flags)


class ContainsRule(RuleBase):
    kind: Literal["contains"] = "contains"
    items: List[ContainsItem] = Field(default_factory=list)


class ObeysRule(RuleBase):
    kind: Literal["obeys"] = "obeys"
    invariant: str


class CaretValueRule(RuleBase):
    """
    ``* path ^caret_path = value``

    An empty ``path`` targets the definition itself rather than an element.
    """

    kind: Literal["caret"] = "caret"
    caret_path: str
    value: Union[FshValue, bool, int, float, str, Dict[str, Any]]


class InsertRule(RuleBase):
    kind: Literal["insert"] = "insert"
    rule_set: str
    params: List[str] = Field(default_factory=list)


class BindingRule(RuleBase):
    kind: Literal["binding"] = "binding"
    value_set: str
    strength: BindingStrength = "required"


class MappingRule(RuleBase):
    kind: Literal["mapping"] = "mapping"
    identity: str
    map: str
    comment: Optional[str] = None
    language: Optional[FshCode] = None


class AddElementRule(RuleBase):
    """New element of a logical model or custom resource"""

    kind: Literal["add-element"] = "add-element"
    min: int = 0
    max: CardMax = "*"
    types: List[OnlyRuleType] = Field(default_factory=list)
    flags: Flags = Field(default_factory=Flags)
    short: Optional[str] = None
    definition: Optional[str] = None
    content_reference: Optional[str] = None


Rule = Annotated[
    Union[
        CardRule,
        FlagRule,
        OnlyRule,
        AssignmentRule,
        ContainsRule,
        ObeysRule,
        CaretValueRule,
        InsertRule,
        BindingRule,
        MappingRule,
        AddElementRule,
    ],
    Field(discriminator="kind"),
]

RULE_TYPES = {
    "card": CardRule,
    "flag": FlagRule,
    "only": OnlyRule,
    "assignment": AssignmentRule,
    "contains": ContainsRule,
    "obeys": ObeysRule,
    "caret": CaretValueRule,
    "insert": InsertRule,
    "binding": BindingRule,
    "mapping": MappingRule,
    "add-element": AddElementRule,
}

RULE_KINDS = tuple(RULE_TYPES)


def parse_rule(data: Dict[str, Any]) -> RuleBase:
    """Parse a rule record from a dict"""
    kind = data.get("kind")
    if kind not in RULE_TYPES:
        raise ValueError(f"Unknown rule kind: {kind}")
    return RULE_TYPES[kind].model_validate(data)
