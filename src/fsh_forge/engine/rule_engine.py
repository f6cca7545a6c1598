"""
Rule Application Engine

Applies an ordered sequence of rules to one element tree. Rule sets are
expanded and soft indices resolved first; then each rule runs inside a
tree checkpoint. A rule that fails is rolled back and recorded as a
diagnostic, and the engine moves on to the next rule.
"""

import logging
from typing import Callable, Dict, List, Optional, Sequence

from ..core.diagnostics import DiagnosticCollector, capture_warnings
from ..core.element import ElementDefinition, ElementType
from ..core.errors import (
    CannotResolvePathError,
    CircularInsertError,
    ForgeError,
    InvalidExtensionSliceError,
    InvariantNotDefinedError,
    RuleSetNotDefinedError,
)
from ..core.fishable import FhirType, Fishable
from ..core.path import resolve_soft_indexing
from ..core.rules import (
    RULE_KINDS,
    AddElementRule,
    AssignmentRule,
    BindingRule,
    CardRule,
    CaretValueRule,
    ContainsRule,
    FlagRule,
    InsertRule,
    MappingRule,
    ObeysRule,
    OnlyRule,
    RuleBase,
)
from ..core.structure import StructureDefinition

logger = logging.getLogger(__name__)

EXTENSION_PATHS = ("extension", "modifierExtension")


def check_rule_coverage(handlers: Dict[str, Callable]) -> None:
    """
    Raise if the dispatch table does not cover every rule kind exactly

    Raises:
        TypeError: A kind has no handler, or a handler has no kind
    """
    missing = [k for k in RULE_KINDS if k not in handlers]
    unknown = [k for k in handlers if k not in RULE_KINDS]
    if missing or unknown:
        raise TypeError(
            f"Rule dispatch mismatch: missing handlers {missing}, unknown kinds {unknown}"
        )


def _prefix_path(prefix: str, path: str) -> str:
    if not prefix or prefix == ".":
        return path
    if not path or path == ".":
        return prefix
    return f"{prefix}.{path}"


class RuleEngine:
    """
    Rule Application Engine

    Args:
        fisher: Resolver for types, profiles, extensions and value sets
        tank: Authoring working set; supplies rule sets and invariants
        collector: Receives one diagnostic per failed rule and captured warnings
        strict_slice_ordering: Count soft indices within named slices
    """

    def __init__(
        self,
        fisher: Fishable,
        tank=None,
        collector: Optional[DiagnosticCollector] = None,
        strict_slice_ordering: bool = False,
    ):
        self.fisher = fisher
        self.tank = tank
        self.collector = collector if collector is not None else DiagnosticCollector()
        self.strict_slice_ordering = strict_slice_ordering
        self.logger = logging.getLogger(self.__class__.__name__)
        self._handlers: Dict[str, Callable[[StructureDefinition, RuleBase], None]] = {
            "card": self._apply_card,
            "flag": self._apply_flag,
            "only": self._apply_only,
            "assignment": self._apply_assignment,
            "contains": self._apply_contains,
            "obeys": self._apply_obeys,
            "caret": self._apply_caret,
            "insert": self._apply_insert,
            "binding": self._apply_binding,
            "mapping": self._apply_mapping,
            "add-element": self._apply_add_element,
        }
        check_rule_coverage(self._handlers)

    # Preprocessing

    def expand_inserts(
        self,
        rules: Sequence[RuleBase],
        artifact: Optional[str] = None,
        stack: Optional[List[str]] = None,
    ) -> List[RuleBase]:
        """
        Replace insert rules with their rule sets' rules

        Inserted rule paths are prefixed with the insert rule's path. An
        undefined or recursive insert is reported and skipped.
        """
        stack = stack or []
        expanded: List[RuleBase] = []
        for rule in rules:
            if not isinstance(rule, InsertRule):
                expanded.append(rule)
                continue
            try:
                expanded.extend(self._expand_insert(rule, artifact, stack))
            except (ForgeError, ValueError) as e:
                self.collector.add_error(e, artifact, rule.path, rule.source_info)
        return expanded

    def _expand_insert(self, rule: InsertRule, artifact: Optional[str], stack: List[str]) -> List[RuleBase]:
        if rule.rule_set in stack:
            raise CircularInsertError(stack + [rule.rule_set])
        rule_set = self.tank.fish(rule.rule_set, FhirType.RULE_SET) if self.tank is not None else None
        if rule_set is None:
            raise RuleSetNotDefinedError(rule.rule_set)
        inserted = []
        for r in rule_set.expand(rule.params):
            update = {"path": _prefix_path(rule.path, r.path)}
            if r.source_info is None:
                update["source_info"] = rule.source_info
            inserted.append(r.model_copy(update=update))
        return self.expand_inserts(inserted, artifact, stack + [rule.rule_set])

    # Application

    def apply_rules(
        self,
        sd: StructureDefinition,
        rules: Sequence[RuleBase],
        artifact: Optional[str] = None,
    ) -> StructureDefinition:
        """
        Apply rules in order to a tree

        Args:
            sd: Tree to mutate
            rules: Rules in declaration order
            artifact: Name used in diagnostics; defaults to the tree's name

        Returns:
            The same tree, for chaining
        """
        artifact = artifact or sd.name
        expanded = self.expand_inserts(rules, artifact)
        resolved = resolve_soft_indexing(
            expanded,
            strict=self.strict_slice_ordering,
            on_warning=lambda message, rule: self.collector.add_warning(
                message, artifact, rule.path, rule.source_info
            ),
        )
        for rule in resolved:
            self.apply_rule(sd, rule, artifact)
        return sd

    def apply_rule(
        self, sd: StructureDefinition, rule: RuleBase, artifact: Optional[str] = None
    ) -> bool:
        """
        Apply one rule atomically

        Returns:
            True if the rule applied; False if it failed and was rolled back
        """
        handler = self._handlers[rule.kind]
        try:
            with capture_warnings(self.collector, artifact, rule.path, rule.source_info):
                with sd.atomic():
                    handler(sd, rule)
        except ForgeError as e:
            self.collector.add_error(e, artifact or sd.name, rule.path, rule.source_info)
            return False
        except Exception as e:
            self.logger.debug(
                f"Unexpected failure in {rule.kind} rule at {rule.path or '.'}", exc_info=True
            )
            self.collector.add_error(e, artifact or sd.name, rule.path, rule.source_info)
            return False
        self.logger.debug(f"Applied {rule.kind} rule at {rule.path or '.'} on {artifact}")
        return True

    def _element(self, sd: StructureDefinition, rule: RuleBase) -> ElementDefinition:
        element = sd.find_element_by_path(rule.path, self.fisher)
        if element is None:
            raise CannotResolvePathError(rule.path)
        return element

    # Handlers, one per rule kind

    def _apply_card(self, sd: StructureDefinition, rule: CardRule) -> None:
        element = self._element(sd, rule)
        if rule.min is not None or rule.max not in (None, ""):
            element.constrain_cardinality(rule.min, rule.max)
        if not rule.flags.is_empty():
            element.apply_flags(rule.flags)

    def _apply_flag(self, sd: StructureDefinition, rule: FlagRule) -> None:
        self._element(sd, rule).apply_flags(rule.flags)

    def _apply_only(self, sd: StructureDefinition, rule: OnlyRule) -> None:
        self._element(sd, rule).constrain_type(rule.types, self.fisher, rule_path=rule.path)

    def _apply_assignment(self, sd: StructureDefinition, rule: AssignmentRule) -> None:
        self._element(sd, rule).assign_value(rule.value, rule.exactly, self.fisher)

    def _apply_contains(self, sd: StructureDefinition, rule: ContainsRule) -> None:
        element = self._element(sd, rule)
        is_extension = element.path.split(".")[-1] in EXTENSION_PATHS
        if is_extension and (element.slicing is None or not element.slicing.discriminator):
            element.slice_it("value", "url", False, "open")

        for item in rule.items:
            profile_url = None
            if is_extension:
                md = self.fisher.fish_for_metadata(item.type or item.name, FhirType.EXTENSION)
                if md is not None:
                    profile_url = md.url
                elif item.type is not None:
                    raise InvalidExtensionSliceError(item.type)
            elif item.type is not None:
                logger.warning(
                    f"Slice {item.name} on {element.id} names type {item.type}; "
                    "only extension slices can be typed in a contains rule"
                )

            slice_type = None
            if profile_url is not None:
                base = (element.type or [ElementType(code="Extension")])[0]
                slice_type = ElementType.from_json(base.to_json())
                slice_type.profile = [profile_url]
            new_slice = element.add_slice(item.name, slice_type)
            if item.min is not None or item.max not in (None, ""):
                new_slice.constrain_cardinality(item.min, item.max)
            if not item.flags.is_empty():
                new_slice.apply_flags(item.flags)

    def _apply_obeys(self, sd: StructureDefinition, rule: ObeysRule) -> None:
        element = self._element(sd, rule)
        invariant = (
            self.tank.fish(rule.invariant, FhirType.INVARIANT) if self.tank is not None else None
        )
        if invariant is None:
            raise InvariantNotDefinedError(rule.invariant)
        element.apply_constraint(
            invariant.name,
            invariant.severity.code if invariant.severity is not None else None,
            invariant.human or invariant.description,
            invariant.expression,
            invariant.xpath,
            sd.url,
        )

    def _apply_caret(self, sd: StructureDefinition, rule: CaretValueRule) -> None:
        if rule.path in ("", "."):
            sd.set_instance_property_by_path(rule.caret_path, rule.value, self.fisher)
        else:
            self._element(sd, rule).set_instance_property_by_path(
                rule.caret_path, rule.value, self.fisher
            )

    def _apply_insert(self, sd: StructureDefinition, rule: InsertRule) -> None:
        # Only reached when apply_rule is called directly with an insert rule
        for inserted in self._expand_insert(rule, sd.name, []):
            self.apply_rule(sd, inserted, sd.name)

    def _apply_binding(self, sd: StructureDefinition, rule: BindingRule) -> None:
        element = self._element(sd, rule)
        value_set = rule.value_set
        md = self.fisher.fish_for_metadata(value_set.split("|", 1)[0], FhirType.VALUE_SET)
        if md is not None and md.url:
            version = value_set.split("|", 1)[1] if "|" in value_set else None
            value_set = f"{md.url}|{version}" if version else md.url
        element.bind_to_vs(value_set, rule.strength)

    def _apply_mapping(self, sd: StructureDefinition, rule: MappingRule) -> None:
        element = self._element(sd, rule)
        element.apply_mapping(rule.identity, rule.map, rule.comment, rule.language)
        mappings = sd.other.setdefault("mapping", [])
        if not any(m.get("identity") == rule.identity for m in mappings):
            mappings.append({"identity": rule.identity, "name": rule.identity})

    def _apply_add_element(self, sd: StructureDefinition, rule: AddElementRule) -> None:
        element = sd.new_element(rule.path)
        element.apply_add_element_rule(rule, self.fisher)
