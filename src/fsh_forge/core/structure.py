"""
Element Tree

A StructureDefinition owns an ordered list of ElementDefinitions. The order
is the snapshot order: every element follows its parent, children precede
the parent's slices, and slices keep declaration order.
"""

import copy
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from .diff import apply_diff, differential_json
from .element import ElementDefinition, ElementType, resolve_canonical_url
from .errors import (
    CircularParentError,
    ElementAlreadyDefinedError,
    InvalidElementAccessError,
    ParentNotDefinedError,
)
from .fishable import STRUCTURE_TYPES, Fishable, fish_for_fhir_best_version
from .path import PathPart, parse_fsh_path, set_property_by_path, split_on_path_periods
from .values import to_fhir_json

logger = logging.getLogger(__name__)

# StructureDefinition properties in output order
PROPS = [
    "resourceType",
    "id",
    "meta",
    "implicitRules",
    "language",
    "text",
    "contained",
    "extension",
    "modifierExtension",
    "url",
    "identifier",
    "version",
    "versionAlgorithmString",
    "versionAlgorithmCoding",
    "name",
    "title",
    "status",
    "experimental",
    "date",
    "publisher",
    "contact",
    "description",
    "useContext",
    "jurisdiction",
    "purpose",
    "copyright",
    "copyrightLabel",
    "keyword",
    "fhirVersion",
    "mapping",
    "kind",
    "abstract",
    "context",
    "contextInvariant",
    "type",
    "baseDefinition",
    "derivation",
]

_ATTRIBUTES = {
    "id": "id",
    "url": "url",
    "version": "version",
    "name": "name",
    "title": "title",
    "status": "status",
    "description": "description",
    "fhirVersion": "fhir_version",
    "kind": "kind",
    "abstract": "abstract",
    "type": "type",
    "baseDefinition": "base_definition",
    "derivation": "derivation",
}


class StructureDefinition:
    """
    Element Tree

    Attributes:
        elements: Element nodes in snapshot order; the first is the root
        other: Remaining StructureDefinition properties by JSON name
    """

    def __init__(self):
        self.id: Optional[str] = None
        self.url: Optional[str] = None
        self.version: Optional[str] = None
        self.name: Optional[str] = None
        self.title: Optional[str] = None
        self.status: Optional[str] = None
        self.description: Optional[str] = None
        self.fhir_version: Optional[str] = None
        self.kind: Optional[str] = None
        self.abstract: Optional[bool] = None
        self.type: Optional[str] = None
        self.base_definition: Optional[str] = None
        self.derivation: Optional[str] = None
        self.other: Dict[str, Any] = {}
        self.elements: List[ElementDefinition] = []

    def __repr__(self):
        return f"StructureDefinition({self.name!r})"

    @property
    def path_type(self) -> str:
        """Path of the root element"""
        return self.elements[0].path if self.elements else (self.type or "")

    # Serialization

    @classmethod
    def from_json(cls, json: Dict[str, Any], capture_original: bool = True) -> "StructureDefinition":
        """
        Build a tree from StructureDefinition JSON with a snapshot

        Each element's baseline is its snapshot state, so later changes
        show up in the differential.
        """
        sd = cls()
        for key, value in json.items():
            if key in ("resourceType", "snapshot", "differential"):
                continue
            if key in _ATTRIBUTES:
                setattr(sd, _ATTRIBUTES[key], copy.deepcopy(value))
            else:
                sd.other[key] = copy.deepcopy(value)
        for element_json in (json.get("snapshot") or {}).get("element", []):
            element = ElementDefinition.from_json(element_json, capture_original)
            element.structure = sd
            sd.elements.append(element)
        return sd

    def _props_json(self) -> Dict[str, Any]:
        j: Dict[str, Any] = {"resourceType": "StructureDefinition"}
        for key, attr in _ATTRIBUTES.items():
            value = getattr(self, attr)
            if value is not None:
                j[key] = copy.deepcopy(value)
        j.update(copy.deepcopy(self.other))
        position = {p: i for i, p in enumerate(PROPS)}
        return {k: j[k] for k in sorted(j, key=lambda k: position.get(k, len(PROPS)))}

    def to_json(self, snapshot: bool = True) -> Dict[str, Any]:
        """
        StructureDefinition JSON with snapshot and differential

        The differential holds every element that differs from its baseline.
        """
        j = self._props_json()
        if snapshot:
            j["snapshot"] = {"element": [e.to_json() for e in self.elements]}
        j["differential"] = {
            "element": [
                differential_json(e.calculate_diff()) for e in self.elements if e.has_diff()
            ]
        }
        return j

    def differential(self) -> List[Dict[str, Any]]:
        """Per-element diffs, keeping removal markers"""
        return [e.calculate_diff() for e in self.elements if e.has_diff()]

    def clone(self) -> "StructureDefinition":
        cloned = StructureDefinition()
        for key, value in self.__dict__.items():
            if key != "elements":
                setattr(cloned, key, copy.deepcopy(value))
        for e in self.elements:
            element = e.clone(clear_original=False)
            element.structure = cloned
            cloned.elements.append(element)
        return cloned

    def capture_originals(self) -> None:
        for e in self.elements:
            e.capture_original()

    # Checkpoints

    def checkpoint(self) -> Dict[str, Any]:
        """Deep-copied state that ``restore`` returns the tree to"""
        return {
            "props": {k: copy.deepcopy(v) for k, v in self.__dict__.items() if k != "elements"},
            "elements": [(e.to_json(), e.original) for e in self.elements],
        }

    def restore(self, state: Dict[str, Any]) -> None:
        for key, value in state["props"].items():
            setattr(self, key, copy.deepcopy(value))
        self.elements = []
        for json, original in state["elements"]:
            element = ElementDefinition.from_json(json, capture_original=False)
            element._original = copy.deepcopy(original)
            element.structure = self
            self.elements.append(element)

    @contextmanager
    def atomic(self) -> Iterator["StructureDefinition"]:
        """Restore the tree if the block raises"""
        state = self.checkpoint()
        try:
            yield self
        except Exception:
            self.restore(state)
            raise

    # Lookup

    def find_element(self, id: str) -> Optional[ElementDefinition]:
        return next((e for e in self.elements if e.id == id), None)

    def find_element_by_path(self, path: str, fisher: Fishable) -> Optional[ElementDefinition]:
        """
        Resolve an authoring path to an element

        Intermediate elements are unfolded on demand. Choice paths such as
        ``valueQuantity`` resolve to the ``value[x]`` element (or a type
        slice of it), and bracketed names select slices. Numeric indices are
        ignored.

        Returns:
            The element, or None if no element matches
        """
        if not self.elements:
            return None
        if path in ("", "."):
            return self.elements[0]
        direct = self.find_element(f"{self.path_type}.{path}")
        if direct is not None:
            return direct

        current = self.elements[0]
        for part in parse_fsh_path(path):
            current = self._find_child(current, part, fisher)
            if current is None:
                return None
        return current

    def _match_child(self, parent: ElementDefinition, base: str) -> Optional[ElementDefinition]:
        return self.find_element(f"{parent.id}.{base}")

    def _find_child(
        self, parent: ElementDefinition, part: PathPart, fisher: Fishable
    ) -> Optional[ElementDefinition]:
        element = self._match_child(parent, part.base)
        if element is None and self._match_choice(parent, part.base) is None and not parent.children():
            parent.unfold(fisher)
            element = self._match_child(parent, part.base)
        if element is None:
            element = self._find_choice(parent, part.base, fisher)
        if element is None:
            return None
        for name in part.slice_names():
            element = self._find_slice(element, name, fisher)
            if element is None:
                return None
        return element

    def _match_choice(self, parent: ElementDefinition, base: str) -> Optional[ElementDefinition]:
        for e in parent.children(direct_only=True):
            if e.path.endswith("[x]") and not e.slice_name:
                prefix = split_on_path_periods(e.path)[-1][:-3]
                if base.startswith(prefix) and base[len(prefix) :][:1].isupper():
                    return e
        return None

    def _find_choice(
        self, parent: ElementDefinition, base: str, fisher: Fishable
    ) -> Optional[ElementDefinition]:
        choice = self._match_choice(parent, base)
        if choice is None:
            return None
        suffix = base[len(split_on_path_periods(choice.path)[-1]) - 3 :]
        matching = [
            t for t in choice.type or [] if t.code and t.code[:1].upper() + t.code[1:] == suffix
        ]
        if not matching:
            return None
        existing = next((s for s in choice.get_slices() if s.slice_name == base), None)
        if existing is not None:
            return existing
        if len(choice.type) == 1:
            return choice
        choice.slice_it("type", "$this", False, "open")
        return choice.add_slice(base, ElementType.from_json(matching[0].to_json()))

    def _find_slice(
        self, element: ElementDefinition, name: str, fisher: Fishable
    ) -> Optional[ElementDefinition]:
        slice_name = f"{element.slice_name}/{name}" if element.slice_name else name
        for s in element.get_slices():
            if s.slice_name == slice_name:
                return s
        # extension[Name] may name the extension instead of the slice
        if element.path.split(".")[-1] in ("extension", "modifierExtension"):
            md = fisher.fish_for_metadata(name)
            if md is not None and md.url:
                for s in element.get_slices():
                    if any(md.url in (t.profile or []) for t in s.type or []):
                        return s
        return None

    # Insertion

    def _insertion_index(self, element: ElementDefinition) -> int:
        last = split_on_path_periods(element.id)[-1]
        if element.slice_name and (":" in last or "/" in last):
            cut = max(element.id.rfind(":"), element.id.rfind("/"))
            container = element.id[:cut]
            separators = (".", ":", "/")
        else:
            container = element.id[: len(element.id) - len(last) - 1]
            separators = (".",)
        index = None
        for i, e in enumerate(self.elements):
            if e.id == container or any(e.id.startswith(container + s) for s in separators):
                index = i
        return len(self.elements) if index is None else index + 1

    def add_element(self, element: ElementDefinition) -> None:
        """Insert an element after its parent's (or sliced element's) existing descendants"""
        element.structure = self
        self.elements.insert(self._insertion_index(element), element)

    def add_elements(self, elements: List[ElementDefinition]) -> None:
        """Insert a block of elements, keeping its order, at the first element's position"""
        if not elements:
            return
        index = self._insertion_index(elements[0])
        for e in elements:
            e.structure = self
        self.elements[index:index] = elements

    def new_element(self, path: str) -> ElementDefinition:
        """
        Create an element of a logical model or custom resource

        Raises:
            ElementAlreadyDefinedError: An element with this path exists
        """
        id = f"{self.path_type}.{path}"
        if self.find_element(id) is not None:
            raise ElementAlreadyDefinedError(id)
        element = ElementDefinition(id)
        element.structure = self
        self.add_element(element)
        return element

    # Caret rules

    def set_instance_property_by_path(
        self, path: str, value: Any, fisher: Optional[Fishable] = None
    ) -> None:
        """
        Set a StructureDefinition property from a caret path

        Raises:
            InvalidElementAccessError: The path targets snapshot or differential
            CannotResolvePathError: The path is malformed
        """
        parts = parse_fsh_path(path)
        top = parts[0].base
        if top in ("snapshot", "differential"):
            raise InvalidElementAccessError(path)
        json = self._props_json()
        fhir_value = to_fhir_json(value, parts[-1].base, resolve_canonical_url(value, fisher))
        set_property_by_path(json, path, fhir_value)
        if top in _ATTRIBUTES:
            setattr(self, _ATTRIBUTES[top], json[top])
        elif top != "resourceType":
            self.other[top] = json[top]

    # Base definitions

    @classmethod
    def from_base(
        cls, item: str, fisher: Fishable, seen: Optional[List[str]] = None
    ) -> "StructureDefinition":
        """
        Fetch a definition as a fully resolved tree

        A definition without a snapshot is resolved from its baseDefinition,
        with its differential applied on top. The returned tree is independent
        of anything the fisher holds.

        Raises:
            ParentNotDefinedError: The definition or an ancestor cannot be found
            CircularParentError: The baseDefinition chain loops
        """
        seen = list(seen or [])
        json = fish_for_fhir_best_version(fisher, item, *STRUCTURE_TYPES)
        if json is None:
            raise ParentNotDefinedError(seen[-1] if seen else item, item)
        key = json.get("url") or json.get("name") or item
        if key in seen:
            raise CircularParentError(seen[seen.index(key) :] + [key])
        seen.append(key)

        if (json.get("snapshot") or {}).get("element") or not json.get("baseDefinition"):
            return cls.from_json(json)

        sd = cls.from_base(json["baseDefinition"], fisher, seen)
        props = {k: v for k, v in json.items() if k not in ("snapshot", "differential")}
        merged = cls.from_json(props)
        merged.elements = sd.elements
        for e in merged.elements:
            e.structure = merged
        for diff in (json.get("differential") or {}).get("element", []):
            merged._apply_differential_element(diff, fisher)
        merged.capture_originals()
        return merged

    def _apply_differential_element(self, diff: Dict[str, Any], fisher: Fishable) -> None:
        id = diff.get("id") or diff["path"]
        element = self.find_element(id)
        if element is None:
            parts = split_on_path_periods(id)
            last = parts[-1]
            if diff.get("sliceName") and (":" in last or "/" in last):
                cut = max(id.rfind(":"), id.rfind("/"))
                self._ensure_element(id[:cut], fisher)
                sliced = self.find_element(id[:cut])
                if sliced is None:
                    raise ParentNotDefinedError(id, id[:cut])
                element = sliced.add_slice(id[cut + 1 :])
            else:
                self._ensure_element(id, fisher)
                element = self.find_element(id)
                if element is None:
                    element = ElementDefinition(id)
                    self.add_element(element)
        merged = apply_diff(element.to_json(), diff)
        replacement = ElementDefinition.from_json(merged, capture_original=False)
        replacement.structure = self
        self.elements[self.elements.index(element)] = replacement

    def _ensure_element(self, id: str, fisher: Fishable) -> None:
        if self.find_element(id) is not None or "." not in id:
            return
        path = ".".join(
            part.replace(":", "[", 1) + "]" if ":" in part else part
            for part in split_on_path_periods(id)[1:]
        ).replace("/", "][")
        self.find_element_by_path(path, fisher)
