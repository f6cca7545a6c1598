"""
Element differential

The differential of an element is a pure function of two JSON values: the
baseline captured when the element was inherited, and the element's current
JSON. Neither input is modified.

A removed property is reported with the value None, so applying a diff to its
baseline reproduces the current element exactly. Serialized differentials drop
those entries (see ``differential_json``).
"""

import copy
import re
from typing import Any, Dict, List, Optional

# ElementDefinition properties in output order. [x] stands for any type suffix.
PROPS = [
    "id",
    "extension",
    "modifierExtension",
    "path",
    "representation",
    "sliceName",
    "sliceIsConstraining",
    "label",
    "code",
    "slicing",
    "short",
    "definition",
    "comment",
    "requirements",
    "alias",
    "min",
    "max",
    "base",
    "contentReference",
    "type",
    "defaultValue[x]",
    "meaningWhenMissing",
    "orderMeaning",
    "fixed[x]",
    "pattern[x]",
    "example",
    "minValue[x]",
    "maxValue[x]",
    "maxLength",
    "condition",
    "constraint",
    "mustSupport",
    "isModifier",
    "isModifierReason",
    "isSummary",
    "binding",
    "mapping",
]

PROPS_AND_UNDERPROPS = [u for p in PROPS for u in (p, f"_{p}")]

# Properties whose differential lists only the entries added since the baseline
ADDITIVE_PROPS = ["mapping", "constraint"]

CHOICE_PROPS = [p[:-3] for p in PROPS if p.endswith("[x]")]

_CHOICE_PATTERNS = {
    prop: re.compile(rf"^_?{prop[:-3]}[A-Z].*$") for prop in PROPS if prop.endswith("[x]")
}


def prop_for_key(key: str) -> Optional[str]:
    """
    Map a JSON key to the property it belongs to

    ``fixedCode`` maps to ``fixed[x]``, ``_short`` to ``_short``. Keys that
    are not ElementDefinition properties map to None.
    """
    for prop, pattern in _CHOICE_PATTERNS.items():
        if pattern.match(key):
            return f"_{prop}" if key.startswith("_") else prop
    if key in PROPS_AND_UNDERPROPS:
        return key
    return None


def _ordered_keys(baseline: Dict[str, Any], current: Dict[str, Any]) -> List[str]:
    keys = list(current) + [k for k in baseline if k not in current]
    known = [k for k in keys if prop_for_key(k) is not None]
    return sorted(known, key=lambda k: PROPS_AND_UNDERPROPS.index(prop_for_key(k)))


def changed_props(baseline: Dict[str, Any], current: Dict[str, Any]) -> List[str]:
    """Keys whose value differs between baseline and current, in output order"""
    return [
        key
        for key in _ordered_keys(baseline, current)
        if current.get(key) != baseline.get(key)
    ]


def compute_diff(
    baseline: Optional[Dict[str, Any]], current: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Compute the differential of an element

    Args:
        baseline: Captured element JSON, or None for a new element
        current: Current element JSON

    Returns:
        Dict carrying id, path and every changed property. For additive
        properties only the new entries are carried. A property present in
        the baseline but absent now maps to None.
    """
    baseline = baseline or {}
    diff: Dict[str, Any] = {"id": current.get("id"), "path": current.get("path")}
    slice_of_choice = bool(current.get("sliceName")) and str(
        current.get("path", "")
    ).endswith("[x]")

    for key in _ordered_keys(baseline, current):
        if key in ("id", "path"):
            continue
        new_value = current.get(key)
        old_value = baseline.get(key)
        if new_value == old_value:
            if key == "type" and slice_of_choice and new_value is not None:
                diff[key] = copy.deepcopy(new_value)
            continue
        if key in ADDITIVE_PROPS and isinstance(new_value, list):
            added = [item for item in new_value if item not in (old_value or [])]
            if added:
                diff[key] = copy.deepcopy(added)
            continue
        diff[key] = copy.deepcopy(new_value) if key in current else None

    if baseline.get("sliceName") and diff.get("sliceName") is None:
        diff["sliceName"] = baseline["sliceName"]
    return order_props(diff)


def apply_diff(baseline: Optional[Dict[str, Any]], diff: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply a differential to a baseline, returning the reconstructed element

    Additive properties are appended to the baseline's entries; None removes
    the property; everything else replaces the baseline value.
    """
    result = copy.deepcopy(baseline or {})
    for key, value in diff.items():
        if value is None:
            result.pop(key, None)
        elif key in ADDITIVE_PROPS:
            result[key] = list(result.get(key) or []) + copy.deepcopy(value)
        else:
            result[key] = copy.deepcopy(value)
    return order_props(result)


def differential_json(diff: Dict[str, Any]) -> Dict[str, Any]:
    """Differential in its serialized form, without removal markers"""
    return {k: v for k, v in diff.items() if v is not None}


def order_props(element: Dict[str, Any]) -> Dict[str, Any]:
    def position(key: str) -> int:
        prop = prop_for_key(key)
        return PROPS_AND_UNDERPROPS.index(prop) if prop else len(PROPS_AND_UNDERPROPS)

    return {k: element[k] for k in sorted(element, key=position)}
