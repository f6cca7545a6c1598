"""
FSH path handling

Implements the path syntax used by rules:
- . separates element names (dots inside brackets are not separators)
- [n] selects an array index
- [name] selects a slice, [a][b] a reslice
- [x] marks a choice element
- [+] and [=] are soft indices, resolved to numbers before rules are applied
"""

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from .errors import CannotResolvePathError

logger = logging.getLogger(__name__)

INDEX_PATTERN = re.compile(r"^[0-9]+$")

SOFT_INDEX_START_MESSAGE = (
    'The first index in a Soft Indexing sequence must be "+", '
    'an actual index of "0" has been assumed'
)

R = TypeVar("R")


class PathPart:
    """One period-separated part of a FSH path"""

    def __init__(
        self,
        base: str,
        brackets: Optional[List[str]] = None,
        slices: Optional[List[str]] = None,
    ):
        self.base = base
        self.brackets = brackets
        self.slices = slices
        self.prefix: Optional[str] = None

    def index(self) -> Optional[int]:
        """Numeric index in the last bracket, if any"""
        if self.brackets and INDEX_PATTERN.match(self.brackets[-1]):
            return int(self.brackets[-1])
        return None

    def slice_names(self) -> List[str]:
        """Brackets that name slices rather than indices"""
        return [
            b
            for b in (self.brackets or [])
            if not INDEX_PATTERN.match(b) and b not in ("+", "=")
        ]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PathPart):
            return NotImplemented
        return (
            self.base == other.base
            and self.brackets == other.brackets
            and self.slices == other.slices
        )

    def __repr__(self):
        return f"PathPart({self.base!r}, {self.brackets!r}, {self.slices!r})"


def split_on_path_periods(path: str) -> List[str]:
    """
    Split a path on periods that are not inside brackets

    ``extension[http://example.org/ext].value[x]`` splits into
    ``["extension[http://example.org/ext]", "value[x]"]``.
    """
    parts: List[str] = []
    current = []
    depth = 0
    for char in path:
        if char == "[":
            depth += 1
        elif char == "]" and depth > 0:
            depth -= 1
        if char == "." and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))
    return parts


def _split_brackets(part: str) -> List[str]:
    brackets: List[str] = []
    depth = 0
    current = []
    for char in part:
        if char == "[":
            if depth > 0:
                current.append(char)
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                brackets.append("".join(current))
                current = []
            else:
                current.append(char)
        elif depth > 0:
            current.append(char)
    return brackets


def parse_fsh_path(fsh_path: str) -> List[PathPart]:
    """
    Parse a FSH path into its parts

    Args:
        fsh_path: Path string, e.g. "component[Systolic].code.coding[0]"

    Returns:
        List of PathParts. Slice names are collected cumulatively, so each
        part knows every slice it is nested in.
    """
    parts: List[PathPart] = []
    seen_slices: List[str] = []
    split_path = [fsh_path] if fsh_path == "." else split_on_path_periods(fsh_path)
    for raw in split_path:
        if "[" not in raw or raw.endswith("[x]") and raw.count("[") == 1:
            parts.append(PathPart(raw))
            continue

        base = raw[: raw.index("[")]
        brackets = _split_brackets(raw[len(base) :])
        if brackets and brackets[0] == "x":
            base += "[x]"
            brackets = brackets[1:]
        for bracket in brackets:
            if not INDEX_PATTERN.match(bracket) and bracket not in ("+", "="):
                seen_slices.append(bracket)
        if seen_slices:
            parts.append(PathPart(base, brackets, list(seen_slices)))
        else:
            parts.append(PathPart(base, brackets))
    return parts


def assemble_fsh_path(parts: Sequence[PathPart]) -> str:
    """Assemble parsed parts back into a FSH path string"""
    return ".".join(
        part.base + "".join(f"[{b}]" for b in (part.brackets or [])) for part in parts
    )


def get_array_index(part: PathPart) -> Optional[int]:
    return part.index()


def set_property_by_path(obj: Dict[str, Any], path: str, value: Any) -> None:
    """
    Set a value on a JSON object using a FSH caret path

    Intermediate objects and arrays are created on write; arrays are padded
    with None when the index is past the end. Slice brackets are not allowed
    on plain JSON objects.

    Args:
        obj: Root object
        path: Caret path, e.g. "jurisdiction[0].coding[1].code"
        value: Value to set

    Raises:
        CannotResolvePathError: Path is malformed or hits a non-container
    """
    parts = parse_fsh_path(path)
    if not parts or not parts[0].base:
        raise CannotResolvePathError(path)

    current: Any = obj
    for i, part in enumerate(parts):
        is_last = i == len(parts) - 1
        if part.slice_names() or (part.brackets and part.index() is None):
            raise CannotResolvePathError(path)
        if not isinstance(current, dict):
            raise CannotResolvePathError(path)

        index = part.index()
        if index is None:
            if is_last:
                current[part.base] = value
            else:
                if not isinstance(current.get(part.base), (dict, list)):
                    current[part.base] = {}
                current = current[part.base]
            continue

        array = current.get(part.base)
        if not isinstance(array, list):
            array = current[part.base] = []
        if index >= len(array):
            array.extend([None] * (index - len(array) + 1))
        if is_last:
            array[index] = value
        else:
            if not isinstance(array[index], dict):
                array[index] = {}
            current = array[index]


def _map_name(part: PathPart) -> str:
    return f"{part.prefix or ''}.{part.base}|{'|'.join(part.slices or [])}"


def _convert_soft_indices(part: PathPart, path_map: Dict[str, int]) -> None:
    """Non-strict resolution; named slices share the counter of their element"""
    map_name = _map_name(part)
    brackets = part.brackets
    if map_name not in path_map:
        numeric = next((b for b in brackets or [] if INDEX_PATTERN.match(b)), None)
        if numeric is not None:
            path_map[map_name] = int(numeric)
            return
        path_map[map_name] = 0
        if brackets and "+" in brackets:
            brackets[brackets.index("+")] = "0"
        elif brackets and "=" in brackets:
            brackets[brackets.index("=")] = "0"
            raise ValueError(SOFT_INDEX_START_MESSAGE)
        return

    for i, bracket in enumerate(brackets or []):
        if bracket == "+":
            path_map[map_name] += 1
            brackets[i] = str(path_map[map_name])
        elif bracket == "=":
            brackets[i] = str(path_map[map_name])
        elif INDEX_PATTERN.match(bracket):
            path_map[map_name] = int(bracket)


def _convert_soft_indices_strict(
    part: PathPart, path_map: Dict[str, int], max_path_map: Dict[str, int]
) -> None:
    """
    Strict resolution; soft indices count within a named slice, and the
    unsliced element's counter is advanced past the slice's entries
    """
    map_name = _map_name(part)
    brackets = part.brackets
    add_to_base: Optional[int] = None
    error: Optional[str] = None

    if map_name not in path_map:
        numeric = next((b for b in brackets or [] if INDEX_PATTERN.match(b)), None)
        if numeric is not None:
            path_map[map_name] = max_path_map[map_name] = int(numeric)
            add_to_base = int(numeric) + 1
        else:
            path_map[map_name] = max_path_map[map_name] = 0
            add_to_base = 1
            if brackets and "+" in brackets:
                brackets[brackets.index("+")] = "0"
            elif brackets and "=" in brackets:
                brackets[brackets.index("=")] = "0"
                error = SOFT_INDEX_START_MESSAGE
    else:
        for i, bracket in enumerate(brackets or []):
            if bracket == "=":
                brackets[i] = str(path_map[map_name])
                continue
            if bracket == "+":
                new_index = path_map[map_name] + 1
                brackets[i] = str(new_index)
            elif INDEX_PATTERN.match(bracket):
                new_index = int(bracket)
            else:
                continue
            path_map[map_name] = new_index
            if new_index > max_path_map[map_name]:
                add_to_base = new_index - max_path_map[map_name]
                max_path_map[map_name] = new_index

    if part.slices and add_to_base is not None:
        for take in range(len(part.slices) - 1, -1, -1):
            less_sliced = f"{part.prefix or ''}.{part.base}|{'|'.join(part.slices[:take])}"
            if less_sliced not in path_map:
                path_map[less_sliced] = max_path_map[less_sliced] = add_to_base - 1
            else:
                new_index = path_map[less_sliced] + add_to_base
                path_map[less_sliced] = new_index
                if new_index > max_path_map[less_sliced]:
                    max_path_map[less_sliced] = new_index

    if error:
        raise ValueError(error)


def _resolve_parts(
    parts: List[PathPart],
    path_map: Dict[str, int],
    max_path_map: Dict[str, int],
    strict: bool,
    warn: Callable[[str], None],
) -> str:
    for i, part in enumerate(parts):
        part.prefix = assemble_fsh_path(parts[:i])
        try:
            if strict:
                _convert_soft_indices_strict(part, path_map, max_path_map)
            else:
                _convert_soft_indices(part, path_map)
        except ValueError as e:
            warn(str(e))
    return assemble_fsh_path(parts)


def resolve_soft_indexing(
    rules: Sequence[R],
    strict: bool = False,
    on_warning: Optional[Callable[[str, R], None]] = None,
) -> List[R]:
    """
    Replace [+] and [=] in rule paths with concrete indices

    Rules are scanned in order. Each distinct path prefix (and, in strict
    mode, each named slice) keeps a running counter: [+] increments it and
    [=] reuses it. A sequence that starts with [=] is resolved to 0 and
    reported through on_warning.

    Caret paths are resolved separately for each resolved element path.

    Args:
        rules: Rule models with a ``path`` and optionally a ``caret_path``
        strict: Count soft indices within named slices
        on_warning: Called with (message, rule) for misused soft indices

    Returns:
        New rule list; the input rules are not modified
    """
    path_map: Dict[str, int] = {}
    max_path_map: Dict[str, int] = {}
    caret_maps: Dict[str, Dict[str, int]] = {}
    max_caret_maps: Dict[str, Dict[str, int]] = {}

    resolved: List[R] = []
    for rule in rules:

        def warn(message: str, rule: R = rule) -> None:
            logger.warning(message)
            if on_warning:
                on_warning(message, rule)

        path = _resolve_parts(
            parse_fsh_path(rule.path), path_map, max_path_map, strict, warn
        )
        update: Dict[str, Any] = {"path": path}

        caret_path = getattr(rule, "caret_path", None)
        if caret_path is not None:
            update["caret_path"] = _resolve_parts(
                parse_fsh_path(caret_path),
                caret_maps.setdefault(path, {}),
                max_caret_maps.setdefault(path, {}),
                strict,
                warn,
            )
        resolved.append(rule.model_copy(update=update))
    return resolved
