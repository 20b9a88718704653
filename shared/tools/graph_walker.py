"""
Schema-less fact extraction over management records.

Records arrive as whatever the backend produced: dicts from JSON, pydantic
models, dataclasses, plain objects, lists, sets, or any nesting of these,
sometimes with shared or self-referencing sub-objects. ``classify`` is the
only function that inspects runtime types; the walker itself only sees the
five ``NodeKind`` values.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, fields, is_dataclass
from enum import Enum
import os
import re
from typing import Any, Callable, Iterator, List, Tuple

from pydantic import BaseModel

from config.constants import CANDIDATE_PATH_RE, DRIVE_PATH_RE, UNC_PATH_RE
from shared.models.entity import ManagementEntity
from shared.models.fact import ExtractedFact


class NodeKind(Enum):
    NULL = "null"
    SCALAR = "scalar"
    COLLECTION = "collection"
    RECORD = "record"
    OPAQUE = "opaque"


# Children are visited in this order within a record
_KIND_RANK = {
    NodeKind.NULL: 0,
    NodeKind.SCALAR: 0,
    NodeKind.OPAQUE: 0,
    NodeKind.COLLECTION: 1,
    NodeKind.RECORD: 2,
}

_SCALAR_TYPES = (str, bytes, int, float, complex, bool, Enum)


@dataclass(frozen=True)
class FactPattern:
    """What to capture (``capture``) and what counts as well-formed (``expected``)."""

    name: str
    capture: re.Pattern[str]
    expected: re.Pattern[str] | None = None

    def captures(self, value: str) -> bool:
        return self.capture.search(value) is not None

    def is_expected(self, value: str) -> bool:
        if self.expected is None:
            return True
        return self.expected.match(value.strip()) is not None


CONTENT_PATH_PATTERN = FactPattern(
    name="content-path",
    capture=CANDIDATE_PATH_RE,
    expected=re.compile(f"(?:{UNC_PATH_RE.pattern})|(?:{DRIVE_PATH_RE.pattern})"),
)


def classify(node: Any) -> NodeKind:
    if node is None:
        return NodeKind.NULL
    if isinstance(node, _SCALAR_TYPES) or isinstance(node, os.PathLike):
        return NodeKind.SCALAR
    if isinstance(node, (Mapping, BaseModel)):
        return NodeKind.RECORD
    if is_dataclass(node) and not isinstance(node, type):
        return NodeKind.RECORD
    if isinstance(node, Iterable):
        return NodeKind.COLLECTION
    if getattr(node, "__dict__", None) or getattr(node, "__slots__", None):
        return NodeKind.RECORD
    return NodeKind.OPAQUE


def _scalar_text(node: Any) -> str | None:
    if isinstance(node, str):
        return node
    if isinstance(node, os.PathLike):
        path = os.fspath(node)
        return path if isinstance(path, str) else None
    return None


def _record_items(node: Any) -> List[Tuple[str, Any]]:
    if isinstance(node, Mapping):
        return [(str(key), value) for key, value in node.items()]
    if isinstance(node, BaseModel):
        return [(name, getattr(node, name, None)) for name in type(node).model_fields]
    if is_dataclass(node):
        return [(item.name, getattr(node, item.name, None)) for item in fields(node)]
    items: List[Tuple[str, Any]] = []
    attributes = getattr(node, "__dict__", None)
    if attributes:
        items.extend((name, value) for name, value in vars(node).items() if not name.startswith("__"))
    slots = getattr(node, "__slots__", ()) or ()
    if isinstance(slots, str):
        slots = (slots,)
    for name in slots:
        if hasattr(node, name):
            items.append((name, getattr(node, name)))
    return [(name, value) for name, value in items if not callable(value)]


def _collection_items(node: Any) -> List[Any]:
    if isinstance(node, (set, frozenset)):
        # Unordered input still walks in a stable order
        return sorted(node, key=lambda item: (_KIND_RANK[classify(item)], str(item)))
    return list(node)


def _ordered_children(node: Any, kind: NodeKind, where: str) -> List[Tuple[Any, str]]:
    if kind is NodeKind.COLLECTION:
        return [(item, f"{where}[{index}]") for index, item in enumerate(_collection_items(node))]
    items = _record_items(node)
    ranked = sorted(
        ((_KIND_RANK[classify(value)], position, name, value) for position, (name, value) in enumerate(items)),
        key=lambda entry: (entry[0], entry[1]),
    )
    prefix = f"{where}." if where else ""
    return [(value, f"{prefix}{name}") for _, _, name, value in ranked]


def walk(root: Any, pattern: FactPattern) -> Iterator[Tuple[str, str]]:
    """Yield ``(value, source_path)`` for every matching string reachable from ``root``.

    Depth-first; each container is entered at most once per call, keyed by
    object identity. Strings are never de-duplicated.
    """
    visited: set[int] = set()
    # Holding references keeps id() values unique for the duration of the walk
    pinned: List[Any] = []
    stack: List[Tuple[Any, str]] = [(root, "")]

    while stack:
        node, where = stack.pop()
        kind = classify(node)
        if kind is NodeKind.NULL:
            continue
        if kind is NodeKind.SCALAR:
            text = _scalar_text(node)
            if text is not None and pattern.captures(text):
                yield text, where
            continue
        if kind is NodeKind.OPAQUE:
            text = str(node)
            if pattern.captures(text):
                yield text, where
            continue

        marker = id(node)
        if marker in visited:
            continue
        visited.add(marker)
        pinned.append(node)
        stack.extend(reversed(_ordered_children(node, kind, where)))


def extract_facts(
    entity: ManagementEntity,
    pattern: FactPattern = CONTENT_PATH_PATTERN,
    *,
    sub_entity: str | None = None,
    root: Any = None,
) -> Iterator[ExtractedFact]:
    """Lazily extract facts from ``entity`` (or from ``root`` on its behalf).

    An entity with no walkable properties is matched on its display text.
    """
    target = root if root is not None else entity.properties
    if root is None and not entity.properties:
        target = entity.name or None
    for value, source in walk(target, pattern):
        yield ExtractedFact(
            value=value,
            entity_id=entity.entity_id,
            sub_entity=sub_entity,
            recognized=pattern.is_expected(value),
            source=source,
        )


def extract_with_fallback(
    entity: ManagementEntity,
    pattern: FactPattern = CONTENT_PATH_PATTERN,
    secondary_lookup: Callable[[ManagementEntity], Any] | None = None,
    *,
    sub_entity: str | None = None,
) -> List[ExtractedFact]:
    """Walk the entity; when that finds nothing, walk ``secondary_lookup(entity)`` instead.

    Errors raised by the lookup propagate to the caller.
    """
    facts = list(extract_facts(entity, pattern, sub_entity=sub_entity))
    if facts or secondary_lookup is None:
        return facts
    widened = secondary_lookup(entity)
    if widened is None:
        return []
    return list(extract_facts(entity, pattern, sub_entity=sub_entity, root=widened))
