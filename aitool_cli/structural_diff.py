"""
Structural diff and patch for JSON documents.

``diff(template, local)`` describes how a local document differs from a
template, key by key and element by element:

- a key only in ``local``      -> Added(local value)
- a key only in ``template``   -> Removed(template value)
- a key in both, values differ -> Changed(template value, local value), or a
  nested ObjectDelta / ArrayDelta when both sides are objects / arrays

``apply(local, delta)`` walks the same delta backwards and rebuilds the
template, so ``apply(local, diff(template, local)) == template`` holds for any
JSON-compatible pair.

The raw delta keeps array positions (needed to patch); ``parse()`` turns it into
the DiffNode tree used for display and counting.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union

from aitool_cli.unified_diff import EditKind, compute_edits


# =============================================================================
# Leaf nodes (shared by raw deltas and the parsed DiffNode tree)
# =============================================================================

@dataclass
class Added:
    """Present in the local document only."""
    kind: ClassVar[str] = "added"
    value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "value": self.value}


@dataclass
class Removed:
    """Present in the template only."""
    kind: ClassVar[str] = "removed"
    value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "value": self.value}


@dataclass
class Changed:
    """Present on both sides with different values."""
    kind: ClassVar[str] = "changed"
    template_value: Any
    local_value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "templateValue": self.template_value,
            "localValue": self.local_value,
        }


# =============================================================================
# Raw delta containers
# =============================================================================

@dataclass
class ObjectDelta:
    children: Dict[str, "Delta"] = field(default_factory=dict)


@dataclass
class ArrayItem:
    """One array change and the position it refers to on each side.

    Added items carry only ``local_index``, Removed items only
    ``template_index``; nested changes carry both.
    """
    template_index: Optional[int]
    local_index: Optional[int]
    delta: "Delta"


@dataclass
class ArrayDelta:
    items: List[ArrayItem] = field(default_factory=list)


Delta = Union[Added, Removed, Changed, ObjectDelta, ArrayDelta]
DELTA_TYPES = (Added, Removed, Changed, ObjectDelta, ArrayDelta)


# =============================================================================
# Parsed tree
# =============================================================================

@dataclass
class ObjectNode:
    kind: ClassVar[str] = "object"
    children: Dict[str, "DiffNode"] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "children": {key: child.to_dict() for key, child in self.children.items()},
        }


@dataclass
class ArrayNode:
    kind: ClassVar[str] = "array"
    items: List["DiffNode"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "items": [item.to_dict() for item in self.items]}


DiffNode = Union[Added, Removed, Changed, ObjectNode, ArrayNode]


@dataclass
class ChangeCounts:
    added: int = 0
    changed: int = 0
    removed: int = 0

    def __add__(self, other: "ChangeCounts") -> "ChangeCounts":
        return ChangeCounts(
            added=self.added + other.added,
            changed=self.changed + other.changed,
            removed=self.removed + other.removed,
        )

    @property
    def total(self) -> int:
        return self.added + self.changed + self.removed

    def to_dict(self) -> Dict[str, int]:
        return {"added": self.added, "changed": self.changed, "removed": self.removed}


# =============================================================================
# Equality
# =============================================================================

def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def json_equal(a: Any, b: Any) -> bool:
    """Deep equality by canonical JSON serialization (key order is ignored)."""
    return _canonical(a) == _canonical(b)


# =============================================================================
# diff
# =============================================================================

def diff(template: Any, local: Any) -> Optional[Delta]:
    """Return the delta from ``template`` to ``local``, or None when they are equal."""
    return _diff_values(template, local)


def _diff_values(template: Any, local: Any) -> Optional[Delta]:
    # Containers recurse and come back as None when nothing differs.
    if isinstance(template, dict) and isinstance(local, dict):
        return _diff_objects(template, local)
    if isinstance(template, list) and isinstance(local, list):
        return _diff_arrays(template, local)
    if json_equal(template, local):
        return None
    return Changed(template_value=template, local_value=local)


def _diff_objects(template: Dict[str, Any], local: Dict[str, Any]) -> Optional[ObjectDelta]:
    children: Dict[str, Delta] = {}

    for key, template_value in template.items():
        if key not in local:
            children[key] = Removed(value=template_value)
            continue
        child = _diff_values(template_value, local[key])
        if child is not None:
            children[key] = child

    for key, local_value in local.items():
        if key not in template:
            children[key] = Added(value=local_value)

    return ObjectDelta(children) if children else None


def _same_container_kind(a: Any, b: Any) -> bool:
    return (isinstance(a, dict) and isinstance(b, dict)) or (
        isinstance(a, list) and isinstance(b, list)
    )


def _diff_arrays(template: List[Any], local: List[Any]) -> Optional[ArrayDelta]:
    edits = compute_edits(
        [_canonical(item) for item in template],
        [_canonical(item) for item in local],
    )

    items: List[ArrayItem] = []
    deleted: List[int] = []
    inserted: List[int] = []

    def _flush_run() -> None:
        # Pair the k-th deletion with the k-th insertion when both are containers
        # of the same kind; everything else stays a plain removal / addition.
        paired_t = set()
        paired_l = set()
        for t_idx, l_idx in zip(deleted, inserted):
            if not _same_container_kind(template[t_idx], local[l_idx]):
                continue
            nested = _diff_values(template[t_idx], local[l_idx])
            if nested is not None:
                items.append(ArrayItem(template_index=t_idx, local_index=l_idx, delta=nested))
            paired_t.add(t_idx)
            paired_l.add(l_idx)
        for t_idx in deleted:
            if t_idx not in paired_t:
                items.append(ArrayItem(template_index=t_idx, local_index=None,
                                       delta=Removed(value=template[t_idx])))
        for l_idx in inserted:
            if l_idx not in paired_l:
                items.append(ArrayItem(template_index=None, local_index=l_idx,
                                       delta=Added(value=local[l_idx])))
        deleted.clear()
        inserted.clear()

    for edit in edits:
        if edit.kind is EditKind.DELETE:
            deleted.append(edit.from_line - 1)
        elif edit.kind is EditKind.INSERT:
            inserted.append(edit.to_line - 1)
        else:
            _flush_run()
    _flush_run()

    return ArrayDelta(items) if items else None


# =============================================================================
# parse / count
# =============================================================================

def parse(delta: Optional[Delta]) -> Optional[DiffNode]:
    """Normalize a raw delta into a DiffNode tree; empty containers collapse to None."""
    if delta is None:
        return None
    if isinstance(delta, (Added, Removed, Changed)):
        return delta
    if isinstance(delta, ObjectDelta):
        children = {}
        for key, child in delta.children.items():
            node = parse(child)
            if node is not None:
                children[key] = node
        return ObjectNode(children) if children else None
    if isinstance(delta, ArrayDelta):
        nodes = [parse(item.delta) for item in delta.items]
        nodes = [node for node in nodes if node is not None]
        return ArrayNode(nodes) if nodes else None
    raise TypeError(f"Unsupported delta type: {type(delta).__name__}")


def count_changes(node: Optional[DiffNode]) -> ChangeCounts:
    """Count added/changed/removed leaves below ``node``."""
    if node is None:
        return ChangeCounts()
    if isinstance(node, Added):
        return ChangeCounts(added=1)
    if isinstance(node, Removed):
        return ChangeCounts(removed=1)
    if isinstance(node, Changed):
        return ChangeCounts(changed=1)
    if isinstance(node, ObjectNode):
        children = node.children.values()
    elif isinstance(node, ArrayNode):
        children = node.items
    else:
        raise TypeError(f"Unsupported diff node: {type(node).__name__}")

    total = ChangeCounts()
    for child in children:
        total = total + count_changes(child)
    return total


# =============================================================================
# apply
# =============================================================================

def apply(local: Any, delta: Optional[Delta]) -> Any:
    """
    Rebuild the template from ``local`` and ``diff(template, local)``.

    Operates on a deep copy; neither ``local`` nor ``delta`` is modified.
    """
    result = copy.deepcopy(local)
    if delta is None:
        return result
    return _apply(result, delta)


def _apply(value: Any, delta: Delta) -> Any:
    if isinstance(delta, Changed):
        return copy.deepcopy(delta.template_value)
    if isinstance(delta, ObjectDelta):
        return _apply_object(value, delta)
    if isinstance(delta, ArrayDelta):
        return _apply_array(value, delta)
    raise TypeError(f"{type(delta).__name__} cannot be applied outside an object or array")


def _apply_object(value: Any, delta: ObjectDelta) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"Object delta cannot be applied to {type(value).__name__}")

    for key, child in delta.children.items():
        if isinstance(child, Added):
            value.pop(key, None)
        elif isinstance(child, Removed):
            value[key] = copy.deepcopy(child.value)
        else:
            value[key] = _apply(value.get(key), child)
    return value


def _apply_array(value: Any, delta: ArrayDelta) -> List[Any]:
    if not isinstance(value, list):
        raise ValueError(f"Array delta cannot be applied to {type(value).__name__}")

    # Nested changes first, while local indices are still valid.
    for item in delta.items:
        if item.template_index is not None and item.local_index is not None:
            value[item.local_index] = _apply(value[item.local_index], item.delta)

    added = sorted(
        (item.local_index for item in delta.items
         if item.template_index is None and item.local_index is not None),
        reverse=True,
    )
    for local_index in added:
        del value[local_index]

    removed = sorted(
        (item for item in delta.items
         if item.local_index is None and item.template_index is not None),
        key=lambda item: item.template_index,
    )
    for item in removed:
        value.insert(item.template_index, copy.deepcopy(item.delta.value))

    return value
