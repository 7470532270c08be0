"""
Structured evidence payloads as a tagged tree.

Rule field requirements are dotted paths ("emissions.scope1.value",
"lines.0.cn_code"). Paths are resolved by explicit recursive lookup over
`StructuredNode` values rather than attribute access on arbitrary objects.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class NodeKind(Enum):
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    NULL = "null"
    OBJECT = "object"
    ARRAY = "array"


@dataclass(frozen=True)
class StructuredNode:
    """
    One node of a structured payload.

    `value` holds a str / number / bool for scalar kinds, a dict of child
    nodes for OBJECT and a tuple of child nodes for ARRAY.
    """
    kind: NodeKind
    value: Any = None

    @classmethod
    def from_json(cls, value: Any) -> "StructuredNode":
        if value is None:
            return cls(NodeKind.NULL)
        if isinstance(value, bool):
            return cls(NodeKind.BOOL, value)
        if isinstance(value, (int, float, Decimal)):
            return cls(NodeKind.NUMBER, value)
        if isinstance(value, str):
            return cls(NodeKind.STRING, value)
        if isinstance(value, dict):
            children: Dict[str, StructuredNode] = {}
            for key, child in value.items():
                if not isinstance(key, str):
                    raise ValueError(f"Object keys must be strings, got {type(key).__name__}")
                children[key] = cls.from_json(child)
            return cls(NodeKind.OBJECT, children)
        if isinstance(value, (list, tuple)):
            return cls(NodeKind.ARRAY, tuple(cls.from_json(item) for item in value))
        raise ValueError(f"Unsupported payload value type: {type(value).__name__}")

    def to_json(self) -> Any:
        if self.kind == NodeKind.OBJECT:
            return {key: child.to_json() for key, child in self.value.items()}
        if self.kind == NodeKind.ARRAY:
            return [child.to_json() for child in self.value]
        return self.value

    @property
    def is_defined(self) -> bool:
        """NULL counts as undefined for field-presence checks."""
        return self.kind != NodeKind.NULL

    def child(self, segment: str) -> Optional["StructuredNode"]:
        if self.kind == NodeKind.OBJECT:
            return self.value.get(segment)
        if self.kind == NodeKind.ARRAY and segment.isdigit():
            index = int(segment)
            if index < len(self.value):
                return self.value[index]
        return None


def split_path(path: str) -> Tuple[str, ...]:
    segments = tuple(path.split("."))
    if not path or any(not segment for segment in segments):
        raise ValueError(f"Invalid field path: {path!r}")
    return segments


def _resolve(node: StructuredNode, segments: Tuple[str, ...]) -> Optional[StructuredNode]:
    if not segments:
        return node
    child = node.child(segments[0])
    if child is None:
        return None
    return _resolve(child, segments[1:])


def resolve_path(node: StructuredNode, path: str) -> Optional[StructuredNode]:
    """Node at a dotted path, or None when any segment is missing."""
    return _resolve(node, split_path(path))


def path_is_defined(node: StructuredNode, path: str) -> bool:
    resolved = resolve_path(node, path)
    return resolved is not None and resolved.is_defined


def missing_paths(nodes: List[StructuredNode], paths: Tuple[str, ...]) -> List[str]:
    """Paths that resolve to a defined value in none of the given trees."""
    return [
        path for path in paths
        if not any(path_is_defined(node, path) for node in nodes)
    ]
