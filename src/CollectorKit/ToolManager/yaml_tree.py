"""Tolerant accessors over parsed YAML documents.

Artifact definitions have no fixed schema, so callers treat a parsed document
as a tree of mappings, sequences, and scalars.  Every accessor here returns a
default instead of raising when a key is missing or a node has the wrong shape.
"""

from __future__ import annotations

from typing import Any, Iterator, Mapping, Optional, Sequence, Tuple

__all__ = ["get", "get_str", "is_mapping", "is_sequence", "iter_mappings", "walk"]

PathTuple = Tuple[str, ...]


def is_mapping(node: Any) -> bool:
    return isinstance(node, Mapping)


def is_sequence(node: Any) -> bool:
    return isinstance(node, Sequence) and not isinstance(node, (str, bytes))


def get(node: Any, key: str, default: Any = None) -> Any:
    """Case-insensitive lookup of ``key`` in ``node``; ``default`` when absent."""

    if not is_mapping(node):
        return default
    if key in node:
        return node[key]
    folded = key.casefold()
    for candidate, value in node.items():
        if isinstance(candidate, str) and candidate.casefold() == folded:
            return value
    return default


def get_str(node: Any, *keys: str) -> Optional[str]:
    """Return the first of ``keys`` holding a non-empty scalar, as a stripped string.

    Booleans are skipped since YAML turns bare ``yes``/``no`` into ``bool``.
    """

    for key in keys:
        value = get(node, key)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, (str, int, float)):
            text = str(value).strip()
            if text:
                return text
    return None


def iter_mappings(node: Any) -> Iterator[Mapping[str, Any]]:
    """Yield the mapping items of a sequence node, skipping anything else."""

    if not is_sequence(node):
        return
    for item in node:
        if is_mapping(item):
            yield item


def walk(node: Any, path: PathTuple = ()) -> Iterator[Tuple[PathTuple, str, Any]]:
    """Depth-first traversal yielding ``(path, key, value)`` for every mapping entry."""

    if is_mapping(node):
        for key, value in node.items():
            key_text = str(key)
            yield path, key_text, value
            yield from walk(value, path + (key_text,))
    elif is_sequence(node):
        for index, item in enumerate(node):
            yield from walk(item, path + (str(index),))
