"""Helpers for JSON trees addressed by slash-separated paths."""

import copy
from typing import Any


def split_path(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


def join_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


def is_related(a: str, b: str) -> bool:
    """True when one path is equal to, above, or below the other."""
    pa, pb = split_path(a), split_path(b)
    n = min(len(pa), len(pb))
    return pa[:n] == pb[:n]


def prune(value: Any) -> Any:
    """Drop None members and empty objects; an empty object becomes None."""
    if isinstance(value, dict):
        pruned = {}
        for key, child in value.items():
            child = prune(child)
            if child is not None:
                pruned[str(key)] = child
        return pruned or None
    if isinstance(value, list):
        return [prune(v) for v in value]
    return value


def read_in(root: Any, parts: list[str]) -> Any:
    node = root
    for part in parts:
        if isinstance(node, dict) and part in node:
            node = node[part]
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            return None
    return copy.deepcopy(node)


def write_in(root: Any, parts: list[str], value: Any) -> Any:
    """Return root with value stored at parts. None deletes. Mutates dicts in place."""
    if not parts:
        return prune(copy.deepcopy(value))
    if not isinstance(root, dict):
        if value is None:
            return root
        root = {}
    head, rest = parts[0], parts[1:]
    child = write_in(root.get(head), rest, value)
    if child is None:
        root.pop(head, None)
    else:
        root[head] = child
    return root or None
