"""
Structural diff and patch over nested content trees.

A content tree is a nested structure of dicts and lists whose leaves are
strings, numbers or booleans. Every leaf is addressed by a dotted path; list
elements use their index as the path segment (``menu.items.0.label``).
"""
import copy
from typing import Any, Dict, List, Tuple, Union

from src.models import ChangePatch, PatchEntry

Container = Union[dict, list]


def _is_leaf(value: Any) -> bool:
    return not isinstance(value, (dict, list))


def _same_leaf(a: Any, b: Any) -> bool:
    # 1 == True in Python; a number turning into a boolean is still a change.
    return type(a) is type(b) and a == b


def flatten_content(tree: Any) -> Dict[str, Any]:
    """Flatten a content tree into ``{dotted.path: leaf}``. Empty object keys are skipped."""
    flat: Dict[str, Any] = {}

    def traverse(node: Any, path: List[str]) -> None:
        if isinstance(node, list):
            for index, item in enumerate(node):
                traverse(item, path + [str(index)])
            return
        for key, value in node.items():
            if key == "":
                continue
            if _is_leaf(value):
                flat[".".join(path + [key])] = value
            else:
                traverse(value, path + [key])

    if _is_leaf(tree):
        raise ValueError("Content tree must be an object or an array.")
    traverse(tree, [])
    return flat


def _path_sort_key(path: str) -> Tuple:
    return tuple((0, int(seg), "") if seg.isdigit() else (1, 0, seg) for seg in path.split("."))


def _new_container(next_segment: str) -> Container:
    return [] if next_segment.isdigit() else {}


def _child(container: Container, segment: str) -> Any:
    if isinstance(container, list):
        index = int(segment)
        return container[index] if index < len(container) else None
    return container.get(segment)


def _assign(container: Container, segment: str, value: Any) -> None:
    if isinstance(container, list):
        index = int(segment)
        while len(container) <= index:
            container.append(None)
        container[index] = value
    else:
        container[segment] = value


def _set_path(tree: Container, path: str, value: Any) -> None:
    segments = path.split(".")
    node = tree
    for position, segment in enumerate(segments[:-1]):
        child = _child(node, segment)
        if child is None or _is_leaf(child):
            child = _new_container(segments[position + 1])
            _assign(node, segment, child)
        node = child
    _assign(node, segments[-1], value)


def _delete_path(tree: Container, path: str) -> None:
    segments = path.split(".")
    trail = [tree]
    node = tree
    for segment in segments[:-1]:
        node = _child(node, segment)
        if node is None or _is_leaf(node):
            return
        trail.append(node)

    last = segments[-1]
    if isinstance(node, list):
        index = int(last)
        if index < len(node):
            del node[index]
    else:
        node.pop(last, None)

    # Drop objects emptied by the deletion; lists keep their slots.
    for depth in range(len(trail) - 1, 0, -1):
        if isinstance(trail[depth], dict) and not trail[depth] and isinstance(trail[depth - 1], dict):
            del trail[depth - 1][segments[depth - 1]]
        else:
            break


def unflatten_content(flat: Dict[str, Any]) -> dict:
    """Rebuild a nested tree from dotted paths. Numeric segments become list indices."""
    tree: dict = {}
    for path in sorted(flat, key=_path_sort_key):
        if any(segment == "" for segment in path.split(".")):
            continue
        value = flat[path]
        if value is None:
            continue
        _set_path(tree, path, value)
    return tree


def diff(old_snapshot: Any, new_snapshot: Any) -> ChangePatch:
    """Classify every leaf-path difference between two content trees as add, modify or delete."""
    old_flat = flatten_content(old_snapshot)
    new_flat = flatten_content(new_snapshot)
    patch = ChangePatch()

    for path, new_value in new_flat.items():
        if path not in old_flat:
            patch.add.append(PatchEntry(path=path, new_value=new_value))
        elif not _same_leaf(old_flat[path], new_value):
            patch.modify.append(PatchEntry(path=path, old_value=old_flat[path], new_value=new_value))

    for path, old_value in old_flat.items():
        if path not in new_flat:
            patch.delete.append(PatchEntry(path=path, old_value=old_value))

    return patch


def apply(base_content: Any, patch: ChangePatch) -> Any:
    """
    Apply a patch to a copy of ``base_content``: deletions first, then
    additions, then modifications. The input is never mutated.
    """
    content = copy.deepcopy(base_content)

    # Highest list indices first so earlier deletions do not shift later ones.
    for entry in sorted(patch.delete, key=lambda e: _path_sort_key(e.path), reverse=True):
        _delete_path(content, entry.path)

    for entry in sorted(patch.add, key=lambda e: _path_sort_key(e.path)):
        _set_path(content, entry.path, entry.new_value)

    for entry in patch.modify:
        _set_path(content, entry.path, entry.new_value)

    return content
