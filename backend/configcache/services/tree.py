"""
Reconstruction of the hierarchical config tree from flat path rows.

A path such as ``/settings/theme/color`` becomes nested dictionaries keyed
by segment, with the value stored on the deepest one as ``{"value": ...}``.
Empty segments are ignored, so ``//a/`` and ``/a`` address the same node.
"""

import logging
from typing import Any, Dict, Iterable, List, Tuple

logger = logging.getLogger(__name__)

Tree = Dict[str, Any]


def split_path(path: str) -> List[str]:
    return [segment for segment in path.split("/") if segment]


def merge_node(tree: Tree, path: str, value: str) -> Tree:
    """
    Insert one value into ``tree`` in place and return the tree.

    A node that already has children keeps them when its own value is set,
    and a node that already has a value keeps it when children are added.
    """
    segments = split_path(path)
    if not segments:
        logger.debug(f"Skipping row without path segments: {path!r}")
        return tree

    current = tree
    for segment in segments[:-1]:
        child = current.get(segment)
        if not isinstance(child, dict):
            child = {}
            current[segment] = child
        current = child

    leaf = current.get(segments[-1])
    if isinstance(leaf, dict):
        leaf["value"] = value
    else:
        current[segments[-1]] = {"value": value}
    return tree


def build_tree(rows: Iterable[Tuple[str, str]]) -> Tree:
    """Build a nested tree from ``(path, value)`` rows."""
    tree: Tree = {}
    for path, value in rows:
        merge_node(tree, path, value)
    return tree
