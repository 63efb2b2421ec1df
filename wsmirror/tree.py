"""Module with the file tree ordering and reconciliation logic."""

import dataclasses
from typing import Iterable, List, Optional

from wsmirror.workspace.common import EntryKind, FileNode, is_ancestor, normalize_path


def _sort_key(node: FileNode):
    return (node.kind != EntryKind.DIRECTORY, node.name.lower(), node.name)


def sort_nodes(nodes: Iterable[FileNode]) -> List[FileNode]:
    """Order nodes the way they are rendered: directories first, then by name."""
    return sorted(nodes, key=_sort_key)


def reconcile(
    nodes: List[FileNode], target_path: str, children: List[FileNode]
) -> List[FileNode]:
    """
    Merge a freshly fetched directory listing into a rendered tree.

    The node at target_path has its children replaced as a whole, and its ancestors are
    rebuilt around it. All other branches are returned as they were, which preserves
    any listings that were loaded earlier. A listing for "/" replaces the top level.

    An ancestor of target_path whose children haven't been loaded is treated as an
    empty directory, so it ends up loaded with an empty list of children. If no node
    is an ancestor of target_path then the tree is returned unchanged.
    """
    target_path = normalize_path(target_path)

    if target_path == "/":
        return list(children)

    return [_reconcile_node(node, target_path, children) for node in nodes]


def _reconcile_node(
    node: FileNode, target_path: str, children: List[FileNode]
) -> FileNode:
    if node.path == target_path:
        return dataclasses.replace(node, children=list(children))
    elif node.is_directory and is_ancestor(node.path, target_path):
        descendants = [
            _reconcile_node(child, target_path, children)
            for child in node.children or []
        ]

        return dataclasses.replace(node, children=descendants)
    else:
        return node


def find_node(nodes: List[FileNode], path: str) -> Optional[FileNode]:
    """Look up the node with the given path in a tree."""
    path = normalize_path(path)

    for node in nodes:
        if node.path == path:
            return node
        elif node.is_directory and node.children and is_ancestor(node.path, path):
            return find_node(node.children, path)

    return None


def walk(nodes: List[FileNode]) -> Iterable[FileNode]:
    """Iterate over all loaded nodes of a tree, depth first."""
    for node in nodes:
        yield node

        if node.children:
            yield from walk(node.children)
