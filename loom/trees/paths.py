"""Path builder: reconstructs linear and nested views of a conversation tree.

Only one root-to-node path is ever sent to the model as context, so the
linear path is the prompt. The nested view exists for tree navigation and is
always rebuilt from the flat node table; it is never cached.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable

from pydantic import Field

from loom.models import LoomModel, Node
from loom.trees.store import TreeStore

logger = logging.getLogger(__name__)


class TreeView(LoomModel):
    """Read-only nested snapshot of one node and its descendants."""

    node: Node
    children: list["TreeView"] = Field(default_factory=list)


class SiblingInfo(LoomModel):
    sibling_index: int  # position among siblings, by branch_index
    sibling_count: int


class PathBuilder:
    """Builds root-to-node paths and nested trees from the store."""

    def __init__(self, store: TreeStore) -> None:
        self._store = store

    async def build_linear_path(
        self, conversation_id: str, target_node_id: str | None = None
    ) -> list[Node]:
        """Root-to-target path, or the first-child path to a leaf.

        A target that is not in the conversation (a stale playhead) falls back
        to the first-child path instead of failing.
        """
        nodes = await self._store.get_nodes_for_conversation(conversation_id)
        return linear_path(nodes, target_node_id)

    async def get_active_path(self, conversation_id: str) -> list[Node]:
        """The path ending at the conversation's playhead."""
        conversation = await self._store.get_conversation(conversation_id)
        return await self.build_linear_path(conversation_id, conversation.active_node_id)

    async def build_tree(self, conversation_id: str) -> TreeView | None:
        """Nested view rooted at the conversation's root, None when empty."""
        nodes = await self._store.get_nodes_for_conversation(conversation_id)
        root = find_root(nodes)
        if root is None:
            return None
        children = children_by_parent(nodes)

        def build(node: Node) -> TreeView:
            return TreeView(node=node, children=[build(c) for c in children[node.id]])

        return build(root)


def children_by_parent(nodes: Iterable[Node]) -> dict[str | None, list[Node]]:
    """Group nodes by parent_id, each group sorted by branch_index."""
    grouped: dict[str | None, list[Node]] = defaultdict(list)
    for node in nodes:
        grouped[node.parent_id].append(node)
    for group in grouped.values():
        group.sort(key=lambda n: (n.branch_index, n.created_at, n.id))
    return grouped


def find_root(nodes: Iterable[Node]) -> Node | None:
    """The conversation root: the earliest-created parentless node.

    Well-formed conversations have exactly one. Extra roots are reported and
    ignored so that traversal stays deterministic.
    """
    roots = sorted(
        (n for n in nodes if n.parent_id is None),
        key=lambda n: (n.created_at, n.id),
    )
    if not roots:
        return None
    if len(roots) > 1:
        logger.warning(
            "Conversation %s has %d root nodes; using earliest %s",
            roots[0].conversation_id, len(roots), roots[0].id,
        )
    return roots[0]


def linear_path(nodes: list[Node], target_node_id: str | None = None) -> list[Node]:
    """Pure form of PathBuilder.build_linear_path over an in-memory node set."""
    if not nodes:
        return []
    by_id = {n.id: n for n in nodes}

    if target_node_id is not None:
        if target_node_id in by_id:
            return _ancestry(by_id, target_node_id)
        logger.warning("Stale target node %s; using first-child path", target_node_id)

    root = find_root(nodes)
    if root is None:
        return []
    children = children_by_parent(nodes)
    path = [root]
    current = root
    while children.get(current.id):
        current = children[current.id][0]
        path.append(current)
    return path


def _ancestry(by_id: dict[str, Node], node_id: str) -> list[Node]:
    """Walk parent references from node_id to the root."""
    path: list[Node] = []
    seen: set[str] = set()
    current = by_id.get(node_id)
    while current is not None and current.id not in seen:
        seen.add(current.id)
        path.append(current)
        current = by_id.get(current.parent_id) if current.parent_id else None
    path.reverse()
    return path


def get_descendants(nodes: Iterable[Node], node_id: str) -> list[Node]:
    """A node and all of its descendants, breadth-first."""
    node_list = list(nodes)
    by_id = {n.id: n for n in node_list}
    if node_id not in by_id:
        return []
    children = children_by_parent(node_list)
    result: list[Node] = []
    queue = [by_id[node_id]]
    while queue:
        current = queue.pop(0)
        result.append(current)
        queue.extend(children.get(current.id, []))
    return result


def compute_sibling_info(nodes: Iterable[Node]) -> dict[str, SiblingInfo]:
    """Position of each node among its siblings, for branch switching."""
    info: dict[str, SiblingInfo] = {}
    for group in children_by_parent(nodes).values():
        for i, node in enumerate(group):
            info[node.id] = SiblingInfo(sibling_index=i, sibling_count=len(group))
    return info


def depth(nodes: list[Node], node_id: str) -> int:
    """Distance from the root; -1 for an unknown node."""
    return len(_ancestry({n.id: n for n in nodes}, node_id)) - 1


def to_messages(path: Iterable[Node]) -> list[dict[str, str]]:
    """The role/content sequence sent to the model for a path."""
    return [{"role": n.role, "content": n.content} for n in path]
