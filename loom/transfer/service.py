"""Transfer codec: export conversations and import them under fresh ids.

Export is a direct snapshot. Import never reuses an identifier from the
file, so importing the same file twice yields two independent copies, and a
file can never overwrite existing data. Dangling parent references degrade to
parentless nodes instead of failing the import.
"""

import json
import logging
from collections import defaultdict
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from loom.models import Conversation, Node, TransferNode, TransferPayload
from loom.trees.store import TreeStore

logger = logging.getLogger(__name__)


class TransferCodec:
    """Builds export payloads and imports them atomically."""

    def __init__(self, store: TreeStore) -> None:
        self._store = store

    async def export(self, conversation_id: str) -> TransferPayload:
        """Snapshot a conversation and all of its nodes."""
        conversation = await self._store.get_conversation(conversation_id)
        nodes = await self._store.get_nodes_for_conversation(conversation_id)
        nodes.sort(key=lambda n: (n.created_at, n.id))
        return TransferPayload.model_validate({
            "conversation": conversation.model_dump(),
            "nodes": [n.model_dump() for n in nodes],
        })

    async def export_json(self, conversation_id: str) -> str:
        payload = await self.export(conversation_id)
        return payload.model_dump_json(by_alias=True, indent=2)

    async def import_payload(self, raw: str | bytes | dict[str, Any]) -> Conversation:
        """Import a payload as a brand-new conversation.

        Raises MalformedPayloadError without touching the store if the payload
        is structurally invalid.
        """
        payload = self.parse(raw)
        now = self._store.now()

        new_conversation_id = str(uuid4())
        # Node ids only; the conversation id must never resolve as a playhead
        id_map: dict[str, str] = {node.id: str(uuid4()) for node in payload.nodes}

        active_node_id = payload.conversation.active_node_id
        conversation = Conversation(
            id=new_conversation_id,
            title=payload.conversation.title,
            created_at=now,
            updated_at=now,
            active_node_id=id_map.get(active_node_id) if active_node_id else None,
            deleted_at=None,
        )

        node_ids = {n.id for n in payload.nodes}
        nodes: list[Node] = []
        for node in _parents_first(payload.nodes):
            parent_id = None
            if node.parent_id is not None:
                if node.parent_id in node_ids:
                    parent_id = id_map[node.parent_id]
                else:
                    logger.warning(
                        "Import: node %s references missing parent %s; "
                        "importing it as a root",
                        node.id, node.parent_id,
                    )
            nodes.append(Node(
                id=id_map[node.id],
                conversation_id=new_conversation_id,
                parent_id=parent_id,
                role=node.role,
                content=node.content,
                thinking_content=node.thinking_content,
                created_at=node.created_at,
                branch_index=node.branch_index,
            ))

        async with self._store.db.transaction() as tx:
            await TreeStore.write_conversation(tx, conversation, nodes)

        logger.info(
            "Imported conversation %s as %s (%d nodes)",
            payload.conversation.id, new_conversation_id, len(nodes),
        )
        return conversation

    @staticmethod
    def parse(raw: str | bytes | dict[str, Any]) -> TransferPayload:
        """Parse and structurally validate a transfer payload."""
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise MalformedPayloadError(f"Invalid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise MalformedPayloadError("Payload must be a JSON object")
        try:
            payload = TransferPayload.model_validate(raw)
        except ValidationError as e:
            raise MalformedPayloadError(_describe(e)) from e

        seen: set[str] = set()
        sibling_slots: set[tuple[str, int]] = set()
        node_ids = {n.id for n in payload.nodes}
        for node in payload.nodes:
            if node.id in seen:
                raise MalformedPayloadError(f"Duplicate node id: {node.id}")
            seen.add(node.id)
            if node.parent_id in node_ids:
                slot = (node.parent_id, node.branch_index)
                if slot in sibling_slots:
                    raise MalformedPayloadError(
                        f"Duplicate branch index {node.branch_index} under {node.parent_id}"
                    )
                sibling_slots.add(slot)
        return payload


def _parents_first(nodes: list[TransferNode]) -> list[TransferNode]:
    """Order nodes so every parent precedes its children.

    Parents missing from the payload count as roots. Nodes unreachable from
    any root sit on a parent cycle, which is rejected.
    """
    node_ids = {n.id for n in nodes}
    children_of: dict[str | None, list[TransferNode]] = defaultdict(list)
    for n in nodes:
        parent = n.parent_id if n.parent_id in node_ids else None
        children_of[parent].append(n)

    ordered: list[TransferNode] = []
    stack = list(reversed(children_of[None]))
    while stack:
        node = stack.pop()
        ordered.append(node)
        stack.extend(reversed(children_of.get(node.id, [])))

    if len(ordered) != len(nodes):
        raise MalformedPayloadError("Parent references form a cycle")
    return ordered


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {first['msg']}" if location else first["msg"]


class MalformedPayloadError(Exception):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Malformed transfer payload: {reason}")
