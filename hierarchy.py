"""Flat message map -> display tree of turns.

A turn pairs a user message with its model reply. The turn's id is the
reply's id, so selecting a turn focuses the conversation right after the
model answered.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List, Mapping, Optional

from node_models import Message
from threads import ancestor_ids

LABEL_LIMIT = 18
ELLIPSIS = "..."


@dataclass
class TurnNode:
    id: str
    user_id: str
    name: str
    role: str = "model"
    is_current_path: bool = False
    is_leaf: bool = False
    connections: Optional[List[str]] = None
    attached_track_ids: Optional[List[str]] = None
    children: Optional[List["TurnNode"]] = None


def node_label(message: Message) -> str:
    if message.summary:
        return message.summary
    content = message.content or ""
    if content.strip():
        suffix = ELLIPSIS if len(content) > LABEL_LIMIT else ""
        return content[:LABEL_LIMIT] + suffix
    if message.attachments:
        return "Image"
    return ""


def build_hierarchy(
    root_id: Optional[str],
    message_map: Mapping[str, Message],
    current_head_id: Optional[str],
) -> Optional[TurnNode]:
    if not root_id or root_id not in message_map:
        return None

    active_path = ancestor_ids(current_head_id, message_map)
    visiting: set[str] = set()

    def build(user_id: str) -> Optional[TurnNode]:
        user_message = message_map.get(user_id)
        if user_message is None or user_id in visiting:
            return None
        visiting.add(user_id)

        model_message: Optional[Message] = None
        if user_message.children_ids:
            model_message = message_map.get(user_message.children_ids[0])
        turn_id = model_message.id if model_message else user_message.id

        connections = list(user_message.connections)
        if model_message is not None:
            connections.extend(model_message.connections)

        node = TurnNode(
            id=turn_id,
            user_id=user_message.id,
            name=node_label(user_message),
            is_current_path=turn_id in active_path,
            connections=connections or None,
            attached_track_ids=list(user_message.attached_track_ids) or None,
        )

        children: list[TurnNode] = []
        if model_message is not None:
            for child_id in model_message.children_ids:
                child = build(child_id)
                if child is not None:
                    children.append(child)
        if children:
            node.children = children
        else:
            node.is_leaf = True
        return node

    return build(root_id)


def iter_turns(tree: Optional[TurnNode]) -> Iterator[TurnNode]:
    """Pre-order walk, parents before children."""
    if tree is None:
        return
    stack = [tree]
    while stack:
        node = stack.pop()
        yield node
        if node.children:
            stack.extend(reversed(node.children))


def iter_with_parent(tree: Optional[TurnNode]) -> Iterator[tuple[TurnNode, Optional[TurnNode]]]:
    if tree is None:
        return
    stack: list[tuple[TurnNode, Optional[TurnNode]]] = [(tree, None)]
    while stack:
        node, parent = stack.pop()
        yield node, parent
        for child in reversed(node.children or []):
            stack.append((child, node))


def find_turn(tree: Optional[TurnNode], turn_id: str) -> Optional[TurnNode]:
    for node in iter_turns(tree):
        if node.id == turn_id or node.user_id == turn_id:
            return node
    return None


def leaf_ids(tree: Optional[TurnNode]) -> list[str]:
    return [node.id for node in iter_turns(tree) if node.is_leaf]
