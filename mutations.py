"""Copy-on-write operations over a ``Session``.

Every function takes a snapshot and returns either a new snapshot or, when
the request is a no-op or refers to nodes that no longer exist, the very same
object. Callers can therefore test ``result is session`` to detect a rejected
change. Maps are copied and messages replaced, never edited in place, so
``parent_id``/``children_ids`` stay symmetric in every published snapshot.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import replace
from typing import Callable, Iterable, Literal, Optional, Sequence

from layout import LayoutConfig, estimate_label_width, new_child_position
from node_models import DEFAULT_SESSION_TITLE, Attachment, Message, Position, Session
from threads import is_ancestor

TITLE_LIMIT = 30

RejectReason = Literal["self", "missing", "redundant", "cycle"]

_REJECT_MESSAGES: dict[str, str] = {
    "self": "Cannot connect a node to itself.",
    "missing": "Cannot connect: node no longer exists.",
    "redundant": "Cannot connect: Source is an ancestor of Target (Redundant).",
    "cycle": "Cannot connect: Target is an ancestor of Source (Cycle detected).",
}


class ConnectionRejected(ValueError):
    """Raised when a memory link would be redundant, cyclic or dangling."""

    def __init__(self, reason: RejectReason, source_id: str, target_id: str) -> None:
        super().__init__(_REJECT_MESSAGES[reason])
        self.reason = reason
        self.source_id = source_id
        self.target_id = target_id


def _new_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


def _next_timestamp(session: Session, now: Optional[int] = None) -> int:
    current = now_ms() if now is None else now
    latest = max((message.timestamp for message in session.message_map.values()), default=0)
    return max(current, latest + 1)


def _title_from(text: str, attachments: Sequence[Attachment], fallback: str) -> str:
    if text and text.strip():
        return text[:TITLE_LIMIT]
    if attachments:
        return "Image"
    return fallback


def new_session(title: str = DEFAULT_SESSION_TITLE, *, now: Optional[int] = None) -> Session:
    return Session(id=_new_id(), title=title, last_modified=now_ms() if now is None else now)


def delete_session(sessions: Sequence[Session], session_id: str) -> list[Session]:
    return [session for session in sessions if session.id != session_id]


def owning_user_id(session: Session, node_id: Optional[str]) -> Optional[str]:
    """Resolve a turn reference to its user message id."""
    message = session.get(node_id)
    if message is None:
        return None
    if message.role == "user":
        return message.id
    parent = session.get(message.parent_id)
    if parent is None or parent.role != "user":
        return None
    return parent.id


def paired_id(session: Session, node_id: str) -> Optional[str]:
    """The other half of a turn: user -> model reply, model -> user prompt."""
    message = session.get(node_id)
    if message is None:
        return None
    if message.role == "model":
        parent = session.get(message.parent_id)
        return parent.id if parent is not None and parent.role == "user" else None
    for child_id in message.children_ids[:1]:
        child = session.get(child_id)
        if child is not None and child.role == "model":
            return child.id
    return None


def descendant_ids(session: Session, node_id: str) -> set[str]:
    """``node_id`` plus everything below it in the primary tree."""
    collected: set[str] = set()
    stack = [node_id]
    while stack:
        current = stack.pop()
        if current in collected:
            continue
        collected.add(current)
        message = session.get(current)
        if message is not None:
            stack.extend(message.children_ids)
    return collected


def append_turn(
    session: Session,
    parent_id: Optional[str],
    user_text: str,
    attachments: Optional[Sequence[Attachment]] = None,
    connection_source_ids: Optional[Sequence[str]] = None,
    *,
    position: Optional[Position] = None,
    measure: Callable[[str], float] = estimate_label_width,
    now: Optional[int] = None,
) -> Session:
    """Add a user message and its empty model reply under ``parent_id``.

    ``parent_id`` None starts the conversation and is only accepted while the
    session has no root. ``connection_source_ids`` are the comparison tracks
    chosen for this prompt; they are stored as provenance only.
    """
    if parent_id is None:
        if session.root_message_id is not None:
            return session
    elif parent_id not in session.message_map:
        return session

    attachments = list(attachments or [])
    if position is None:
        position = new_child_position(parent_id, session.message_map, LayoutConfig(), measure)
    stamp = _next_timestamp(session, now)
    user_id = _new_id()
    model_id = _new_id()

    user_message = Message(
        id=user_id,
        role="user",
        content=user_text,
        parent_id=parent_id,
        children_ids=[model_id],
        attachments=attachments,
        timestamp=stamp,
        attached_track_ids=list(connection_source_ids or []),
        position=position,
    )
    model_message = Message(
        id=model_id,
        role="model",
        content="",
        parent_id=user_id,
        timestamp=stamp + 1,
        position=position,
    )

    message_map = dict(session.message_map)
    message_map[user_id] = user_message
    message_map[model_id] = model_message
    if parent_id is not None:
        parent = message_map[parent_id]
        message_map[parent_id] = replace(parent, children_ids=[*parent.children_ids, user_id])

    title = session.title
    if session.root_message_id is None:
        title = _title_from(user_text, attachments, session.title)

    return replace(
        session,
        title=title,
        message_map=message_map,
        root_message_id=session.root_message_id or user_id,
        current_head_id=model_id,
        last_modified=stamp,
    )


def edit_replace(
    session: Session,
    target_id: str,
    new_text: str,
    *,
    now: Optional[int] = None,
) -> Session:
    """Replace a turn's prompt, discarding the old turn and everything below it.

    The new pair keeps the old prompt's attachments, memory links and position
    and is appended as the last child of the same parent.
    """
    user_id = owning_user_id(session, target_id)
    if user_id is None:
        return session
    old_user = session.message_map[user_id]
    parent_id = old_user.parent_id
    if parent_id is not None and parent_id not in session.message_map:
        return session

    doomed = descendant_ids(session, user_id)
    stamp = _next_timestamp(session, now)
    new_user_id = _new_id()
    new_model_id = _new_id()

    message_map: dict[str, Message] = {}
    for key, message in session.message_map.items():
        if key in doomed:
            continue
        if any(source in doomed for source in message.connections):
            message = replace(
                message,
                connections=[source for source in message.connections if source not in doomed],
            )
        message_map[key] = message

    message_map[new_user_id] = Message(
        id=new_user_id,
        role="user",
        content=new_text,
        parent_id=parent_id,
        children_ids=[new_model_id],
        connections=[source for source in old_user.connections if source not in doomed],
        attachments=list(old_user.attachments),
        timestamp=stamp,
        position=old_user.position,
    )
    message_map[new_model_id] = Message(
        id=new_model_id,
        role="model",
        content="",
        parent_id=new_user_id,
        timestamp=stamp + 1,
        position=old_user.position,
    )
    if parent_id is not None:
        parent = message_map[parent_id]
        siblings = [child for child in parent.children_ids if child != user_id]
        message_map[parent_id] = replace(parent, children_ids=[*siblings, new_user_id])

    root_id = new_user_id if session.root_message_id == user_id else session.root_message_id
    return replace(
        session,
        message_map=message_map,
        root_message_id=root_id,
        current_head_id=new_model_id,
        last_modified=stamp,
    )


def edit_and_fork(
    session: Session,
    target_id: str,
    new_text: str,
    *,
    now: Optional[int] = None,
) -> Session:
    """Start a sibling branch beside the target turn with a new prompt.

    The first turn of a conversation has no parent reply to branch from, so
    forking it is refused (use ``edit_replace`` instead).
    """
    user_id = owning_user_id(session, target_id)
    if user_id is None:
        return session
    grandparent_id = session.message_map[user_id].parent_id
    if grandparent_id is None:
        return session
    return append_turn(session, grandparent_id, new_text, now=now)


def can_connect(session: Session, source_id: str, target_id: str) -> Optional[RejectReason]:
    """Why ``connect`` would refuse this link, or None when it is allowed."""
    if source_id == target_id:
        return "self"
    message_map = session.message_map
    if source_id not in message_map or target_id not in message_map:
        return "missing"
    if is_ancestor(source_id, target_id, message_map):
        return "redundant"
    if is_ancestor(target_id, source_id, message_map):
        return "cycle"
    return None


def connect(session: Session, source_id: str, target_id: str, *, now: Optional[int] = None) -> Session:
    """Let ``target_id`` remember the branch that ends at ``source_id``.

    Links are only allowed between nodes on unrelated branches: if either node
    is the other's tree ancestor the request raises ``ConnectionRejected``.
    Connecting a node to itself, or repeating an existing link, is a no-op.
    """
    reason = can_connect(session, source_id, target_id)
    if reason == "self":
        return session
    if reason is not None:
        raise ConnectionRejected(reason, source_id, target_id)
    target = session.message_map[target_id]
    if source_id in target.connections:
        return session
    message_map = dict(session.message_map)
    message_map[target_id] = replace(target, connections=[*target.connections, source_id])
    return replace(
        session,
        message_map=message_map,
        last_modified=now_ms() if now is None else now,
    )


def disconnect(session: Session, source_id: str, target_id: str, *, now: Optional[int] = None) -> Session:
    target = session.get(target_id)
    if target is None or source_id not in target.connections:
        return session
    message_map = dict(session.message_map)
    message_map[target_id] = replace(
        target,
        connections=[source for source in target.connections if source != source_id],
    )
    return replace(
        session,
        message_map=message_map,
        last_modified=now_ms() if now is None else now,
    )


def set_head(session: Session, node_id: Optional[str]) -> Session:
    if node_id is None or node_id not in session.message_map:
        return session
    if session.current_head_id == node_id:
        return session
    return replace(session, current_head_id=node_id)


def reposition(session: Session, node_id: str, x: float, y: float) -> Session:
    """Store a dragged coordinate on both halves of the turn."""
    if node_id not in session.message_map:
        return session
    position = Position(x, y)
    message_map = dict(session.message_map)
    targets: Iterable[Optional[str]] = (node_id, paired_id(session, node_id))
    for target_id in targets:
        if target_id is None:
            continue
        message_map[target_id] = replace(message_map[target_id], position=position)
    return replace(session, message_map=message_map)


def append_chunk(session: Session, message_id: str, text: str) -> Session:
    """Stream reducer: append ``text`` if the pending reply still exists."""
    message = session.get(message_id)
    if message is None or not text:
        return session
    message_map = dict(session.message_map)
    message_map[message_id] = replace(message, content=message.content + text)
    return replace(session, message_map=message_map)


def apply_summary(session: Session, message_id: str, summary: str) -> Session:
    message = session.get(message_id)
    cleaned = (summary or "").strip()
    if message is None or not cleaned:
        return session
    message_map = dict(session.message_map)
    message_map[message_id] = replace(message, summary=cleaned)
    return replace(session, message_map=message_map)


def check_integrity(session: Session) -> list[str]:
    """Describe every broken structural invariant; empty when the graph is sound."""
    problems: list[str] = []
    message_map = session.message_map
    roots = [key for key, message in message_map.items() if message.parent_id is None]
    if message_map:
        if session.root_message_id not in message_map:
            problems.append(f"root {session.root_message_id!r} is missing")
        if len(roots) != 1:
            problems.append(f"expected one root, found {len(roots)}")
    elif session.root_message_id is not None:
        problems.append("empty session has a root id")
    if session.current_head_id is not None and session.current_head_id not in message_map:
        problems.append(f"head {session.current_head_id!r} is missing")

    for key, message in message_map.items():
        if message.id != key:
            problems.append(f"{key}: stored under a different id {message.id!r}")
        if message.parent_id is not None:
            parent = message_map.get(message.parent_id)
            if parent is None:
                problems.append(f"{key}: parent {message.parent_id!r} is missing")
            elif parent.children_ids.count(key) != 1:
                problems.append(f"{key}: not listed exactly once by its parent")
        for child_id in message.children_ids:
            child = message_map.get(child_id)
            if child is None:
                problems.append(f"{key}: child {child_id!r} is missing")
            elif child.parent_id != key:
                problems.append(f"{key}: lists {child_id!r} whose parent is {child.parent_id!r}")
        for source_id in message.connections:
            if source_id not in message_map:
                problems.append(f"{key}: connection from missing node {source_id!r}")
    return problems
