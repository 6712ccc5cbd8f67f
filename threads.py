"""Linear context reconstruction over the branching message graph.

A thread is the root-first chain of messages ending at a head. When memory
connections are requested, each connected node receives a materialised copy
whose content is prefixed with the unique history of every source branch,
measured from the lowest common ancestor of the source and the node.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Mapping, Optional, Sequence

from node_models import Message, Session

MEMORY_HEADER = (
    "[Connected Memory from Parallel Timeline]\n"
    "(System Note: The following text is a memory retrieved from another timeline. "
    "Treat it as valid context and part of the conversation history when summarizing "
    "or answering questions.)"
)
MEMORY_FOOTER = "[End of Memory]"
MEMORY_SEPARATOR = "\n\n---\n\n"

COMPARISON_HEADER = (
    "[Multiverse Comparison Request]\n"
    "The user has selected specific timelines to compare. "
    "Analyze the following tracks as parallel possibilities:"
)
TRACK_RULE = "-------------------"

MessageMap = Mapping[str, Message]


def role_label(message: Message) -> str:
    return "User" if message.role == "user" else "AI"


def transcript(messages: Iterable[Message], *, bracketed: bool = True) -> str:
    """Render messages as ``[User]: ...`` lines (``User: ...`` when not bracketed)."""
    lines: list[str] = []
    for message in messages:
        label = role_label(message)
        prefix = f"[{label}]" if bracketed else label
        lines.append(f"{prefix}: {message.content}")
    return "\n".join(lines)


def ancestor_ids(node_id: Optional[str], message_map: MessageMap) -> set[str]:
    """Ids on the chain from ``node_id`` up to the root, inclusive."""
    seen: set[str] = set()
    current = node_id
    while current and current not in seen:
        seen.add(current)
        message = message_map.get(current)
        current = message.parent_id if message else None
    return seen


def is_ancestor(candidate_id: str, node_id: str, message_map: MessageMap) -> bool:
    """True when ``candidate_id`` lies on ``node_id``'s chain (a node is its own ancestor)."""
    return candidate_id in ancestor_ids(node_id, message_map)


def find_lca(node_a_id: str, node_b_id: str, message_map: MessageMap) -> Optional[str]:
    ancestors_a = ancestor_ids(node_a_id, message_map)
    visited: set[str] = set()
    current: Optional[str] = node_b_id
    while current and current not in visited:
        if current in ancestors_a:
            return current
        visited.add(current)
        message = message_map.get(current)
        current = message.parent_id if message else None
    return None


def path_to_ancestor(
    start_id: str,
    ancestor_id: Optional[str],
    message_map: MessageMap,
) -> list[Message]:
    """Messages from ``start_id`` upward, stopping before ``ancestor_id``.

    Ordered newest first; callers reverse it for chronological output.
    """
    path: list[Message] = []
    visited: set[str] = set()
    current: Optional[str] = start_id
    while current and current != ancestor_id and current not in visited:
        visited.add(current)
        message = message_map.get(current)
        if message is None:
            break
        path.append(message)
        current = message.parent_id
    return path


def memory_blocks(message: Message, message_map: MessageMap) -> list[str]:
    blocks: list[str] = []
    for source_id in message.connections:
        lca_id = find_lca(source_id, message.id, message_map)
        side_path = path_to_ancestor(source_id, lca_id, message_map)
        if side_path:
            blocks.append(transcript(reversed(side_path)))
    return blocks


def memory_context(blocks: Sequence[str]) -> str:
    return f"\n{MEMORY_HEADER}\n\n{MEMORY_SEPARATOR.join(blocks)}\n\n{MEMORY_FOOTER}\n\n"


def get_thread(
    head_id: Optional[str],
    message_map: MessageMap,
    include_connections: bool = False,
) -> list[Message]:
    """Root-first messages ending at ``head_id``.

    With ``include_connections`` the returned messages carrying memory links
    are copies with the memory block prepended; the stored messages are left
    untouched. A missing node ends the walk early instead of raising.
    """
    if not head_id:
        return []
    thread: list[Message] = []
    visited: set[str] = set()
    current: Optional[str] = head_id
    while current and current not in visited:
        visited.add(current)
        message = message_map.get(current)
        if message is None:
            break
        if include_connections and message.connections:
            blocks = memory_blocks(message, message_map)
            if blocks:
                message = replace(message, content=memory_context(blocks) + message.content)
        thread.append(message)
        current = message.parent_id
    thread.reverse()
    return thread


def track_label(index: int) -> str:
    return chr(ord("A") + index)


def comparison_context(track_ids: Sequence[str], message_map: MessageMap) -> str:
    sections: list[str] = []
    for index, track_id in enumerate(track_ids):
        text = transcript(get_thread(track_id, message_map, False), bracketed=False)
        sections.append(f"[Track {track_label(index)}]:\n{text}\n{TRACK_RULE}")
    body = "\n\n".join(sections)
    return f"\n\n<system_context>\n{COMPARISON_HEADER}\n\n{body}\n</system_context>\n\n"


def request_history(
    session: Session,
    user_message_id: str,
    track_ids: Optional[Sequence[str]] = None,
) -> list[Message]:
    """The exact history handed to the AI transport for a freshly created turn.

    Memory connections are injected, and when comparison tracks were chosen
    their transcripts are prepended to the final user message of this copy
    only.
    """
    history = get_thread(user_message_id, session.message_map, True)
    if track_ids and history and history[-1].id == user_message_id:
        last = history[-1]
        context = comparison_context(track_ids, session.message_map)
        history[-1] = replace(last, content=context + last.content)
    return history
