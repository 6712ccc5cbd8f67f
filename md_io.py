from typing import List, Optional, Sequence

from hierarchy import TurnNode, build_hierarchy, find_turn
from node_models import Message, Session
from threads import get_thread, role_label


def _attachment_note(message: Message) -> Optional[str]:
    if not message.attachments:
        return None
    kinds = ", ".join(sorted({attachment.mime_type or "unknown" for attachment in message.attachments}))
    count = len(message.attachments)
    return f"_({count} attachment{'s' if count != 1 else ''}: {kinds})_"


def thread_to_markdown(thread: Sequence[Message], title: Optional[str] = None) -> str:
    """Serialize one linear thread (a track) to Markdown.

    - Optional ``# title`` heading at the top.
    - One ``**User**`` / ``**AI**`` block per message, separated by ``---``.
    - Message text is written verbatim; it is usually Markdown already.
    """
    lines: List[str] = []
    if title:
        lines.extend([f"# {title.strip()}", ""])
    for index, message in enumerate(thread):
        if index:
            lines.extend(["", "---", ""])
        lines.append(f"**{role_label(message)}**")
        lines.append("")
        note = _attachment_note(message)
        if note:
            lines.append(note)
            lines.append("")
        content = message.content.strip()
        lines.append(content if content else "_(no content yet)_")
    text = "\n".join(lines).strip()
    return f"{text}\n" if text else ""


def _turn_line(node: TurnNode, tree: TurnNode) -> str:
    label = node.name.strip() or "(untitled)"
    markers: List[str] = []
    if node.is_current_path:
        markers.append("current")
    if node.connections:
        sources = []
        for source_id in node.connections:
            source = find_turn(tree, source_id)
            sources.append(f'"{source.name}"' if source is not None and source.name else source_id[:8])
        markers.append("memory from " + ", ".join(sources))
    if node.attached_track_ids:
        markers.append(f"compares {len(node.attached_track_ids)} track(s)")
    suffix = f" ({'; '.join(markers)})" if markers else ""
    return f"{label}{suffix}"


def session_to_markdown(session: Session) -> str:
    """Outline of every turn in a session, one nested bullet per turn.

    The branch holding the current head is followed by the transcript of
    that thread so the export reads on its own.
    """
    tree = build_hierarchy(session.root_message_id, session.message_map, session.current_head_id)
    lines: List[str] = [f"# {session.title.strip() or 'Untitled'}", ""]
    if tree is None:
        lines.append("_(empty conversation)_")
        return "\n".join(lines) + "\n"

    def emit(node: TurnNode, depth: int) -> None:
        lines.append(f"{'  ' * depth}- {_turn_line(node, tree)}")
        for child in node.children or []:
            emit(child, depth + 1)

    emit(tree, 0)
    thread = get_thread(session.current_head_id, session.message_map, False)
    if thread:
        lines.extend(["", "## Current thread", ""])
        lines.append(thread_to_markdown(thread).rstrip("\n"))
    return "\n".join(lines).rstrip() + "\n"
