from __future__ import annotations

import asyncio
import base64
import html
import mimetypes
from pathlib import Path
import re
import subprocess
import sys
from typing import Awaitable, Callable, Optional
import webbrowser

from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical, VerticalScroll
from textual.message import Message as TextualMessage
from textual.screen import ModalScreen
from textual.widgets import Footer, Header, Input, OptionList, Static, TextArea, Tree
from textual.widgets.option_list import Option, OptionDoesNotExist
from textual.widgets._tree import TextType, TreeNode
from rich.console import Group, RenderableType
from rich.markdown import Markdown
from rich.text import Text

from chat_controller import ChatController, PendingReply
from hierarchy import TurnNode, find_turn, iter_turns
from layout import ViewTransform, bounds
from md_io import session_to_markdown
from mutations import ConnectionRejected
from node_models import Attachment, Message
from storage import FileStorage, SessionStore, StorageError
from threads import role_label, track_label
import ai

PREVIEW_WIDTH = 1200
PREVIEW_HEIGHT = 800
NUDGE_STEP = 20.0
_SLUG_RE = re.compile(r"[^A-Za-z0-9]+")


def _key_name_and_modifiers(key_value: str) -> tuple[str, set[str]]:
    parts = key_value.split("+")
    key_name = parts[-1].lower()
    modifiers = {part.lower() for part in parts[:-1] if part}
    return key_name, modifiers


class TurnTree(Tree[TurnNode]):
    """Tree widget showing one conversation turn per node."""

    def process_label(self, label: TextType) -> Text:
        if isinstance(label, str):
            return Text.from_markup(label, justify="left")
        return label


class ChoiceScreen(ModalScreen[str | None]):
    """Modal list picker (models, sessions, memory links)."""

    DEFAULT_CSS = """
    ChoiceScreen {
        align: center middle;
    }

    #choice-panel {
        min-width: 50;
        max-width: 90;
        height: auto;
        max-height: 80%;
        background: $panel;
        border: round $secondary;
        padding: 1 2 2 2;
        box-sizing: border-box;
    }

    #choice-title {
        content-align: center middle;
        text-style: bold;
        padding-bottom: 1;
    }

    #choice-list {
        border: none;
        background: $surface;
        padding: 0;
    }

    #choice-list > .option-list--option,
    #choice-list > .option-list--option-highlighted {
        padding: 0 2;
    }

    #choice-list > .option-list--option-highlighted {
        background: $accent;
        color: $text;
        text-style: bold;
    }

    #choice-list:focus {
        border: none;
        outline: none;
    }
    """

    def __init__(self, title: str, choices: list[tuple[str, str]], current: str | None = None) -> None:
        super().__init__()
        self._title = title
        self._choices = choices
        self._current = current

    def compose(self) -> ComposeResult:
        with Vertical(id="choice-panel"):
            yield Static(self._title, id="choice-title")
            yield OptionList(
                *[Option(label, id=choice_id) for choice_id, label in self._choices],
                id="choice-list",
            )

    def on_mount(self) -> None:
        option_list = self.query_one("#choice-list", OptionList)
        option_list.focus()
        option_list.highlighted = 0 if option_list.option_count else None
        if self._current is not None:
            try:
                option_list.highlighted = option_list.get_option_index(self._current)
            except OptionDoesNotExist:
                pass
        option_list.scroll_to_highlight()

    def on_option_list_option_selected(self, event: OptionList.OptionSelected) -> None:
        event.stop()
        self.dismiss(event.option_id or str(event.option.prompt))

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            event.stop()
            self.dismiss(None)


class PromptTextArea(TextArea):
    """TextArea that posts a submit message on Enter (Shift+Enter breaks the line)."""

    class Submitted(TextualMessage):
        def __init__(self, textarea: "PromptTextArea") -> None:
            super().__init__()
            self.textarea = textarea
            self.text = textarea.text

    async def on_event(self, event: events.Event) -> None:  # noqa: D401
        if isinstance(event, events.Key):
            key_name, modifiers = _key_name_and_modifiers(event.key)
            if key_name == "enter" and "shift" not in modifiers:
                event.stop()
                self.post_message(self.Submitted(self))
                return
        await super().on_event(event)


class PromptEditorScreen(ModalScreen[str | None]):
    """Modal editor for rewriting a turn's prompt (edit or fork)."""

    DEFAULT_CSS = """
    PromptEditorScreen {
        align: center middle;
        background: transparent;
    }

    #prompt-editor-panel {
        width: 90;
        height: auto;
        background: $panel;
        border: round $secondary;
        padding: 0 1;
    }

    #prompt-editor-title {
        text-style: bold;
        padding: 0 0 1 0;
    }

    #prompt-editor-text {
        height: 12;
        background: $surface 6%;
    }
    """

    def __init__(self, title: str, initial_text: str) -> None:
        super().__init__()
        self._title = title
        self._initial_text = initial_text

    def compose(self) -> ComposeResult:
        with Vertical(id="prompt-editor-panel"):
            yield Static(self._title, id="prompt-editor-title")
            yield PromptTextArea(
                text=self._initial_text,
                id="prompt-editor-text",
                soft_wrap=True,
            )

    def on_mount(self) -> None:
        textarea = self.query_one("#prompt-editor-text", PromptTextArea)
        textarea.focus()
        textarea.action_select_all()

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            event.stop()
            self.dismiss(None)

    def on_prompt_text_area_submitted(self, message: PromptTextArea.Submitted) -> None:
        message.stop()
        text = message.text.strip()
        self.dismiss(text or None)


class AttachmentPathScreen(ModalScreen[str | None]):
    """Modal prompt for the path of an image to attach to the next prompt."""

    DEFAULT_CSS = """
    AttachmentPathScreen {
        align: center middle;
        background: transparent;
    }

    #attachment-path-field {
        width: 60;
        border: round $secondary;
        background: $surface;
    }
    """

    def compose(self) -> ComposeResult:
        yield Input(placeholder="~/Pictures/diagram.png", id="attachment-path-field")

    def on_mount(self) -> None:
        self.query_one("#attachment-path-field", Input).focus()

    def on_key(self, event: events.Key) -> None:
        field = self.query_one("#attachment-path-field", Input)
        if event.key == "escape":
            event.stop()
            self.dismiss(None)
        elif event.key == "enter":
            event.stop()
            self.dismiss(field.value.strip() or None)


def load_attachment(path: Path) -> Attachment:
    mime_type, _ = mimetypes.guess_type(path.name)
    if not mime_type or not mime_type.startswith("image/"):
        raise ValueError(f"{path.name} is not an image")
    data = base64.b64encode(path.read_bytes()).decode("ascii")
    return Attachment(mime_type=mime_type, data=data)


def graph_preview_html(
    title: str,
    tree: Optional[TurnNode],
    positions: dict,
    transform: ViewTransform,
    head_id: Optional[str],
) -> str:
    """Standalone SVG rendering of the turn graph at its reconciled positions."""
    edges: list[str] = []
    links: list[str] = []
    nodes: list[str] = []
    for node in iter_turns(tree):
        if node.id not in positions:
            continue
        x, y = transform.apply(positions[node.id])
        for child in node.children or []:
            if child.id in positions:
                cx, cy = transform.apply(positions[child.id])
                edges.append(f'<line class="edge" x1="{x:.1f}" y1="{y:.1f}" x2="{cx:.1f}" y2="{cy:.1f}" />')
        for source_id in node.connections or []:
            source = find_turn(tree, source_id)
            if source is not None and source.id in positions:
                sx, sy = transform.apply(positions[source.id])
                links.append(f'<line class="memory" x1="{sx:.1f}" y1="{sy:.1f}" x2="{x:.1f}" y2="{y:.1f}" />')
        classes = ["node"]
        if node.is_current_path:
            classes.append("active")
        if node.id == head_id:
            classes.append("head")
        label = html.escape(node.name or "...")
        nodes.append(
            f'<g class="{" ".join(classes)}"><circle cx="{x:.1f}" cy="{y:.1f}" r="7" />'
            f'<text x="{x + 11:.1f}" y="{y + 4:.1f}">{label}</text></g>'
        )
    min_x, min_y, max_x, max_y = bounds(positions)
    extent = f"{max_x - min_x:.0f} x {max_y - min_y:.0f}"
    return f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <title>{html.escape(title)} - f0rkch4t graph</title>
    <meta name="viewport" content="width=device-width,initial-scale=1" />
    <style>
      body {{
        margin: 0;
        font-family: system-ui, -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif;
        background: #0f0f0f;
        color: #f2f2f2;
      }}
      header {{
        padding: 8px 16px;
        font-size: 14px;
        opacity: 0.8;
      }}
      svg {{
        display: block;
        margin: 0 auto;
        background: #161616;
      }}
      .edge {{ stroke: #555; stroke-width: 1.5; }}
      .memory {{ stroke: #d9a441; stroke-width: 1.5; stroke-dasharray: 5 4; }}
      .node circle {{ fill: #3a3a3a; stroke: #888; }}
      .node.active circle {{ fill: #2f6fb0; stroke: #8cc4ff; }}
      .node.head circle {{ fill: #8cc4ff; stroke: #ffffff; stroke-width: 2; }}
      .node text {{ fill: #f2f2f2; font-size: 10px; }}
    </style>
  </head>
  <body>
    <header>{html.escape(title)} &middot; {len(nodes)} turn(s) &middot; layout extent {extent}</header>
    <svg width="{PREVIEW_WIDTH}" height="{PREVIEW_HEIGHT}" viewBox="0 0 {PREVIEW_WIDTH} {PREVIEW_HEIGHT}">
      {"".join(edges)}
      {"".join(links)}
      {"".join(nodes)}
    </svg>
  </body>
</html>
"""


class ForkChatApp(App[None]):
    """Textual user interface for branching AI conversations."""

    TITLE = "f0rkch4t"

    CSS = """
    #main {
        height: 1fr;
    }
    #turn-tree {
        width: 40%;
        border-right: solid $secondary;
    }
    #turn-tree .tree--cursor,
    #turn-tree:focus .tree--cursor {
        text-style: none;
    }
    #thread-scroll {
        width: 1fr;
        padding: 0 1;
    }
    #prompt-input {
        dock: bottom;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit", show=False),
        Binding("s", "save", "Save", show=False),
        Binding("escape", "cancel", "Cancel", show=False),
        Binding("i", "focus_prompt", "Prompt"),
        Binding("n", "new_session", "New"),
        Binding("o", "switch_session", "Sessions"),
        Binding("x", "delete_session", "(del session)"),
        Binding("e", "edit_turn", "(edit)"),
        Binding("f", "fork_turn", "(fork)"),
        Binding("c", "connect", "(memory)"),
        Binding("d", "disconnect", "(forget)"),
        Binding("t", "toggle_tracks", "Compare"),
        Binding("v", "view_track", "(track)"),
        Binding("a", "attach", "Attach"),
        Binding("m", "choose_model", "Model"),
        Binding("l", "choose_label_model", "Label model", show=False),
        Binding("w", "export_markdown", "Export"),
        Binding("p", "preview_graph", "Graph"),
        Binding("alt+left", "nudge(-1, 0)", "Move left", show=False),
        Binding("alt+right", "nudge(1, 0)", "Move right", show=False),
        Binding("alt+up", "nudge(0, -1)", "Move up", show=False),
        Binding("alt+down", "nudge(0, 1)", "Move down", show=False),
    ]

    def __init__(self, data_dir: str | Path | None = None) -> None:
        super().__init__()
        self.title = "f0rkch4t"
        self.store = SessionStore(FileStorage(data_dir))
        self.controller: Optional[ChatController] = None
        self._tree_widget: Optional[TurnTree] = None
        self._tree_nodes: dict[str, TreeNode[TurnNode]] = {}
        self._connect_source_id: Optional[str] = None
        self._pending_attachments: list[Attachment] = []
        self._reply_task: Optional[asyncio.Task[None]] = None
        self._spinner_frame = 0
        self._view_transform = ViewTransform()
        self.model_choices = list(ai.AVAILABLE_MODELS)
        ai.reset_prompt_log()
        ai.reset_connection_log()

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Horizontal(id="main"):
            tree = TurnTree("Conversation", id="turn-tree")
            tree.show_root = True
            tree.auto_expand = False
            self._tree_widget = tree
            yield tree
            with VerticalScroll(id="thread-scroll"):
                yield Static(id="thread-view")
        yield Input(placeholder="Ask anything (Enter sends, Esc returns to the tree)", id="prompt-input")
        yield Footer()

    def on_mount(self) -> None:
        try:
            self.store.open()
        except StorageError as exc:
            # Refuse to start over a corrupt file; a later flush would overwrite it.
            self.exit(message=f"f0rkch4t: {exc}")
            return
        self.controller = ChatController(self.store)
        self.controller.on_error = self._on_transport_error
        if self.controller.chat_model not in self.model_choices:
            self.model_choices.append(self.controller.chat_model)
        ai.set_active_model(self.controller.chat_model)
        ai.set_label_model(self.controller.label_model)
        for warning in self.store.load_warnings:
            self.notify(warning, severity="warning")
        self.set_interval(0.3, self._tick_spinner)
        self.refresh_views()
        self.query_one("#prompt-input", Input).focus()

    def on_unmount(self) -> None:
        try:
            self.store.close()
        except StorageError as exc:
            print(f"f0rkch4t: {exc}", file=sys.stderr)

    # -- helpers -----------------------------------------------------------

    def require_tree(self) -> TurnTree:
        if self._tree_widget is None:
            raise RuntimeError("Tree widget not initialised")
        return self._tree_widget

    def require_controller(self) -> ChatController:
        if self.controller is None:
            raise RuntimeError("Controller not initialised")
        return self.controller

    def get_selected_turn(self) -> Optional[TurnNode]:
        node = self.require_tree().cursor_node
        if node is None or not isinstance(node.data, TurnNode):
            return None
        return node.data

    def _turn_message(self, turn: TurnNode) -> Optional[Message]:
        session = self.require_controller().active_session
        return session.get(turn.user_id) if session else None

    def _format_turn_label(self, turn: TurnNode) -> Text:
        controller = self.require_controller()
        label = Text()
        if turn.id == controller.head_id:
            label.append("● ", style="bold cyan")
        if turn.id in controller.selected_track_ids:
            index = controller.selected_track_ids.index(turn.id)
            label.append(f"[{track_label(index)}] ", style="bold yellow")
        label.append(turn.name or "...", style="bold" if turn.is_current_path else "")
        if turn.connections:
            label.append(f"  ~{len(turn.connections)}", style="dim yellow")
        if turn.attached_track_ids:
            label.append(f"  ⇉{len(turn.attached_track_ids)}", style="dim")
        if turn.id == self._connect_source_id:
            label.append("  (memory source)", style="italic yellow")
        return label

    def populate_tree(self, tree_node: TreeNode[TurnNode], turn: TurnNode) -> None:
        self._tree_nodes[turn.id] = tree_node
        self._tree_nodes[turn.user_id] = tree_node
        for child in turn.children or []:
            if child.children:
                child_node = tree_node.add(self._format_turn_label(child), data=child, expand=True)
            else:
                child_node = tree_node.add_leaf(self._format_turn_label(child), data=child)
            self.populate_tree(child_node, child)

    def rebuild_tree(self) -> None:
        controller = self.require_controller()
        tree = self.require_tree()
        cursor_turn = self.get_selected_turn()
        tree.clear()
        self._tree_nodes = {}
        session = controller.active_session
        display = controller.display_tree()
        if display is None:
            tree.root.set_label(Text(session.title if session else "No conversation", style="dim"))
            tree.root.data = None
            return
        tree.root.set_label(self._format_turn_label(display))
        tree.root.data = display
        self.populate_tree(tree.root, display)
        tree.root.expand_all()
        keep_id = cursor_turn.id if cursor_turn else controller.head_id
        target = self._tree_nodes.get(keep_id or "") or self._tree_nodes.get(controller.head_id or "")
        if target is not None:
            tree.move_cursor(target)

    def _render_thread(self) -> RenderableType:
        controller = self.require_controller()
        thread = controller.visible_thread()
        if not thread:
            return Text("Type a prompt below to start exploring.", style="dim italic")
        session = controller.active_session
        parts: list[RenderableType] = []
        if controller.viewing_track_id is not None:
            parts.append(Text("Viewing a compared track (Esc to return)", style="bold yellow"))
            parts.append(Text(""))
        for message in thread:
            header = Text(role_label(message), style="bold cyan" if message.role == "user" else "bold magenta")
            if message.attachments:
                header.append(f"  [{len(message.attachments)} attachment(s)]", style="dim")
            if message.connections and session is not None:
                sources = []
                for source_id in message.connections:
                    source = session.get(source_id)
                    sources.append((source.summary or source.content[:18]) if source else source_id[:8])
                header.append("  memory: " + ", ".join(sources), style="dim yellow")
            parts.append(header)
            if message.content:
                parts.append(Markdown(message.content))
            elif controller.processing and message.id == controller.head_id:
                parts.append(Text("." * (self._spinner_frame + 1), style="dim italic"))
            parts.append(Text(""))
        return Group(*parts)

    def refresh_thread(self) -> None:
        self.query_one("#thread-view", Static).update(self._render_thread())
        self.query_one("#thread-scroll", VerticalScroll).scroll_end(animate=False)

    def refresh_views(self, message: str | None = None) -> None:
        controller = self.require_controller()
        self.rebuild_tree()
        self.refresh_thread()
        transform = controller.recenter(PREVIEW_WIDTH, PREVIEW_HEIGHT)
        if transform is not None:
            self._view_transform = transform
            head_node = self._tree_nodes.get(controller.head_id or "")
            if head_node is not None:
                self.require_tree().move_cursor(head_node)
                self.require_tree().scroll_to_node(head_node)
        self.show_status(message)

    def _tick_spinner(self) -> None:
        if self.controller is None or not self.controller.processing:
            return
        self._spinner_frame = (self._spinner_frame + 1) % 3
        self.refresh_thread()

    def _persist(self) -> None:
        try:
            self.require_controller().save()
        except StorageError as exc:
            self.bell()
            self.notify(str(exc), severity="error")

    def _on_transport_error(self, message: str) -> None:
        self.bell()
        self.notify(message, severity="error", timeout=8)

    def _dispatch_from_worker(self, callback: Callable[[], None]) -> None:
        self.call_from_thread(self._apply_streamed, callback)

    def _apply_streamed(self, callback: Callable[[], None]) -> None:
        callback()
        self.refresh_thread()

    # -- AI round trip -----------------------------------------------------

    def _start_reply_task(self, coro: Awaitable[None], *, label: str) -> None:
        task: asyncio.Task[None] = asyncio.create_task(coro)
        self._reply_task = task

        def _on_done(completed: asyncio.Task[None]) -> None:
            if self._reply_task is completed:
                self._reply_task = None
            if completed.cancelled():
                return
            exc = completed.exception()
            if exc is not None:
                self.bell()
                self.refresh_views(f"{label} error: {exc}")

        task.add_done_callback(_on_done)

    async def _complete_pending(self, pending: PendingReply) -> None:
        controller = self.require_controller()
        ai.start_prompt_session()
        label_task = asyncio.create_task(
            asyncio.to_thread(controller.run_label, pending, self._dispatch_from_worker)
        )
        ok = await asyncio.to_thread(controller.run_reply, pending, self._dispatch_from_worker)
        await label_task
        self._persist()
        self.refresh_views("Reply complete." if ok else "Reply failed; see the note in the thread.")

    def _launch(self, pending: Optional[PendingReply], refused: str) -> None:
        controller = self.require_controller()
        if pending is None:
            self.bell()
            self.show_status("Wait for the current reply to finish." if controller.processing else refused)
            return
        self._connect_source_id = None
        self._persist()
        self.refresh_views("Thinking…")
        self._start_reply_task(self._complete_pending(pending), label="Reply")

    def on_input_submitted(self, event: Input.Submitted) -> None:
        event.stop()
        text = event.value.strip()
        if not text and not self._pending_attachments:
            return
        controller = self.require_controller()
        pending = controller.send(text, self._pending_attachments)
        if pending is not None:
            event.input.value = ""
            self._pending_attachments = []
        self._launch(pending, "Nothing to send.")

    def on_tree_node_selected(self, event: Tree.NodeSelected[TurnNode]) -> None:
        event.stop()
        turn = event.node.data
        if not isinstance(turn, TurnNode):
            return
        controller = self.require_controller()
        changed = controller.select_node(turn.id)
        if controller.track_selection_mode and not changed:
            self.bell()
            self.show_status("Only other leaf turns can be compared.")
            return
        self.call_after_refresh(self.refresh_views)

    # -- actions -----------------------------------------------------------

    def action_focus_prompt(self) -> None:
        self.query_one("#prompt-input", Input).focus()

    def action_cancel(self) -> None:
        if self.focused is self.query_one("#prompt-input", Input):
            self.require_tree().focus()
            return
        if self._connect_source_id is not None:
            self._connect_source_id = None
            self.refresh_views("Memory link cancelled.")
            return
        controller = self.require_controller()
        if controller.viewing_track_id is not None:
            controller.view_track(None)
            self.refresh_views("Back to the current thread.")
            return
        if controller.track_selection_mode:
            controller.toggle_track_selection()
            self.refresh_views("Comparison cancelled.")

    def action_new_session(self) -> None:
        self.require_controller().new_session()
        self._connect_source_id = None
        self._persist()
        self.refresh_views("New conversation.")
        self.action_focus_prompt()

    def action_switch_session(self) -> None:
        controller = self.require_controller()
        sessions = self.store.sessions
        if not sessions:
            self.bell()
            self.show_status("No saved conversations.")
            return

        def apply_selection(session_id: str | None) -> None:
            if not session_id or not controller.select_session(session_id):
                self.show_status("Conversation unchanged.")
                return
            self._connect_source_id = None
            self._persist()
            self.refresh_views("Switched conversation.")

        choices = [(session.id, f"{session.title}  ({len(session.message_map) // 2} turns)") for session in sessions]
        self.push_screen(ChoiceScreen("Open conversation", choices, self.store.active_id), apply_selection)

    def action_delete_session(self) -> None:
        controller = self.require_controller()
        session = controller.active_session
        if session is None:
            self.bell()
            self.show_status("No conversation to delete.")
            return
        controller.delete_session(session.id)
        self._connect_source_id = None
        self._persist()
        self.refresh_views(f"Deleted '{session.title}'.")

    def _prompt_rewrite(self, title: str, apply: Callable[[TurnNode, str], None]) -> None:
        controller = self.require_controller()
        if controller.processing:
            self.bell()
            self.show_status("Wait for the current reply to finish.")
            return
        turn = self.get_selected_turn()
        message = self._turn_message(turn) if turn else None
        if turn is None or message is None:
            self.bell()
            self.show_status("No turn selected.")
            return

        def on_result(text: str | None) -> None:
            if not text:
                self.show_status("Prompt unchanged.")
                return
            apply(turn, text)

        self.push_screen(PromptEditorScreen(title, message.content), on_result)

    def action_edit_turn(self) -> None:
        controller = self.require_controller()
        self._prompt_rewrite(
            "Edit prompt (replaces this turn and everything below it)",
            lambda turn, text: self._launch(controller.edit(turn.id, text), "Turn no longer exists."),
        )

    def action_fork_turn(self) -> None:
        controller = self.require_controller()
        self._prompt_rewrite(
            "Fork: new prompt as a sibling branch",
            lambda turn, text: self._launch(
                controller.edit_and_fork(turn.id, text),
                "The first turn has no earlier reply to branch from; edit it instead.",
            ),
        )

    def action_connect(self) -> None:
        turn = self.get_selected_turn()
        if turn is None:
            self.bell()
            self.show_status("No turn selected.")
            return
        if self._connect_source_id is None:
            self._connect_source_id = turn.id
            self.refresh_views(f"Memory source '{turn.name}'. Select the target turn and press c again.")
            return
        source_id = self._connect_source_id
        self._connect_source_id = None
        try:
            changed = self.require_controller().connect(source_id, turn.id)
        except ConnectionRejected as exc:
            self.bell()
            self.refresh_views(str(exc))
            return
        if changed:
            self._persist()
        self.refresh_views("Memory linked." if changed else "Nothing to link.")

    def action_disconnect(self) -> None:
        controller = self.require_controller()
        turn = self.get_selected_turn()
        if turn is None or not turn.connections:
            self.bell()
            self.show_status("This turn has no memory links.")
            return
        tree = controller.display_tree()

        def remove(source_id: str | None) -> None:
            if not source_id:
                self.show_status("Memory links unchanged.")
                return
            changed = controller.disconnect(source_id, turn.id) or controller.disconnect(
                source_id, turn.user_id
            )
            if changed:
                self._persist()
            self.refresh_views("Memory link removed." if changed else "Memory links unchanged.")

        if len(turn.connections) == 1:
            remove(turn.connections[0])
            return
        choices = []
        for source_id in turn.connections:
            source = find_turn(tree, source_id)
            choices.append((source_id, source.name if source and source.name else source_id[:8]))
        self.push_screen(ChoiceScreen("Forget memory from", choices), remove)

    def action_toggle_tracks(self) -> None:
        controller = self.require_controller()
        if controller.processing:
            self.bell()
            self.show_status("Wait for the current reply to finish.")
            return
        if controller.toggle_track_selection():
            self.refresh_views("Compare: select leaf turns with Enter, then send a prompt.")
        else:
            self.refresh_views("Comparison off.")

    def action_view_track(self) -> None:
        controller = self.require_controller()
        turn = self.get_selected_turn()
        if turn is None or not turn.attached_track_ids:
            self.bell()
            self.show_status("This turn compared no tracks.")
            return
        tree = controller.display_tree()

        def open_track(track_id: str | None) -> None:
            if not controller.view_track(track_id):
                self.show_status("Track unavailable.")
                return
            self.refresh_views(f"Viewing {dict(choices)[track_id]}.")

        choices = []
        for index, track_id in enumerate(turn.attached_track_ids):
            track = find_turn(tree, track_id)
            name = track.name if track and track.name else track_id[:8]
            choices.append((track_id, f"Track {track_label(index)}: {name}"))
        self.push_screen(ChoiceScreen("Open compared track", choices), open_track)

    def action_nudge(self, dx: int, dy: int) -> None:
        controller = self.require_controller()
        turn = self.get_selected_turn()
        if turn is None:
            self.bell()
            return
        position = controller.nudge(turn.id, dx * NUDGE_STEP, dy * NUDGE_STEP)
        if position is None:
            self.bell()
            return
        self.show_status(f"'{turn.name}' at ({position.x:.0f}, {position.y:.0f}).")

    def action_attach(self) -> None:
        def apply_path(value: str | None) -> None:
            if not value:
                self.show_status("No attachment added.")
                return
            path = Path(value).expanduser()
            try:
                attachment = load_attachment(path)
            except (OSError, ValueError) as exc:
                self.bell()
                self.show_status(f"Attach failed: {exc}")
                return
            self._pending_attachments.append(attachment)
            self.show_status(f"Attached {path.name} to the next prompt.")

        self.push_screen(AttachmentPathScreen(), apply_path)

    def _choose_model(self, title: str, current: str, apply: Callable[[str], None]) -> None:
        def apply_selection(selection: str | None) -> None:
            if not selection or selection == current:
                self.show_status(f"Model unchanged ({current}).")
                return
            if selection not in self.model_choices:
                self.model_choices.append(selection)
            try:
                apply(selection)
            except StorageError as exc:
                self.bell()
                self.notify(str(exc), severity="error")
            self.show_status(f"{title} set to {selection}.")

        choices = [(model, model) for model in self.model_choices]
        self.push_screen(ChoiceScreen(f"Select {title.lower()}", choices, current), apply_selection)

    def action_choose_model(self) -> None:
        controller = self.require_controller()
        self._choose_model("Chat model", controller.chat_model, controller.set_chat_model)

    def action_choose_label_model(self) -> None:
        controller = self.require_controller()
        self._choose_model("Label model", controller.label_model, controller.set_label_model)

    def action_export_markdown(self) -> None:
        session = self.require_controller().active_session
        if session is None:
            self.bell()
            self.show_status("No conversation to export.")
            return
        slug = _SLUG_RE.sub("-", session.title).strip("-").lower() or "conversation"
        path = Path(f"{slug}.md")
        try:
            path.write_text(session_to_markdown(session), encoding="utf-8")
        except OSError as exc:
            self.bell()
            self.show_status(f"Export failed: {exc}")
            return
        self.show_status(f"Exported to {path}")

    def _write_graph_preview(self) -> Path:
        controller = self.require_controller()
        session = controller.active_session
        positions = controller.layout()
        markup = graph_preview_html(
            session.title if session else "f0rkch4t",
            controller.display_tree(),
            positions,
            self._view_transform,
            controller.head_id,
        )
        path = Path("f0rkch4t_graph.html")
        path.write_text(markup, encoding="utf-8")
        return path

    def _open_graph_preview(self, path: Path) -> None:
        uri = path.resolve().as_uri()
        if sys.platform == "darwin":
            try:
                subprocess.Popen(["open", "-g", uri])
                return
            except OSError:
                pass
        webbrowser.open(uri, new=2)

    def action_preview_graph(self) -> None:
        try:
            path = self._write_graph_preview()
        except OSError as exc:
            self.bell()
            self.show_status(f"Graph preview failed: {exc}")
            return
        self._open_graph_preview(path)
        self.show_status("Opened graph preview in a browser tab.")

    def action_save(self) -> None:
        try:
            self.require_controller().save()
        except StorageError as exc:
            self.bell()
            self.show_status(f"Save failed: {exc}")
            return
        self.show_status(f"Saved to {self.store.backend.data_dir}")

    def show_status(self, message: str | None = None) -> None:
        controller = self.controller
        if controller is None:
            return
        parts = []
        if message:
            parts.append(message)
        if controller.track_selection_mode:
            tracks = ", ".join(track_label(index) for index in range(len(controller.selected_track_ids)))
            parts.append(f"Comparing: {tracks or 'none'}")
        if self._pending_attachments:
            parts.append(f"{len(self._pending_attachments)} attachment(s) queued")
        parts.append(f"Model: {controller.chat_model}")
        self.sub_title = " | ".join(parts)


def main() -> None:
    data_dir = sys.argv[1] if len(sys.argv) > 1 else None
    ForkChatApp(data_dir).run()


if __name__ == "__main__":
    main()
