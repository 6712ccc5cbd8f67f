"""Wires user actions, the graph engine and the AI collaborators together.

The controller never blocks on the network itself. ``send``/``edit``/
``edit_and_fork`` apply the structural change and hand back a
``PendingReply``; the caller runs ``run_reply`` and ``run_label`` wherever it
likes (the Textual app uses worker threads) and passes a ``dispatch``
function that brings each chunk or label back to the thread that owns the
store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import ai
import mutations
from hierarchy import TurnNode, build_hierarchy
from layout import (
    LayoutConfig,
    Recenterer,
    ViewTransform,
    constrain_drag,
    estimate_label_width,
    reconcile_layout,
    saved_positions,
)
from node_models import Attachment, Message, Position, Session
from storage import SessionStore
from threads import get_thread, request_history

Transport = Callable[..., bool]
Labeler = Callable[[str, Optional[str]], str]
Dispatch = Callable[[Callable[[], None]], None]

CHAT_MODEL_SETTING = "chat_model"
LABEL_MODEL_SETTING = "label_model"


def _call_now(callback: Callable[[], None]) -> None:
    callback()


@dataclass
class PendingReply:
    """A freshly created turn waiting for its streamed reply and label."""

    session_id: str
    user_id: str
    model_id: str
    history: List[Message] = field(default_factory=list)
    label_text: str = ""


class ChatController:
    def __init__(
        self,
        store: SessionStore,
        *,
        transport: Transport = ai.stream_response,
        labeler: Labeler = ai.generate_node_label,
        layout_config: LayoutConfig | None = None,
        measure: Callable[[str], float] | None = None,
        system_instruction: str = ai.DEFAULT_SYSTEM_INSTRUCTION,
    ) -> None:
        self.store = store
        self.transport = transport
        self.labeler = labeler
        self.layout_config = layout_config or LayoutConfig()
        self.measure = measure or (
            lambda label: estimate_label_width(label, self.layout_config.char_width)
        )
        self.system_instruction = system_instruction
        self.processing = False
        self.track_selection_mode = False
        self.selected_track_ids: List[str] = []
        self.viewing_track_id: Optional[str] = None
        self.on_error: Optional[Callable[[str], None]] = None
        self.last_error: Optional[str] = None
        self.recenterer = Recenterer()
        self._positions: Dict[str, Position] = {}
        self._positions_session_id: Optional[str] = None
        self.chat_model = store.setting(CHAT_MODEL_SETTING) or ai.get_active_model()
        self.label_model = store.setting(LABEL_MODEL_SETTING) or ai.get_label_model()

    # -- read side -----------------------------------------------------

    @property
    def active_session(self) -> Optional[Session]:
        return self.store.active_session

    @property
    def head_id(self) -> Optional[str]:
        session = self.active_session
        return session.current_head_id if session else None

    def display_tree(self) -> Optional[TurnNode]:
        session = self.active_session
        if session is None:
            return None
        return build_hierarchy(session.root_message_id, session.message_map, session.current_head_id)

    def current_thread(self) -> List[Message]:
        session = self.active_session
        if session is None:
            return []
        return get_thread(session.current_head_id, session.message_map, False)

    def track_thread(self, node_id: str) -> List[Message]:
        session = self.active_session
        if session is None:
            return []
        return get_thread(node_id, session.message_map, False)

    def visible_thread(self) -> List[Message]:
        """The opened comparison track, or the current thread when none is open."""
        session = self.active_session
        if self.viewing_track_id is not None and session is not None and self.viewing_track_id in session.message_map:
            return self.track_thread(self.viewing_track_id)
        return self.current_thread()

    def view_track(self, track_id: Optional[str]) -> bool:
        session = self.active_session
        if track_id is None or session is None or track_id not in session.message_map:
            self.viewing_track_id = None
            return False
        self.viewing_track_id = track_id
        return True

    def layout(self) -> Dict[str, Position]:
        """Reconciled positions for the active session's turns."""
        session = self.active_session
        if session is None:
            return {}
        if self._positions_session_id != session.id:
            self._positions = {}
            self._positions_session_id = session.id
            self.recenterer.reset()
        tree = self.display_tree()
        self._positions = reconcile_layout(
            tree,
            self._positions,
            self.layout_config,
            saved_positions(session.message_map),
        )
        return dict(self._positions)

    def recenter(self, width: float, height: float) -> Optional[ViewTransform]:
        positions = self.layout()
        return self.recenterer.update(self.head_id, positions, width, height)

    # -- sessions --------------------------------------------------------

    def new_session(self) -> Session:
        session = self.store.add(mutations.new_session())
        self.track_selection_mode = False
        self.selected_track_ids = []
        return session

    def delete_session(self, session_id: str) -> bool:
        return self.store.remove(session_id)

    def select_session(self, session_id: str) -> bool:
        if not self.store.select(session_id):
            return False
        self.track_selection_mode = False
        self.selected_track_ids = []
        return True

    def set_chat_model(self, model: str) -> None:
        self.chat_model = model
        ai.set_active_model(model)
        self.store.set_setting(CHAT_MODEL_SETTING, model)

    def set_label_model(self, model: str) -> None:
        self.label_model = model
        ai.set_label_model(model)
        self.store.set_setting(LABEL_MODEL_SETTING, model)

    def save(self) -> None:
        self.store.flush()

    # -- graph actions ---------------------------------------------------

    def _reply_anchor(self, session: Session) -> Optional[str]:
        head = session.get(session.current_head_id)
        if head is None:
            return session.current_head_id if session.is_empty else None
        if head.role == "user":
            return mutations.paired_id(session, head.id) or head.id
        return head.id

    def _pending_for(self, before: Session, after: Optional[Session], label_text: str,
                     track_ids: Optional[Sequence[str]] = None) -> Optional[PendingReply]:
        if after is None or after is before:
            return None
        model_id = after.current_head_id
        model_message = after.get(model_id)
        if model_id is None or model_message is None or model_message.parent_id is None:
            return None
        user_id = model_message.parent_id
        self.processing = True
        return PendingReply(
            session_id=after.id,
            user_id=user_id,
            model_id=model_id,
            history=request_history(after, user_id, track_ids),
            label_text=label_text,
        )

    def send(self, text: str, attachments: Optional[Sequence[Attachment]] = None) -> Optional[PendingReply]:
        """Append a turn under the current head (starting a session if needed)."""
        if self.processing:
            return None
        if not text.strip() and not attachments:
            return None
        session = self.active_session
        if session is None:
            session = self.new_session()
        parent_id = self._reply_anchor(session)
        if parent_id is None and not session.is_empty:
            return None
        track_ids: Optional[List[str]] = None
        if self.track_selection_mode and self.selected_track_ids:
            track_ids = list(self.selected_track_ids)
        after = self.store.update(
            session.id,
            lambda current: mutations.append_turn(
                current, parent_id, text, attachments, track_ids, measure=self.measure
            ),
        )
        return self._pending_for(session, after, text, track_ids)

    def edit(self, target_id: str, text: str) -> Optional[PendingReply]:
        """Replace the target turn's prompt; the old branch below it is discarded."""
        if self.processing:
            return None
        session = self.active_session
        if session is None:
            return None
        after = self.store.update(session.id, lambda current: mutations.edit_replace(current, target_id, text))
        return self._pending_for(session, after, text)

    def edit_and_fork(self, target_id: str, text: str) -> Optional[PendingReply]:
        """Start a sibling branch next to the target turn, keeping the original."""
        if self.processing:
            return None
        session = self.active_session
        if session is None:
            return None
        after = self.store.update(session.id, lambda current: mutations.edit_and_fork(current, target_id, text))
        return self._pending_for(session, after, text)

    def connect(self, source_id: str, target_id: str) -> bool:
        """Link two turns; raises ``mutations.ConnectionRejected`` for invalid links."""
        session = self.active_session
        if session is None:
            return False
        after = self.store.update(session.id, lambda current: mutations.connect(current, source_id, target_id))
        return after is not None and after is not session

    def disconnect(self, source_id: str, target_id: str) -> bool:
        session = self.active_session
        if session is None:
            return False
        after = self.store.update(session.id, lambda current: mutations.disconnect(current, source_id, target_id))
        return after is not None and after is not session

    def select_node(self, node_id: str) -> bool:
        """Focus a turn, or toggle it as a comparison track in track selection mode."""
        session = self.active_session
        if session is None or node_id not in session.message_map:
            return False
        if not self.track_selection_mode:
            self.viewing_track_id = None
            after = self.store.update(session.id, lambda current: mutations.set_head(current, node_id))
            return after is not None and after is not session
        if session.message_map[node_id].children_ids:
            return False
        if node_id == session.current_head_id:
            return False
        if node_id in self.selected_track_ids:
            self.selected_track_ids = [track for track in self.selected_track_ids if track != node_id]
        else:
            self.selected_track_ids = [*self.selected_track_ids, node_id]
        return True

    def toggle_track_selection(self) -> bool:
        self.track_selection_mode = not self.track_selection_mode
        head_id = self.head_id
        if self.track_selection_mode and head_id:
            self.selected_track_ids = [head_id]
        else:
            self.selected_track_ids = []
        return self.track_selection_mode

    def reposition(self, turn_id: str, x: float, y: float) -> Optional[Position]:
        """Move a turn under the drag constraint and persist it on both messages."""
        session = self.active_session
        if session is None or turn_id not in session.message_map:
            return None
        positions = self.layout()
        target = constrain_drag(turn_id, x, y, self.display_tree(), positions, self.layout_config)
        self.store.update(session.id, lambda current: mutations.reposition(current, turn_id, target.x, target.y))
        self._positions[turn_id] = target
        return target

    def nudge(self, turn_id: str, dx: float, dy: float) -> Optional[Position]:
        current = self.layout().get(turn_id)
        if current is None:
            return None
        return self.reposition(turn_id, current.x + dx, current.y + dy)

    # -- streaming -------------------------------------------------------

    def apply_chunk(self, session_id: str, message_id: str, text: str) -> None:
        self.store.update(session_id, lambda current: mutations.append_chunk(current, message_id, text))

    def apply_summary(self, session_id: str, message_id: str, summary: str) -> None:
        self.store.update(session_id, lambda current: mutations.apply_summary(current, message_id, summary))

    def _report_error(self, message: str) -> None:
        self.last_error = message
        if self.on_error is not None:
            self.on_error(message)

    def _finish_reply(self) -> None:
        self.processing = False
        self.track_selection_mode = False
        self.selected_track_ids = []

    def run_reply(self, pending: PendingReply, dispatch: Dispatch = _call_now) -> bool:
        """Stream the reply for ``pending``; blocks until the transport finishes."""

        def on_chunk(text: str) -> None:
            dispatch(lambda: self.apply_chunk(pending.session_id, pending.model_id, text))

        def on_error(message: str) -> None:
            dispatch(lambda: self._report_error(message))

        try:
            return bool(
                self.transport(
                    pending.history,
                    on_chunk,
                    self.chat_model,
                    self.system_instruction,
                    on_error,
                )
            )
        finally:
            dispatch(self._finish_reply)

    def run_label(self, pending: PendingReply, dispatch: Dispatch = _call_now) -> str:
        """Best-effort label for the new prompt; failures leave the summary unset."""
        try:
            summary = self.labeler(pending.label_text, self.label_model)
        except Exception:
            summary = ""
        if summary:
            dispatch(lambda: self.apply_summary(pending.session_id, pending.user_id, summary))
        return summary
