from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

Role = Literal["user", "model"]

DEFAULT_SESSION_TITLE = "New Exploration"


@dataclass(frozen=True)
class Attachment:
    mime_type: str
    # Base64 payload without the data URI prefix.
    data: str

    def to_dict(self) -> dict[str, str]:
        return {"mimeType": self.mime_type, "data": self.data}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(mime_type=str(data.get("mimeType", "")), data=str(data.get("data", "")))


@dataclass(frozen=True)
class Position:
    x: float
    y: float

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(x=float(data.get("x", 0.0)), y=float(data.get("y", 0.0)))


@dataclass
class Message:
    """One half of a turn: a user prompt or the model's reply.

    ``parent_id``/``children_ids`` form the primary tree. ``connections``
    lists the ids of nodes whose history is injected INTO this node and is
    never followed for deletion or reparenting.
    """

    id: str
    role: Role
    content: str = ""
    parent_id: Optional[str] = None
    children_ids: List[str] = field(default_factory=list)
    connections: List[str] = field(default_factory=list)
    attachments: List[Attachment] = field(default_factory=list)
    timestamp: int = 0
    summary: Optional[str] = None
    attached_track_ids: List[str] = field(default_factory=list)
    position: Optional[Position] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "parentId": self.parent_id,
            "childrenIds": list(self.children_ids),
            "timestamp": self.timestamp,
        }
        if self.connections:
            data["connections"] = list(self.connections)
        if self.attachments:
            data["attachments"] = [attachment.to_dict() for attachment in self.attachments]
        if self.summary:
            data["summary"] = self.summary
        if self.attached_track_ids:
            data["attachedTrackIds"] = list(self.attached_track_ids)
        if self.position is not None:
            data["position"] = self.position.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        role = data.get("role")
        if role not in ("user", "model"):
            raise ValueError(f"unknown message role: {role!r}")
        position = data.get("position")
        return cls(
            id=str(data["id"]),
            role=role,
            content=str(data.get("content") or ""),
            parent_id=data.get("parentId"),
            children_ids=list(data.get("childrenIds") or []),
            connections=list(data.get("connections") or []),
            attachments=[Attachment.from_dict(item) for item in data.get("attachments") or []],
            timestamp=int(data.get("timestamp") or 0),
            summary=data.get("summary") or None,
            attached_track_ids=list(data.get("attachedTrackIds") or []),
            position=Position.from_dict(position) if isinstance(position, dict) else None,
        )


@dataclass
class Session:
    """One conversation graph.

    Sessions are handled as snapshots: mutations build a new ``Session`` with
    a copied ``message_map`` instead of editing this one in place.
    """

    id: str
    title: str = DEFAULT_SESSION_TITLE
    root_message_id: Optional[str] = None
    message_map: Dict[str, Message] = field(default_factory=dict)
    current_head_id: Optional[str] = None
    last_modified: int = 0

    def get(self, message_id: Optional[str]) -> Optional[Message]:
        if message_id is None:
            return None
        return self.message_map.get(message_id)

    @property
    def is_empty(self) -> bool:
        return self.root_message_id is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "rootMessageId": self.root_message_id,
            "messageMap": {key: message.to_dict() for key, message in self.message_map.items()},
            "currentHeadId": self.current_head_id,
            "lastModified": self.last_modified,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        raw_map = data.get("messageMap") or {}
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or DEFAULT_SESSION_TITLE),
            root_message_id=data.get("rootMessageId"),
            message_map={str(key): Message.from_dict(value) for key, value in raw_map.items()},
            current_head_id=data.get("currentHeadId"),
            last_modified=int(data.get("lastModified") or 0),
        )
