from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from mutations import check_integrity, delete_session
from node_models import Session

SESSIONS_FILE = "sessions.json"
ACTIVE_ID_FILE = "active-id.txt"
DEFAULT_DATA_DIR = "f0rkch4t-data"
_SETTING_KEY_RE = re.compile(r"[^A-Za-z0-9_.-]")


class StorageError(RuntimeError):
    """Raised when the session files cannot be read or written."""


def default_data_dir() -> Path:
    return Path(os.getenv("F0RKCH4T_DATA_DIR", DEFAULT_DATA_DIR)).expanduser()


class FileStorage:
    """Whole-collection JSON storage in a local directory.

    Every save replaces the target file (written to a temporary file, then
    moved into place); there are no partial or merged writes.
    """

    def __init__(self, data_dir: str | Path | None = None) -> None:
        self.data_dir = Path(data_dir).expanduser() if data_dir else default_data_dir()

    def _path(self, name: str) -> Path:
        return self.data_dir / name

    def _write(self, name: str, text: str) -> None:
        path = self._path(name)
        temp_path = path.with_name(f"{path.name}.tmp")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(text, encoding="utf-8")
            os.replace(temp_path, path)
        except OSError as exc:
            raise StorageError(f"Failed to write {path}: {exc}") from exc

    def _read(self, name: str) -> Optional[str]:
        path = self._path(name)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise StorageError(f"Failed to read {path}: {exc}") from exc

    def _remove(self, name: str) -> None:
        path = self._path(name)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to remove {path}: {exc}") from exc

    @staticmethod
    def _setting_file(key: str) -> str:
        return f"setting-{_SETTING_KEY_RE.sub('_', key)}.txt"

    def save(self, sessions: Sequence[Session]) -> None:
        payload = [session.to_dict() for session in sessions]
        self._write(SESSIONS_FILE, json.dumps(payload, indent=2, ensure_ascii=False))

    def load(self) -> List[Session]:
        raw = self._read(SESSIONS_FILE)
        if raw is None or not raw.strip():
            return []
        try:
            records = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageError(f"{self._path(SESSIONS_FILE)} is not valid JSON: {exc}") from exc
        if not isinstance(records, list):
            raise StorageError(f"{self._path(SESSIONS_FILE)} must contain a list of sessions")
        try:
            return [Session.from_dict(record) for record in records]
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"Malformed session record: {exc}") from exc

    def save_active_id(self, session_id: Optional[str]) -> None:
        if session_id:
            self._write(ACTIVE_ID_FILE, session_id)
        else:
            self._remove(ACTIVE_ID_FILE)

    def load_active_id(self) -> Optional[str]:
        raw = self._read(ACTIVE_ID_FILE)
        value = (raw or "").strip()
        return value or None

    def save_setting(self, key: str, value: str) -> None:
        self._write(self._setting_file(key), value)

    def load_setting(self, key: str) -> Optional[str]:
        raw = self._read(self._setting_file(key))
        value = (raw or "").strip()
        return value or None

    def clear(self) -> None:
        self._remove(SESSIONS_FILE)
        self._remove(ACTIVE_ID_FILE)


class SessionStore:
    """In-memory owner of all sessions, backed by a storage collaborator.

    The in-memory list is authoritative while the app runs; ``flush`` writes
    the whole collection back. Sessions are replaced, never edited in place,
    so ``update`` always applies its function to the current snapshot of the
    addressed session.
    """

    def __init__(self, backend: FileStorage) -> None:
        self.backend = backend
        self._sessions: List[Session] = []
        self._active_id: Optional[str] = None
        self._settings: Dict[str, Optional[str]] = {}
        self._opened = False
        self._closed = False
        self.dirty = False
        self.load_warnings: List[str] = []

    def __enter__(self) -> "SessionStore":
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    def open(self) -> "SessionStore":
        if self._closed:
            raise StorageError("Session store already closed.")
        if self._opened:
            return self
        self._sessions = self.backend.load()
        self.load_warnings = [
            f"{session.title}: {problem}"
            for session in self._sessions
            for problem in check_integrity(session)
        ]
        active_id = self.backend.load_active_id()
        if self.get(active_id) is None:
            active_id = self._sessions[0].id if self._sessions else None
        self._active_id = active_id
        self._opened = True
        self.dirty = False
        return self

    def flush(self) -> None:
        if self._closed:
            raise StorageError("Session store already closed.")
        self.backend.save(self._sessions)
        self.backend.save_active_id(self._active_id)
        self.dirty = False

    def close(self) -> None:
        if self._closed:
            return
        try:
            if self._opened:
                self.flush()
        finally:
            self._closed = True

    @property
    def sessions(self) -> List[Session]:
        return list(self._sessions)

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    @property
    def active_session(self) -> Optional[Session]:
        return self.get(self._active_id)

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if session_id is None:
            return None
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def add(self, session: Session, *, activate: bool = True) -> Session:
        self._sessions = [session, *delete_session(self._sessions, session.id)]
        if activate:
            self._active_id = session.id
        self.dirty = True
        return session

    def remove(self, session_id: str) -> bool:
        remaining = delete_session(self._sessions, session_id)
        if len(remaining) == len(self._sessions):
            return False
        self._sessions = remaining
        if self._active_id == session_id:
            self._active_id = remaining[0].id if remaining else None
        self.dirty = True
        return True

    def select(self, session_id: Optional[str]) -> bool:
        if session_id is not None and self.get(session_id) is None:
            return False
        self._active_id = session_id
        self.dirty = True
        return True

    def update(self, session_id: str, change: Callable[[Session], Session]) -> Optional[Session]:
        """Apply ``change`` to the current snapshot of ``session_id``.

        Returns the resulting session, or None when the session no longer
        exists (late stream chunks and labels are dropped that way).
        """
        for index, session in enumerate(self._sessions):
            if session.id != session_id:
                continue
            updated = change(session)
            if updated is not session:
                self._sessions[index] = updated
                self.dirty = True
            return updated
        return None

    def setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        if key not in self._settings:
            self._settings[key] = self.backend.load_setting(key)
        value = self._settings[key]
        return value if value is not None else default

    def set_setting(self, key: str, value: str) -> None:
        self._settings[key] = value
        self.backend.save_setting(key, value)
