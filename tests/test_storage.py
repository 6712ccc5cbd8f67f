import json

import pytest

from builders import forked_session
from mutations import append_chunk, new_session
from storage import FileStorage, SessionStore, StorageError, default_data_dir


def test_file_storage_round_trips_sessions_in_camel_case(tmp_path):
    storage = FileStorage(tmp_path)
    session, ids = forked_session()
    storage.save([session])

    raw = json.loads((tmp_path / "sessions.json").read_text(encoding="utf-8"))
    record = raw[0]
    assert record["rootMessageId"] == ids["root_user"]
    assert record["messageMap"][ids["x_user"]]["parentId"] == ids["root_model"]
    assert "childrenIds" in record["messageMap"][ids["x_user"]]

    loaded = storage.load()
    assert loaded == [session]
    assert not list(tmp_path.glob("*.tmp"))


def test_file_storage_missing_and_corrupt_files(tmp_path):
    storage = FileStorage(tmp_path / "fresh")
    assert storage.load() == []
    assert storage.load_active_id() is None

    (tmp_path / "sessions.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(StorageError):
        FileStorage(tmp_path).load()

    (tmp_path / "sessions.json").write_text('[{"id": "s", "messageMap": {"m": {"id": "m", "role": "robot"}}}]')
    with pytest.raises(StorageError):
        FileStorage(tmp_path).load()

    (tmp_path / "sessions.json").write_bytes(b'[{"id": "\xff"}]')
    with pytest.raises(StorageError):
        FileStorage(tmp_path).load()

    (tmp_path / "sessions.json").write_text('[{"id": "s", "messageMap": {"m": "oops"}}]')
    with pytest.raises(StorageError):
        FileStorage(tmp_path).load()

    (tmp_path / "sessions.json").write_text('["oops"]')
    with pytest.raises(StorageError):
        FileStorage(tmp_path).load()


def test_active_id_and_settings_files(tmp_path):
    storage = FileStorage(tmp_path)
    storage.save_active_id("abc")
    assert storage.load_active_id() == "abc"
    storage.save_active_id(None)
    assert storage.load_active_id() is None

    storage.save_setting("chat_model", "google/gemma-3-27b-it:free")
    storage.save_setting("weird/key", "x")
    assert storage.load_setting("chat_model") == "google/gemma-3-27b-it:free"
    assert (tmp_path / "setting-weird_key.txt").exists()
    assert storage.load_setting("missing") is None


def test_default_data_dir_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("F0RKCH4T_DATA_DIR", str(tmp_path / "elsewhere"))
    assert default_data_dir() == tmp_path / "elsewhere"
    assert FileStorage().data_dir == tmp_path / "elsewhere"


def test_store_lifecycle_flushes_on_close(tmp_path):
    with SessionStore(FileStorage(tmp_path)) as store:
        assert store.is_open
        first = store.add(new_session(title="first"))
        second = store.add(new_session(title="second"))
        assert [session.title for session in store.sessions] == ["second", "first"]
        assert store.active_id == second.id
        assert store.select(first.id)
        assert not store.select("missing")

    assert not store.is_open
    with pytest.raises(StorageError):
        store.flush()

    reopened = SessionStore(FileStorage(tmp_path)).open()
    assert reopened.active_id == first.id
    assert [session.title for session in reopened.sessions] == ["second", "first"]


def test_store_falls_back_to_first_session_and_reports_broken_graphs(tmp_path):
    storage = FileStorage(tmp_path)
    session, ids = forked_session()
    session.message_map[ids["root_model"]].children_ids.append(ids["y_user"])
    storage.save([session, new_session()])
    storage.save_active_id("deleted-session")

    store = SessionStore(storage).open()
    assert store.active_id == session.id
    assert store.load_warnings
    assert store.load_warnings[0].startswith(session.title)


def test_store_update_resolves_session_at_apply_time(tmp_path):
    store = SessionStore(FileStorage(tmp_path)).open()
    session, ids = forked_session()
    store.add(session)
    store.flush()
    assert store.dirty is False

    updated = store.update(session.id, lambda current: append_chunk(current, ids["x_model"], "!"))
    assert updated.message_map[ids["x_model"]].content == "Lisbon has trams.!"
    assert store.get(session.id) is updated
    assert store.dirty is True

    assert store.update("missing", lambda current: current) is None
    store.remove(session.id)
    assert store.update(session.id, lambda current: append_chunk(current, ids["x_model"], "?")) is None
    assert store.active_id is None


def test_store_settings_are_cached_and_persisted(tmp_path):
    store = SessionStore(FileStorage(tmp_path))
    assert store.setting("label_model", "fallback") == "fallback"
    store.set_setting("label_model", "qwen/qwen3-14b:free")
    assert store.setting("label_model") == "qwen/qwen3-14b:free"
    assert SessionStore(FileStorage(tmp_path)).setting("label_model") == "qwen/qwen3-14b:free"


def test_clear_removes_sessions_and_active_id(tmp_path):
    storage = FileStorage(tmp_path)
    storage.save([new_session()])
    storage.save_active_id("abc")
    storage.save_setting("chat_model", "kept")

    storage.clear()
    assert storage.load() == []
    assert storage.load_active_id() is None
    assert storage.load_setting("chat_model") == "kept"
