import pytest

import ai

_ENV_KEYS = ("OPENROUTER_API_KEY", "OPENROUTER_MODEL", "F0RKCH4T_LABEL_MODEL", "F0RKCH4T_DATA_DIR")


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    monkeypatch.setattr(ai, "_PROMPT_LOG_PATH", tmp_path / "prompt.log")
    monkeypatch.setattr(ai, "_CONNECTION_LOG_PATH", tmp_path / "connection.log")
    # setenv first so monkeypatch restores whatever the code under test writes.
    for key in _ENV_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    yield
