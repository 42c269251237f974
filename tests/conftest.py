import pytest

from versebook import events, tasks


@pytest.fixture(autouse=True)
def _isolated_side_effects(tmp_path, monkeypatch):
    monkeypatch.setattr(events, "EVENT_LOG_PATH", str(tmp_path / "events.log"))
    monkeypatch.setattr(tasks, "_REDIS_AVAILABLE", False)
    monkeypatch.setattr(tasks, "_MEM_STORE", {})
