import pytest


@pytest.fixture(autouse=True)
def _gate_log_path(tmp_path, monkeypatch):
    monkeypatch.setenv("COMMIT_GATE_LOG_PATH", str(tmp_path / "commit-gate.log"))
