import importlib
import re

from sysupdate.core import storage
from sysupdate.core.models import UpdateRun


def test_create_run_id_format():
    assert re.match(r"^update-\d{8}-\d{6}-[0-9a-f]{8}$", storage.create_run_id())


def test_store_and_load_run(tmp_path, monkeypatch):
    monkeypatch.setattr(storage, "RUNS_DIR", tmp_path)
    run = UpdateRun(run_id="update-20240514-091011-abcdef12", dialect="dnf", started_at="2024-05-14T09:10:11Z",
                    dry_run=True)

    storage.store_run(run, "report text\n")

    assert storage.load_run(run.run_id)["dialect"] == "dnf"
    assert storage.get_run_log_path(run.run_id).read_text(encoding="utf-8") == "report text\n"
    assert storage.list_runs() == [{
        "run_id": run.run_id,
        "dialect": "dnf",
        "started_at": "2024-05-14T09:10:11Z",
        "dry_run": True,
        "reboot_required": False,
        "findings": 0,
    }]


def test_unknown_run(tmp_path, monkeypatch):
    monkeypatch.setattr(storage, "RUNS_DIR", tmp_path)

    assert storage.load_run("update-missing") is None
    assert storage.get_run_log_path("update-missing") is None
    assert storage.list_runs() == []


def test_default_runs_dir_is_per_user(tmp_path, monkeypatch):
    monkeypatch.delenv("SYSUPDATE_RUNS_DIR", raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
    try:
        importlib.reload(storage)
        assert storage.RUNS_DIR == tmp_path / "sysupdate" / "runs"
    finally:
        monkeypatch.undo()
        importlib.reload(storage)


def test_runs_dir_override(tmp_path, monkeypatch):
    monkeypatch.setenv("SYSUPDATE_RUNS_DIR", str(tmp_path / "elsewhere"))
    try:
        importlib.reload(storage)
        assert storage.RUNS_DIR == tmp_path / "elsewhere"
    finally:
        monkeypatch.undo()
        importlib.reload(storage)
