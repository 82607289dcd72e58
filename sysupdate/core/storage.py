from __future__ import annotations

import json
import os
from pathlib import Path
from datetime import datetime, timezone
from uuid import uuid4

from sysupdate.core.models import UpdateRun
from sysupdate.core.utils import ensure_dir, write_json

DATA_HOME = Path(os.getenv("XDG_DATA_HOME") or Path.home() / ".local" / "share")
RUNS_DIR = Path(os.getenv("SYSUPDATE_RUNS_DIR") or DATA_HOME / "sysupdate" / "runs")


def create_run_id() -> str:
    return _make_id("update")


def _make_id(prefix: str) -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"{prefix}-{ts}-{uuid4().hex[:8]}"


def store_run(run: UpdateRun, report: str | None = None) -> Path:
    ensure_dir(RUNS_DIR)
    run_dir = RUNS_DIR / run.run_id
    ensure_dir(run_dir)
    write_json(run_dir / "run.json", run.model_dump(mode="json"))
    if report is not None:
        (run_dir / "report.log").write_text(report, encoding="utf-8")
    return run_dir


def list_runs() -> list[dict]:
    ensure_dir(RUNS_DIR)
    items = []
    for d in sorted(RUNS_DIR.iterdir(), reverse=True):
        if not d.is_dir() or not d.name.startswith("update-"):
            continue
        meta = load_run(d.name)
        if meta:
            items.append({
                "run_id": d.name,
                "dialect": meta.get("dialect"),
                "started_at": meta.get("started_at"),
                "dry_run": meta.get("dry_run", False),
                "reboot_required": meta.get("reboot_required", False),
                "findings": len(meta.get("findings", [])),
            })
    return items


def load_run(run_id: str) -> dict | None:
    path = RUNS_DIR / run_id / "run.json"
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def get_run_log_path(run_id: str) -> Path | None:
    run_dir = RUNS_DIR / run_id
    if not run_dir.exists():
        return None
    return run_dir / "report.log"
