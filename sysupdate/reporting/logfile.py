"""Plain-text run log.

Each run appends one block to the log file: a metadata header, the packages
updated, configuration conflicts, manual actions by severity tier, and a
final status line. Nothing ever reads the file back.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

from sysupdate.core.aggregator import aggregate
from sysupdate.core.models import Category, Finding, UpdateRun

FOLLOWUP_SOURCE = "conflict-followup"

RULE = "=" * 72


def conflict_findings(run: UpdateRun) -> List[Finding]:
    return [
        f for f in run.findings
        if f.category == Category.CONFIG_CONFLICT and f.source != FOLLOWUP_SOURCE
    ]


def action_findings(run: UpdateRun) -> List[Finding]:
    conflicts = conflict_findings(run)
    return [f for f in run.findings if f not in conflicts]


def status_line(run: UpdateRun) -> str:
    if run.failed:
        status = "COMPLETED WITH ERRORS"
    elif run.dry_run:
        status = "DRY RUN COMPLETE"
    else:
        status = "SUCCESS"
    if run.reboot_required:
        status += " - REBOOT REQUIRED"
    return f"Status: {status}"


def render_run_log(run: UpdateRun) -> str:
    lines = [
        RULE,
        f"Run: {run.run_id}",
        f"Started: {run.started_at}",
        f"Finished: {run.finished_at or '-'}",
        f"Dialect: {run.dialect} ({run.os_id or 'unknown'})",
        f"Dry run: {'yes' if run.dry_run else 'no'}",
        f"Tool version: {run.tool_version}",
        f"Packages available: {run.packages_available}",
        f"Packages applied: {run.packages_applied}",
        "",
        "[Packages Updated]",
    ]
    lines.extend(f"  * {item}" for item in run.updated)
    lines.extend(f"    - {name}" for name in run.packages)
    if not run.updated and not run.packages:
        lines.append("  (none)")

    lines += ["", "[Configuration Conflicts]"]
    conflicts = conflict_findings(run)
    lines.extend(f"  [!] {f.message}" for f in conflicts)
    if not conflicts:
        lines.append("  (none)")

    lines += ["", "[Manual Actions]"]
    tiers = aggregate(action_findings(run))
    empty = True
    for severity, findings in tiers.items():
        for f in findings:
            empty = False
            lines.append(f"  {severity.value:<11} {f.message} ({f.source})")
    if empty:
        lines.append("  (none)")

    lines += ["", status_line(run), ""]
    return "\n".join(lines)


def append_run_log(run: UpdateRun, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(render_run_log(run))
