from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
import typer
from typing import Optional

from sysupdate.core import storage
from sysupdate.core import update as update_mod
from sysupdate.core.aggregator import aggregate, count_by_severity
from sysupdate.core.classifier import OutcomeClassifier
from sysupdate.core.dialects import get_dialect
from sysupdate.core.models import UpdateOptions
from sysupdate.core.utils import TOOL_VERSION, CommandError
from sysupdate.reporting.logfile import append_run_log, render_run_log

app = typer.Typer(help="sysupdate CLI")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
        stream=sys.stderr,
    )


@app.command()
def run(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose debug output"),
    dry_run: bool = typer.Option(False, "--dry-run", "-d", help="Show what would be done without executing"),
    show_output: bool = typer.Option(False, "--show-output", help="Display full command output in real-time"),
    enable_firmware: bool = typer.Option(False, "--enable-firmware", help="Enable firmware updates (requires fwupd)"),
    enable_flatpak: bool = typer.Option(False, "--enable-flatpak", help="Enable Flatpak application updates"),
    enable_snap: bool = typer.Option(False, "--enable-snap", help="Enable Snap package updates"),
    enable_dist_upgrade: bool = typer.Option(
        False, "--enable-dist-upgrade", help="Enable distribution upgrades (apt only)"
    ),
    lock_attempts: Optional[int] = typer.Option(
        None, "--lock-attempts", help="Attempts to wait for the package lock (default: $SYSUPDATE_LOCK_ATTEMPTS or 10)"
    ),
    lock_backoff: Optional[float] = typer.Option(
        None, "--lock-backoff", help="Seconds added to the wait after each locked attempt (default: 3)"
    ),
    format: str = typer.Option("table", "--format", help="Output format: table or json"),
    output: Optional[str] = typer.Option(None, "--output", help="Output file path (for json format)"),
    log_file: Optional[str] = typer.Option(
        None, "--log-file", help="Append a plain-text report to this file (default: $SYSUPDATE_LOG_FILE)"
    ),
):
    """Update the system packages and report follow-up actions."""
    _configure_logging(verbose)
    options = UpdateOptions(
        verbose=verbose,
        dry_run=dry_run,
        show_output=show_output,
        enable_firmware=enable_firmware,
        enable_flatpak=enable_flatpak,
        enable_snap=enable_snap,
        enable_dist_upgrade=enable_dist_upgrade,
        lock_attempts=lock_attempts,
        lock_backoff=lock_backoff,
        log_file=log_file or os.getenv("SYSUPDATE_LOG_FILE"),
    )
    try:
        result = update_mod.perform_update(options)
    except CommandError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)

    if format == "json":
        output_data = result.model_dump(mode="json")
        if output:
            Path(output).write_text(json.dumps(output_data, indent=2))
            typer.echo(f"JSON report saved to: {output}")
        else:
            typer.echo(json.dumps(output_data, indent=2))
    else:
        if format != "table":
            typer.echo(f"Warning: Unknown format '{format}', using table format")
        update_mod.print_summary(result)

    report = render_run_log(result)
    try:
        storage.store_run(result, report)
    except OSError as exc:
        typer.echo(f"Could not save run {result.run_id} to {storage.RUNS_DIR}: {exc}", err=True)
    else:
        if format != "json":
            typer.echo(f"\nRun saved: {result.run_id}")
    if options.log_file:
        try:
            append_run_log(result, Path(options.log_file))
        except OSError as exc:
            typer.echo(f"Could not write log file {options.log_file}: {exc}", err=True)


@app.command()
def classify(
    input: str = typer.Argument("-", help="File with captured command output, or - for stdin"),
    dialect: str = typer.Option("apt", "--dialect", help="Package manager dialect: apt or dnf"),
    source: str = typer.Option("captured-output", "--source", help="Source tag recorded on each finding"),
    format: str = typer.Option("table", "--format", help="Output format: table or json"),
):
    """Classify previously captured package-manager output."""
    try:
        classifier = OutcomeClassifier(get_dialect(dialect))
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)

    try:
        text = sys.stdin.read() if input == "-" else Path(input).read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        typer.echo(f"Cannot read {input}: {exc}", err=True)
        raise typer.Exit(code=1)

    findings = classifier.classify(text, source)
    if format == "json":
        tiers = aggregate(findings)
        typer.echo(json.dumps({
            "findings": [f.model_dump(mode="json") for f in findings],
            "counts": count_by_severity(tiers),
        }, indent=2))
    elif findings:
        update_mod.print_table(findings)
    else:
        typer.echo("No findings.")


@app.command()
def runs():
    """List stored update runs."""
    items = storage.list_runs()
    if not items:
        typer.echo("No runs recorded.")
        return
    for item in items:
        flags = []
        if item["dry_run"]:
            flags.append("dry-run")
        if item["reboot_required"]:
            flags.append("reboot required")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        typer.echo(f"{item['run_id']}  {item['dialect']}  {item['findings']} findings{suffix}")


@app.command()
def version():
    """Show version information."""
    typer.echo(f"sysupdate version {TOOL_VERSION}")


if __name__ == "__main__":
    app()
