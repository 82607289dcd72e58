from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Callable, List, Set

from sysupdate.core import storage
from sysupdate.core.aggregator import aggregate
from sysupdate.core.classifier import OutcomeClassifier, make_finding
from sysupdate.core.dialects import PackageManagerDialect, detect_dialect, read_os_release
from sysupdate.core.models import Category, Finding, Severity, UpdateOptions, UpdateRun
from sysupdate.core.probes import SystemProbe
from sysupdate.core.runner import OperationResult, PackageOperationRunner
from sysupdate.core.utils import TOOL_VERSION, PreconditionError, is_root, logger, utc_now
from sysupdate.reporting.logfile import FOLLOWUP_SOURCE


@dataclass(frozen=True)
class Component:
    """An optional application channel updated outside the package manager."""

    name: str
    flag: str
    tool: str
    package: str
    noun: str
    list_command: List[str]
    header_lines: int
    update_description: str
    update_command: List[str]
    privileged: bool = False
    cleanup_description: str = ""
    cleanup_command: List[str] = field(default_factory=list)


COMPONENTS = [
    Component(
        name="snap",
        flag="enable_snap",
        tool="snap",
        package="snapd",
        noun="Snap packages",
        list_command=["snap", "list"],
        header_lines=1,
        update_description="Refreshing Snap packages",
        update_command=["snap", "refresh"],
        privileged=True,
    ),
    Component(
        name="flatpak",
        flag="enable_flatpak",
        tool="flatpak",
        package="flatpak",
        noun="Flatpak apps",
        list_command=["flatpak", "list", "--app", "--columns=application"],
        header_lines=0,
        update_description="Updating Flatpak applications",
        update_command=["flatpak", "update", "-y", "--noninteractive"],
        cleanup_description="Removing unused Flatpak runtimes",
        cleanup_command=["flatpak", "uninstall", "--unused", "-y", "--noninteractive"],
    ),
]


@dataclass
class UpdateContext:
    run: UpdateRun
    dialect: PackageManagerDialect
    probe: SystemProbe
    options: UpdateOptions
    runner: PackageOperationRunner
    classifier: OutcomeClassifier
    applied: Set[str] = field(default_factory=set)


def check_requirements(dialect: PackageManagerDialect, os_release: dict, probe: SystemProbe) -> None:
    """Fail before anything is changed when the host cannot be updated."""
    dialect.check_host(os_release, probe)
    if is_root():
        return
    if not probe.which("sudo"):
        raise PreconditionError("Missing required dependencies: sudo")
    if probe.run(["sudo", "-n", "true"], timeout=30).returncode != 0:
        logger.info("This tool requires sudo privileges for system updates.")
        logger.info("You may be prompted for your password during execution.")


def perform_update(
    options: UpdateOptions,
    probe: SystemProbe | None = None,
    os_release_path: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
    use_sudo: bool | None = None,
) -> UpdateRun:
    """Run every update phase in order and return the populated run.

    PreconditionError and LockTimeoutError propagate; in both cases no run
    is produced.
    """
    probe = probe or SystemProbe()
    os_release = read_os_release(os_release_path, probe)
    dialect = detect_dialect(os_release)
    check_requirements(dialect, os_release, probe)

    run = UpdateRun(
        run_id=storage.create_run_id(),
        dialect=dialect.name,
        os_id=os_release.get("ID", ""),
        dry_run=options.dry_run,
        started_at=utc_now(),
    )
    ctx = UpdateContext(
        run=run,
        dialect=dialect,
        probe=probe,
        options=options,
        runner=PackageOperationRunner(dialect, probe, options, sleep=sleep, use_sudo=use_sudo),
        classifier=OutcomeClassifier(dialect, probe),
    )

    logger.info("Starting %s system update (v%s)", dialect.label, TOOL_VERSION)
    if options.dry_run:
        logger.warning("Running in DRY RUN mode - no changes will be made")

    refresh_indexes(ctx)
    upgrade_packages(ctx)
    upgrade_distribution(ctx)
    for component in COMPONENTS:
        update_component(ctx, component)
    update_firmware(ctx)
    cleanup_system(ctx)
    post_checks(ctx)
    add_conflict_followups(ctx)

    run.packages_applied = len(ctx.applied)
    run.finished_at = utc_now()
    logger.info("System update finished%s", " with errors" if run.failed else "")
    return run


def _section(title: str) -> None:
    logger.info("=== %s ===", title)


def _record(ctx: UpdateContext, result: OperationResult, source: str) -> bool:
    """Classify an operation's output; a failed operation becomes a Critical finding."""
    ctx.run.extend(ctx.classifier.classify(result.output, source))
    if result.ok:
        return True
    command = " ".join(result.command)
    logger.error("Command failed (%d): %s", result.returncode, command)
    ctx.run.add(
        make_finding(
            Category.BROKEN_PACKAGE,
            f"Package operation failed ({result.returncode}): {command}",
            source,
            Severity.CRITICAL,
        )
    )
    return False


def _status(skipped: bool, ok: bool) -> str:
    if skipped:
        return "skipped"
    return "ok" if ok else "failed"


def _suggest(ctx: UpdateContext, message: str, source: str) -> None:
    ctx.run.add(make_finding(Category.OPTIONAL_SUGGESTION, message, source))


def refresh_indexes(ctx: UpdateContext) -> None:
    dialect, run = ctx.dialect, ctx.run
    _section(f"Updating {dialect.label} Package Lists")

    result = ctx.runner.run("Updating package database", dialect.refresh_command())
    ok = _record(ctx, result, dialect.source("update"))

    simulation = ctx.runner.query(dialect.simulate_command())
    ctx.run.extend(ctx.classifier.classify(simulation.output, dialect.source("simulate")))
    run.packages = dialect.available_packages(simulation.output)
    run.packages_available = len(run.packages)
    if run.packages_available:
        logger.info("Found %d upgradeable packages", run.packages_available)
        run.updated.append(dialect.available_summary(run.packages_available))
    else:
        logger.info("All %s packages are up to date", dialect.label)

    run.phases["refresh"] = _status(result.skipped, ok)


def upgrade_packages(ctx: UpdateContext) -> None:
    dialect = ctx.dialect
    _section(f"Upgrading {dialect.label} Packages")

    result = ctx.runner.run("Upgrading installed packages", dialect.upgrade_command())
    ok = _record(ctx, result, dialect.source("upgrade"))
    ctx.applied.update(dialect.applied_packages(result.output))
    ctx.run.phases["upgrade"] = _status(result.skipped, ok)


def upgrade_distribution(ctx: UpdateContext) -> None:
    dialect, run = ctx.dialect, ctx.run
    if not dialect.supports_dist_upgrade:
        return

    if not ctx.options.enable_dist_upgrade:
        simulation = ctx.runner.query(dialect.dist_upgrade_simulate_command())
        pending = [p for p in dialect.available_packages(simulation.output) if p not in run.packages]
        if pending:
            logger.info("Additional packages available via distribution upgrade (use --enable-dist-upgrade)")
            _suggest(
                ctx,
                f"Consider running with --enable-dist-upgrade for {len(pending)} additional package updates",
                dialect.source("dist-upgrade-simulate"),
            )
        run.phases["dist-upgrade"] = "skipped"
        return

    _section("Performing Distribution Upgrade")
    result = ctx.runner.run("Performing distribution upgrade", dialect.dist_upgrade_command())
    ok = _record(ctx, result, dialect.source("dist-upgrade"))
    ctx.applied.update(dialect.applied_packages(result.output))
    run.phases["dist-upgrade"] = _status(result.skipped, ok)


def _count_items(ctx: UpdateContext, component: Component) -> int:
    result = ctx.runner.query(component.list_command)
    if result.returncode != 0:
        return 0
    lines = [line for line in result.output.splitlines() if line.strip()]
    return max(len(lines) - component.header_lines, 0)


def update_component(ctx: UpdateContext, component: Component) -> None:
    run, flag = ctx.run, "--" + component.flag.replace("_", "-")
    present = ctx.probe.which(component.tool)

    if not getattr(ctx.options, component.flag):
        if present:
            count = _count_items(ctx, component)
            if count:
                logger.info("%s available for update (use %s)", component.noun, flag)
                _suggest(
                    ctx,
                    f"Consider running with {flag} to update {count} {component.noun}",
                    f"{component.name}-list",
                )
        run.phases[component.name] = "skipped"
        return

    if not present:
        logger.warning("%s not installed but %s specified", component.tool, flag)
        _suggest(
            ctx,
            f"Install {component.package} to use {component.noun}: {ctx.dialect.install_hint(component.package)}",
            f"{component.name}-missing",
        )
        run.phases[component.name] = "skipped"
        return

    _section(f"Updating {component.noun}")
    count = _count_items(ctx, component)
    if count:
        logger.info("Found %d %s to check", count, component.noun)
        run.updated.append(f"{component.noun}: {count} checked")

    result = ctx.runner.run(
        component.update_description,
        component.update_command,
        privileged=component.privileged,
        locking=False,
    )
    ok = _record(ctx, result, f"{component.name}-update-output")
    run.phases[component.name] = _status(result.skipped, ok)


def pending_firmware_updates(text: str) -> int:
    """Devices with at least one release in `fwupdmgr get-updates --json` output."""
    try:
        data = json.loads(text or "{}")
    except ValueError:
        logger.debug("Unreadable fwupdmgr output, assuming no firmware updates")
        return 0
    if not isinstance(data, dict):
        return 0
    devices = data.get("Devices") or []
    return sum(1 for d in devices if isinstance(d, dict) and d.get("Releases"))


def update_firmware(ctx: UpdateContext) -> None:
    run = ctx.run
    if not ctx.options.enable_firmware:
        logger.debug("Firmware updates disabled (use --enable-firmware to enable)")
        run.phases["firmware"] = "skipped"
        return

    if not ctx.probe.which("fwupdmgr"):
        hint = ctx.dialect.install_hint("fwupd")
        logger.warning("fwupdmgr not available - install with: %s", hint)
        _suggest(ctx, f"Install fwupd for firmware updates: {hint}", "firmware-missing")
        run.phases["firmware"] = "skipped"
        return

    _section("Checking Firmware Updates")
    # fwupdmgr exits 2 when there is nothing to do.
    refresh = ctx.runner.run(
        "Refreshing firmware metadata",
        ["fwupdmgr", "refresh", "--force"],
        privileged=False,
        locking=False,
        ok_codes=(0, 2),
    )
    ok = _record(ctx, refresh, "fwupd-refresh-output")

    pending = pending_firmware_updates(ctx.runner.query(["fwupdmgr", "get-updates", "--json"]).output)
    skipped = refresh.skipped
    if pending:
        logger.info("Found %d firmware updates available", pending)
        result = ctx.runner.run(
            "Applying firmware updates",
            ["fwupdmgr", "update", "-y"],
            privileged=False,
            locking=False,
            ok_codes=(0, 2),
        )
        applied = _record(ctx, result, "fwupd-update-output")
        ok = ok and applied
        if applied and not result.skipped:
            run.updated.append(f"Firmware: {pending} updates applied")
    else:
        logger.info("No firmware updates available")
    run.phases["firmware"] = _status(skipped, ok)


def cleanup_system(ctx: UpdateContext) -> None:
    _section("Cleaning Up System")
    ok, skipped = True, False
    source = ctx.dialect.source("cleanup")
    for description, argv in ctx.dialect.cleanup_commands():
        result = ctx.runner.run(description, argv)
        ok = _record(ctx, result, source) and ok
        skipped = skipped or result.skipped

    for component in COMPONENTS:
        if not component.cleanup_command or not getattr(ctx.options, component.flag):
            continue
        if not ctx.probe.which(component.tool):
            continue
        result = ctx.runner.run(
            component.cleanup_description,
            component.cleanup_command,
            privileged=component.privileged,
            locking=False,
        )
        ok = _record(ctx, result, f"{component.name}-cleanup-output") and ok

    ctx.run.phases["cleanup"] = _status(skipped, ok)


def post_checks(ctx: UpdateContext) -> None:
    """Read-only probes; these run in dry-run mode too."""
    _section("Post-update Checks")
    classifier = ctx.classifier
    ctx.run.extend(classifier.reboot_status())
    ctx.run.extend(classifier.service_restarts())
    ctx.run.extend(classifier.package_audit())
    ctx.run.extend(classifier.config_backups())
    ctx.run.phases["post-checks"] = "ok"


def add_conflict_followups(ctx: UpdateContext) -> None:
    if not ctx.run.has_category(Category.CONFIG_CONFLICT):
        return
    for action in ctx.dialect.conflict_actions:
        ctx.run.add(make_finding(Category.CONFIG_CONFLICT, action, FOLLOWUP_SOURCE))


def print_summary(run: UpdateRun) -> None:
    """Print the run summary: updates, then actions grouped by severity."""
    print("=== Update Summary ===")
    if run.updated:
        print("Updates completed:")
        for item in run.updated:
            print(f"  * {item}")
    else:
        print("No packages were updated (system may already be current)")

    markers = {
        Severity.CRITICAL: "[!]",
        Severity.HIGH: "[!]",
        Severity.RECOMMENDED: "*",
        Severity.OPTIONAL: "-",
    }
    titles = {
        Severity.CRITICAL: "Critical Actions Required",
        Severity.HIGH: "High Priority Actions",
        Severity.RECOMMENDED: "Recommended Actions",
        Severity.OPTIONAL: "Optional Actions",
    }
    for severity, findings in aggregate(run.findings).items():
        if not findings:
            continue
        print(f"\n=== {titles[severity]} ===")
        for f in findings:
            print(f"  {markers[severity]} {f.message}")

    if run.reboot_required:
        print()
        print("*** SYSTEM REBOOT REQUIRED ***")
        print("Updates have been installed that require a system restart.")
        print("Please reboot your system when convenient.")


def print_table(findings: List[Finding]) -> None:
    """Pretty-print findings in a simple table."""
    headers = ["Severity", "Category", "Source", "Message"]
    rows = [[f.severity.value, f.category.value, f.source, f.message] for f in findings]

    col_widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            col_widths[i] = max(col_widths[i], len(str(cell)))

    def fmt_row(values):
        return " | ".join(str(v).ljust(col_widths[i]) for i, v in enumerate(values))

    print(fmt_row(headers))
    print("-+-".join("-" * w for w in col_widths))
    for row in rows:
        print(fmt_row(row))
