"""Package-manager dialects: commands, lock files, and the output rule tables.

Each dialect answers the same questions for its distribution family, so the
update workflow and the classifier never branch on apt versus dnf.
"""

from __future__ import annotations

import os
import re
from typing import List, Tuple, TYPE_CHECKING

from debian.debian_support import Version

from sysupdate.core.classifier import Rule, make_finding, rule
from sysupdate.core.models import Category, Finding
from sysupdate.core.probes import SystemProbe
from sysupdate.core.utils import PreconditionError, logger

if TYPE_CHECKING:
    from sysupdate.core.classifier import OutcomeClassifier

OS_RELEASE_PATH = os.getenv("SYSUPDATE_OS_RELEASE", "/etc/os-release")

REBOOT_MARKER = "/var/run/reboot-required"

_KERNEL_VERSION_RE = re.compile(r"^\d[\w.+~-]*$")

# Shared by every dialect: needrestart batch output and deferred restarts.
COMMON_RULES = [
    rule(Category.SERVICE_RESTART, r"^NEEDRESTART-SVC:\s*(?P<subject>\S+)", "Service needs restart: {subject}"),
    rule(
        Category.SERVICE_RESTART,
        r"(?P<subject>[\w@:.\\-]+\.service)\b",
        "Deferred service restart: {subject}",
        section=r"^Service restarts being deferred:",
    ),
    rule(
        Category.REBOOT_REQUIRED,
        r"^NEEDRESTART-KSTA:\s*[23]\b",
        "Running kernel is outdated - system reboot required",
    ),
    rule(
        Category.REBOOT_REQUIRED,
        r"requires? a (?:reboot|restart) to complete|Restart the system to complete",
        "Firmware update requires a reboot to complete",
        flags=re.IGNORECASE,
    ),
]


class PackageManagerDialect:
    """Everything that differs between distribution families."""

    name = ""
    label = ""
    manager = ""
    lock_paths: List[str] = []
    lock_messages: re.Pattern = re.compile(r"(?!)")
    install_marker: re.Pattern = re.compile(r"(?!)")
    applied_marker: re.Pattern = re.compile(r"(?!)")
    rules: List[Rule] = []
    config_root = "/etc"
    backup_suffixes: Tuple[str, ...] = ()
    conflict_actions: List[str] = []
    audit_commands: List[Tuple[str, List[str]]] = []
    restart_commands: List[Tuple[str, List[str]]] = [("needrestart", ["needrestart", "-b", "-r", "l"])]
    supports_dist_upgrade = False

    def source(self, operation: str) -> str:
        return f"{self.name}-{operation}-output"

    def install_hint(self, package: str) -> str:
        return f"sudo {self.manager} install {package}"

    def refresh_command(self) -> List[str]:
        raise NotImplementedError

    def upgrade_command(self) -> List[str]:
        raise NotImplementedError

    def simulate_command(self) -> List[str]:
        raise NotImplementedError

    def dist_upgrade_command(self) -> List[str]:
        raise NotImplementedError(f"{self.name} has no distribution upgrade")

    def dist_upgrade_simulate_command(self) -> List[str]:
        raise NotImplementedError(f"{self.name} has no distribution upgrade")

    def cleanup_commands(self) -> List[Tuple[str, List[str]]]:
        raise NotImplementedError

    def available_packages(self, text: str) -> List[str]:
        return _distinct_markers(self.install_marker, text)

    def applied_packages(self, text: str) -> List[str]:
        return _distinct_markers(self.applied_marker, text)

    def is_lock_contention(self, output: str) -> bool:
        return bool(output) and self.lock_messages.search(output) is not None

    def available_summary(self, count: int) -> str:
        return f"{self.label} packages: {count} available"

    def check_host(self, os_release: dict, probe: SystemProbe) -> None:
        if not probe.which(self.manager):
            raise PreconditionError(f"Missing required dependencies: {self.manager}")

    def reboot_findings(self, probe: SystemProbe, classifier: "OutcomeClassifier") -> List[Finding]:
        return []


class AptDialect(PackageManagerDialect):
    name = "apt"
    label = "APT"
    manager = "apt-get"
    lock_paths = [
        "/var/lib/dpkg/lock-frontend",
        "/var/lib/dpkg/lock",
        "/var/lib/apt/lists/lock",
        "/var/cache/apt/archives/lock",
    ]
    lock_messages = re.compile(
        r"Could not get lock|Unable to acquire the dpkg frontend lock|Unable to lock directory"
    )
    install_marker = re.compile(r"^Inst (?P<package>\S+)")
    applied_marker = re.compile(r"^(?:Unpacking|Setting up) (?P<package>[^\s:]+)")
    backup_suffixes = (".dpkg-new", ".dpkg-old", ".dpkg-dist")
    supports_dist_upgrade = True
    rules = [
        rule(Category.CONFIG_CONFLICT, r"Configuration file '(?P<subject>[^']+)'", "Config file needs review: {subject}"),
        rule(
            Category.CONFIG_CONFLICT,
            r"^\s*(?:\*\*\*\s+)?(?P<subject>/\S+\.dpkg-(?:new|old|dist))\b",
            "dpkg backup file needs review: {subject}",
        ),
        rule(
            Category.CONFIG_CONFLICT,
            r"Configuration file .*which you have modified",
            "Modified configuration files detected during package updates",
        ),
        rule(Category.CONFIG_CONFLICT, r"dpkg: configuration conflict", "dpkg configuration conflicts detected"),
        rule(Category.CONFIG_CONFLICT, r"conffile .*differs from", "Configuration file differences detected"),
        rule(
            Category.BROKEN_PACKAGE,
            r"^\s*(?P<subject>[a-z0-9][a-z0-9+.-]*(?::[a-z0-9]+)?) : (?:Pre-?Depends|Depends|Breaks|Conflicts): ",
            "Unmet dependency: {subject}",
        ),
        rule(
            Category.BROKEN_PACKAGE,
            r"Unmet dependencies",
            "Unmet dependencies reported - run: sudo apt --fix-broken install",
        ),
        rule(
            Category.BROKEN_PACKAGE,
            r"dpkg was interrupted",
            "dpkg was interrupted - run: sudo dpkg --configure -a",
        ),
        rule(
            Category.BROKEN_PACKAGE,
            r"The following packages (?:are only half configured|are only half installed"
            r"|are in a really bad inconsistent state|have been unpacked but not yet configured)",
            "dpkg audit reports partially installed packages - run: sudo dpkg --configure -a",
        ),
        rule(
            Category.BROKEN_PACKAGE,
            r"(?<!fix-)\bbroken\b",
            "Broken packages detected - run: sudo apt --fix-broken install",
            flags=re.IGNORECASE,
        ),
        rule(
            Category.REBOOT_REQUIRED,
            r"\*\*\* System restart required \*\*\*",
            "System restart required after package updates",
        ),
        *COMMON_RULES,
    ]
    conflict_actions = [
        "Review configuration conflicts - run: sudo dpkg --configure -a",
        "Check for .dpkg-* files in /etc: find /etc -name '*.dpkg-*' -type f",
    ]
    audit_commands = [
        ("apt-cache-check", ["apt-cache", "check"]),
        ("dpkg-audit", ["dpkg", "--audit"]),
    ]

    # Keep locally modified conffiles and never stop at a dpkg prompt.
    _dpkg_options = ["-o", "Dpkg::Options::=--force-confdef", "-o", "Dpkg::Options::=--force-confold"]

    def install_hint(self, package: str) -> str:
        return f"sudo apt install {package}"

    def refresh_command(self) -> List[str]:
        return ["apt-get", "update"]

    def upgrade_command(self) -> List[str]:
        return ["apt-get", "upgrade", "-y", *self._dpkg_options]

    def simulate_command(self) -> List[str]:
        return ["apt-get", "-s", "upgrade"]

    def dist_upgrade_command(self) -> List[str]:
        return ["apt-get", "dist-upgrade", "-y", *self._dpkg_options]

    def dist_upgrade_simulate_command(self) -> List[str]:
        return ["apt-get", "-s", "dist-upgrade"]

    def cleanup_commands(self) -> List[Tuple[str, List[str]]]:
        return [
            ("Removing orphaned packages", ["apt-get", "autoremove", "-y"]),
            ("Cleaning package cache", ["apt-get", "autoclean"]),
        ]

    def reboot_findings(self, probe: SystemProbe, classifier: "OutcomeClassifier") -> List[Finding]:
        findings: List[Finding] = []
        if not probe.exists(REBOOT_MARKER):
            return findings
        findings.append(
            make_finding(
                Category.REBOOT_REQUIRED,
                "System reboot required for kernel/critical updates",
                "reboot-required-file",
            )
        )
        packages = " ".join(probe.read_text(REBOOT_MARKER + ".pkgs").split())
        if packages:
            findings.append(
                make_finding(Category.REBOOT_REQUIRED, f"Packages requiring reboot: {packages}", "reboot-required-file")
            )
        return findings


class DnfDialect(PackageManagerDialect):
    name = "dnf"
    label = "DNF"
    lock_paths = [
        "/var/lib/dnf/rpmdb_lock.pid",
        "/var/cache/dnf/metadata_lock.pid",
        "/var/lib/rpm/.rpm.lock",
    ]
    lock_messages = re.compile(r"Waiting for process with pid|another copy is running|Existing lock ")
    # Long name.arch entries wrap, leaving version and repo on the next line.
    install_marker = re.compile(
        r"^(?P<package>[\w+.-]+)\.(?:noarch|x86_64|aarch64|i686|ppc64le|s390x)(?:\s+\S+\s+\S+|\s*$)"
    )
    applied_marker = re.compile(r"^\s*(?:Upgrading|Installing)\s*:\s*(?P<package>\S+)")
    backup_suffixes = (".rpmnew", ".rpmsave")
    rules = [
        rule(
            Category.CONFIG_CONFLICT,
            r"warning: (?P<subject>/\S+) saved as (?P<backup>\S+\.rpmsave)",
            "Config file backup: {subject} saved as {backup}",
        ),
        rule(
            Category.CONFIG_CONFLICT,
            r"warning: (?P<subject>/\S+) created as (?P<backup>\S+\.rpmnew)",
            "New config file: {subject} created as {backup}",
        ),
        rule(
            Category.CONFIG_CONFLICT,
            r"^\s*(?P<subject>/\S+\.rpm(?:new|save))\s*$",
            "RPM config backup needs review: {subject}",
        ),
        rule(
            Category.CONFIG_CONFLICT,
            r"file (?P<subject>/\S+) (?:from install of \S+ )?conflicts (?:between|with)",
            "File conflict between packages: {subject}",
        ),
        rule(Category.CONFIG_CONFLICT, r"Transaction check error:", "RPM transaction conflicts detected"),
        rule(
            Category.BROKEN_PACKAGE,
            r"^(?P<subject>\S+) has missing requires of (?P<requires>.+)$",
            "Missing dependency: {subject} requires {requires}",
        ),
        rule(
            Category.BROKEN_PACKAGE,
            r"^(?P<subject>\S+) is a duplicate with (?P<other>\S+)",
            "Duplicate package: {subject} duplicates {other}",
        ),
        rule(
            Category.BROKEN_PACKAGE,
            r"^Error: Problem",
            "Dependency resolution problem reported - run: sudo dnf check",
        ),
        rule(
            Category.REBOOT_REQUIRED,
            r"Reboot is required",
            "Reboot is required to fully utilize these updates",
        ),
        rule(
            Category.SERVICE_RESTART,
            r"^\s*(?P<subject>[\w@:.\\-]+\.service)\s*$",
            "Service needs restart: {subject}",
        ),
        *COMMON_RULES,
    ]
    conflict_actions = [
        "Review RPM configuration conflicts - check for .rpmsave and .rpmnew files",
        "Find config conflicts: find /etc -name '*.rpmsave' -o -name '*.rpmnew' -type f",
        "Compare config files manually and merge changes as needed",
    ]
    restart_commands = [
        ("needrestart", ["needrestart", "-b", "-r", "l"]),
        ("needs-restarting", ["needs-restarting", "-s"]),
    ]

    def __init__(self, manager: str = "dnf"):
        self.manager = manager
        self.audit_commands = [("rpm-audit", [manager, "check"])]

    def refresh_command(self) -> List[str]:
        return [self.manager, "makecache"]

    def upgrade_command(self) -> List[str]:
        return [self.manager, "upgrade", "-y"]

    def simulate_command(self) -> List[str]:
        return [self.manager, "-q", "list", "--upgrades"]

    def cleanup_commands(self) -> List[Tuple[str, List[str]]]:
        return [
            ("Removing orphaned packages", [self.manager, "autoremove", "-y"]),
            ("Cleaning package cache and metadata", [self.manager, "clean", "all"]),
        ]

    def available_summary(self, count: int) -> str:
        return f"{self.label} packages: {count} updates available"

    def check_host(self, os_release: dict, probe: SystemProbe) -> None:
        if not probe.which(self.manager):
            if self.manager == "dnf" and probe.which("yum"):
                logger.info("Using yum as package manager (dnf preferred for RHEL 8+)")
                self.manager = "yum"
                self.audit_commands = [("rpm-audit", ["yum", "check"])]
            else:
                raise PreconditionError("Missing required dependencies: dnf or yum")

        version = os_release.get("VERSION_ID", "")
        major = version.split(".", 1)[0]
        if os_release.get("ID") != "fedora" and major.isdigit() and int(major) < 8:
            logger.warning("This tool is designed for RHEL/CentOS 8+ (detected: version %s)", version)
            logger.warning("Older versions may work but are not officially supported")

    def reboot_findings(self, probe: SystemProbe, classifier: "OutcomeClassifier") -> List[Finding]:
        findings: List[Finding] = []
        if probe.which("rpm"):
            result = probe.run(["rpm", "-q", "kernel", "--qf", "%{VERSION}-%{RELEASE}.%{ARCH}\\n"], timeout=60)
            latest = latest_kernel(result.stdout.split())
            running = probe.running_kernel()
            logger.debug("Running kernel: %s", running)
            logger.debug("Latest kernel: %s", latest)
            if latest and running != latest:
                findings.append(
                    make_finding(
                        Category.REBOOT_REQUIRED,
                        "Kernel update detected - system reboot required",
                        "kernel-version",
                    )
                )
                findings.append(
                    make_finding(Category.REBOOT_REQUIRED, f"Running: {running}, Latest: {latest}", "kernel-version")
                )
        if probe.which("needs-restarting"):
            result = probe.run(["needs-restarting", "-r"], timeout=120)
            findings.extend(classifier.classify(result.stdout, "needs-restarting"))
        return findings


def _distinct_markers(pattern: re.Pattern, text: str) -> List[str]:
    seen: List[str] = []
    for line in (text or "").splitlines():
        match = pattern.search(line)
        if match and match.group("package") not in seen:
            seen.append(match.group("package"))
    return seen


def _kernel_sort_key(version: str) -> Version:
    # RPM releases use "_" (el9_3), which dpkg version syntax does not allow.
    return Version(version.replace("_", "."))


def latest_kernel(versions: List[str]) -> str | None:
    """Newest kernel from `rpm -q kernel` output, compared like `sort -V`."""
    candidates = [v for v in versions if _KERNEL_VERSION_RE.match(v)]
    if not candidates:
        return None
    return max(candidates, key=_kernel_sort_key)


def read_os_release(path: str | None = None, probe: SystemProbe | None = None) -> dict:
    """Parse os-release KEY=value lines into a dict."""
    path = path or OS_RELEASE_PATH
    probe = probe or SystemProbe()
    if not probe.exists(path):
        raise PreconditionError(f"{path} not found")
    data = {}
    for line in probe.read_text(path).splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        data[key.strip()] = value.strip().strip('"').strip("'")
    return data


APT_FAMILY = {"ubuntu", "debian"}
DNF_FAMILY = {"rhel", "centos", "rocky", "almalinux", "fedora"}


def detect_dialect(os_release: dict) -> PackageManagerDialect:
    os_id = os_release.get("ID", "unknown")
    family = {os_id, *os_release.get("ID_LIKE", "").split()}
    if os_id in APT_FAMILY or family & APT_FAMILY:
        return AptDialect()
    if os_id in DNF_FAMILY or family & DNF_FAMILY:
        return DnfDialect()
    raise PreconditionError(
        f"This tool requires Debian/Ubuntu or RHEL/CentOS/Rocky/Alma/Fedora (detected: {os_id})"
    )


DIALECTS = {"apt": AptDialect, "dnf": DnfDialect}


def get_dialect(name: str) -> PackageManagerDialect:
    try:
        return DIALECTS[name]()
    except KeyError:
        raise ValueError(f"Unsupported dialect: {name}") from None
