"""Turn package-manager output and system probes into typed findings.

Rules are declared per dialect as ``Rule`` tuples of (category, pattern,
message template, baseline severity). Patterns are searched line by line.
A pattern with a ``subject`` group yields one finding per distinct subject,
every occurrence on a line counting; any other pattern yields a single
summary finding however many lines match. A rule with a ``section`` header
only looks at the indented lines directly under a line matching that header.
Within one call a line claimed by a category is not claimed again by a later
rule of the same category, so a specific rule listed first shadows the
generic summary rule behind it.

Severity is fixed here, when the finding is created, and never re-derived.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Set, Tuple

from sysupdate.core.models import Category, Finding, Severity, SEVERITY_ORDER
from sysupdate.core.probes import SystemProbe
from sysupdate.core.utils import logger

if TYPE_CHECKING:
    from sysupdate.core.dialects import PackageManagerDialect

BASELINE_SEVERITY = {
    Category.CONFIG_CONFLICT: Severity.HIGH,
    Category.REBOOT_REQUIRED: Severity.CRITICAL,
    Category.BROKEN_PACKAGE: Severity.HIGH,
    Category.SERVICE_RESTART: Severity.RECOMMENDED,
    Category.OPTIONAL_SUGGESTION: Severity.OPTIONAL,
}

# Components whose breakage locks people out or leaves the box unbootable.
ESCALATION_KEYWORDS = re.compile(
    r"ssh|kernel|linux-image|systemd|dbus|openssl|glibc|\blibc6?\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Rule:
    category: Category
    pattern: re.Pattern
    message: str
    severity: Optional[Severity] = None
    section: Optional[re.Pattern] = None

    @property
    def per_subject(self) -> bool:
        return "subject" in self.pattern.groupindex


def rule(
    category: Category,
    regex: str,
    message: str,
    severity: Optional[Severity] = None,
    flags: int = 0,
    section: Optional[str] = None,
) -> Rule:
    return Rule(
        category,
        re.compile(regex, flags),
        message,
        severity,
        re.compile(section) if section else None,
    )


def section_lines(lines: List[str], header: re.Pattern) -> Iterator[int]:
    """Indexes of the indented, non-blank lines following each header line."""
    inside = False
    for index, line in enumerate(lines):
        if header.search(line):
            inside = True
        elif inside and line[:1].isspace() and line.strip():
            yield index
        else:
            inside = False


def assign_severity(category: Category, message: str, baseline: Optional[Severity] = None) -> Severity:
    """Baseline for the category, one tier up when a sensitive component is named.

    Escalation is capped at Critical and never leaves a finding below High.
    """
    severity = baseline or BASELINE_SEVERITY[category]
    if ESCALATION_KEYWORDS.search(message):
        rank = max(SEVERITY_ORDER.index(severity) - 1, 0)
        rank = min(rank, SEVERITY_ORDER.index(Severity.HIGH))
        severity = SEVERITY_ORDER[rank]
    return severity


def make_finding(
    category: Category,
    message: str,
    source: str,
    severity: Optional[Severity] = None,
) -> Finding:
    return Finding(
        category=category,
        severity=assign_severity(category, message, severity),
        message=message,
        source=source,
    )


class OutcomeClassifier:
    def __init__(self, dialect: "PackageManagerDialect", probe: SystemProbe | None = None):
        self.dialect = dialect
        self.probe = probe or SystemProbe()

    def classify(self, text: str | None, source: str) -> List[Finding]:
        findings: List[Finding] = []
        if not text:
            return findings

        lines = text.splitlines()
        claimed: Dict[Category, Set[int]] = {}
        emitted: Set[Tuple[Category, str]] = set()

        for r in self.dialect.rules:
            taken = claimed.setdefault(r.category, set())
            summarized = False
            candidates = section_lines(lines, r.section) if r.section else range(len(lines))
            for index in candidates:
                if index in taken:
                    continue
                line = lines[index]
                if r.per_subject:
                    matches = list(r.pattern.finditer(line))
                    if not matches:
                        continue
                    messages = [
                        r.message.format(**{k: (v or "").strip() for k, v in m.groupdict().items()})
                        for m in matches
                    ]
                else:
                    if not r.pattern.search(line):
                        continue
                    messages = [] if summarized else [r.message]
                    summarized = True
                taken.add(index)
                for message in messages:
                    if (r.category, message) in emitted:
                        continue
                    emitted.add((r.category, message))
                    findings.append(make_finding(r.category, message, source, r.severity))

        if findings:
            logger.debug("%s: %d finding(s)", source, len(findings))
        return findings

    def config_backups(self) -> List[Finding]:
        """Backup-suffixed configuration files left under the config root."""
        paths = self.probe.find_files(self.dialect.config_root, self.dialect.backup_suffixes)
        return self.classify("\n".join(paths), "etc-backup-scan")

    def package_audit(self) -> List[Finding]:
        findings: List[Finding] = []
        for source, cmd in self.dialect.audit_commands:
            if not self.probe.which(cmd[0]):
                logger.debug("Skipping %s: %s not installed", source, cmd[0])
                continue
            result = self.probe.run(cmd, timeout=600)
            findings.extend(self.classify(result.stdout, source))
        return findings

    def reboot_status(self) -> List[Finding]:
        return self.dialect.reboot_findings(self.probe, self)

    def service_restarts(self) -> List[Finding]:
        for source, cmd in self.dialect.restart_commands:
            if self.probe.which(cmd[0]):
                logger.debug("Using %s to check for service restarts", cmd[0])
                result = self.probe.run(cmd, timeout=600)
                return self.classify(result.stdout, source)
        return [
            make_finding(
                Category.OPTIONAL_SUGGESTION,
                "Consider installing 'needrestart' to check for service restart requirements",
                "service-restart-check",
            )
        ]
