from __future__ import annotations

from enum import Enum
from pydantic import BaseModel, ConfigDict
from typing import Dict, List, Optional

from sysupdate.core.utils import TOOL_VERSION


class Category(str, Enum):
    CONFIG_CONFLICT = "ConfigConflict"
    REBOOT_REQUIRED = "RebootRequired"
    BROKEN_PACKAGE = "BrokenPackage"
    SERVICE_RESTART = "ServiceRestart"
    OPTIONAL_SUGGESTION = "OptionalSuggestion"


class Severity(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    RECOMMENDED = "Recommended"
    OPTIONAL = "Optional"


# Most urgent first.
SEVERITY_ORDER = [Severity.CRITICAL, Severity.HIGH, Severity.RECOMMENDED, Severity.OPTIONAL]


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: Category
    severity: Severity
    message: str
    source: str


class UpdateOptions(BaseModel):
    verbose: bool = False
    dry_run: bool = False
    show_output: bool = False
    enable_firmware: bool = False
    enable_flatpak: bool = False
    enable_snap: bool = False
    enable_dist_upgrade: bool = False
    lock_attempts: Optional[int] = None
    lock_backoff: Optional[float] = None
    log_file: Optional[str] = None


class UpdateRun(BaseModel):
    run_id: str
    dialect: str
    os_id: str = ""
    dry_run: bool = False
    tool_version: str = TOOL_VERSION
    started_at: str
    finished_at: str | None = None
    packages_available: int = 0
    packages_applied: int = 0
    packages: List[str] = []
    updated: List[str] = []
    phases: Dict[str, str] = {}
    findings: List[Finding] = []
    reboot_required: bool = False

    def add(self, finding: Finding) -> bool:
        """Append a finding unless the exact same one is already recorded.

        The reboot flag latches on the first RebootRequired finding and is
        never cleared afterwards.
        """
        if finding in self.findings:
            return False
        self.findings.append(finding)
        if finding.category == Category.REBOOT_REQUIRED:
            self.reboot_required = True
        return True

    def extend(self, findings: List[Finding]) -> int:
        return sum(1 for f in findings if self.add(f))

    def has_category(self, category: Category) -> bool:
        return any(f.category == category for f in self.findings)

    @property
    def failed(self) -> bool:
        return any(status == "failed" for status in self.phases.values())
