from __future__ import annotations

from typing import Dict, Iterable, List, Set, Tuple

from sysupdate.core.models import Category, Finding, Severity, SEVERITY_ORDER


def aggregate(findings: Iterable[Finding]) -> Dict[Severity, List[Finding]]:
    """Group findings into severity tiers, most urgent tier first.

    Findings with the same category and message are duplicates whatever
    their source; the first one wins and keeps its position in its tier.
    """
    tiers: Dict[Severity, List[Finding]] = {severity: [] for severity in SEVERITY_ORDER}
    seen: Set[Tuple[Category, str]] = set()
    for finding in findings:
        key = (finding.category, finding.message)
        if key in seen:
            continue
        seen.add(key)
        tiers[finding.severity].append(finding)
    return tiers


def count_by_severity(tiers: Dict[Severity, List[Finding]]) -> Dict[str, int]:
    return {severity.value: len(items) for severity, items in tiers.items()}
