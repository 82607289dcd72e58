from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Callable, List, Sequence, Tuple

from sysupdate.core.dialects import PackageManagerDialect
from sysupdate.core.models import UpdateOptions
from sysupdate.core.probes import SystemProbe
from sysupdate.core.utils import LockTimeoutError, is_root, logger

LOCK_ATTEMPTS = int(os.getenv("SYSUPDATE_LOCK_ATTEMPTS", "10"))
LOCK_BACKOFF_SECONDS = float(os.getenv("SYSUPDATE_LOCK_BACKOFF", "3"))


@dataclass
class OperationResult:
    command: List[str]
    returncode: int
    output: str
    skipped: bool = False
    ok_codes: Tuple[int, ...] = (0,)

    @property
    def ok(self) -> bool:
        return self.skipped or self.returncode in self.ok_codes


class PackageOperationRunner:
    """Runs package-manager commands one at a time.

    Commands that take the package database lock wait for it: every attempt
    first asks the probe whether a lock file is held, then treats the manager's
    own "could not get lock" output as contention. Waits grow linearly
    (backoff * attempt) and give up with LockTimeoutError after the last
    attempt.
    """

    def __init__(
        self,
        dialect: PackageManagerDialect,
        probe: SystemProbe,
        options: UpdateOptions,
        sleep: Callable[[float], None] = time.sleep,
        use_sudo: bool | None = None,
    ):
        self.dialect = dialect
        self.probe = probe
        self.options = options
        self.sleep = sleep
        self.use_sudo = (not is_root()) if use_sudo is None else use_sudo
        self.attempts = max(1, options.lock_attempts or LOCK_ATTEMPTS)
        self.backoff = LOCK_BACKOFF_SECONDS if options.lock_backoff is None else options.lock_backoff

    def command(self, argv: Sequence[str], privileged: bool = True) -> List[str]:
        prefix = ["sudo"] if privileged and self.use_sudo else []
        return prefix + list(argv)

    def query(self, argv: Sequence[str]) -> OperationResult:
        """Read-only command: always runs, never waits for the lock."""
        cmd = list(argv)
        logger.debug("Executing: %s", " ".join(cmd))
        result = self.probe.run(cmd, timeout=None)
        return OperationResult(cmd, result.returncode, result.stdout or "")

    def run(
        self,
        description: str,
        argv: Sequence[str],
        privileged: bool = True,
        locking: bool = True,
        ok_codes: Tuple[int, ...] = (0,),
    ) -> OperationResult:
        cmd = self.command(argv, privileged)
        if self.options.dry_run:
            logger.info("[DRY RUN] Would execute: %s", description)
            logger.debug("[DRY RUN] Command: %s", " ".join(cmd))
            return OperationResult(cmd, 0, "", skipped=True, ok_codes=ok_codes)

        logger.info(description)
        logger.debug("Executing: %s", " ".join(cmd))

        holder = None
        for attempt in range(1, self.attempts + 1):
            holder = self._held_lock() if locking else None
            if holder is None:
                result = self.probe.run(cmd, timeout=None, echo=self.options.show_output)
                output = result.stdout or ""
                contended = locking and result.returncode != 0 and self.dialect.is_lock_contention(output)
                if not contended:
                    return OperationResult(cmd, result.returncode, output, ok_codes=ok_codes)
                holder = f"{self.dialect.name} lock"
            if attempt < self.attempts:
                delay = self.backoff * attempt
                logger.warning(
                    "Package database locked by %s (attempt %d/%d), retrying in %.0fs",
                    holder, attempt, self.attempts, delay,
                )
                self.sleep(delay)

        raise LockTimeoutError(
            f"Package database lock still held after {self.attempts} attempts ({holder}): {' '.join(cmd)}"
        )

    def _held_lock(self) -> str | None:
        for path in self.dialect.lock_paths:
            if self.probe.lock_held(path):
                return path
        return None
