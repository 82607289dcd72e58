"""Read-only access to the host: commands on PATH, marker files, command output.

Everything the engine learns about the system goes through a ``SystemProbe``
so tests can substitute canned answers for live commands.
"""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, List

from sysupdate.core.utils import CommandTimeoutError, logger, run_cmd


class SystemProbe:
    def which(self, name: str) -> bool:
        return shutil.which(name) is not None

    def exists(self, path: str) -> bool:
        return Path(path).exists()

    def read_text(self, path: str) -> str:
        try:
            return Path(path).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    def run(
        self,
        cmd: Iterable[str],
        timeout: float | None = 3600,
        echo: bool = False,
    ) -> subprocess.CompletedProcess:
        """Run a command without raising on a non-zero exit.

        A missing executable is reported as exit code 127 with empty output,
        the way a shell would, and a killed, timed-out command as 124 with
        the output it produced, like timeout(1).
        """
        cmd = list(cmd)
        try:
            return run_cmd(cmd, timeout=timeout, echo=echo, check=False)
        except FileNotFoundError:
            logger.debug("Command not found: %s", cmd[0])
            return subprocess.CompletedProcess(args=cmd, returncode=127, stdout="", stderr=None)
        except CommandTimeoutError as exc:
            logger.warning("%s", exc)
            return subprocess.CompletedProcess(args=cmd, returncode=124, stdout=exc.output, stderr=None)

    def find_files(self, root: str, suffixes: Iterable[str]) -> List[str]:
        suffixes = tuple(suffixes)
        found = []
        for dirpath, _dirnames, filenames in os.walk(root):
            for name in filenames:
                if name.endswith(suffixes):
                    found.append(os.path.join(dirpath, name))
        return sorted(found)

    def running_kernel(self) -> str:
        return platform.release()

    def lock_held(self, path: str) -> bool:
        if not self.exists(path) or not self.which("fuser"):
            return False
        return self.run(["fuser", path], timeout=30).returncode == 0
