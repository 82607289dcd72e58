from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import threading
from pathlib import Path
from datetime import datetime, timezone
from typing import Iterable

TOOL_VERSION = "1.0.0"

logger = logging.getLogger("sysupdate")


class CommandError(RuntimeError):
    pass


class PreconditionError(CommandError):
    """Raised before any mutating step when the host cannot be updated."""


class LockTimeoutError(CommandError):
    """Raised when the package database lock stays held through every attempt."""


class CommandTimeoutError(CommandError):
    """Raised when a command outlives its timeout and is killed."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


def is_root() -> bool:
    return os.geteuid() == 0


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def write_json(path: Path, data: dict) -> None:
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


def run_cmd(
    cmd: Iterable[str],
    timeout: float | None = 3600,
    echo: bool = False,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command, streaming its combined output line by line.

    The timeout covers the whole run: the process is killed when it expires,
    even while it is still producing output.
    """
    cmd = list(cmd)
    process = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        bufsize=1,
    )

    expired = threading.Event()

    def _expire():
        expired.set()
        process.kill()

    timer = threading.Timer(timeout, _expire) if timeout else None
    if timer:
        timer.start()

    output_lines = []
    try:
        for line in iter(process.stdout.readline, ""):
            output_lines.append(line)
            if echo:
                sys.stdout.write(line)
                sys.stdout.flush()
        return_code = process.wait()
    finally:
        if timer:
            timer.cancel()
        process.stdout.close()

    if expired.is_set():
        raise CommandTimeoutError(
            f"Command timed out after {timeout}s: {' '.join(cmd)}", "".join(output_lines)
        )

    output = "".join(output_lines)
    if check and return_code != 0:
        raise CommandError(f"Command failed ({return_code}): {' '.join(cmd)}\n{output}")

    return subprocess.CompletedProcess(args=cmd, returncode=return_code, stdout=output, stderr=None)


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
