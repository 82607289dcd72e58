import subprocess
from pathlib import Path

import pytest

from sysupdate.core.probes import SystemProbe

FIXTURES = Path(__file__).parent / "fixtures"


def fixture_text(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


class FakeProbe(SystemProbe):
    """Canned host: tools on PATH, files, command responses and held locks.

    Command responses are keyed by the command line (without a leading sudo);
    the longest key that prefixes the executed command wins. A list value is
    consumed one response per call, the last one repeating.
    """

    def __init__(self, commands=None, tools=(), files=None, backups=(), locked=(), kernel="6.8.0-35-generic"):
        self.commands = dict(commands or {})
        self.tools = set(tools)
        self.files = dict(files or {})
        self.backups = list(backups)
        self.locked = set(locked)
        self.kernel = kernel
        self.calls = []

    def which(self, name):
        return name in self.tools

    def exists(self, path):
        return path in self.files

    def read_text(self, path):
        return self.files.get(path, "")

    def run(self, cmd, timeout=None, echo=False):
        cmd = list(cmd)
        self.calls.append(cmd)
        bare = cmd[1:] if cmd and cmd[0] == "sudo" else cmd
        joined = " ".join(bare)
        keys = [k for k in self.commands if joined == k or joined.startswith(k + " ")]
        if not keys:
            return subprocess.CompletedProcess(cmd, 0, "", None)
        response = self.commands[max(keys, key=len)]
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        returncode, output = response
        return subprocess.CompletedProcess(cmd, returncode, output, None)

    def find_files(self, root, suffixes):
        return [p for p in self.backups if p.startswith(root) and p.endswith(tuple(suffixes))]

    def running_kernel(self):
        return self.kernel

    def lock_held(self, path):
        return path in self.locked

    def ran(self, prefix):
        return any(" ".join(c).startswith(prefix) or " ".join(c[1:]).startswith(prefix) for c in self.calls)


@pytest.fixture
def fake_probe():
    return FakeProbe


@pytest.fixture
def load_fixture():
    return fixture_text
