import os
import stat
import sys
import time
from pathlib import Path

import pytest

from codepad.core.models import Limits
from codepad.executor.bounded import check, run_bounded
from codepad.services.toolchain import SENTINEL, ToolchainManager
from codepad.services.workspace import WorkspaceManager
from codepad.settings import Settings

FAKE_COMPILER = '''#!{python}
import pathlib, re, sys, time

src = pathlib.Path(sys.argv[1]).read_text()
if "// ERROR" in src:
    print("Program.vx(1,1): error VX0001: unexpected token", file=sys.stderr)
    sys.exit(1)
if "hang in compiler" in src:
    while True:
        pass
if "slow compile" in src:
    time.sleep(0.9)
if "no artifact" in src:
    sys.exit(0)

m = re.search(r"pidfile=(\\S+)", src)
if "loop forever" in src:
    body = "import os\\nopen(%r, 'w').write(str(os.getpid()))\\nwhile True:\\n    pass\\n" % (m.group(1) if m else "/dev/null")
elif "fail at runtime" in src:
    body = "import sys\\nprint('partial')\\nprint('boom', file=sys.stderr)\\nsys.exit(3)\\n"
else:
    lines = re.findall(r'io\\.print\\("([^"]*)"\\)', src)
    body = "import time\\n"
    if "slow run" in src:
        body += "time.sleep(0.9)\\n"
    body += "".join("print(%r)\\n" % line for line in lines)

if "compiler chatter" in src:
    print("compiled 1 file")

name = "Program.exe" if "alt name" in src else "Program"
out = pathlib.Path(name)
out.write_text("#!{python}\\n" + body)
out.chmod(0o755)
'''


def write_script(path: Path, text: str) -> Path:
    path.write_text(text.replace("{python}", sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def pid_alive(pid: int) -> bool:
    try:
        data = Path(f"/proc/{pid}/stat").read_text()
    except (FileNotFoundError, ProcessLookupError):
        return False
    state = data.rsplit(")", 1)[1].split()[0]
    return state not in ("Z", "X")


def wait_dead(pid: int, timeout: float = 5.0) -> bool:
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if not pid_alive(pid):
            return True
        time.sleep(0.05)
    return not pid_alive(pid)


class DirectBackend:
    """Runs invocations without isolation; records what it was asked to run."""

    name = "direct"

    def __init__(self, grace_s: float = 0.5):
        self.grace_s = grace_s
        self.calls = []
        self.sources = []

    def run(self, inv):
        self.calls.append(inv)
        src = Path(inv.cwd) / "Program.vx"
        self.sources.append(src.read_text() if src.exists() else None)
        run = run_bounded(
            inv.argv,
            cwd=inv.cwd,
            env={"PATH": os.environ.get("PATH", "/usr/bin:/bin"), **inv.env},
            timeout_s=inv.timeout_s,
            grace_s=self.grace_s,
        )
        return check(run, inv.timeout_s)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep the repo's conf/codepad.yaml and CODEPAD_* env out of tests."""
    for key in list(os.environ):
        if key.startswith("CODEPAD_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("CODEPAD_CONF", str(tmp_path / "absent.yaml"))


@pytest.fixture
def limits():
    return Limits(
        memory_bytes=256 * 1024 * 1024,
        cpu_seconds=5,
        processes=32,
        open_files=64,
        file_size_bytes=1024 * 1024,
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        isolation_mode="firejail",
        timeout_s=5,
        kill_grace_s=0.5,
        workspace_root=tmp_path / "run",
        compiler_dir=tmp_path / "compiler",
        program_name="Program",
        program_alt_names=["Program.exe"],
        program_companions=[],
        program_launcher=[],
        audit_enabled=False,
    )


@pytest.fixture
def fake_toolchain(settings):
    """A ready toolchain whose self-contained 'compiler' is FAKE_COMPILER."""
    d = settings.compiler_dir
    d.mkdir(parents=True)
    write_script(d / settings.compiler_binary, FAKE_COMPILER)
    (d / settings.native_lib).write_bytes(b"\x7fELF")
    (d / SENTINEL).write_text(
        '{"schema_version": %d, "revision": "%s"}' % (settings.schema_version, settings.compiler_revision)
    )
    return ToolchainManager.from_settings(settings)


@pytest.fixture
def workspaces(settings):
    return WorkspaceManager(settings.workspace_root, settings.workspace_mode)
