import stat

import pytest

from codepad.core.errors import WorkspaceCreateError
from codepad.services.workspace import WorkspaceManager


def test_create_is_unique_and_private(tmp_path):
    wm = WorkspaceManager(tmp_path / "run")
    a, b = wm.create(), wm.create()
    assert a != b
    assert a.parent == b.parent == (tmp_path / "run")
    assert a.name.startswith("job-") and len(a.name) == len("job-") + 32
    assert stat.S_IMODE(a.stat().st_mode) == 0o700


def test_mode_is_configurable(tmp_path):
    ws = WorkspaceManager(tmp_path / "run", mode=0o777).create()
    assert stat.S_IMODE(ws.stat().st_mode) == 0o777


def test_destroy_is_idempotent(tmp_path):
    wm = WorkspaceManager(tmp_path / "run")
    ws = wm.create()
    (ws / "sub").mkdir()
    (ws / "sub" / "f.txt").write_text("x")
    wm.destroy(ws)
    assert not ws.exists()
    wm.destroy(ws)


def test_acquire_releases_on_error(tmp_path):
    wm = WorkspaceManager(tmp_path / "run")
    seen = []
    with pytest.raises(RuntimeError):
        with wm.acquire() as ws:
            seen.append(ws)
            (ws / "Program.vx").write_text("fn main() {}")
            raise RuntimeError("boom")
    assert not seen[0].exists()


def test_create_failure(tmp_path):
    blocker = tmp_path / "run"
    blocker.write_text("not a directory")
    with pytest.raises(WorkspaceCreateError):
        WorkspaceManager(blocker).create()
