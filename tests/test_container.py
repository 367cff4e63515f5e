import json
from pathlib import Path

import pytest

from codepad.core.errors import ExitNonZero, IsolationSpawnFailed, TimedOut
from codepad.core.models import Invocation
from codepad.executor.container import ContainerBackend

from conftest import write_script

FAKE_RUNTIME = '''#!{python}
import json, sys, time

args = sys.argv[1:]
with open(%(log)r, "a") as f:
    f.write(json.dumps(args) + "\\n")
if args[0] == "rm":
    sys.exit(0)
mode = %(mode)r
if mode == "broken":
    print("Error: image not known", file=sys.stderr)
    sys.exit(125)
if "--cidfile" in args:
    with open(args[args.index("--cidfile") + 1], "w") as f:
        f.write("f00dcafe")
if mode == "exit125":
    print("user output")
    print("Error: spoofed runtime message", file=sys.stderr)
    sys.exit(125)
if mode == "hang":
    print("container started", flush=True)
    time.sleep(30)
if mode == "fail":
    print("oops", file=sys.stderr)
    sys.exit(2)
print("hello from container")
'''


@pytest.fixture
def toolchain_dir(tmp_path):
    d = tmp_path / "compiler"
    d.mkdir()
    return d


@pytest.fixture
def inv(tmp_path, toolchain_dir, limits):
    ws = tmp_path / "ws"
    ws.mkdir()
    return Invocation(
        argv=[str(toolchain_dir / "Verifex"), "Program.vx"],
        cwd=ws,
        env={"LD_LIBRARY_PATH": str(toolchain_dir), "PWD": str(ws)},
        limits=limits,
        timeout_s=1,
        toolchain_dir=toolchain_dir,
        label="abc-compile",
    )


def _backend(tmp_path, mode="ok"):
    log = tmp_path / "runtime.log"
    script = write_script(tmp_path / "podman", FAKE_RUNTIME % {"log": str(log), "mode": mode})
    return ContainerBackend(str(script), "runtime:test", grace_s=0.5), log


def _calls(log):
    return [json.loads(line) for line in log.read_text().splitlines()]


def _pairs(argv, opt):
    return [argv[i + 1] for i, a in enumerate(argv[:-1]) if a == opt]


def test_argv_restricts_and_mounts(inv, toolchain_dir, limits):
    argv = ContainerBackend("docker", "img:1", user="65534:65534").argv(inv)

    assert argv[:3] == ["docker", "run", "--rm"]
    assert _pairs(argv, "--name") == ["codepad-abc-compile"]
    assert _pairs(argv, "--network") == ["none"]
    assert _pairs(argv, "--cap-drop") == ["ALL"]
    assert _pairs(argv, "--security-opt") == ["no-new-privileges"]
    assert "--read-only" in argv
    assert _pairs(argv, "--pids-limit") == [str(limits.processes)]
    assert _pairs(argv, "--memory") == [str(limits.memory_bytes)]
    assert _pairs(argv, "--user") == ["65534:65534"]
    assert f"{toolchain_dir.resolve()}:/compiler:ro" in _pairs(argv, "--volume")
    assert f"{Path(inv.cwd).resolve()}:/sandbox:rw" in _pairs(argv, "--volume")
    assert all("noexec" in t for t in _pairs(argv, "--tmpfs"))


def test_toolchain_paths_are_remapped(inv):
    argv = ContainerBackend("docker", "img:1").argv(inv)
    assert argv[-3:] == ["img:1", "/compiler/Verifex", "Program.vx"]
    envs = _pairs(argv, "--env")
    assert "LD_LIBRARY_PATH=/compiler" in envs
    assert "PWD=/sandbox" in envs


def test_translate_leaves_other_paths_alone(toolchain_dir):
    t = ContainerBackend.translate
    assert t("Program.vx", toolchain_dir) == "Program.vx"
    assert t(str(toolchain_dir.resolve()) + "-other/x", toolchain_dir) == str(toolchain_dir.resolve()) + "-other/x"
    assert t(f"{toolchain_dir.resolve()}:/usr/lib", toolchain_dir) == "/compiler:/usr/lib"


def test_successful_run(tmp_path, inv):
    backend, _ = _backend(tmp_path)
    assert backend.run(inv).stdout == "hello from container\n"


def test_runtime_error_is_a_spawn_failure(tmp_path, inv):
    backend, _ = _backend(tmp_path, "broken")
    with pytest.raises(IsolationSpawnFailed) as exc:
        backend.run(inv)
    assert "image not known" in exc.value.stderr


def test_program_failure_is_exit_nonzero(tmp_path, inv):
    backend, _ = _backend(tmp_path, "fail")
    with pytest.raises(ExitNonZero) as exc:
        backend.run(inv)
    assert exc.value.code == 2


def test_program_exit_125_is_not_a_spawn_failure(tmp_path, inv):
    backend, log = _backend(tmp_path, "exit125")
    with pytest.raises(ExitNonZero) as exc:
        backend.run(inv)
    assert exc.value.code == 125
    assert "user output" in exc.value.stdout
    cidfile = _pairs(_calls(log)[0], "--cidfile")[0]
    # kept off the workspace mount
    assert not cidfile.startswith(str(Path(inv.cwd).resolve()))


def test_timeout_force_removes_container(tmp_path, inv):
    backend, log = _backend(tmp_path, "hang")
    with pytest.raises(TimedOut) as exc:
        backend.run(inv)
    assert "container started" in exc.value.stdout
    assert ["rm", "-f", "codepad-abc-compile"] in _calls(log)
