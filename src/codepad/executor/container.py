from __future__ import annotations
import os
import subprocess
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

import structlog

from ..core.errors import IsolationSpawnFailed
from ..core.models import Invocation, RunOutput
from ..core.utils import split_args
from .bounded import check, run_bounded

if TYPE_CHECKING:
    from ..settings import Settings

log = structlog.get_logger(__name__)

TOOLCHAIN_MOUNT = "/compiler"
WORKSPACE_MOUNT = "/sandbox"
# docker/podman use this for their own failures, but a program may exit with it too
RUNTIME_ERROR_RC = 125


class ContainerBackend:
    """Throwaway container per invocation (docker or podman CLI)."""

    name = "container"

    def __init__(
        self,
        runtime: str = "podman",
        image: str = "mcr.microsoft.com/dotnet/runtime:9.0",
        *,
        user: str = "65534:65534",
        extra_args: Optional[List[str]] = None,
        tmp_size: str = "64m",
        run_size: str = "16m",
        grace_s: float = 2.0,
    ):
        self.runtime = runtime
        self.image = image
        self.user = user
        self.extra_args = list(extra_args or [])
        self.tmp_size = tmp_size
        self.run_size = run_size
        self.grace_s = grace_s

    @classmethod
    def from_settings(cls, s: "Settings") -> "ContainerBackend":
        return cls(
            s.container_runtime,
            s.container_image,
            user=s.container_user,
            extra_args=split_args(s.container_extra_args),
            tmp_size=s.container_tmp_size,
            run_size=s.container_run_size,
            grace_s=s.kill_grace_s,
        )

    @staticmethod
    def container_name(inv: Invocation) -> str:
        return f"codepad-{inv.label}"

    @staticmethod
    def translate(value: str, toolchain_dir: Path) -> str:
        """Rewrite host toolchain paths to where the toolchain is mounted."""
        host = str(Path(toolchain_dir).resolve())
        if value == host or value.startswith(host + os.sep):
            return TOOLCHAIN_MOUNT + value[len(host):]
        return value.replace(host + os.pathsep, TOOLCHAIN_MOUNT + os.pathsep)

    def argv(self, inv: Invocation, cidfile: Optional[Path] = None) -> List[str]:
        lim = inv.limits
        toolchain = Path(inv.toolchain_dir).resolve()
        workspace = Path(inv.cwd).resolve()
        env: Dict[str, str] = {"DOTNET_NOLOGO": "1", **inv.env}
        env["PWD"] = WORKSPACE_MOUNT

        args = [
            self.runtime, "run", "--rm",
            "--name", self.container_name(inv),
            "--network", "none",
            "--ipc", "none",
            "--pids-limit", str(lim.processes),
            "--memory", str(lim.memory_bytes),
            "--memory-swap", str(lim.memory_bytes),
            "--security-opt", "no-new-privileges",
            "--cap-drop", "ALL",
            "--read-only",
            "--tmpfs", f"/tmp:rw,nodev,nosuid,noexec,size={self.tmp_size}",
            "--tmpfs", f"/run:rw,nodev,nosuid,noexec,size={self.run_size}",
            "--ulimit", f"nofile={lim.open_files}:{lim.open_files}",
            "--ulimit", f"fsize={lim.file_size_bytes}:{lim.file_size_bytes}",
            "--ulimit", f"cpu={lim.cpu_seconds}:{lim.cpu_seconds}",
            "--volume", f"{toolchain}:{TOOLCHAIN_MOUNT}:ro",
            "--volume", f"{workspace}:{WORKSPACE_MOUNT}:rw",
            "--workdir", WORKSPACE_MOUNT,
            "--user", self.user,
        ]
        if cidfile is not None:
            args += ["--cidfile", str(cidfile)]
        for k, v in sorted(env.items()):
            args += ["--env", f"{k}={self.translate(v, toolchain)}"]
        args += self.extra_args
        args.append(self.image)
        args += [self.translate(a, toolchain) for a in inv.argv]
        return args

    def _force_remove(self, name: str) -> None:
        # killing the CLI client does not stop the container
        try:
            subprocess.run(
                [self.runtime, "rm", "-f", name],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=30,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            log.error("container.remove_failed", name=name, error=str(e))

    @staticmethod
    def _created(cidfile: Path) -> bool:
        try:
            return bool(cidfile.read_text().strip())
        except OSError:
            return False

    def run(self, inv: Invocation) -> RunOutput:
        name = self.container_name(inv)
        log.info("container.run", label=inv.label, image=self.image, timeout_s=inv.timeout_s)
        # outside the workspace, which the program can write to
        with tempfile.TemporaryDirectory(prefix="codepad-cid-") as tmp:
            cidfile = Path(tmp) / "cid"
            run = run_bounded(
                self.argv(inv, cidfile),
                cwd=inv.cwd,
                # client env only; the container sees nothing but --env
                env=dict(os.environ),
                timeout_s=inv.timeout_s,
                grace_s=self.grace_s,
                on_timeout=lambda: self._force_remove(name),
            )
            created = self._created(cidfile)
        # once the container exists, 125 is the program's own exit code
        if not run.timed_out and run.returncode == RUNTIME_ERROR_RC and not created:
            raise IsolationSpawnFailed(
                f"{self.runtime} could not start the container",
                stdout=run.stdout,
                stderr=run.stderr,
            )
        return check(run, inv.timeout_s)
