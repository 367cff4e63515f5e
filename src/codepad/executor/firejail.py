from __future__ import annotations
import os
import re
import threading
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Set

import structlog

from ..core.errors import IsolationSpawnFailed
from ..core.models import Invocation, RunOutput
from ..core.utils import split_args
from .bounded import check, run_bounded

if TYPE_CHECKING:
    from ..settings import Settings

log = structlog.get_logger(__name__)

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
PROBE_CMD = ["true"]

# never stripped: without these the jail sees the network and all of $HOME
REQUIRED_FLAGS = frozenset({"--net", "--caps.drop", "--whitelist", "--read-only"})

# firejail's wording differs between releases
_UNSUPPORTED = [
    re.compile(r"invalid (--[\w.-]+)\S* command line option"),
    re.compile(r"Error: (--[\w.-]+)\S* feature is disabled"),
    re.compile(r"unrecognized option '?(--[\w.-]+)"),
    re.compile(r"(--[\w.-]+)\S* (?:option )?is not supported"),
]


def flag_name(flag: str) -> str:
    return flag.split("=", 1)[0]


def unsupported_flag(stderr: str) -> Optional[str]:
    for pat in _UNSUPPORTED:
        m = pat.search(stderr or "")
        if m:
            return m.group(1)
    return None


class FirejailBackend:
    """Namespace jail: firejail with network, capabilities and filesystem cut down.

    Flags the installed firejail rejects are negotiated on a probe run of a
    no-op command: the offending flag is stripped and the probe retried, at
    most ``max_flag_retries`` times. The user's program never takes part in
    that negotiation, so nothing it prints can remove a restriction.
    """

    name = "firejail"

    def __init__(
        self,
        firejail_path: str = "firejail",
        *,
        extra_args: Optional[List[str]] = None,
        seccomp: bool = True,
        max_flag_retries: int = 3,
        grace_s: float = 2.0,
    ):
        self.firejail_path = firejail_path
        self.extra_args = list(extra_args or [])
        self.seccomp = seccomp
        self.max_flag_retries = max_flag_retries
        self.grace_s = grace_s

        self._lock = threading.Lock()
        self._unsupported: Set[str] = set()
        self._probed = False

    @classmethod
    def from_settings(cls, s: "Settings") -> "FirejailBackend":
        return cls(
            s.firejail_path,
            extra_args=split_args(s.firejail_extra_args),
            seccomp=s.firejail_seccomp,
            max_flag_retries=s.firejail_max_flag_retries,
            grace_s=s.kill_grace_s,
        )

    @property
    def unsupported_flags(self) -> Set[str]:
        with self._lock:
            return set(self._unsupported)

    # ---------- command builders ----------

    def own_flags(self, inv: Invocation) -> List[str]:
        lim = inv.limits
        flags = [
            "--quiet",
            "--net=none",
            "--caps.drop=all",
            "--nonewprivs",
            "--noroot",
        ]
        if self.seccomp:
            flags.append("--seccomp")
        workspace = Path(inv.cwd).resolve()
        toolchain = Path(inv.toolchain_dir).resolve()
        # both stay at their host paths, even under $HOME
        flags += [
            "--private-tmp",
            "--private-dev",
            f"--whitelist={workspace}",
            f"--whitelist={toolchain}",
            f"--read-only={toolchain}",
            f"--rlimit-as={lim.memory_bytes}",
            f"--rlimit-fsize={lim.file_size_bytes}",
            f"--rlimit-nproc={lim.processes}",
            f"--rlimit-nofile={lim.open_files}",
            f"--rlimit-cpu={lim.cpu_seconds}",
        ]
        flags += [f"--env={k}={v}" for k, v in sorted(inv.env.items())]
        return [f for f in flags if flag_name(f) not in self._unsupported]

    def argv(self, inv: Invocation, cmd: Optional[List[str]] = None) -> List[str]:
        return [self.firejail_path, *self.own_flags(inv), *self.extra_args, *(cmd or inv.argv)]

    @staticmethod
    def _host_env() -> dict:
        return {"PATH": os.environ.get("PATH", DEFAULT_PATH)}

    # ---------- run ----------

    def _negotiate(self, inv: Invocation) -> None:
        attempts = 0
        while True:
            run = run_bounded(
                self.argv(inv, PROBE_CMD),
                cwd=inv.cwd,
                env=self._host_env(),
                timeout_s=inv.timeout_s,
                grace_s=self.grace_s,
            )
            if not run.timed_out and run.returncode == 0:
                return
            flag = unsupported_flag(run.stderr)
            own = {flag_name(f) for f in self.own_flags(inv)} - REQUIRED_FLAGS
            if flag and flag in own and attempts < self.max_flag_retries:
                attempts += 1
                self._unsupported.add(flag)
                log.warning("firejail.flag_stripped", flag=flag, attempt=attempts)
                continue
            raise IsolationSpawnFailed(
                f"firejail probe failed (rc={run.returncode}, timed_out={run.timed_out})",
                stdout=run.stdout,
                stderr=run.stderr,
            )

    def run(self, inv: Invocation) -> RunOutput:
        with self._lock:
            if not self._probed:
                self._negotiate(inv)
                self._probed = True
            argv = self.argv(inv)

        log.info("firejail.run", label=inv.label, cmd=inv.argv[0], timeout_s=inv.timeout_s)
        run = run_bounded(
            argv,
            cwd=inv.cwd,
            env=self._host_env(),
            timeout_s=inv.timeout_s,
            grace_s=self.grace_s,
        )
        return check(run, inv.timeout_s)
