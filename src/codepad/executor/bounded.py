from __future__ import annotations
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from ..core.errors import ExitNonZero, IsolationSpawnFailed, TimedOut
from ..core.models import BoundedRun, RunOutput

log = structlog.get_logger(__name__)


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    # the child leads its own session, so pgid == pid
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def _decode(data: Optional[bytes]) -> str:
    return (data or b"").decode("utf-8", errors="replace")


def _drain(proc: subprocess.Popen, timeout_s: float) -> Tuple[Optional[bytes], Optional[bytes], bool]:
    try:
        out, err = proc.communicate(timeout=timeout_s)
        return out, err, True
    except subprocess.TimeoutExpired as e:
        return e.output, e.stderr, False


def run_bounded(
    argv: List[str],
    *,
    cwd: Optional[Path],
    env: Dict[str, str],
    timeout_s: float,
    grace_s: float = 2.0,
    on_timeout: Optional[Callable[[], None]] = None,
) -> BoundedRun:
    """Run ``argv`` with a wall-clock deadline and escalating termination.

    On expiry the process group gets SIGTERM, then SIGKILL once ``grace_s``
    has passed. Output read before and after the signals is kept. The group
    is SIGKILLed again after exit so no descendant outlives the call.
    """
    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=env,
            start_new_session=True,
        )
    except OSError as e:
        raise IsolationSpawnFailed(f"cannot spawn {argv[0]}: {e}") from e

    timed_out = False
    try:
        out, err, finished = _drain(proc, timeout_s)
        if not finished:
            timed_out = True
            log.warning("bounded.timeout", cmd=argv[0], pid=proc.pid, timeout_s=timeout_s)
            if on_timeout is not None:
                on_timeout()
            _signal_group(proc, signal.SIGTERM)
            out, err, finished = _drain(proc, grace_s)
        if not finished:
            log.warning("bounded.force_kill", cmd=argv[0], pid=proc.pid)
            _signal_group(proc, signal.SIGKILL)
            out, err, finished = _drain(proc, grace_s)
        if not finished:
            # an escaped descendant still holds the pipes open
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    stream.close()
            proc.kill()
            proc.wait()
    finally:
        _signal_group(proc, signal.SIGKILL)
        if proc.returncode is None:
            proc.kill()
            proc.wait()

    run = BoundedRun(
        returncode=proc.returncode,
        stdout=_decode(out),
        stderr=_decode(err),
        timed_out=timed_out,
        duration_s=time.monotonic() - start,
        argv=list(argv),
    )
    log.debug("bounded.done", cmd=argv[0], rc=run.returncode,
              timed_out=run.timed_out, duration_s=round(run.duration_s, 3))
    return run


def check(run: BoundedRun, timeout_s: float) -> RunOutput:
    if run.timed_out:
        raise TimedOut(timeout_s, stdout=run.stdout, stderr=run.stderr)
    if run.returncode != 0:
        raise ExitNonZero(run.returncode, stdout=run.stdout, stderr=run.stderr)
    return RunOutput(stdout=run.stdout, stderr=run.stderr)
