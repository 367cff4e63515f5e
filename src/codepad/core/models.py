from __future__ import annotations
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional


class FailureKind(str, Enum):
    TOOLCHAIN_UNAVAILABLE = "TOOLCHAIN_UNAVAILABLE"
    WORKSPACE_CREATE = "WORKSPACE_CREATE"
    COMPILE_ERROR = "COMPILE_ERROR"
    ARTIFACT_MISSING = "ARTIFACT_MISSING"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    TIMEOUT = "TIMEOUT"
    SPAWN_FAILED = "SPAWN_FAILED"


class JobState(str, Enum):
    CREATED = "CREATED"
    SOURCE_WRITTEN = "SOURCE_WRITTEN"
    COMPILED = "COMPILED"
    ARTIFACTS_VERIFIED = "ARTIFACTS_VERIFIED"
    EXECUTED = "EXECUTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Limits:
    memory_bytes: int
    cpu_seconds: int
    processes: int
    open_files: int
    file_size_bytes: int


@dataclass(frozen=True)
class ToolchainState:
    schema_version: Optional[int]   # read from the sentinel, None when absent
    revision: Optional[str]
    artifact_paths: FrozenSet[Path]
    ready: bool


@dataclass(frozen=True)
class EntryPoint:
    path: Path
    self_contained: bool
    toolchain_dir: Path


@dataclass
class Job:
    job_id: str
    source: str
    workspace: Path
    deadline: Optional[float] = None   # monotonic deadline of the running phase
    state: JobState = JobState.CREATED

    def start_phase(self, budget_s: float) -> float:
        self.deadline = time.monotonic() + budget_s
        return self.remaining()

    def remaining(self) -> float:
        if self.deadline is None:
            raise RuntimeError("no phase running")
        return max(0.0, self.deadline - time.monotonic())


@dataclass(frozen=True)
class Invocation:
    """One bounded run of a command inside the isolation boundary.

    Workspace files are referenced by names relative to ``cwd``; toolchain
    files by host paths under ``toolchain_dir`` so backends can remap them.
    """
    argv: List[str]
    cwd: Path
    env: Dict[str, str]
    limits: Limits
    timeout_s: float
    toolchain_dir: Path
    label: str = "job"


@dataclass(frozen=True)
class RunOutput:
    stdout: str
    stderr: str


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    output: str
    error: Optional[str] = None
    failure: Optional[FailureKind] = None
    simulated: bool = False

    def __post_init__(self):
        if self.success and self.error is not None:
            raise ValueError("successful result cannot carry an error")
        if not self.success and not self.error:
            raise ValueError("failed result requires an error message")

    def to_payload(self) -> dict:
        return {"success": self.success, "output": self.output, "error": self.error}


@dataclass(frozen=True)
class BoundedRun:
    returncode: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool
    duration_s: float = 0.0
    argv: List[str] = field(default_factory=list)
