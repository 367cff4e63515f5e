from __future__ import annotations
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

import structlog

from ..core.errors import ArtifactMissing, ExitNonZero, TimedOut, WorkspaceCreateError
from ..core.models import (
    EntryPoint,
    ExecutionResult,
    FailureKind,
    Invocation,
    Job,
    JobState,
    Limits,
    RunOutput,
)
from ..core.utils import join_output, new_job_id
from ..executor.base import IsolationBackend
from .toolchain import ToolchainManager
from .workspace import WorkspaceManager

if TYPE_CHECKING:
    from ..settings import Settings

log = structlog.get_logger(__name__)

TIMEOUT_MESSAGE = "Execution timed out"


class ExecutionPipeline:
    """write source -> compile -> verify artifacts -> execute -> assemble.

    User-caused failures (compile error, runtime error, timeout) come back as
    unsuccessful results. System faults raise a ``SandboxError``. The
    workspace is gone before either reaches the caller.
    """

    def __init__(
        self,
        toolchain: ToolchainManager,
        workspaces: WorkspaceManager,
        backend: IsolationBackend,
        *,
        limits: Limits,
        timeout_s: float = 10.0,
        source_name: str = "Program.vx",
        program_name: str = "Program.dll",
        program_alt_names: Optional[List[str]] = None,
        program_companions: Optional[List[str]] = None,
        program_launcher: Optional[List[str]] = None,
        dotnet_path: str = "dotnet",
        dotnet_root: Optional[Path] = None,
    ):
        self.toolchain = toolchain
        self.workspaces = workspaces
        self.backend = backend
        self.limits = limits
        self.timeout_s = timeout_s
        self.source_name = source_name
        self.program_name = program_name
        self.program_alt_names = list(program_alt_names or [])
        self.program_companions = list(program_companions or [])
        self.program_launcher = list(program_launcher or [])
        self.dotnet_path = dotnet_path
        self.dotnet_root = dotnet_root

    @classmethod
    def from_settings(cls, s: "Settings", toolchain: ToolchainManager,
                      workspaces: WorkspaceManager, backend: IsolationBackend) -> "ExecutionPipeline":
        return cls(
            toolchain, workspaces, backend,
            limits=s.limits(),
            timeout_s=s.timeout_s,
            source_name=s.source_name,
            program_name=s.program_name,
            program_alt_names=s.program_alt_names,
            program_companions=s.program_companions,
            program_launcher=s.program_launcher,
            dotnet_path=s.dotnet_path,
            dotnet_root=s.dotnet_root,
        )

    # ---------- state ----------

    @staticmethod
    def _advance(job: Job, state: JobState, **kw) -> None:
        log.info("job.state", job_id=job.job_id, src=job.state.value, dst=state.value, **kw)
        job.state = state

    def _fail(self, job: Job, kind: FailureKind, error: str, *segments: str) -> ExecutionResult:
        self._advance(job, JobState.FAILED, kind=kind.value)
        return ExecutionResult(
            success=False,
            output=join_output(*segments),
            error=error,
            failure=kind,
        )

    # ---------- invocations ----------

    def _env(self, entry: EntryPoint, workspace: Path) -> Dict[str, str]:
        env = {
            "PWD": str(workspace),
            "LD_LIBRARY_PATH": str(entry.toolchain_dir),
            "DOTNET_NOLOGO": "1",
            "DOTNET_CLI_TELEMETRY_OPTOUT": "1",
        }
        if self.dotnet_root is not None and (not entry.self_contained or self.program_launcher):
            env["DOTNET_ROOT"] = str(self.dotnet_root)
        return env

    def _invocation(self, job: Job, entry: EntryPoint, argv: List[str], phase: str) -> Invocation:
        return Invocation(
            argv=argv,
            cwd=job.workspace,
            env=self._env(entry, job.workspace),
            limits=self.limits,
            # each phase gets the full budget
            timeout_s=job.start_phase(self.timeout_s),
            toolchain_dir=entry.toolchain_dir,
            label=f"{job.job_id[:12]}-{phase}",
        )

    def compile_argv(self, entry: EntryPoint) -> List[str]:
        if entry.self_contained:
            return [str(entry.path), self.source_name]
        return [self.dotnet_path, str(entry.path), self.source_name]

    def run_argv(self) -> List[str]:
        if self.program_launcher:
            return [*self.program_launcher, self.program_name]
        return [f"./{self.program_name}"]

    # ---------- steps ----------

    def _write_source(self, job: Job) -> None:
        try:
            (job.workspace / self.source_name).write_text(job.source, encoding="utf-8")
        except OSError as e:
            raise WorkspaceCreateError(f"cannot write source: {e}") from e

    def verify_artifacts(self, workspace: Path) -> Path:
        program = workspace / self.program_name
        if not program.is_file():
            for alt in self.program_alt_names:
                candidate = workspace / alt
                if candidate.is_file():
                    candidate.rename(program)
                    log.info("job.artifact_renamed", src=alt, dst=self.program_name)
                    break
            else:
                raise ArtifactMissing(f"compiled program {self.program_name} not found")
        for name in self.program_companions:
            if not (workspace / name).is_file():
                raise ArtifactMissing(f"{name} not found next to {self.program_name}")
        return program

    def run(self, source: str) -> ExecutionResult:
        entry = self.toolchain.get_entry_point()
        with self.workspaces.acquire() as workspace:
            job = Job(job_id=new_job_id(), source=source, workspace=workspace)
            log.info("job.created", job_id=job.job_id, backend=self.backend.name,
                     source_chars=len(source))
            try:
                return self._run(job, entry)
            except Exception as e:
                if job.state != JobState.FAILED:
                    self._advance(job, JobState.FAILED, error=type(e).__name__)
                raise

    def _run(self, job: Job, entry: EntryPoint) -> ExecutionResult:
        self._write_source(job)
        self._advance(job, JobState.SOURCE_WRITTEN)

        try:
            compiled = self.backend.run(self._invocation(job, entry, self.compile_argv(entry), "compile"))
        except TimedOut as e:
            return self._fail(job, FailureKind.TIMEOUT, TIMEOUT_MESSAGE, e.stdout, e.stderr)
        except ExitNonZero as e:
            return self._fail(job, FailureKind.COMPILE_ERROR,
                              f"Compilation failed with exit code {e.code}", e.stdout, e.stderr)
        self._advance(job, JobState.COMPILED)

        self.verify_artifacts(job.workspace)
        self._advance(job, JobState.ARTIFACTS_VERIFIED)

        try:
            ran: RunOutput = self.backend.run(self._invocation(job, entry, self.run_argv(), "run"))
        except TimedOut as e:
            return self._fail(job, FailureKind.TIMEOUT, TIMEOUT_MESSAGE,
                              compiled.stdout, compiled.stderr, e.stdout, e.stderr)
        except ExitNonZero as e:
            return self._fail(job, FailureKind.RUNTIME_ERROR,
                              f"Program exited with code {e.code}",
                              compiled.stdout, compiled.stderr, e.stdout, e.stderr)
        self._advance(job, JobState.EXECUTED)

        result = ExecutionResult(
            success=True,
            output=join_output(compiled.stdout, compiled.stderr, ran.stdout, ran.stderr),
        )
        self._advance(job, JobState.COMPLETED)
        return result
