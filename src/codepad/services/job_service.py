from __future__ import annotations
from typing import Optional

import structlog

from ..core.errors import SandboxError
from ..core.models import ExecutionResult
from ..executor.base import IsolationBackend, build_backend
from ..settings import Settings, load_settings
from .audit_store import AuditStore
from .pipeline import ExecutionPipeline
from .simulation import simulate
from .toolchain import ToolchainManager
from .workspace import WorkspaceManager

log = structlog.get_logger(__name__)


class JobService:
    """
    Entry point for callers: toolchain gate + pipeline + simulation policy + audit.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        toolchain: Optional[ToolchainManager] = None,
        workspaces: Optional[WorkspaceManager] = None,
        backend: Optional[IsolationBackend] = None,
        audit: Optional[AuditStore] = None,
    ):
        self.settings = settings or load_settings()
        s = self.settings

        self.toolchain = toolchain or ToolchainManager.from_settings(s)
        self.workspaces = workspaces or WorkspaceManager(s.workspace_root, s.workspace_mode)

        # chosen once per process
        self.backend = backend if backend is not None else build_backend(s)
        self.pipeline = (
            ExecutionPipeline.from_settings(s, self.toolchain, self.workspaces, self.backend)
            if self.backend is not None
            else None
        )

        if audit is None and s.audit_enabled:
            audit = AuditStore(s.audit_db_url)
        self.audit = audit

    @property
    def simulation_only(self) -> bool:
        return self.pipeline is None

    def ensure_toolchain_ready(self) -> None:
        if self.simulation_only:
            return
        self.toolchain.ensure_ready()

    def rebuild_toolchain(self) -> None:
        log.info("toolchain.rebuild_requested")
        self.toolchain.rebuild()

    def compile_and_run(self, source: str) -> ExecutionResult:
        if self.simulation_only:
            log.info("job.simulated", reason="isolation_disabled")
            result = simulate(source)
        else:
            result = self._run_real(source)
        self._audit(source, result)
        return result

    def _run_real(self, source: str) -> ExecutionResult:
        try:
            self.toolchain.ensure_ready()
            return self.pipeline.run(source)
        except SandboxError as e:
            log.error("job.system_fault", kind=e.kind.value, error=str(e),
                      stderr=(e.stderr or "")[-2000:])
            if not self.settings.fallback_to_simulation:
                raise
            log.warning("job.simulated", reason=e.kind.value)
            return simulate(source)

    def _audit(self, source: str, result: ExecutionResult) -> None:
        if self.audit is None:
            return
        try:
            self.audit.record(source, result.output, result.success)
        except Exception as e:
            log.error("audit.failed", error=str(e))
