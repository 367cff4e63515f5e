from __future__ import annotations

from .models import FailureKind


class SandboxError(Exception):
    """System-side failure: not caused by the submitted program."""

    kind: FailureKind

    def __init__(self, message: str, *, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class ToolchainUnavailable(SandboxError):
    kind = FailureKind.TOOLCHAIN_UNAVAILABLE


class WorkspaceCreateError(SandboxError):
    kind = FailureKind.WORKSPACE_CREATE


class ArtifactMissing(SandboxError):
    kind = FailureKind.ARTIFACT_MISSING


class IsolationSpawnFailed(SandboxError):
    kind = FailureKind.SPAWN_FAILED


class InvocationFailed(Exception):
    """An isolated command ran but did not finish cleanly."""

    def __init__(self, message: str, *, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class ExitNonZero(InvocationFailed):
    def __init__(self, code: int, *, stdout: str = "", stderr: str = ""):
        super().__init__(f"exited with code {code}", stdout=stdout, stderr=stderr)
        self.code = code


class TimedOut(InvocationFailed):
    def __init__(self, timeout_s: float, *, stdout: str = "", stderr: str = ""):
        super().__init__(f"timed out after {timeout_s:g}s", stdout=stdout, stderr=stderr)
        self.timeout_s = timeout_s
