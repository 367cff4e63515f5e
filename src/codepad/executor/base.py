from __future__ import annotations
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

from ..core.models import Invocation, RunOutput

if TYPE_CHECKING:
    from ..settings import Settings


@runtime_checkable
class IsolationBackend(Protocol):
    """Runs one command under a restricted OS boundary.

    ``run`` returns captured output or raises ``ExitNonZero``, ``TimedOut``
    or ``IsolationSpawnFailed``. Exactly one isolated process per call.
    """

    name: str

    def run(self, inv: Invocation) -> RunOutput: ...


def build_backend(settings: "Settings") -> Optional[IsolationBackend]:
    """Pick the backend once, at startup. ``None`` means isolation is disabled."""
    mode = settings.isolation_mode
    if mode == "firejail":
        from .firejail import FirejailBackend
        return FirejailBackend.from_settings(settings)
    if mode == "container":
        from .container import ContainerBackend
        return ContainerBackend.from_settings(settings)
    if mode == "disabled":
        return None
    raise ValueError(f"unknown isolation mode: {mode}")
