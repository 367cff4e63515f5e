from __future__ import annotations
import os
import shutil
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import structlog

from ..core.errors import WorkspaceCreateError
from ..core.utils import new_job_id

log = structlog.get_logger(__name__)


class WorkspaceManager:
    """
    One directory per job, never reused:
      <root>/job-<hex>/
        ├─ Program.vx        (submitted source)
        ├─ Program.dll       (compiler output)
        └─ ...
    """

    def __init__(self, root: Path, mode: int = 0o700):
        self.root = root if root.is_absolute() else root.resolve()
        self.mode = mode

    def create(self) -> Path:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path = self.root / f"job-{new_job_id()}"
            path.mkdir(exist_ok=False)
            os.chmod(path, self.mode)  # mkdir's mode is masked by umask
        except OSError as e:
            raise WorkspaceCreateError(f"cannot create workspace under {self.root}: {e}") from e
        log.debug("workspace.created", path=str(path))
        return path

    def destroy(self, path: Path) -> None:
        last = None
        for _ in range(3):
            try:
                shutil.rmtree(path)
                log.debug("workspace.destroyed", path=str(path))
                return
            except FileNotFoundError:
                return
            except OSError as e:
                last = e
                time.sleep(0.1)
        log.error("workspace.destroy_failed", path=str(path), error=str(last))

    @contextmanager
    def acquire(self) -> Iterator[Path]:
        path = self.create()
        try:
            yield path
        finally:
            self.destroy(path)
