from __future__ import annotations
import json
import os
import shutil
import subprocess
import tempfile
import threading
import zipfile
from concurrent.futures import Future
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

import requests
import structlog

from ..core.errors import ToolchainUnavailable
from ..core.models import EntryPoint, ToolchainState
from ..core.utils import new_job_id

if TYPE_CHECKING:
    from ..settings import Settings

log = structlog.get_logger(__name__)

SENTINEL = ".codepad-toolchain.json"


class ToolchainManager:
    """Owns the compiler artifact set: fetch, build, version-stamp, probe.

    ``compiler_dir`` is a symlink to the active build. A rebuild populates a
    fresh staging directory, writes the version sentinel last, then swaps the
    symlink with ``os.replace``; readers never see a half-built tree.
    """

    def __init__(
        self,
        compiler_dir: Path,
        *,
        repo: str,
        revision: str,
        project: str = "Verifex/Verifex.csproj",
        runtime_id: str = "linux-x64",
        binary: str = "Verifex",
        assembly: str = "Verifex.dll",
        runtime_config: str = "Verifex.runtimeconfig.json",
        native_lib: str = "libz3.so",
        native_url: str = "",
        schema_version: int = 1,
        git_path: str = "git",
        dotnet_path: str = "dotnet",
        build_timeout_s: float = 1800.0,
    ):
        self.compiler_dir = compiler_dir if compiler_dir.is_absolute() else compiler_dir.absolute()
        self.repo = repo
        self.revision = revision
        self.project = project
        self.runtime_id = runtime_id
        self.binary = binary
        self.assembly = assembly
        self.runtime_config = runtime_config
        self.native_lib = native_lib
        self.native_url = native_url
        self.schema_version = schema_version
        self.git_path = git_path
        self.dotnet_path = dotnet_path
        self.build_timeout_s = build_timeout_s

        self._lock = threading.Lock()
        self._inflight: Optional[Future] = None

    @classmethod
    def from_settings(cls, s: "Settings") -> "ToolchainManager":
        return cls(
            s.compiler_dir,
            repo=s.compiler_repo,
            revision=s.compiler_revision,
            project=s.compiler_project,
            runtime_id=s.runtime_id,
            binary=s.compiler_binary,
            assembly=s.compiler_assembly,
            runtime_config=s.compiler_runtime_config,
            native_lib=s.native_lib,
            native_url=s.z3_url,
            schema_version=s.schema_version,
            git_path=s.git_path,
            dotnet_path=s.dotnet_path,
            build_timeout_s=s.build_timeout_s,
        )

    # ---------- readiness ----------

    @property
    def single_file_artifacts(self) -> List[str]:
        return [self.binary, self.native_lib]

    @property
    def framework_artifacts(self) -> List[str]:
        return [self.assembly, self.runtime_config, self.native_lib]

    def _read_sentinel(self) -> dict:
        p = self.compiler_dir / SENTINEL
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def state(self) -> ToolchainState:
        d = self.compiler_dir
        names = self.single_file_artifacts
        if not all((d / n).is_file() for n in names):
            names = self.framework_artifacts
        paths = frozenset(d / n for n in names)
        present = all(p.is_file() for p in paths)

        meta = self._read_sentinel()
        version = meta.get("schema_version")
        revision = meta.get("revision")
        ready = present and version == self.schema_version and revision == self.revision
        return ToolchainState(
            schema_version=version if isinstance(version, int) else None,
            revision=revision,
            artifact_paths=paths,
            ready=ready,
        )

    def is_ready(self) -> bool:
        return self.state().ready

    def get_entry_point(self) -> EntryPoint:
        d = self.compiler_dir.resolve()
        single = d / self.binary
        if single.is_file():
            return EntryPoint(path=single, self_contained=True, toolchain_dir=d)
        return EntryPoint(path=d / self.assembly, self_contained=False, toolchain_dir=d)

    # ---------- single-flight gate ----------

    def ensure_ready(self) -> None:
        """Idempotent; concurrent callers share one in-flight bootstrap."""
        with self._lock:
            fut = self._inflight
            owner = fut is None
            if owner:
                fut = self._inflight = Future()
        if owner:
            try:
                self._ensure()
            except ToolchainUnavailable as e:
                fut.set_exception(e)
            except Exception as e:
                err = ToolchainUnavailable(f"toolchain bootstrap failed: {e}")
                err.__cause__ = e
                fut.set_exception(err)
            else:
                fut.set_result(None)
            finally:
                if not fut.done():
                    fut.set_exception(ToolchainUnavailable("toolchain bootstrap interrupted"))
                with self._lock:
                    self._inflight = None
        fut.result()

    def invalidate(self) -> None:
        (self.compiler_dir / SENTINEL).unlink(missing_ok=True)
        log.info("toolchain.invalidated", dir=str(self.compiler_dir))

    def rebuild(self) -> None:
        self.invalidate()
        self.ensure_ready()

    def _ensure(self) -> None:
        st = self.state()
        if st.ready:
            return
        log.info("toolchain.bootstrap.start", revision=self.revision,
                 found_version=st.schema_version, expected_version=self.schema_version)
        self._bootstrap()
        log.info("toolchain.bootstrap.done", dir=str(self.compiler_dir.resolve()))

    # ---------- bootstrap ----------

    def _staging_prefix(self) -> str:
        return f".{self.compiler_dir.name}-build-"

    def _sweep(self) -> None:
        """Drop leftovers of earlier crashed bootstraps."""
        parent = self.compiler_dir.parent
        active = self.compiler_dir.resolve() if self.compiler_dir.is_symlink() else None
        for p in parent.glob(self._staging_prefix() + "*"):
            if p.is_dir() and p.resolve() != active:
                shutil.rmtree(p, ignore_errors=True)

    def _bootstrap(self) -> None:
        parent = self.compiler_dir.parent
        parent.mkdir(parents=True, exist_ok=True)
        self._sweep()

        staging = parent / f"{self._staging_prefix()}{new_job_id()[:12]}"
        staging.mkdir()
        try:
            self._populate(staging)
            self._write_sentinel(staging)
            self._activate(staging)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

    def _populate(self, staging: Path) -> None:
        with tempfile.TemporaryDirectory(prefix=".codepad-src-", dir=staging.parent) as work:
            repo_dir = Path(work) / "compiler-src"
            self._checkout(repo_dir)
            self._exec([
                self.dotnet_path, "publish", str(repo_dir / self.project),
                "-c", "Release",
                "-r", self.runtime_id,
                "--self-contained", "true",
                "-p:PublishSingleFile=true",
                "-o", str(staging),
            ])
            self._install_native_lib(Path(work), staging)

    def _checkout(self, repo_dir: Path) -> None:
        """Shallow checkout of ``revision``: a branch, a tag or a full commit SHA."""
        git = [self.git_path, "-C", str(repo_dir)]
        self._exec([self.git_path, "init", "-q", str(repo_dir)])
        self._exec([*git, "fetch", "-q", "--depth", "1", self.repo, self.revision])
        self._exec([*git, "checkout", "-q", "--detach", "FETCH_HEAD"])

    def _install_native_lib(self, work: Path, staging: Path) -> None:
        zip_path = work / "native.zip"
        log.info("toolchain.download", url=self.native_url)
        with requests.get(self.native_url, stream=True, timeout=(10, 300)) as resp:
            resp.raise_for_status()
            with open(zip_path, "wb") as f:
                for chunk in resp.iter_content(chunk_size=1 << 16):
                    f.write(chunk)

        with zipfile.ZipFile(zip_path) as zf:
            candidates = [n for n in zf.namelist()
                          if n.rsplit("/", 1)[-1] == self.native_lib]
            if not candidates:
                raise ToolchainUnavailable(f"{self.native_lib} not found in {self.native_url}")
            # release zips keep the shared library under bin/
            member = sorted(candidates, key=lambda n: ("/bin/" not in n, len(n)))[0]
            target = staging / self.native_lib
            with zf.open(member) as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
        os.chmod(target, 0o755)

    def _write_sentinel(self, staging: Path) -> None:
        (staging / SENTINEL).write_text(
            json.dumps({"schema_version": self.schema_version, "revision": self.revision}),
            encoding="utf-8",
        )

    def _activate(self, staging: Path) -> None:
        d = self.compiler_dir
        previous = d.resolve() if d.is_symlink() else None
        if d.exists() and not d.is_symlink():
            # legacy in-place layout
            shutil.rmtree(d)
        link = d.parent / f".{d.name}-link-{new_job_id()[:12]}"
        os.symlink(staging.name, link)
        os.replace(link, d)
        if previous is not None and previous != staging.resolve() and previous.exists():
            shutil.rmtree(previous, ignore_errors=True)

    def _exec(self, cmd: List[str], cwd: Optional[Path] = None) -> None:
        log.info("toolchain.exec", cmd=" ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.build_timeout_s,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ToolchainUnavailable(f"command {cmd[0]!r} failed: {e}") from e
        if proc.returncode != 0:
            tail = "\n".join((proc.stdout or "").splitlines()[-20:])
            raise ToolchainUnavailable(
                f'command "{" ".join(cmd)}" exited with code {proc.returncode}',
                stdout=tail,
            )
