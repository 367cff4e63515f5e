from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal, Optional, Tuple, Type

from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from .core.models import Limits

DEFAULT_CONF = "conf/codepad.yaml"


class Settings(BaseSettings):
    # ---- isolation ----
    isolation_mode: Literal["firejail", "container", "disabled"] = "firejail"
    fallback_to_simulation: bool = False

    timeout_s: float = 10.0
    kill_grace_s: float = 2.0

    # ---- resource ceilings ----
    memory_bytes: int = 512 * 1024 * 1024
    cpu_seconds: int = 10
    processes: int = 64
    open_files: int = 64
    file_size_bytes: int = 16 * 1024 * 1024

    # ---- workspaces ----
    workspace_root: Path = Path("run")
    workspace_mode: int = 0o700

    # ---- toolchain ----
    compiler_dir: Path = Path("compiler")
    compiler_repo: str = "https://github.com/Trivaxy/Verifex.git"
    compiler_revision: str = "master"
    compiler_project: str = "Verifex/Verifex.csproj"
    compiler_binary: str = "Verifex"
    compiler_assembly: str = "Verifex.dll"
    compiler_runtime_config: str = "Verifex.runtimeconfig.json"
    runtime_id: str = "linux-x64"
    schema_version: int = 1
    build_timeout_s: float = 1800.0
    z3_url: str = (
        "https://github.com/Z3Prover/z3/releases/download/z3-4.12.2/"
        "z3-4.12.2-x64-glibc-2.31.zip"
    )
    native_lib: str = "libz3.so"
    git_path: str = "git"
    dotnet_path: str = "dotnet"
    dotnet_root: Optional[Path] = None
    bootstrap_on_startup: bool = False

    # ---- compiled program layout ----
    source_name: str = "Program.vx"
    program_name: str = "Program.dll"
    program_alt_names: List[str] = Field(default_factory=lambda: ["Program.exe"])
    program_companions: List[str] = Field(
        default_factory=lambda: ["Program.runtimeconfig.json"]
    )
    program_launcher: List[str] = Field(default_factory=lambda: ["dotnet"])

    # ---- firejail ----
    firejail_path: str = "firejail"
    firejail_extra_args: str = ""
    firejail_seccomp: bool = True
    firejail_max_flag_retries: int = 3

    # ---- container ----
    container_runtime: str = "podman"
    container_image: str = "mcr.microsoft.com/dotnet/runtime:9.0"
    container_user: str = "65534:65534"
    container_extra_args: str = ""
    container_tmp_size: str = "64m"
    container_run_size: str = "16m"

    # ---- collaborators ----
    audit_enabled: bool = True
    audit_db_url: str = "sqlite:///./compilations.db"
    webhook_enabled: bool = True
    webhook_secret: Optional[str] = None
    max_source_chars: int = 10000

    # ---- logging ----
    log_level: str = "INFO"
    log_json: bool = True

    # env prefix CODEPAD_*
    model_config = SettingsConfigDict(env_prefix="CODEPAD_", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # init kwargs > CODEPAD_* env > conf/codepad.yaml (or CODEPAD_CONF)
        yaml_file = Path(os.environ.get("CODEPAD_CONF", DEFAULT_CONF))
        return (
            init_settings,
            env_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
        )

    def limits(self) -> Limits:
        return Limits(
            memory_bytes=self.memory_bytes,
            cpu_seconds=self.cpu_seconds,
            processes=self.processes,
            open_files=self.open_files,
            file_size_bytes=self.file_size_bytes,
        )


def load_settings(**overrides) -> Settings:
    return Settings(**overrides)
