from __future__ import annotations
import secrets
import shlex
from typing import List, Optional
from urllib.parse import urlparse


def new_job_id() -> str:
    return secrets.token_hex(16)


def split_args(raw: str) -> List[str]:
    """Operator-supplied extra args, shell-quoted (``--foo "a b"``)."""
    return shlex.split(raw or "")


def repo_slug(url: Optional[str]) -> Optional[str]:
    """``owner/name`` for any GitHub-style URL (web, api, git, ssh)."""
    if not url:
        return None
    url = url.strip()
    if url.startswith("git@") and ":" in url:
        path = url.split(":", 1)[1]
    else:
        path = urlparse(url).path
    parts = [p for p in path.split("/") if p]
    if parts[:1] == ["repos"]:
        parts = parts[1:]
    if len(parts) < 2:
        return None
    owner, name = parts[-2], parts[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return f"{owner}/{name}".lower()


def join_output(*segments: Optional[str]) -> str:
    """Strip each segment, drop empty ones, newline-join, end with one newline."""
    kept = [s.strip() for s in segments if s and s.strip()]
    return "\n".join(kept) + "\n" if kept else ""
