import hashlib
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import Field, Session, SQLModel, create_engine, select

log = structlog.get_logger(__name__)


class CompilationLog(SQLModel, table=True):
    __tablename__ = "compilation_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    timestamp: datetime
    snippet: str
    snippet_hash: str = Field(index=True, unique=True)
    result: str
    success: bool


class AuditStore:
    """Keeps one row per distinct snippet (keyed by SHA-256)."""

    def __init__(self, url="sqlite:///./compilations.db"):
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)

    @staticmethod
    def snippet_hash(snippet: str) -> str:
        return hashlib.sha256(snippet.encode("utf-8")).hexdigest()

    def record(self, snippet: str, result: str, success: bool) -> bool:
        """Returns False when the snippet was already logged."""
        digest = self.snippet_hash(snippet)
        with Session(self.engine) as s:
            if s.exec(select(CompilationLog).where(CompilationLog.snippet_hash == digest)).first():
                return False
            s.add(CompilationLog(
                timestamp=datetime.now(timezone.utc),
                snippet=snippet,
                snippet_hash=digest,
                result=result,
                success=success,
            ))
            try:
                s.commit()
            except IntegrityError:
                # same snippet logged concurrently
                return False
        log.debug("audit.recorded", snippet_hash=digest[:12], success=success)
        return True
