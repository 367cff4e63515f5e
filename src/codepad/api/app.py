from __future__ import annotations
import hashlib
import hmac
import json
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from ..core.errors import SandboxError
from ..core.utils import repo_slug
from ..logging import setup_logging
from ..services.job_service import JobService

log = structlog.get_logger(__name__)


# --------- Schemas ---------
class CompileReq(BaseModel):
    code: Optional[str] = None


class CompileRes(BaseModel):
    success: bool
    output: str
    error: Optional[str] = None


def _verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


def create_app(service: Optional[JobService] = None) -> FastAPI:
    svc = service or JobService()
    s = svc.settings
    if service is None:
        setup_logging(s.log_level, s.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if s.bootstrap_on_startup:
            # fatal: no job can run without the toolchain
            svc.ensure_toolchain_ready()
        yield

    app = FastAPI(title="Codepad Sandbox API", lifespan=lifespan)
    app.state.service = svc
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --------- Endpoints ---------

    @app.get("/")
    def root():
        return {"message": "Codepad API Server"}

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    @app.post("/api/compile", response_model=CompileRes)
    def compile_code(req: CompileReq):
        code = req.code
        if not code:
            return JSONResponse(status_code=400, content={"success": False, "error": "No code provided"})
        if len(code) > s.max_source_chars:
            return JSONResponse(
                status_code=400,
                content={"success": False,
                         "error": f"Code exceeds the {s.max_source_chars} character limit"},
            )
        try:
            result = svc.compile_and_run(code)
        except SandboxError as e:
            log.error("api.compile_failed", kind=e.kind.value, error=str(e))
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": "Server error during compilation", "output": str(e)},
            )
        return CompileRes(**result.to_payload())

    def _rebuild():
        try:
            svc.rebuild_toolchain()
        except SandboxError as e:
            log.error("webhook.rebuild_failed", error=str(e))

    @app.post("/api/webhook/github")
    async def github_webhook(request: Request, background: BackgroundTasks):
        if not s.webhook_enabled:
            return PlainTextResponse("Webhooks are disabled", status_code=403)
        if "application/json" not in request.headers.get("content-type", ""):
            return PlainTextResponse("Content-Type must be application/json", status_code=400)

        body = await request.body()
        if s.webhook_secret:
            signature = request.headers.get("X-Hub-Signature-256")
            if not signature:
                return PlainTextResponse("Missing signature", status_code=401)
            if not _verify_signature(s.webhook_secret, body, signature):
                return PlainTextResponse("Invalid signature", status_code=401)

        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            return PlainTextResponse("Invalid JSON payload", status_code=400)
        if not isinstance(payload, dict):
            return PlainTextResponse("Invalid JSON payload", status_code=400)

        repo = payload.get("repository") or {}
        url = repo.get("url") if isinstance(repo, dict) else None
        if repo_slug(url) is None or repo_slug(url) != repo_slug(s.compiler_repo):
            log.info("webhook.ignored", reason="repository", repo=url)
            return PlainTextResponse("Ignored: not the configured repository", status_code=200)

        ref = payload.get("ref")
        if ref != f"refs/heads/{s.compiler_revision}":
            log.info("webhook.ignored", reason="branch", ref=ref)
            return PlainTextResponse(
                f"Ignored: not the configured branch ({s.compiler_revision})", status_code=200
            )

        log.info("webhook.rebuild_triggered", ref=ref)
        background.add_task(_rebuild)
        return PlainTextResponse("Rebuild triggered", status_code=202)

    return app
