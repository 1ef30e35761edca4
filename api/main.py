#!/usr/bin/env python3
import base64
import binascii
import hmac
import logging
import os
import sqlite3
from datetime import datetime, timezone

import anyio
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from download.aria2 import Aria2Client
from engine.admission import AdmissionController, disk_usage, storage_roots
from engine.audit import AuditLog, EventNotifier, record_transition
from engine.config import ConfigLoader, config_bool, config_float, config_int
from engine.errors import DaemonError
from engine.job_store import JobStore
from engine.paths import build_engine_paths, ensure_dir
from engine.provider_state import BackoffRegistry, PauseRegistry, RateLimiter
from engine.search import search_providers
from providers.registry import ProviderRegistry

APP_NAME = "JF Fetch"
_BASIC_AUTH_USER = os.environ.get("JF_FETCH_BASIC_AUTH_USER")
_BASIC_AUTH_PASS = os.environ.get("JF_FETCH_BASIC_AUTH_PASS")
_BASIC_AUTH_ENABLED = bool(_BASIC_AUTH_USER and _BASIC_AUTH_PASS)
_TRUST_PROXY = os.environ.get("JF_FETCH_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}
_HEALTH_TIMEOUT = 5


def _env_or_default(name, default):
    value = os.environ.get(name)
    return value if value else default


def _check_basic_auth(header_value):
    if not header_value or not header_value.startswith("Basic "):
        return False
    token = header_value[6:].strip()
    try:
        decoded = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    if ":" not in decoded:
        return False
    user, password = decoded.split(":", 1)
    return hmac.compare_digest(user, _BASIC_AUTH_USER) and hmac.compare_digest(password, _BASIC_AUTH_PASS)


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "api.log")
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


class CancelRequest(BaseModel):
    reason: str | None = None


class PauseRequest(BaseModel):
    note: str | None = None


app = FastAPI(title=APP_NAME)

if _TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@app.middleware("http")
async def basic_auth_middleware(request: Request, call_next):
    if not _BASIC_AUTH_ENABLED:
        return await call_next(request)
    if request.method == "OPTIONS":
        return await call_next(request)
    auth_header = request.headers.get("authorization")
    if not _check_basic_auth(auth_header):
        return PlainTextResponse(
            "Unauthorized",
            status_code=401,
            headers={"WWW-Authenticate": "Basic"},
        )
    return await call_next(request)


@app.on_event("startup")
async def startup():
    paths = build_engine_paths()
    _setup_logging(paths.log_dir)
    app.state.paths = paths
    app.state.config_loader = ConfigLoader(paths.config_path, paths.db_path)
    app.state.store = JobStore(paths.db_path, audit=AuditLog(paths.db_path))
    app.state.events = EventNotifier(paths.db_path)
    app.state.registry = ProviderRegistry(paths.db_path, lambda: app.state.config_loader.config)
    app.state.pauses = PauseRegistry(paths.db_path)
    app.state.backoffs = BackoffRegistry(paths.db_path)
    app.state.rate_limiter = RateLimiter(paths.db_path)
    app.state.daemon = None
    app.state.config_loader.reload()


def _config():
    return app.state.config_loader.reload()


def _daemon(config):
    if app.state.daemon is not None:
        return app.state.daemon
    return Aria2Client(config=config)


def _job_or_404(job_id):
    job = app.state.store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return job


def _provider_or_404(key):
    key = key.strip().lower()
    provider_id = app.state.store.provider_id_for_key(key)
    if provider_id is None:
        raise HTTPException(status_code=404, detail=f"Provider not found: {key}")
    return app.state.store.get_provider(provider_id)


def _database_ok(db_path):
    try:
        with sqlite3.connect(db_path, timeout=5) as conn:
            conn.execute("SELECT 1").fetchone()
    except sqlite3.Error as exc:
        return {"ok": False, "error": str(exc)}
    return {"ok": True}


@app.get("/api/health")
async def api_health():
    config = _config()
    daemon = _daemon(config)
    try:
        version = await anyio.to_thread.run_sync(daemon.get_version)
        aria2 = {"ok": True, "version": (version or {}).get("version")}
    except DaemonError as exc:
        aria2 = {"ok": False, "error": str(exc)}
    database = _database_ok(app.state.paths.db_path)
    return {
        "server_time": datetime.now(timezone.utc).isoformat(),
        "ok": aria2["ok"] and database["ok"],
        "aria2": aria2,
        "database": database,
    }


@app.get("/api/storage")
async def api_storage():
    config = _config()
    minimum_gb = config_float(config, "app.min_free_space_gb", 0.0)
    fail_open = config_bool(config, "app.free_space_fail_open", True)
    controller = AdmissionController(app.state.store)
    roots = []
    for root in storage_roots(config):
        entry = disk_usage(root)
        entry.update(controller.root_status(root, minimum_gb, fail_open))
        roots.append(entry)
    return {
        "minimum_free_gb": minimum_gb,
        "fail_open": fail_open,
        "gate_open": minimum_gb <= 0 or all(entry["ok"] for entry in roots),
        "roots": roots,
    }


@app.get("/api/jobs/stats")
async def api_job_stats():
    counts = app.state.store.stats()
    return {"counts": counts, "active": app.state.store.count_active()}


@app.post("/api/jobs/{job_id}/cancel")
async def api_cancel_job(job_id: int, payload: CancelRequest | None = None):
    job = _job_or_404(job_id)
    reason = (payload.reason if payload else None) or "Canceled by operator."
    if job.aria2_gid:
        daemon = _daemon(_config())
        try:
            await anyio.to_thread.run_sync(lambda: daemon.remove(job.aria2_gid, force=True))
        except DaemonError as exc:
            logging.warning("aria2 remove for job %s failed: %s", job.id, exc)
    if not app.state.store.request_cancel(job.id, reason):
        raise HTTPException(status_code=409, detail=f"Job {job.id} cannot be canceled from {job.status}")
    record_transition(app.state.store.audit, app.state.events, job, "job.canceled", notify=True, reason=reason)
    return app.state.store.get_job(job.id).to_dict()


@app.post("/api/jobs/{job_id}/retry")
async def api_retry_job(job_id: int):
    job = _job_or_404(job_id)
    if not app.state.store.request_retry(job.id):
        raise HTTPException(status_code=409, detail=f"Job {job.id} cannot be retried from {job.status}")
    record_transition(app.state.store.audit, app.state.events, job, "job.requeued", notify=True, previous_status=job.status)
    return app.state.store.get_job(job.id).to_dict()


@app.get("/api/providers/status")
async def api_providers_status():
    providers = [
        {"id": row["id"], "key": row["key"], "name": row["name"], "enabled": bool(row["enabled"])}
        for row in app.state.store.list_providers()
    ]
    return {
        "providers": providers,
        "paused": app.state.pauses.active(),
        "backoff": app.state.backoffs.active(),
        "rate_limits": app.state.rate_limiter.inspect(),
    }


@app.post("/api/providers/{key}/pause")
async def api_pause_provider(key: str, payload: PauseRequest | None = None):
    row = _provider_or_404(key)
    record = app.state.pauses.set(
        row["key"],
        provider_id=row["id"],
        provider_label=row["name"],
        note=payload.note if payload else None,
        reason="manual",
        paused_by="api",
    )
    return {"provider": row["key"], "paused": True, "record": record}


@app.post("/api/providers/{key}/resume")
async def api_resume_provider(key: str):
    row = _provider_or_404(key)
    app.state.pauses.clear(row["key"])
    app.state.backoffs.clear(row["key"])
    logging.info("Provider %s resumed by operator", row["key"])
    return {"provider": row["key"], "paused": False}


@app.get("/api/search")
async def api_search(
    q: str = Query(..., min_length=1),
    limit: int | None = Query(None, ge=1, le=200),
    providers: str | None = None,
):
    config = _config()
    limit = limit or config_int(config, "app.default_search_limit", 50)
    keys = [key for key in (providers or "").split(",") if key.strip()]
    return await anyio.to_thread.run_sync(
        lambda: search_providers(app.state.store, app.state.registry, q.strip(), limit, keys)
    )


if __name__ == "__main__":
    import uvicorn

    host = _env_or_default("JF_FETCH_HOST", "127.0.0.1")
    port = int(_env_or_default("JF_FETCH_PORT", "8000"))
    uvicorn.run("api.main:app", host=host, port=port, reload=False)
