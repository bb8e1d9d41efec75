# app.py
from __future__ import annotations

# pyright: reportMissingImports=false
from dotenv import load_dotenv

load_dotenv()

import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import ClientDisconnect

from config import LOG_FORMAT, AppConfig, configure_logging, load_config
from render import render_form, render_submissions, render_success
from retention import retention_loop
from security import (
    AUTOFILL_METADATA_KEY,
    CSRF_FIELD,
    SlidingWindowRateLimiter,
    find_suspicious_pattern,
    generate_csrf_token,
    parse_research_metadata,
    sanitize_fields,
    validate_csrf_token,
)
from store import (
    RecordStore,
    StoreError,
    SubmissionFlags,
    SubmissionRecord,
    generate_submission_id,
)


# ============================================================
# Logging
# ============================================================

logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
)
logger = logging.getLogger(__name__)


# ============================================================
# Config
# ============================================================

APP_DIR = Path(__file__).resolve().parent
CONFIG_PATH = Path(os.getenv("CONFIG_PATH", str(APP_DIR / "config.json")))
DATA_PATH = Path(os.getenv("DATA_PATH", str(APP_DIR / "captured_data.json")))
LOG_PATH = Path(os.getenv("LOG_PATH", str(APP_DIR / "server.log")))

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))

# Upper bound (seconds) for reading a submission body.
BODY_READ_TIMEOUT = 10.0

METADATA_FIELD = "research_metadata"
CONTROL_FIELDS = {CSRF_FIELD, METADATA_FIELD}

REALTIME_REFRESH_SECONDS = 10

RATE_LIMIT_MESSAGE = "Too many requests. Please try again later."
CSRF_FAILED_MESSAGE = "Security validation failed"
NOT_FOUND_MESSAGE = "Endpoint not found"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def init_state(app: FastAPI) -> None:
    """
    Build the process-wide objects once and hang them on app.state:
    config (read-only), record store, rate limiter / block list.
    """
    config = load_config(CONFIG_PATH)
    configure_logging(config.logging, LOG_PATH)

    store = RecordStore(DATA_PATH)
    try:
        store.initialize()
    except StoreError as e:
        # Keep serving; the read/write paths will answer 500 until storage recovers.
        logger.error(f"Record store unavailable at startup: {e}")

    app.state.config = config
    app.state.store = store
    app.state.rate_limiter = SlidingWindowRateLimiter(
        max_requests=config.security.max_requests_per_minute,
        block_on_limit=config.security.block_suspicious_ips,
    )


# ============================================================
# FastAPI App
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup/shutdown lifecycle.

    1. Load config, configure logging, open the record store, create the limiter
    2. Start the retention sweeper (runs once immediately, then hourly)
    3. On shutdown: stop the sweeper; uvicorn drains in-flight requests
    """
    init_state(app)
    sweeper = asyncio.create_task(retention_loop(app.state.store, app.state.config))
    logger.info(f"Server ready (data: {DATA_PATH}, config: {CONFIG_PATH})")

    yield

    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    logger.info("Server stopped")


app = FastAPI(lifespan=lifespan)


def _client_id(request: Request) -> str:
    return (request.client.host if request.client else "") or "unknown"


def _error(status_code: int, message: str, headers: Optional[dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


# Middleware order: the one registered last runs first.
# add_security_headers wraps admission_gate, so 429 responses get the headers too.

@app.middleware("http")
async def admission_gate(request: Request, call_next):
    """Rate-limit admission. Runs before routing; no handler code sees a rejected request."""
    client = _client_id(request)
    logger.info(f"Request: {request.method} {request.url.path} ({client})")

    config: AppConfig = request.app.state.config
    if config.security.enable_rate_limiting:
        limiter: SlidingWindowRateLimiter = request.app.state.rate_limiter
        if not limiter.admit(client):
            logger.warning(f"Rate limit rejected {request.method} {request.url.path} from {client}")
            return _error(429, RATE_LIMIT_MESSAGE, headers={"Retry-After": str(int(limiter.window_seconds))})

    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    return _apply_security_headers(response)


def _apply_security_headers(response: Response) -> Response:
    """Shared by the middleware and the 500 handler (which runs outside the middleware stack)."""
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Unknown path and known path with the wrong method look the same to callers.
    if exc.status_code in (404, 405):
        return _error(404, NOT_FOUND_MESSAGE)
    return _error(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _apply_security_headers(_error(500, "Internal server error"))


def _require_feature(enabled: bool) -> None:
    if not enabled:
        raise HTTPException(status_code=404, detail=NOT_FOUND_MESSAGE)


# ============================================================
# Form
# ============================================================

@app.get("/")
def index():
    resp = HTMLResponse(render_form(generate_csrf_token()))
    # Each render carries a fresh token.
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _collect_form_fields(form: FormData) -> dict[str, Any]:
    """
    Flatten the submitted form: a key sent once maps to its string, a repeated
    key maps to the list of its strings. File parts are dropped.
    """
    fields: dict[str, Any] = {}
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            logger.debug(f"Ignoring file part in submission: {key}")
            continue
        if key in fields:
            prev = fields[key]
            fields[key] = (prev if isinstance(prev, list) else [prev]) + [value]
        else:
            fields[key] = value
    return fields


async def _read_form(request: Request) -> FormData:
    return await request.form()


def _wants_html(request: Request) -> bool:
    # Plain browser form posts ask for text/html; API / script clients get JSON.
    accept = (request.headers.get("accept") or "").lower()
    return "text/html" in accept


@app.post("/submit")
async def submit(request: Request):
    config: AppConfig = request.app.state.config
    store: RecordStore = request.app.state.store
    limiter: SlidingWindowRateLimiter = request.app.state.rate_limiter
    client = _client_id(request)

    try:
        form = await asyncio.wait_for(_read_form(request), timeout=BODY_READ_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning(f"Submission body read timed out: {client}")
        return _error(408, "Request timeout")
    except ClientDisconnect:
        logger.info(f"Client disconnected during submission, discarded: {client}")
        return Response(status_code=400)

    raw_fields = _collect_form_fields(form)

    # CSRF before anything touches the store.
    if config.security.enable_csrf and not validate_csrf_token(raw_fields.get(CSRF_FIELD)):
        logger.warning(f"CSRF validation failed: {client}")
        return _error(403, CSRF_FAILED_MESSAGE)

    fields = sanitize_fields({k: v for k, v in raw_fields.items() if k not in CONTROL_FIELDS})

    user_agent = request.headers.get("user-agent")
    hit = find_suspicious_pattern(user_agent, fields)
    if hit:
        logger.warning(f"Suspicious submission from {client} (pattern: {hit})")
        if config.security.block_suspicious_ips:
            # Takes effect from the next request; this one is still recorded.
            limiter.block(client)

    metadata = parse_research_metadata(raw_fields.get(METADATA_FIELD))

    record = SubmissionRecord(
        id=generate_submission_id(),
        timestamp=datetime.now(timezone.utc),
        client_address=client,
        user_agent=user_agent,
        research_metadata=metadata,
        form_fields=fields,
        flags=SubmissionFlags(
            is_suspicious=hit is not None,
            autofill_used=bool(metadata.get(AUTOFILL_METADATA_KEY)),
        ),
    )

    try:
        record = await run_in_threadpool(store.append, record)
    except StoreError:
        return _error(500, "Failed to save submission")

    logger.info(f"New submission {record.id} from {client}")
    logger.debug(f"Submission {record.id} fields: {', '.join(sorted(fields)) or '-'}")

    if _wants_html(request):
        return HTMLResponse(render_success(record.id))

    return {
        "success": True,
        "message": "Registration successful",
        "submissionId": record.id,
    }


# ============================================================
# Read side
# ============================================================

def _local_date(ts: datetime) -> date:
    # Naive timestamps are taken as server-local already.
    return ts.astimezone().date()


def compute_statistics(records: list[SubmissionRecord], today: Optional[date] = None) -> dict[str, int]:
    today = today or datetime.now().astimezone().date()
    return {
        "totalSubmissions": len(records),
        "autofillUsed": sum(1 for r in records if r.flags.autofill_used),
        "suspiciousActivity": sum(1 for r in records if r.flags.is_suspicious),
        "uniqueIPs": len({r.client_address for r in records}),
        "submissionsToday": sum(1 for r in records if _local_date(r.timestamp) == today),
    }


@app.get("/view-data")
def view_data(request: Request):
    config: AppConfig = request.app.state.config
    store: RecordStore = request.app.state.store
    limiter: SlidingWindowRateLimiter = request.app.state.rate_limiter

    try:
        records = store.load_all()
    except StoreError:
        return PlainTextResponse("Error reading data", status_code=500)

    summary = {
        "total": len(records),
        "autofill": sum(1 for r in records if r.flags.autofill_used),
        "suspicious": sum(1 for r in records if r.flags.is_suspicious),
        "blocked": limiter.blocked_count,
    }
    refresh = REALTIME_REFRESH_SECONDS if config.features.real_time_updates else None
    return HTMLResponse(render_submissions([r.to_json() for r in records], summary, refresh_seconds=refresh))


@app.get("/statistics")
def statistics(request: Request):
    config: AppConfig = request.app.state.config
    _require_feature(config.features.enable_statistics)

    try:
        records = request.app.state.store.load_all()
    except StoreError:
        return _error(500, "Failed to read data")

    return compute_statistics(records)


@app.get("/export")
def export(request: Request):
    config: AppConfig = request.app.state.config
    _require_feature(config.features.enable_export)

    try:
        content = request.app.state.store.read_raw()
    except StoreError:
        return _error(500, "Failed to read data")

    return Response(
        content=content,
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="captured_data.json"'},
    )


@app.get("/api/submissions")
def api_submissions(request: Request):
    config: AppConfig = request.app.state.config
    _require_feature(config.features.enable_api)

    try:
        records = request.app.state.store.load_all()
    except StoreError:
        return _error(500, "Failed to read data")

    return {
        "success": True,
        "data": [r.to_json() for r in records],
        "count": len(records),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    uvicorn.run("app:app", host=HOST, port=PORT, timeout_graceful_shutdown=10)
