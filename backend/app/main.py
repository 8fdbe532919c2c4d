from dotenv import load_dotenv
load_dotenv(dotenv_path="backend/.env", override=False)
from asyncio import create_task, sleep
from contextlib import asynccontextmanager
import logging, os, time, uuid

from fastapi import FastAPI, Request, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy import func

from .core.events import broadcaster
from .core.logging import init_logging
from .db.database import SessionLocal, init_db
from .models.email_model import Email as EmailModel
from .routers import analytics, approvals, emails, escalations, rules, settings
from .services.errors import DuplicateEmailError, EngineError, InvalidTransitionError, NotFoundError
from .services.llm_client import current_provider
from .services.queue_worker import pending, start_queue_worker, stop_queue_worker

log = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_logging()
    init_db()
    # the worker drains /ingest?defer=true submissions
    run_worker = os.getenv('ENGINE_WORKER', '0') == '1'
    if run_worker:
        start_queue_worker()

    async def _keepalive():
        while True:
            broadcaster.publish("keepalive", "{}")
            await sleep(KEEPALIVE_SECONDS)
    ka_task = create_task(_keepalive())
    log.info("engine_started", extra={"provider": current_provider()})
    yield
    ka_task.cancel()
    if run_worker:
        stop_queue_worker()


app = FastAPI(title="MailPilot Decision Engine", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv('CORS_ORIGINS', '*').split(','),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module, prefix in (
    (emails, "emails"),
    (approvals, "approvals"),
    (escalations, "escalations"),
    (rules, "rules"),
    (settings, "settings"),
    (analytics, "analytics"),
):
    app.include_router(module.router, prefix=f"/api/{prefix}", tags=[prefix])


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    # routers translate the common cases; this catches anything that slips through
    if isinstance(exc, NotFoundError):
        code = 404
    elif isinstance(exc, (InvalidTransitionError, DuplicateEmailError)):
        code = 409
    else:
        code = 503
    trace_id = getattr(request.state, 'trace_id', None)
    log.warning("engine_error", extra={"trace_id": trace_id, "path": request.url.path, "status": code, "reason": str(exc)})
    return JSONResponse(status_code=code, content={"detail": str(exc), "trace_id": trace_id})


@app.middleware("http")
async def trace_requests(request: Request, call_next):
    trace_id = request.headers.get("X-Trace-Id") or uuid.uuid4().hex[:8]
    request.state.trace_id = trace_id
    started = time.perf_counter()
    fields = {"trace_id": trace_id, "method": request.method, "path": request.url.path}
    try:
        response = await call_next(request)
    except Exception as exc:  # pragma: no cover
        elapsed = round((time.perf_counter() - started) * 1000, 1)
        log.error(f"ERR {request.method} {request.url.path} {type(exc).__name__}", exc_info=exc,
                  extra={**fields, "status": 500, "duration_ms": elapsed})
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error", "trace_id": trace_id})
    elapsed = round((time.perf_counter() - started) * 1000, 1)
    log.info(f"{request.method} {request.url.path} {response.status_code} {elapsed}ms",
             extra={**fields, "status": response.status_code, "duration_ms": elapsed})
    response.headers['X-Trace-Id'] = trace_id
    return response


@app.get("/health")
def health():
    with SessionLocal() as db:
        total = db.query(func.count(EmailModel.id)).scalar() or 0
    return {"status": "ok", "emails": total, "queued": pending(), "llm": current_provider()}


@app.get('/api/events')
async def engine_events(request: Request, only: str | None = Query(None, description="comma separated event names")):  # pragma: no cover
    wanted = {e.strip() for e in only.split(',')} if only else None

    async def stream():
        async for msg in broadcaster.subscribe():
            if await request.is_disconnected():
                break
            name = msg.split('\n', 1)[0].removeprefix('event: ')
            if wanted is None or name in wanted or name == 'keepalive':
                yield msg
    return StreamingResponse(stream(), media_type='text/event-stream')
