# Load .env file FIRST before any other imports that use os.getenv
from dotenv import load_dotenv
load_dotenv()

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from safeguard.api.routes.alerts import router as alerts_router
from safeguard.api.routes.contacts import router as contacts_router
from safeguard.api.routes.delivery import router as delivery_router
from safeguard.api.routes.detections import router as detections_router
from safeguard.api.routes.metrics import router as metrics_router
from safeguard.api.routes.panic import router as panic_router
from safeguard.container import build_services
from safeguard.core.config import settings
from safeguard.core.errors import SafeguardError
from safeguard.db.database import initialize_database

app = FastAPI(title=settings.APP_NAME)

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(detections_router, prefix="/api/detections", tags=["detections"])
app.include_router(alerts_router, prefix="/api/alerts", tags=["alerts"])
app.include_router(contacts_router, prefix="/api/contacts", tags=["contacts"])
app.include_router(panic_router, prefix="/api/panic", tags=["panic"])
app.include_router(delivery_router, prefix="/api/delivery", tags=["delivery"])
app.include_router(metrics_router, prefix="/api/metrics", tags=["metrics"])


@app.exception_handler(SafeguardError)
async def _safeguard_error_handler(request: Request, exc: SafeguardError) -> JSONResponse:
    if exc.status_code >= 500:
        logging.warning("[api] %s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
async def health():
    services = getattr(app.state, "services", None)
    return {
        "status": "ok",
        "rules_loaded": bool(services and services.keyword_store.snapshot.keywords_loaded),
        "dispatcher_running": bool(services and services.dispatcher.running),
    }


# =============================================================================
# BACKGROUND JOBS
# =============================================================================
scheduler: Optional[AsyncIOScheduler] = None


async def _refresh_rules_job():
    try:
        await app.state.services.refresh_rules()
        logging.info("[scheduler] crisis rules refreshed")
    except Exception as exc:
        logging.exception("[scheduler] rule refresh failed: %s", exc)


async def _sweep_sessions_job():
    try:
        closed = await app.state.services.sweep_abandoned_sessions()
        if closed:
            logging.info("[scheduler] %d abandoned panic sessions closed", closed)
    except Exception as exc:
        logging.exception("[scheduler] session sweep failed: %s", exc)


@app.on_event("startup")
async def _start_services() -> None:
    # tests install their own container before startup
    if getattr(app.state, "services", None) is None:
        initialize_database()
        app.state.services = build_services(settings)
    await app.state.services.startup()


@app.on_event("startup")
async def _start_scheduler() -> None:
    global scheduler
    try:
        scheduler = AsyncIOScheduler()
        scheduler.add_job(_refresh_rules_job, IntervalTrigger(minutes=settings.RULE_REFRESH_MINUTES))
        scheduler.add_job(_sweep_sessions_job, IntervalTrigger(minutes=15))
        scheduler.start()
        logging.info(
            "[scheduler] started (rules every %d min, session sweep every 15 min)",
            settings.RULE_REFRESH_MINUTES,
        )
    except Exception as exc:  # pragma: no cover
        logging.exception("[scheduler] failed to start: %s", exc)


@app.on_event("shutdown")
async def _stop_scheduler() -> None:
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None
        logging.info("[scheduler] stopped")


@app.on_event("shutdown")
async def _stop_services() -> None:
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.shutdown()
