# medcycle/main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# create_all only sees tables whose models were imported
import medcycle.models  # noqa: F401
from medcycle.config.settings import settings
from medcycle.db.database import Base, SessionLocal, get_db
from medcycle.jobs import horizon_job, missed_dose_job
from medcycle.routers import fcm, grace_periods, medication_commands, medication_events
from medcycle.services.errors import MedicationError
from medcycle.services.factory import build_services, default_dispatcher
from medcycle.services.fcm_push import init_firebase

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger(__name__)


def create_app(
    session_factory=None,
    dispatcher=None,
    clock=None,
    start_scheduler: Optional[bool] = None,
) -> FastAPI:
    """
    session_factory / dispatcher / clock default to the configured database,
    FCM (or log-only) delivery and wall-clock time; tests pass their own.
    """
    factory = session_factory or SessionLocal
    run_scheduler = settings.scheduler_enabled if start_scheduler is None else start_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - create tables, connect Firebase when the key file exists
        - build the orchestrator / detector once
        - scheduler: missed-dose sweep every 15 minutes,
          horizon top-up every day at 00:05
        """
        Base.metadata.create_all(bind=factory.kw["bind"])

        init_firebase(settings.firebase_key_path)
        app_dispatcher = dispatcher or default_dispatcher(settings, factory, clock)
        services = build_services(settings, factory, app_dispatcher, clock)
        app.state.orchestrator = services.orchestrator
        app.state.detector = services.detector

        scheduler = None
        if run_scheduler:
            scheduler = AsyncIOScheduler(timezone=ZoneInfo(settings.timezone))
            scheduler.add_job(
                missed_dose_job,
                IntervalTrigger(minutes=settings.detector_interval_minutes),
                args=[services.detector],
                id="missed_dose",
                max_instances=1,
                coalesce=True,
            )
            scheduler.add_job(
                horizon_job,
                CronTrigger(hour=0, minute=5),
                args=[services.orchestrator],
                id="horizon",
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            logger.info("[scheduler] started")

        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
                logger.info("[scheduler] stopped")
            if dispatcher is None and hasattr(app_dispatcher, "shutdown"):
                app_dispatcher.shutdown(wait=False)

    app = FastAPI(title="medcycle", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MedicationError)
    async def medication_error_handler(request: Request, exc: MedicationError):
        if exc.http_status >= 500:
            logger.warning("[api] %s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.http_status, content={"success": False, "error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "invalid request",
                    "details": {"errors": jsonable_errors(exc)},
                },
            },
        )

    if session_factory is not None:
        def _get_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _get_db

    app.include_router(medication_commands.router)
    app.include_router(medication_events.router)
    app.include_router(grace_periods.router)
    app.include_router(fcm.router)

    @app.get("/")
    async def root():
        return {"message": "medcycle API is running", "version": "1.0.0"}

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]


app = create_app()
