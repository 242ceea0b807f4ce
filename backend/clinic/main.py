"""
Главный файл FastAPI приложения
Clinic Scheduling - запись на прием и уведомления пациентам
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .database import SessionLocal, init_db
from .routes.appointments import router as appointments_router
from .routes.notifications import router as notifications_router
from .services.exceptions import (
    ClinicError,
    InvalidStatusTransition,
    NotFound,
    PreconditionFailed,
    TimeConflict,
    ValidationError,
)
from .services.notifications import NotificationService
from .services.scheduler import NotificationScheduler
from .services.senders import get_channel_sender

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)

# Ошибка предметной области -> HTTP статус
ERROR_STATUS_CODES = {
    ValidationError: 400,
    NotFound: 404,
    TimeConflict: 409,
    InvalidStatusTransition: 409,
    PreconditionFailed: 412,
}


def seed_templates():
    """Шаблоны уведомлений по умолчанию"""
    db = SessionLocal()
    try:
        NotificationService(db).init_default_templates()
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    seed_templates()

    scheduler = None
    if settings.NOTIFICATION_SCHEDULER_ENABLED:
        scheduler = NotificationScheduler(SessionLocal, get_channel_sender())
        scheduler.start()
    app.state.notification_scheduler = scheduler

    logger.info(f"Приложение запущено ({settings.ENVIRONMENT})")
    yield

    if scheduler is not None:
        await scheduler.stop()


# FastAPI приложение
app = FastAPI(
    title="Clinic Scheduling API",
    description="API для записи на прием и уведомлений пациентам",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.DEBUG else [settings.SITE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ClinicError)
async def clinic_error_handler(request: Request, exc: ClinicError):
    status_code = 400
    for error_class, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_class):
            status_code = code
            break

    content = {"detail": exc.message}
    if isinstance(exc, TimeConflict) and exc.conflicting_id is not None:
        content["conflicting_id"] = exc.conflicting_id
    return JSONResponse(status_code=status_code, content=content)


# Подключение роутеров
app.include_router(appointments_router)
app.include_router(notifications_router)


@app.get("/health")
async def health_check():
    scheduler = getattr(app.state, "notification_scheduler", None)
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT,
        "scheduler_running": bool(scheduler and scheduler.is_running),
    }
