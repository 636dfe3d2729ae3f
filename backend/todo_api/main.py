import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from todo_api import __version__
from todo_api.api import notifications, tasks, users
from todo_api.core.config import settings
from todo_api.core.database import init_db
from todo_api.core.logging_setup import setup_logging
from todo_api.services.notification_service import get_notification_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(level=settings.log_level, log_file=settings.log_file or None)
    await init_db()

    service = get_notification_service()
    if settings.notifications_enabled:
        service.start()
    else:
        logger.info("Email notifications disabled by configuration")

    yield

    await service.stop()


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(users.router)
app.include_router(tasks.router)
app.include_router(notifications.router)


@app.get("/api/health")
async def health_check():
    return {"status": "ok"}
