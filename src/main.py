from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from src.api.router import api_router
from src.config import get_settings
from src.db.database import init_db
from src.scheduler.runner import shutdown_scheduler, start_scheduler

settings = get_settings()

DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting feedback reminder service ({settings.environment})")
    await init_db()

    # Serverless deployments trigger passes through /api/cron instead
    if settings.scheduler_enabled:
        start_scheduler()
    else:
        logger.info("In-process scheduler disabled")

    yield

    shutdown_scheduler()
    logger.info("Shutting down...")


def cors_origins() -> list:
    if not settings.cors_origins:
        return DEFAULT_CORS_ORIGINS
    return [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]


app = FastAPI(
    title="Feedback Reminder API",
    description="Scheduled review-request emails for submitted orders",
    version="0.1.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization", "X-Admin-Key"],
)

app.include_router(api_router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}
