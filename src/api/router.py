from fastapi import APIRouter

from src.api.admin import router as admin_router
from src.api.cron import router as cron_router

api_router = APIRouter()
api_router.include_router(cron_router)
api_router.include_router(admin_router)
