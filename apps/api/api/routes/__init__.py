from fastapi import APIRouter

from .commands import router as commands_router
from .jobs import router as jobs_router
from .sessions import router as sessions_router

router = APIRouter()
router.include_router(commands_router)
router.include_router(jobs_router)
router.include_router(sessions_router)
