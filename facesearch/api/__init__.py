"""API v1 router initialization."""
from fastapi import APIRouter

from .search import router as search_router
from .sessions import router as sessions_router

# Create v1 router
router = APIRouter()

# Include face search endpoints
router.include_router(
    search_router,
    prefix="/search",
    tags=["search"]
)

router.include_router(
    sessions_router,
    prefix="/sessions",
    tags=["sessions"]
)
