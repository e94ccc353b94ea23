from fastapi import APIRouter
from src.api.v1.auth import router as auth_router
from src.api.v1.board import router as board_router
from src.api.v1.cards import router as cards_router
from src.api.v1.comments import router as comments_router
from src.api.v1.history import router as history_router
from src.api.v1.favorites import router as favorites_router
from src.api.v1.media import router as media_router
from src.api.v1.health import router as health_router

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# Include routers
api_router.include_router(auth_router)
api_router.include_router(board_router)
api_router.include_router(cards_router)
api_router.include_router(comments_router)
api_router.include_router(history_router)
api_router.include_router(favorites_router)
api_router.include_router(media_router)
api_router.include_router(health_router)
