from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.core import ApiError, Settings, get_settings
from src.api.v1 import api_router
from src.core.middleware import BodySizeLimitMiddleware, RequestLoggingMiddleware
from src.logs import api_logger, debug_logger, storage_logger
from src.services.board_store import BoardStore
from src.services.rate_limiter import RateLimiter
from src.services.store_factory import build_store


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(exc.detail, status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg") if errors else "Invalid request body"
        return JSONResponse(
            {"error": "BAD_JSON", "message": message},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        api_logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            {"error": "INTERNAL_ERROR"},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[BoardStore] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Application with its own store, media collector and rate-limit table."""
    settings = settings or get_settings()
    store = store or build_store(settings)
    rate_limiter = rate_limiter or RateLimiter(max_entries=settings.RATE_LIMIT_STATE_MAX_ENTRIES)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        try:
            await store.startup()
        except Exception:
            storage_logger.exception(f"[{store.backend}] store startup failed")
            raise
        if store.gc is not None:
            store.gc.start()
        store.schedule_gc("startup")
        api_logger.info(f"{settings.PROJECT_NAME} started with {store.backend} storage")

        yield

        if store.gc is not None:
            await store.gc.stop()
        await store.shutdown()
        api_logger.info(f"{settings.PROJECT_NAME} stopped")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Persistence API for a kiosk Kanban board",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.rate_limiter = rate_limiter

    _register_exception_handlers(app)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["ETag", "Retry-After"],
        max_age=3600,
    )
    app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.MAX_JSON_BYTES)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(api_router)

    @app.get("/")
    async def root():
        """Health check endpoint"""
        debug_logger.debug("Health check")
        return {"ok": True}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    print("\033[1;36m" + "=" * 50 + "\033[0m")  # Cyan
    print("\033[1;36m" + "  Запуск API сервера канбан-доски" + "\033[0m")  # Cyan
    print("\033[1;36m" + "=" * 50 + "\033[0m")  # Cyan

    api_logger.info("Сервер запускается на http://0.0.0.0:8000")

    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=get_settings().DEBUG,
        log_level="info"
    )
