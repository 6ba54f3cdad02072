"""
FastAPI application factory
"""
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import Response

from app.application.scheduler import start_scheduler, shutdown_scheduler
from app.application.services import build_services
from app.config import get_settings
from app.infrastructure.db.session import check_db_connection
from app.api.v1 import notifications, push

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ErrorLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every unhandled exception with its traceback, including sync routes."""

    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception:
            tb_str = traceback.format_exc()
            logger.error("\n%s\nERROR on %s %s\n%s%s", "=" * 60, request.method, request.url.path, tb_str, "=" * 60)
            return Response(content="Internal Server Error", status_code=500)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the notification services and start background jobs for the process lifetime."""
    services = build_services()
    app.state.services = services
    start_scheduler(services)
    try:
        yield
    finally:
        shutdown_scheduler()
        services.close()


def create_app() -> FastAPI:
    """
    Application factory

    Returns:
        Configured FastAPI app
    """
    settings = get_settings()

    app = FastAPI(
        title="MorphSave Notifications",
        debug=settings.DEBUG,
        lifespan=lifespan,
    )

    app.add_middleware(ErrorLoggingMiddleware)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SECRET_KEY
    )

    app.include_router(notifications.router)
    app.include_router(push.router)

    # Health checks
    @app.get("/health", response_class=PlainTextResponse, tags=["system"])
    def health():
        """Health check endpoint"""
        return "ok"

    @app.get("/ready", response_class=PlainTextResponse, tags=["system"])
    def ready():
        """Readiness check endpoint (database reachable)"""
        check_db_connection()
        return "ok"

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
