"""
main.py
FastAPI application entry point.
Registers all routers, middleware, exception handlers and the
startup/shutdown lifespan (database, optional Redis, change feed).
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.exc import SQLAlchemyError

from config.database import close_db, init_db
from config.redis_client import close_redis, init_redis
from config.settings import settings
from shared.exceptions import EngagementError, StoreError
from shared.realtime.feed import LocalChangeFeed, RedisChangeFeed, get_change_feed, set_change_feed

# Service routers
from services.connection.router import router as connection_router
from services.session.router import router as session_router
from services.task.router import router as task_router
from services.notification.router import router as notification_router
from services.notification.router import ws_router as notification_ws_router
from services.messaging.router import router as messaging_router
from services.messaging.router import ws_router as messaging_ws_router
from services.group.router import router as group_router
from services.review.router import router as review_router


# ── Logging ──────────────────────────────────────────────────

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    def filter(self, record: LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    if settings.LOG_FORMAT == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s")
        )
    handler.addFilter(RequestIdFilter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else settings.LOG_LEVEL.upper())


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info("Starting %s v%s (%s)", settings.APP_NAME, settings.APP_VERSION, settings.APP_ENV)

    await init_db()
    logger.info("Database connected")

    if settings.REALTIME_BACKEND == "redis":
        client = await init_redis()
        set_change_feed(RedisChangeFeed(client, queue_size=settings.REALTIME_QUEUE_SIZE))
        logger.info("Redis connected; change feed on Redis pub/sub")
    else:
        set_change_feed(LocalChangeFeed(queue_size=settings.REALTIME_QUEUE_SIZE))
        logger.info("Change feed running in-process")

    yield

    await get_change_feed().close()
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Tutoring Engagement API

The tutor ↔ student engagement lifecycle:
- **Connections**: request → accepted / rejected, re-request after rejection
- **Sessions**: tutor bookings (confirmed) and student requests (pending)
- **Tasks**: homework and quizzes on an accepted relationship
- **Notifications**: one per lifecycle transition, with unread badges
- **Messages**: direct and study-group threads with read tracking
- **Realtime**: `/ws/notifications`, `/ws/messages/{id}`, `/ws/groups/{id}`

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>`.
WebSockets take the same token as `?token=`.

### Roles
- `STUDENT`: request connections and sessions, complete tasks, review sessions
- `TUTOR`: respond to requests, book sessions, assign tasks
- `BOTH`: either side, chosen per operation
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (outermost first) ───────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(EngagementError)
    async def engagement_error_handler(request: Request, exc: EngagementError):
        request_id = getattr(request.state, "request_id", None)
        if isinstance(exc, StoreError):
            logger.error("[%s] %s: %s", request_id, exc.detail, exc.original_error)
        content = {"detail": exc.detail, "code": exc.code, "request_id": request_id}
        current_status = getattr(exc, "current_status", None)
        if current_status is not None:
            content["current_status"] = current_status
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(SQLAlchemyError)
    async def store_error_handler(request: Request, exc: SQLAlchemyError):
        """Store failures outside an explicit commit. Surfaced as generic, never retried."""
        return await engagement_error_handler(request, StoreError(request.url.path, exc))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error("[%s] Unhandled exception: %s", request_id, exc, exc_info=True)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "request_id": request_id},
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from sqlalchemy import text

        from config.database import AsyncSessionLocal
        from config.redis_client import redis_client

        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except SQLAlchemyError:
            checks["database"] = "error"
            checks["status"] = "degraded"

        if settings.REALTIME_BACKEND == "redis":
            try:
                await redis_client.ping()
                checks["redis"] = "ok"
            except Exception:
                checks["redis"] = "error"
                checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    # Register all service routers
    app.include_router(connection_router)
    app.include_router(session_router)
    app.include_router(task_router)
    app.include_router(notification_router)
    app.include_router(messaging_router)
    app.include_router(group_router)
    app.include_router(review_router)
    app.include_router(notification_ws_router)
    app.include_router(messaging_ws_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
