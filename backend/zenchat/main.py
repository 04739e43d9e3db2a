"""ZenChat - realtime chat API."""
import asyncio
from contextlib import asynccontextmanager, suppress
import logging
from pathlib import Path
import traceback

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

from zenchat.api.deps import get_request_ip
from zenchat.config import Settings, get_settings
from zenchat.errors import ChatError, InternalError, InvalidRequestError, RateLimitExceededError
from zenchat.logging import configure_logging
from zenchat.state import AppState, build_app_state

logger = logging.getLogger(__name__)


def _ensure_sqlite_directory(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


async def _prune_rate_limits(services: AppState) -> None:
    interval = max(1.0, services.limiter.window_seconds)
    while True:
        await asyncio.sleep(interval)
        services.limiter.prune()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    services: AppState = app.state.services
    from zenchat.database import Base

    # Import all models so they're registered with Base
    from zenchat import models  # noqa: F401

    engine = services.session_factory.kw["bind"]
    _ensure_sqlite_directory(str(engine.url))
    Base.metadata.create_all(bind=engine)

    pruner = asyncio.create_task(_prune_rate_limits(services))
    logger.info("%s started (%s)", services.settings.app_name, services.settings.environment)
    yield
    pruner.cancel()
    with suppress(asyncio.CancelledError):
        await pruner
    await services.registry.close_all()


def _log_internal(request: Request, exc: BaseException) -> None:
    logger.error(
        "500 - %s - %s - %s - %s",
        exc,
        request.url.path,
        request.method,
        get_request_ip(request),
        exc_info=(type(exc), exc, exc.__traceback__),
    )


def register_error_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(InternalError)
    async def handle_internal_error(request: Request, exc: InternalError):
        _log_internal(request, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.public_payload(settings.expose_error_details),
        )

    @app.exception_handler(ChatError)
    async def handle_chat_error(request: Request, exc: ChatError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        error = InvalidRequestError()
        payload = error.to_payload()
        payload["errors"] = jsonable_encoder(exc.errors())
        return JSONResponse(status_code=error.status_code, content=payload)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        _log_internal(request, exc)
        payload = InternalError().public_payload()
        if settings.expose_error_details:
            payload["detail"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(status_code=500, content=payload)


def create_app(settings: Settings | None = None, session_factory: sessionmaker | None = None) -> FastAPI:
    """Build the application around one service graph."""
    settings = settings or get_settings()
    if session_factory is None:
        from zenchat.database import SessionLocal

        session_factory = SessionLocal
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description="Authenticated realtime chat",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = build_app_state(settings, session_factory)

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        """Reject over-limit clients before any handler runs."""
        limiter = request.app.state.services.limiter
        decision = limiter.check(get_request_ip(request))
        if not decision.allowed:
            exc = RateLimitExceededError(
                retry_after=decision.retry_after,
                limit=limiter.max_requests,
                window_seconds=limiter.window_seconds,
            )
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_payload(),
                headers={
                    "Retry-After": str(max(1, round(exc.retry_after))),
                    "RateLimit-Limit": str(exc.limit),
                },
            )
        return await call_next(request)

    # CORS for frontend; added last so it also wraps rate-limit rejections
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app, settings)

    @app.get("/")
    async def root():
        return {"message": f"{settings.app_name} backend server is running"}

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "app": settings.app_name}

    from zenchat.api import auth, chats, messages, ws

    app.include_router(auth.router)
    app.include_router(chats.router, prefix="/api")
    app.include_router(messages.router, prefix="/api")
    app.include_router(ws.router)
    return app
