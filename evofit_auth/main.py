"""FastAPI application initialization."""

from contextlib import asynccontextmanager
from uuid import uuid4

from dotenv import load_dotenv

# Load environment variables before anything else
load_dotenv()

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from evofit_auth.api.admin import router as admin_router
from evofit_auth.api.auth import router as auth_router
from evofit_auth.api.cookies import clear_session_cookies, set_session_cookies
from evofit_auth.api.dependencies import SessionRejected
from evofit_auth.api.middleware import CorrelationIdMiddleware
from evofit_auth.api.routes import router
from evofit_auth.config import get_settings
from evofit_auth.services.identity_store import IdentityStore
from evofit_auth.services.logging_service import configure_logging, get_logger
from evofit_auth.services.oauth_service import build_oauth_providers
from evofit_auth.services.session_authority import SessionAuthority


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger = get_logger("main")

    if settings.is_production and settings.jwt_secret == "change-me-in-production":
        raise RuntimeError("JWT_SECRET must be set in production")

    try:
        from evofit_auth.database import init_database, run_migrations

        await init_database()
        await run_migrations()
        logger.info("database_initialized")
    except Exception as e:
        logger.warning(
            "database_initialization_failed",
            error=str(e),
            note="Continuing without database - auth requests will fail until it is reachable",
        )

    try:
        from evofit_auth.services.redis_service import get_redis

        await get_redis()
        logger.info("redis_initialized")
    except Exception as e:
        logger.warning(
            "redis_initialization_failed",
            error=str(e),
            note="Continuing without Redis - login throttling is disabled",
        )

    store = IdentityStore()
    app.state.identity_store = store
    app.state.session_authority = SessionAuthority.from_settings(store, settings)
    app.state.oauth_providers = build_oauth_providers(settings)

    logger.info(
        "application_started",
        environment=settings.environment,
        log_level=settings.log_level,
        google_oauth=app.state.oauth_providers["google"].configured,
    )

    yield

    try:
        from evofit_auth.database import close_database

        await close_database()
    except Exception as e:
        logger.warning("database_close_failed", error=str(e))

    try:
        from evofit_auth.services.redis_service import close_redis

        await close_redis()
    except Exception as e:
        logger.warning("redis_close_failed", error=str(e))

    logger.info("application_shutdown")


app = FastAPI(
    title="EvoFit Health Protocol - Auth API",
    description="Login, session rotation, role authorization and Google sign-in",
    version="1.0.0",
    lifespan=lifespan,
)


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or str(uuid4())


def _deliver_rotated_session(request: Request, response: Response) -> Response:
    """Attach a pair rotated earlier in this request to an error response."""
    rotated = getattr(request.state, "rotated_session", None)
    if rotated is not None:
        set_session_cookies(response, rotated, get_settings())
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors with the first failing field."""
    correlation_id = _correlation_id(request)
    logger = structlog.get_logger()

    errors = exc.errors()
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", ["unknown"]))
        message = first_error.get("msg", "Validation failed")
        detail = f"Field '{field}': {message}"
    else:
        detail = "Request validation failed"

    logger.warning(
        "validation_error",
        correlation_id=correlation_id,
        detail=detail,
    )

    response = JSONResponse(
        status_code=400,
        content={
            "error": "Validation error",
            "detail": detail,
            "correlation_id": correlation_id,
        },
        headers={"X-Correlation-Id": correlation_id},
    )
    return _deliver_rotated_session(request, response)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> Response:
    """Default HTTPException response, plus any silently rotated session."""
    response = await http_exception_handler(request, exc)
    return _deliver_rotated_session(request, response)


@app.exception_handler(SessionRejected)
async def session_rejected_handler(request: Request, exc: SessionRejected) -> JSONResponse:
    """Answer 401/403 from the authorization gate, keeping cookies consistent.

    A 403 after silent rotation still delivers the new pair; a 401 clears
    whatever session cookies the client sent.
    """
    settings = get_settings()
    response = JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=exc.headers,
    )
    if exc.rotated is not None:
        set_session_cookies(response, exc.rotated, settings)
    elif exc.clear_session:
        clear_session_cookies(response, settings)
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected failures (e.g. the database being unreachable) as a generic 500."""
    correlation_id = _correlation_id(request)
    structlog.get_logger().error(
        "unhandled_exception",
        correlation_id=correlation_id,
        method=request.method,
        path=request.url.path,
        error=str(exc),
        exc_info=exc,
    )
    response = JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "correlation_id": correlation_id},
        headers={"X-Correlation-Id": correlation_id},
    )
    return _deliver_rotated_session(request, response)


# CORS for the browser client; credentials are needed for the session cookies
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Access-Token", "X-Correlation-Id"],
)

# Correlation ID middleware for request tracking and observability
app.add_middleware(CorrelationIdMiddleware)

app.include_router(auth_router)
app.include_router(admin_router)
app.include_router(router)
