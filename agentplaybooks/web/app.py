"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import auth_router, profile_router
from .canvas import canvas_router
from .mcp import mcp_router
from .memory import memory_router
from .routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage async engine lifecycle."""
    from sqlalchemy.ext.asyncio import create_async_engine

    from agentplaybooks.config import load_config
    from agentplaybooks.persistence.postgres import PostgresRepository

    config = load_config()

    # Engine may be pre-created by CLI and stored on app.state
    if not getattr(app.state, "engine", None):
        app.state.engine = create_async_engine(
            config.database.url,
            pool_size=config.database.pool_max_size,
        )

    if not getattr(app.state, "repo", None):
        app.state.repo = PostgresRepository(app.state.engine)

    # Store configs (may already be set by CLI)
    if not getattr(app.state, "auth_config", None):
        app.state.auth_config = config.auth
    if not getattr(app.state, "server_config", None):
        app.state.server_config = config.server

    if not app.state.auth_config.enabled:
        logger.warning("AUTH_SESSION_SECRET not set: session login disabled, API keys only")

    yield

    if hasattr(app.state, "engine") and app.state.engine:
        await app.state.engine.dispose()


def _validation_message(exc: RequestValidationError) -> str:
    """First validation error as a readable sentence."""
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    error = errors[0]
    message = error.get("msg", "Invalid request").removeprefix("Value error, ")
    if error.get("type") == "json_invalid":
        return "Invalid JSON body"
    if error.get("type") == "value_error":
        return message
    location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
    return f"{location}: {message}" if location else message


def install_error_handlers(app: FastAPI) -> None:
    """Render every error as ``{"error": message}``."""

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            {"error": exc.detail},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": _validation_message(exc)}, status_code=400)

    @app.exception_handler(SQLAlchemyError)
    async def database_error(request: Request, exc: SQLAlchemyError):
        logger.exception(f"Database error on {request.method} {request.url.path}: {exc}")
        message = str(getattr(exc, "orig", None) or exc)
        return JSONResponse({"error": message}, status_code=500)


def create_app(engine=None, cors_origins: list[str] | None = None) -> FastAPI:
    """Create FastAPI application.

    Args:
        engine: Optional AsyncEngine. If None, created in lifespan from config.
        cors_origins: Allowed CORS origins. Defaults to any origin.
    """
    app = FastAPI(
        title="AgentPlaybooks API",
        description="Playbooks of personas, skills, MCP servers, canvas documents and memory for AI agents",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Pre-set engine if provided (lifespan will use it instead of creating one)
    if engine is not None:
        app.state.engine = engine

    install_error_handlers(app)

    app.include_router(router, prefix="/api")
    app.include_router(memory_router, prefix="/api")
    app.include_router(canvas_router, prefix="/api")
    app.include_router(auth_router)
    app.include_router(profile_router)
    app.include_router(mcp_router)

    return app
