"""FastAPI dependency injection."""

from fastapi import HTTPException, Request

from agentplaybooks.config import ServerConfig
from agentplaybooks.persistence.models import UserRecord
from agentplaybooks.persistence.postgres import PostgresRepository
from agentplaybooks.web.auth import session_user


def get_repo(request: Request) -> PostgresRepository:
    """Provide the PostgresRepository from app state."""
    return request.app.state.repo


def get_base_url(request: Request) -> str:
    """Public base URL used in exported documents."""
    server = getattr(request.app.state, "server_config", None) or ServerConfig()
    return server.base_url.rstrip("/")


async def get_optional_user(request: Request) -> UserRecord | None:
    """Return current user if authenticated, None otherwise.

    Never raises; anonymous access is allowed.
    """
    return await session_user(request)


async def get_current_user(request: Request) -> UserRecord:
    """Require an authenticated user. Raises 401 if not logged in."""
    user = await session_user(request)
    if not user:
        raise HTTPException(401, "Unauthorized")
    return user
