"""Playbook access guards.

Reads are open for public and unlisted playbooks and otherwise limited to
the owner. Writes accept a playbook API key carrying the required
permission, the owner's session, or the owner's user-level API key
carrying that permission, checked in that order.
"""

import logging
import re
from datetime import datetime, timezone

from fastapi import Depends, HTTPException, Request

from agentplaybooks.persistence.models import (
    ApiKeyRecord,
    PlaybookRecord,
    UserApiKeyRecord,
    UserRecord,
)
from agentplaybooks.persistence.postgres import PostgresRepository

from .auth import API_KEY_PREFIX, bearer_token, hash_api_key
from .deps import get_current_user, get_optional_user, get_repo

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


async def find_playbook(repo: PostgresRepository, id_or_guid: str) -> PlaybookRecord | None:
    """Look up a playbook by UUID id or by public guid."""
    if UUID_PATTERN.match(id_or_guid):
        return await repo.get_playbook(id_or_guid.lower())
    return await repo.get_playbook_by_guid(id_or_guid)


def can_read(playbook: PlaybookRecord, user: UserRecord | None) -> bool:
    if playbook.is_readable_by_anyone:
        return True
    return user is not None and playbook.user_id == user.id


async def validate_api_key(
    request: Request, repo: PostgresRepository, permission: str | None
) -> ApiKeyRecord | None:
    """Resolve the request's playbook API key.

    Returns None unless the request carries ``Bearer apb_...`` for an active,
    unexpired key holding ``permission`` (or ``full``) whose playbook still
    exists. ``permission=None`` skips the permission check.
    """
    token = bearer_token(request)
    if not token or not token.startswith(API_KEY_PREFIX):
        return None

    api_key = await repo.get_active_api_key_by_hash(hash_api_key(token))
    if not api_key:
        logger.info("Rejected unknown or inactive API key")
        return None

    if api_key.expires_at and api_key.expires_at < datetime.now(timezone.utc):
        logger.info(f"Rejected expired API key {api_key.key_prefix}")
        return None

    if permission and not api_key.has_permission(permission):
        logger.info(f"API key {api_key.key_prefix} lacks permission {permission}")
        return None

    await repo.touch_api_key(api_key.id)
    return api_key


async def validate_user_api_key(
    request: Request, repo: PostgresRepository, permission: str
) -> UserApiKeyRecord | None:
    """Resolve the request's user-level API key, the same way as ``validate_api_key``."""
    token = bearer_token(request)
    if not token or not token.startswith(API_KEY_PREFIX):
        return None

    user_key = await repo.get_active_user_api_key_by_hash(hash_api_key(token))
    if not user_key:
        return None

    if user_key.expires_at and user_key.expires_at < datetime.now(timezone.utc):
        logger.info(f"Rejected expired user API key {user_key.key_prefix}")
        return None

    if not user_key.has_permission(permission):
        logger.info(f"User API key {user_key.key_prefix} lacks permission {permission}")
        return None

    await repo.touch_user_api_key(user_key.id)
    return user_key


async def session_or_key_user(
    request: Request, repo: PostgresRepository, permission: str
) -> UserRecord | None:
    """The session user, else the owner of a user-level API key holding ``permission``."""
    user = await get_optional_user(request)
    if user:
        return user

    user_key = await validate_user_api_key(request, repo, permission)
    if not user_key:
        return None
    return await repo.get_user(user_key.user_id)


def user_from_session_or_key(permission: str):
    """Build a dependency requiring a session or a user API key with ``permission`` (401)."""

    async def dependency(
        request: Request,
        repo: PostgresRepository = Depends(get_repo),
    ) -> UserRecord:
        user = await session_or_key_user(request, repo, permission)
        if not user:
            raise HTTPException(401, "Unauthorized")
        return user

    return dependency


def key_matches(api_key: ApiKeyRecord, playbook: PlaybookRecord | None) -> bool:
    return playbook is not None and api_key.playbook_id == playbook.id


async def readable_playbook(
    guid: str,
    repo: PostgresRepository = Depends(get_repo),
    user: UserRecord | None = Depends(get_optional_user),
) -> PlaybookRecord:
    """Dependency: the addressed playbook if the caller may read it, else 404."""
    playbook = await find_playbook(repo, guid)
    if not playbook or not can_read(playbook, user):
        raise HTTPException(404, "Playbook not found")
    return playbook


def playbook_writer(permission: str):
    """Build a dependency that authorizes writes to the addressed playbook.

    1. A valid API key with ``permission`` must belong to the playbook (403).
    2. Without one, a session or a user API key with ``permission`` is required
       (401) and its user must own the playbook (403).
    """

    async def dependency(
        guid: str,
        request: Request,
        repo: PostgresRepository = Depends(get_repo),
    ) -> PlaybookRecord:
        api_key = await validate_api_key(request, repo, permission)
        if api_key:
            playbook = await find_playbook(repo, guid)
            if not key_matches(api_key, playbook):
                logger.warning(
                    f"API key {api_key.key_prefix} used against foreign playbook {guid}"
                )
                raise HTTPException(403, "API key does not match playbook")
            return playbook

        user = await session_or_key_user(request, repo, permission)
        if not user:
            raise HTTPException(401, "Unauthorized")

        playbook = await find_playbook(repo, guid)
        if not playbook or playbook.user_id != user.id:
            raise HTTPException(403, "Forbidden")
        return playbook

    return dependency


def managed_playbook(permission: str):
    """Build a dependency for owner routes that also accept a user API key."""

    async def dependency(
        guid: str,
        repo: PostgresRepository = Depends(get_repo),
        user: UserRecord = Depends(user_from_session_or_key(permission)),
    ) -> PlaybookRecord:
        playbook = await find_playbook(repo, guid)
        if not playbook or playbook.user_id != user.id:
            raise HTTPException(403, "Forbidden")
        return playbook

    return dependency


async def owned_playbook(
    guid: str,
    repo: PostgresRepository = Depends(get_repo),
    user: UserRecord = Depends(get_current_user),
) -> PlaybookRecord:
    """Dependency for owner-only routes: session required, ownership enforced."""
    playbook = await find_playbook(repo, guid)
    if not playbook or playbook.user_id != user.id:
        raise HTTPException(403, "Forbidden")
    return playbook
