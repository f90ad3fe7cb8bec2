"""Shared ids, keys and header builders for the route tests."""

from datetime import datetime, timezone

from agentplaybooks.web.auth import create_jwt

SESSION_SECRET = "test-secret-key-for-jwt-signing"

OWNER_ID = "11111111-1111-4111-8111-111111111111"
STRANGER_ID = "22222222-2222-4222-8222-222222222222"
PRIVATE_ID = "aaaaaaaa-aaaa-4aaa-8aaa-aaaaaaaaaaaa"
PUBLIC_ID = "bbbbbbbb-bbbb-4bbb-8bbb-bbbbbbbbbbbb"

PRIVATE_GUID = "0123456789abcdef"
PUBLIC_GUID = "fedcba9876543210"

CANVAS_KEY = "apb_live_" + "c" * 40
MEMORY_KEY = "apb_live_" + "d" * 40
FOREIGN_KEY = "apb_live_" + "e" * 40
EXPIRED_KEY = "apb_live_" + "f" * 40

# User-level keys act as their owner across all of the owner's playbooks
USER_KEY = "apb_live_" + "1" * 40
USER_READ_KEY = "apb_live_" + "2" * 40
USER_EXPIRED_KEY = "apb_live_" + "3" * 40

CREATED = datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def session_headers(user_id: str) -> dict[str, str]:
    return bearer(create_jwt(user_id, SESSION_SECRET))
