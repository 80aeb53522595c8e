from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.core.config import get_settings
from chatrelay.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class AdminPrincipal(BaseModel):
    # Operator identity recorded on recovery and alert audit rows.
    actor_id: str


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _token_matches(expected: str, provided: str | None) -> bool:
    return provided is not None and hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


async def require_admin(
    x_admin_token: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> AdminPrincipal:
    # Admin routes are open when no admin token is configured (local runs and tests).
    expected = get_settings().admin_api_token
    if expected and not _token_matches(expected, x_admin_token):
        raise _auth_error("Missing or invalid admin token")
    return AdminPrincipal(actor_id=(x_actor_id or "admin")[:128])


async def require_ingest_token(x_ingest_token: str | None = Header(default=None)) -> None:
    expected = get_settings().ingest_token
    if expected and not _token_matches(expected, x_ingest_token):
        raise _auth_error("Missing or invalid ingest token")
