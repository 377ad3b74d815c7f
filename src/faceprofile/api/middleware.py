"""Middleware: API key authentication."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from faceprofile.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)
# Plain upload forms find a custom header easier to set than a bearer token.
_header_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


def _key_matches(presented: str | None, expected: str) -> bool:
    if presented is None:
        return False
    return secrets.compare_digest(presented.encode(), expected.encode())


async def verify_api_key(
    request: Request,
    bearer: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    header_key: Annotated[str | None, Depends(_header_scheme)],
) -> None:
    """Reject the request unless it carries the configured API key.

    Without FACEPROFILE_API_KEY every request passes. Otherwise the key must
    come as ``Authorization: Bearer <key>`` or ``X-API-Key: <key>``. The legacy
    /profile upload is guarded the same way as the /api/v1 routes.
    """
    settings: Settings = request.app.state.settings
    if settings.api_key is None:
        return

    presented = bearer.credentials if bearer is not None else header_key
    if not _key_matches(presented, settings.api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
