"""FastAPI dependency that resolves the calling organization.

The API sits behind a gateway that has already verified the caller's JWT, so
the token is only decoded here (no signature check) to read the
``organizationId`` claim.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException
from fastapi import Request
from fastapi import status
from jose import JWTError
from jose import jwt

logger = logging.getLogger(__name__)

ORGANIZATION_CLAIM = "organizationId"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_organization_id(request: Request) -> str:
    """Return the ``organizationId`` claim of the bearer token or raise **401**."""

    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized("Not authenticated")

    try:
        claims = jwt.get_unverified_claims(token.strip())
    except JWTError as exc:
        logger.warning(f"Rejected malformed bearer token: {exc}")
        raise _unauthorized("Invalid token") from exc

    organization_id = claims.get(ORGANIZATION_CLAIM) if isinstance(claims, dict) else None
    if not organization_id or not isinstance(organization_id, str):
        raise _unauthorized("Token has no organizationId")

    return organization_id
