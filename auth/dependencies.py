"""
auth/dependencies.py -- FastAPI Depends() helpers: the Access Guard.

The only accepted credential is an "Authorization: Bearer <access token>"
header. Access tokens are trusted on signature + expiry alone; the guard does
not consult the identity's refresh-token set. Access tokens are short-lived
and not individually revocable -- only refresh tokens are.

try_get_identity_id() is the soft variant (returns None on failure).
get_current_identity_id() wraps it and raises UnauthorizedError (401).

On success the resolved id is also stored on request.state.identity_id so
downstream handlers outside the auth routes (cart, orders) can read it.

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import UnauthorizedError
from auth.tokens import CredentialCodec

_BEARER = "bearer "


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header[: len(_BEARER)].lower() != _BEARER:
        return None
    token = header[len(_BEARER) :].strip()
    return token or None


def try_get_identity_id(request: Request) -> str | None:
    """Resolve the request's bearer access token to an identity id, or None.

    Never raises -- callers that need a hard 401 should use
    get_current_identity_id().
    """
    token = _bearer_token(request)
    if token is None:
        return None
    codec: CredentialCodec = request.app.state.codec
    identity_id = codec.verify_access(token)
    if identity_id is not None:
        request.state.identity_id = identity_id
    return identity_id


def get_current_identity_id(request: Request) -> str:
    """Require a valid bearer access token. Raises UnauthorizedError otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity_id: str = Depends(get_current_identity_id)): ...
    """
    if _bearer_token(request) is None:
        raise UnauthorizedError("Access denied. No token provided.")
    identity_id = try_get_identity_id(request)
    if identity_id is None:
        raise UnauthorizedError()
    return identity_id
