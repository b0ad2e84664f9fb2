"""
api/routes/auth.py -- Authentication REST endpoints.

Routes (mounted under /api by api/main.py):
  POST /api/users/register        -- create identity; returns user + token pair (201)
  POST /api/users/login           -- email + password login
  POST /api/users/refresh-token   -- exchange refresh token for a new access token
  POST /api/users/logout          -- revoke one session, or all with a bearer token
  GET  /api/users/me              -- current identity (requires bearer)
  POST /api/auth/send-otp         -- issue a one-time code for a phone
  POST /api/auth/verify-otp       -- code login; creates the identity on first use

Handlers are plain `def` so FastAPI runs them in its thread pool -- the stores
are blocking SQLite calls. Failures are raised as auth.errors exceptions and
rendered by the handler in api/main.py; no handler builds an error body itself.

Security:
  Cache-Control: no-store on every response that carries tokens.
  Wrong password and unknown email share one error (InvalidCredentials).
  send-otp never returns the code.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    AuthData,
    LoginRequest,
    RefreshTokenRequest,
    RegisterRequest,
    SendCodeRequest,
    SuccessResponse,
    UserView,
    VerifyCodeRequest,
)
from auth.dependencies import get_current_identity_id, try_get_identity_id
from auth.sessions import SessionManager

# Auth policy:
# - POST /users/register, /users/login, /users/refresh-token: public
# - POST /users/logout: public; a valid bearer upgrades it to logout-everywhere
# - GET  /users/me: requires bearer (get_current_identity_id)
# - POST /auth/send-otp, /auth/verify-otp: public
router = APIRouter()


def _sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def _token_response(body: SuccessResponse, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=body.to_json())
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Password path
# ---------------------------------------------------------------------------


@router.post("/users/register", status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Register a new identity and sign it in. 409 if the phone or email is taken."""
    result = _sessions(request).register(
        phone=body.phone,
        password=body.password,
        email=body.email,
        name=body.name,
    )
    return _token_response(
        SuccessResponse(success=True, message="User registered successfully", data=AuthData.from_result(result)),
        status_code=201,
    )


@router.post("/users/login")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password."""
    result = _sessions(request).login_with_password(body.email, body.password)
    return _token_response(
        SuccessResponse(success=True, message="Login successful", data=AuthData.from_result(result))
    )


# ---------------------------------------------------------------------------
# Token renewal and revocation
# ---------------------------------------------------------------------------


@router.post("/users/refresh-token")
def refresh_token(request: Request, body: RefreshTokenRequest) -> JSONResponse:
    """Mint a new access token. The refresh token is only rotated when configured."""
    result = _sessions(request).refresh(body.refresh_token)
    if result.refresh_token is not None:
        data = AuthData(access_token=result.access_token, refresh_token=result.refresh_token)
    else:
        data = AuthData(access_token=result.access_token)
    return _token_response(SuccessResponse(success=True, message="Token refreshed successfully", data=data))


@router.post("/users/logout")
def logout(request: Request, body: RefreshTokenRequest | None = None) -> JSONResponse:
    """Revoke the given refresh token; with a valid bearer, revoke every session.

    Always 200 -- logging out an already-dead session is not an error.
    """
    identity_id = try_get_identity_id(request)
    _sessions(request).logout(
        refresh_token=body.refresh_token if body is not None else None,
        identity_id=identity_id,
    )
    return JSONResponse(content=SuccessResponse(success=True, message="Logged out successfully").to_json())


@router.get("/users/me")
def me(request: Request, identity_id: str = Depends(get_current_identity_id)) -> JSONResponse:
    """Return the public view of the authenticated identity."""
    identity = _sessions(request).get_profile(identity_id)
    return JSONResponse(content={"success": True, "data": {"user": UserView.from_identity(identity).model_dump(by_alias=True)}})


# ---------------------------------------------------------------------------
# One-time-code path
# ---------------------------------------------------------------------------


@router.post("/auth/send-otp")
def send_otp(request: Request, body: SendCodeRequest) -> JSONResponse:
    """Issue a one-time code for the phone. The response never contains the code."""
    _sessions(request).request_code(body.phone)
    return JSONResponse(content=SuccessResponse(success=True, message="OTP sent").to_json())


@router.post("/auth/verify-otp")
def verify_otp(request: Request, body: VerifyCodeRequest) -> JSONResponse:
    """Consume a one-time code and sign in; unknown phones are registered implicitly."""
    result = _sessions(request).verify_code(body.phone, body.otp)
    return _token_response(
        SuccessResponse(success=True, message="OTP verified successfully", data=AuthData.from_result(result))
    )
