"""
auth/sessions.py -- Session lifecycle: register, login, code login, refresh, logout.

A login attempt moves Unauthenticated -> Verifying -> Authenticated on the
password path, or Unauthenticated -> CodeIssued -> Verifying -> Authenticated
on the one-time-code path. Authenticated yields an access + refresh pair.
Refresh and logout are independent operations on the identity's refresh-token
set, not further transitions of that machine.

Logout has two scopes:
  - an explicit refresh token (no bearer) revokes that one session;
  - a valid bearer access token revokes every session of its identity.

Storage failures never escape as-is. SQLAlchemy and sqlite3 errors are logged
with their traceback and re-raised as InternalError, so the HTTP layer only
ever sees the auth error taxonomy.

Layer rule: no imports from api/. FastAPI is not referenced here -- the
manager is usable from any caller.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import (
    InternalError,
    InvalidCredentials,
    InvalidOrExpiredCode,
    InvalidToken,
    NotFoundError,
    ValidationError,
)
from auth.models import Identity
from auth.store import IdentityStore
from auth.tokens import CredentialCodec, burn_password_check
from core.config import Settings
from otp.delivery import CodeDelivery
from otp.store import OneTimeCodeStore

logger = logging.getLogger("storefront.auth")

# One "@", something on each side, a dot in the domain.
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class AuthResult:
    """Outcome of a successful authentication: who, plus a fresh token pair."""

    identity: Identity
    access_token: str
    refresh_token: str


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str | None = None  # set only when rotation is enabled


class SessionManager:
    """Orchestrates the credential lifecycle against the identity and code stores."""

    def __init__(
        self,
        identities: IdentityStore,
        codes: OneTimeCodeStore,
        codec: CredentialCodec,
        delivery: CodeDelivery,
        settings: Settings,
    ) -> None:
        self.identities = identities
        self.codes = codes
        self.codec = codec
        self.delivery = delivery
        self.settings = settings
        self._phone_re = re.compile(settings.phone_pattern)

    # ------------------------------------------------------------------
    # Password path
    # ------------------------------------------------------------------

    def register(
        self,
        phone: str,
        password: str | None = None,
        email: str | None = None,
        name: str = "",
    ) -> AuthResult:
        """Create an identity and sign it in. Raises ConflictError on duplicate phone/email."""
        phone = self._require_phone(phone)
        if email is not None and email.strip() and not _EMAIL_RE.match(email.strip()):
            raise ValidationError("Invalid email address")
        with self._storage_errors("register"):
            identity = self.identities.create(phone=phone, name=name, email=email, password=password)
            result = self._start_session(identity)
        logger.info("Registered identity %s", identity.id)
        return result

    def login_with_password(self, email: str | None, password: str | None) -> AuthResult:
        """Authenticate by email + password.

        Unknown email and wrong password raise the same InvalidCredentials,
        and both run one bcrypt comparison so timing does not tell them apart.
        """
        if not email or not email.strip() or not password:
            raise ValidationError("Email and password are required")
        with self._storage_errors("login"):
            identity = self.identities.get_by_email(email)
            if identity is None or not identity.password_hash:
                burn_password_check(password)
                raise InvalidCredentials()
            if not self.identities.verify_password(identity, password):
                raise InvalidCredentials()
            return self._start_session(identity)

    # ------------------------------------------------------------------
    # One-time-code path
    # ------------------------------------------------------------------

    def request_code(self, phone: str) -> None:
        """Issue a code for phone and hand it to the delivery transport.

        Delivery failures are logged and swallowed: the code stays issued and
        the caller is not told whether delivery worked.
        """
        phone = self._require_phone(phone, message="Invalid phone number")
        with self._storage_errors("request_code"):
            code = self.codes.issue(phone)
        try:
            self.delivery.deliver(phone, code)
        except Exception:
            logger.exception("Code delivery failed for %s", phone)

    def verify_code(self, phone: str, code: str) -> AuthResult:
        """Consume a code and sign in the phone's identity, creating it on first use."""
        if not phone or not code:
            raise InvalidOrExpiredCode()
        phone = phone.strip()
        with self._storage_errors("verify_code"):
            if not self.codes.consume(phone, code.strip()):
                raise InvalidOrExpiredCode()
            identity, created = self.identities.get_or_create_by_phone(phone)
            if created:
                logger.info("Created identity %s on first code login", identity.id)
            return self._start_session(identity)

    # ------------------------------------------------------------------
    # Token renewal and revocation
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str | None) -> RefreshResult:
        """Exchange a refresh token for a new access token.

        The signature is necessary but not sufficient: the token must still be
        in its owner's active set. Every failure raises the same InvalidToken.
        """
        if not refresh_token:
            raise ValidationError("Refresh token is required")
        identity_id = self.codec.verify_refresh(refresh_token)
        if identity_id is None:
            raise InvalidToken()
        with self._storage_errors("refresh"):
            identity = self.identities.get_by_id(identity_id)
            if identity is None or not identity.has_refresh_token(refresh_token):
                raise InvalidToken()
            access = self.codec.issue_access(identity.id)
            if not self.settings.rotate_refresh_tokens:
                return RefreshResult(access_token=access)
            rotated = self.codec.issue_refresh(identity.id)
            if not self.identities.replace_refresh_token(
                identity, refresh_token, rotated, ttl_days=self.settings.refresh_token_expire_days
            ):
                # A concurrent refresh rotated this token first.
                raise InvalidToken()
            return RefreshResult(access_token=access, refresh_token=rotated)

    def logout(self, refresh_token: str | None = None, identity_id: str | None = None) -> None:
        """Revoke sessions.

        refresh_token: removed from its owner's set if it verifies.
        identity_id:   the bearer's identity; all of its refresh tokens go.
        """
        with self._storage_errors("logout"):
            if refresh_token:
                owner_id = self.codec.verify_refresh(refresh_token)
                owner = self.identities.get_by_id(owner_id) if owner_id else None
                if owner is not None:
                    self.identities.remove_refresh_token(owner, refresh_token)
            if identity_id:
                identity = self.identities.get_by_id(identity_id)
                if identity is not None:
                    removed = self.identities.clear_refresh_tokens(identity)
                    logger.info("Logged out identity %s everywhere (%d sessions)", identity_id, removed)

    def get_profile(self, identity_id: str) -> Identity:
        with self._storage_errors("get_profile"):
            identity = self.identities.get_by_id(identity_id)
        if identity is None:
            raise NotFoundError()
        return identity

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_session(self, identity: Identity) -> AuthResult:
        access = self.codec.issue_access(identity.id)
        refresh = self.codec.issue_refresh(identity.id)
        self.identities.add_refresh_token(identity, refresh, ttl_days=self.settings.refresh_token_expire_days)
        return AuthResult(identity=identity, access_token=access, refresh_token=refresh)

    def _require_phone(self, phone: str | None, message: str = "Invalid phone number") -> str:
        phone = (phone or "").strip()
        if not self._phone_re.fullmatch(phone):
            raise ValidationError(message)
        return phone

    @contextmanager
    def _storage_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (SQLAlchemyError, sqlite3.Error) as exc:
            logger.exception("Storage failure during %s", operation)
            raise InternalError() from exc
