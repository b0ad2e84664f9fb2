"""
auth/tokens.py -- Credential codec and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Two token classes share one shape but never a
       key: access tokens are signed with ACCESS_SIGNING_KEY, refresh tokens
       with REFRESH_SIGNING_KEY, and each carries a "type" claim so a token of
       one class is rejected by the other verifier even if the keys were ever
       misconfigured to match. Every token has a random jti, so two tokens
       issued for the same identity in the same second are still distinct.
       Verification returns None on any failure -- callers cannot tell a
       forged token from an expired one.

  Passwords: bcrypt, used directly. The _DUMMY_HASH constant enables timing
       equalization in password login so response time does not reveal
       whether an email is registered.

Layer rule: no imports from api/ or otp/. Import from core/ is allowed.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import Settings

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

# bcrypt only looks at the first 72 bytes; newer releases raise instead of
# truncating, so truncate explicitly on both sides.
_BCRYPT_MAX_BYTES = 72


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def _pw_bytes(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_pw_bytes(plain), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Malformed hashes count as a mismatch rather than an error.
    """
    try:
        return bcrypt.checkpw(_pw_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash. Computed once at module load so the first
# login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("storefront_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison against a throwaway hash and discard the result."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


class CredentialCodec:
    """Signs and verifies access and refresh tokens.

    Stateless apart from its keys and lifetimes: the same codec instance is
    shared across all requests.
    """

    def __init__(
        self,
        access_key: str,
        refresh_key: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        if not access_key or not refresh_key:
            raise ValueError("Both signing keys must be configured.")
        self._keys = {ACCESS: access_key, REFRESH: refresh_key}
        self._ttls = {ACCESS: access_ttl, REFRESH: refresh_ttl}

    @classmethod
    def from_settings(cls, settings: Settings) -> CredentialCodec:
        return cls(
            access_key=settings.access_signing_key,
            refresh_key=settings.refresh_signing_key,
            access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
        )

    @property
    def refresh_ttl(self) -> timedelta:
        return self._ttls[REFRESH]

    def issue_access(self, identity_id: str) -> str:
        return self._issue(ACCESS, identity_id)

    def issue_refresh(self, identity_id: str) -> str:
        return self._issue(REFRESH, identity_id)

    def verify_access(self, token: str) -> str | None:
        """Return the identity id carried by a valid access token, else None."""
        return self._verify(ACCESS, token)

    def verify_refresh(self, token: str) -> str | None:
        """Return the identity id carried by a valid refresh token, else None."""
        return self._verify(REFRESH, token)

    def _issue(self, kind: str, identity_id: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(identity_id),
            "type": kind,
            "iat": now,
            "exp": now + self._ttls[kind],
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._keys[kind], algorithm=_ALGORITHM)

    def _verify(self, kind: str, token: str) -> str | None:
        if not token or not isinstance(token, str):
            return None
        try:
            payload = jwt.decode(token, self._keys[kind], algorithms=[_ALGORITHM])
        except JWTError:
            return None
        if payload.get("type") != kind:
            return None
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        return subject
