"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class. The store and the session manager do the work; these
own the shape plus trivial read-only helpers.

Layer rule: no imports from api/, core/, or otp/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class RefreshTokenEntry:
    """One active session: the raw refresh token and its store-side expiry."""

    token: str
    expires_at: str  # ISO 8601 UTC


@dataclass
class Identity:
    """The durable record of a user.

    phone is the identity anchor: password registration and one-time-code
    login for the same phone resolve to the same record.

    email is None for identities created purely through code login, and
    password_hash is None for the same reason. Neither absence is an error.

    refresh_tokens is ordered oldest first. It is the sole authority for
    whether a refresh token may still be exchanged.
    """

    phone: str
    id: str | None = None
    name: str = ""
    email: str | None = None
    password_hash: str | None = None  # None = code-only identity
    refresh_tokens: list[RefreshTokenEntry] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None

    def has_refresh_token(self, token: str) -> bool:
        return any(entry.token == token for entry in self.refresh_tokens)
