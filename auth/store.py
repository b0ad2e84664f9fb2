"""
auth/store.py -- SQLAlchemy Core persistence layer for identity records.

Pattern: Repository + Data Mapper.
IdentityStore is the repository; _row_to_identity / _row_to_entry are the
mappers. The session manager never touches SQL directly.

Refresh tokens are stored one row per token rather than as an array column on
the identity. Adding a token is an INSERT, so two simultaneous logins for the
same identity cannot overwrite each other's entry. Mutations of one
identity's token set are also serialized in-process through a striped lock,
which keeps the insert-then-trim of the per-identity cap atomic.

Uniqueness:
  phone is UNIQUE NOT NULL. email is UNIQUE but nullable: identities created
  through code login have no email, and SQL treats NULLs as distinct, so any
  number of them coexist. Emails are lower-cased before every read and write.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or otp/.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import ConflictError
from auth.models import Identity, RefreshTokenEntry
from auth.tokens import hash_password
from auth.tokens import verify_password as _check_hash

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'storefront_auth.db'}"

_LOCK_STRIPES = 64

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("email", String(255), unique=True),  # NULL for code-only identities
    Column("phone", String(32), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for code-only identities
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),  # insertion order
    Column("identity_id", String(32), nullable=False, index=True),
    Column("token", Text, nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _now().isoformat()


def normalize_email(email: str | None) -> str | None:
    """Lower-case and strip an email. Blank input means "no email"."""
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity records and their active refresh tokens.

    Usage:
        store = IdentityStore()
        identity = store.create(phone="9999999999", password="secret")
        store.add_refresh_token(identity, token, ttl_days=7)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, max_refresh_tokens: int = 10) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self.max_refresh_tokens = max_refresh_tokens
        self._locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    @contextmanager
    def _identity_lock(self, identity_id: str) -> Iterator[None]:
        with self._locks[hash(identity_id) % _LOCK_STRIPES]:
            yield

    # ------------------------------------------------------------------
    # Identity queries
    # ------------------------------------------------------------------

    def create(
        self,
        phone: str,
        name: str = "",
        email: str | None = None,
        password: str | None = None,
    ) -> Identity:
        """Insert a new identity and return it.

        Raises ConflictError if the phone, or the email when one is given, is
        already registered. The pre-check gives the common case a clean error;
        the IntegrityError catch covers a concurrent insert that slips between
        the check and the write.
        """
        phone = phone.strip()
        email = normalize_email(email)
        if self.get_by_phone(phone) is not None or (email and self.get_by_email(email) is not None):
            raise ConflictError()
        identity_id = uuid.uuid4().hex
        password_hash = hash_password(password) if password else None
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _identities.insert().values(
                        id=identity_id,
                        name=(name or "").strip(),
                        email=email,
                        phone=phone,
                        password_hash=password_hash,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError as exc:
            raise ConflictError() from exc
        return Identity(
            id=identity_id,
            name=(name or "").strip(),
            email=email,
            phone=phone,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )

    def get_by_id(self, identity_id: str) -> Identity | None:
        """Look up an identity by id. Returns None if not found."""
        return self._get_one(_identities.c.id == identity_id)

    def get_by_email(self, email: str) -> Identity | None:
        """Look up an identity by email, case-insensitively. Returns None if not found."""
        email = normalize_email(email)
        if not email:
            return None
        return self._get_one(_identities.c.email == email)

    def get_by_phone(self, phone: str) -> Identity | None:
        """Look up an identity by exact phone number. Returns None if not found."""
        return self._get_one(_identities.c.phone == phone.strip())

    def get_or_create_by_phone(self, phone: str) -> tuple[Identity, bool]:
        """Return (identity, created) for phone, creating a password-less record if needed.

        Race policy: when two first-time verifications for the same new phone
        run together, one insert wins on the UNIQUE(phone) constraint and the
        loser re-reads the winner's record instead of failing.
        """
        existing = self.get_by_phone(phone)
        if existing is not None:
            return existing, False
        try:
            return self.create(phone=phone), True
        except ConflictError:
            winner = self.get_by_phone(phone)
            if winner is None:
                raise
            return winner, False

    def verify_password(self, identity: Identity, candidate: str | None) -> bool:
        """Return True iff identity has a password and candidate matches it.

        A password-less identity never matches, not even an empty candidate.
        """
        if not identity.password_hash or not candidate:
            return False
        return _check_hash(candidate, identity.password_hash)

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def add_refresh_token(self, identity: Identity, token: str, ttl_days: int = 7) -> None:
        """Append token to the identity's active set and persist it.

        When the set grows past max_refresh_tokens the oldest entries are
        dropped in the same transaction.
        """
        expires_at = (_now() + timedelta(days=ttl_days)).isoformat()
        with self._identity_lock(identity.id), self.engine.begin() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    identity_id=identity.id, token=token, expires_at=expires_at, created_at=_now_iso()
                )
            )
            self._trim_tokens(conn, identity.id)
            self._touch(conn, identity)
            identity.refresh_tokens = self._load_tokens(conn, identity.id)

    def remove_refresh_token(self, identity: Identity, token: str) -> bool:
        """Revoke one refresh token. Returns True if it was in the active set."""
        with self._identity_lock(identity.id), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.identity_id == identity.id) & (_refresh_tokens.c.token == token)
                )
            )
            self._touch(conn, identity)
            identity.refresh_tokens = self._load_tokens(conn, identity.id)
        return result.rowcount > 0

    def clear_refresh_tokens(self, identity: Identity) -> int:
        """Revoke every refresh token of the identity. Returns how many were removed."""
        with self._identity_lock(identity.id), self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.identity_id == identity.id))
            self._touch(conn, identity)
        identity.refresh_tokens = []
        return result.rowcount

    def replace_refresh_token(self, identity: Identity, old_token: str, new_token: str, ttl_days: int = 7) -> bool:
        """Swap old_token for new_token atomically (refresh rotation).

        Returns False, and inserts nothing, when old_token is no longer in the
        active set -- e.g. a concurrent refresh already rotated it.
        """
        expires_at = (_now() + timedelta(days=ttl_days)).isoformat()
        with self._identity_lock(identity.id), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.identity_id == identity.id) & (_refresh_tokens.c.token == old_token)
                )
            )
            if result.rowcount == 0:
                return False
            conn.execute(
                _refresh_tokens.insert().values(
                    identity_id=identity.id, token=new_token, expires_at=expires_at, created_at=_now_iso()
                )
            )
            self._touch(conn, identity)
            identity.refresh_tokens = self._load_tokens(conn, identity.id)
        return True

    def has_refresh_token(self, identity_id: str, token: str) -> bool:
        """Check the persisted active set directly, ignoring any cached Identity."""
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_refresh_tokens)
                .where((_refresh_tokens.c.identity_id == identity_id) & (_refresh_tokens.c.token == token))
            ).scalar()
        return (count or 0) > 0

    def purge_expired_refresh_tokens(self) -> int:
        """Delete refresh-token rows past their stored expiry. Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < _now_iso()))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_one(self, clause) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(clause)).fetchone()
            if row is None:
                return None
            return _row_to_identity(row, self._load_tokens(conn, row.id))

    def _load_tokens(self, conn: Connection, identity_id: str) -> list[RefreshTokenEntry]:
        rows = conn.execute(
            _refresh_tokens.select().where(_refresh_tokens.c.identity_id == identity_id).order_by(_refresh_tokens.c.id)
        ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def _trim_tokens(self, conn: Connection, identity_id: str) -> None:
        overflow = conn.execute(
            select(_refresh_tokens.c.id)
            .where(_refresh_tokens.c.identity_id == identity_id)
            .order_by(_refresh_tokens.c.id.desc())
            .offset(self.max_refresh_tokens)
        ).fetchall()
        if overflow:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.id.in_([r.id for r in overflow])))

    def _touch(self, conn: Connection, identity: Identity) -> None:
        now = _now_iso()
        conn.execute(_identities.update().where(_identities.c.id == identity.id).values(updated_at=now))
        identity.updated_at = now


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row, tokens: list[RefreshTokenEntry]) -> Identity:
    return Identity(
        id=row.id,
        name=row.name or "",
        email=row.email,
        phone=row.phone,
        password_hash=row.password_hash,
        refresh_tokens=tokens,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_entry(row) -> RefreshTokenEntry:
    return RefreshTokenEntry(token=row.token, expires_at=row.expires_at)
