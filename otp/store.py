"""
otp/store.py -- SQLite-backed store for short-lived one-time login codes.

One row per contact (phone number). Issuing a code for a contact replaces any
code that contact already had, so only the most recent code can verify.
Consuming a code is a single conditional DELETE: whichever request deletes
the row first wins, and every later attempt with the same code fails.

Codes are kept as SHA-256 digests. Expiry is checked lazily -- an expired row
found during consume() is removed on the spot -- and purge_expired() trims
whatever nobody came back for.

Usage:
    codes = OneTimeCodeStore()
    code = codes.issue("9999999999")       # "042917"
    codes.consume("9999999999", code)      # True
    codes.consume("9999999999", code)      # False -- single use
    codes.purge_expired()                  # call periodically
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import sqlite3
import threading
import time
from collections.abc import Callable

logger = logging.getLogger("storefront.otp")

_DEFAULT_TTL = 5 * 60  # 5 minutes in seconds
_DEFAULT_DIGITS = 6

_DDL = """
CREATE TABLE IF NOT EXISTS one_time_codes (
    contact     TEXT PRIMARY KEY,
    code_hash   TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class OneTimeCodeStore:
    def __init__(
        self,
        db_path: str = ":memory:",
        ttl: int = _DEFAULT_TTL,
        digits: int = _DEFAULT_DIGITS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self.digits = digits
        self._clock = clock
        # One connection shared by every request thread; the lock makes each
        # issue/consume a single uninterrupted unit.
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def issue(self, contact: str) -> str:
        """Generate a fresh code for contact, replacing any live one, and return it."""
        code = f"{secrets.randbelow(10**self.digits):0{self.digits}d}"
        expires_at = self._clock() + self.ttl
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO one_time_codes (contact, code_hash, expires_at) VALUES (?, ?, ?)",
                (contact, _digest(code), expires_at),
            )
            self._conn.commit()
        return code

    def consume(self, contact: str, code: str) -> bool:
        """Return True and delete the entry iff it exists, is live, and code matches.

        A mismatched code leaves a live entry in place. An expired entry is
        deleted regardless of whether the code matched.
        """
        if not contact or not code:
            return False
        now = self._clock()
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM one_time_codes WHERE contact = ? AND code_hash = ? AND expires_at >= ?",
                (contact, _digest(code), now),
            )
            if cursor.rowcount == 1:
                self._conn.commit()
                return True
            expired = self._conn.execute(
                "DELETE FROM one_time_codes WHERE contact = ? AND expires_at < ?",
                (contact, now),
            )
            self._conn.commit()
        if expired.rowcount:
            logger.info("Expired one-time code discarded for contact ending %s", contact[-2:])
        return False

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM one_time_codes WHERE expires_at < ?", (self._clock(),))
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()
