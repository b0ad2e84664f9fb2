"""
tests/test_identity_store.py -- Unit tests for auth/store.py.

Covers:
  - uniqueness of phone and email, email case-folding, email-less records
  - lookups by id, email and phone
  - password comparison, including password-less identities
  - refresh-token set: add, remove, clear, replace, per-identity cap
  - get_or_create_by_phone and its lost-race recovery
  - concurrent token appends for one identity lose nothing
"""

from __future__ import annotations

import threading

import pytest

from auth.errors import ConflictError
from auth.store import IdentityStore, normalize_email

PHONE = "9999999999"


class TestCreate:
    def test_create_assigns_id_and_timestamps(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE, name="Asha", email="asha@example.com", password="secret")
        assert identity.id
        assert identity.created_at
        assert identity.updated_at == identity.created_at
        assert identity.refresh_tokens == []

    def test_password_is_stored_hashed(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE, password="secret")
        stored = identity_store.get_by_id(identity.id)
        assert stored.password_hash != "secret"
        assert stored.password_hash.startswith("$2")

    def test_no_password_means_no_hash(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE)
        assert identity.password_hash is None

    def test_duplicate_phone_conflicts(self, identity_store: IdentityStore) -> None:
        identity_store.create(phone=PHONE)
        with pytest.raises(ConflictError):
            identity_store.create(phone=PHONE, email="other@example.com")

    def test_duplicate_email_conflicts_case_insensitively(self, identity_store: IdentityStore) -> None:
        identity_store.create(phone=PHONE, email="Asha@Example.com")
        with pytest.raises(ConflictError):
            identity_store.create(phone="8888888888", email="asha@example.COM")

    def test_many_identities_without_email(self, identity_store: IdentityStore) -> None:
        first = identity_store.create(phone=PHONE)
        second = identity_store.create(phone="8888888888")
        assert first.email is None
        assert second.email is None
        assert first.id != second.id

    def test_blank_email_stored_as_none(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE, email="   ")
        assert identity_store.get_by_id(identity.id).email is None

    def test_insert_race_maps_to_conflict(self, identity_store: IdentityStore, monkeypatch: pytest.MonkeyPatch) -> None:
        """A duplicate that appears after the pre-check still surfaces as ConflictError."""
        identity_store.create(phone=PHONE)
        monkeypatch.setattr(identity_store, "get_by_phone", lambda phone: None)
        with pytest.raises(ConflictError):
            identity_store.create(phone=PHONE)


class TestLookups:
    def test_get_by_id(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE)
        assert identity_store.get_by_id(identity.id).phone == PHONE

    def test_get_by_email_ignores_case(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE, email="asha@example.com")
        assert identity_store.get_by_email("  ASHA@example.com ").id == identity.id

    def test_get_by_phone(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE)
        assert identity_store.get_by_phone(PHONE).id == identity.id

    def test_missing_lookups_return_none(self, identity_store: IdentityStore) -> None:
        assert identity_store.get_by_id("nope") is None
        assert identity_store.get_by_email("nobody@example.com") is None
        assert identity_store.get_by_email("") is None
        assert identity_store.get_by_phone(PHONE) is None

    def test_normalize_email(self) -> None:
        assert normalize_email(" A@B.com ") == "a@b.com"
        assert normalize_email("") is None
        assert normalize_email(None) is None


class TestVerifyPassword:
    def test_correct_and_wrong(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE, password="secret")
        assert identity_store.verify_password(identity, "secret") is True
        assert identity_store.verify_password(identity, "wrong") is False

    def test_password_less_identity_never_matches(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE)
        assert identity_store.verify_password(identity, "") is False
        assert identity_store.verify_password(identity, None) is False
        assert identity_store.verify_password(identity, "anything") is False


class TestRefreshTokens:
    def test_add_persists_token(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE)
        identity_store.add_refresh_token(identity, "tok-1")
        assert identity.has_refresh_token("tok-1")
        assert identity_store.has_refresh_token(identity.id, "tok-1")
        assert identity_store.get_by_id(identity.id).has_refresh_token("tok-1")

    def test_tokens_kept_in_insertion_order(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE)
        for token in ("a", "b", "c"):
            identity_store.add_refresh_token(identity, token)
        stored = identity_store.get_by_id(identity.id)
        assert [entry.token for entry in stored.refresh_tokens] == ["a", "b", "c"]

    def test_remove_only_that_token(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE)
        identity_store.add_refresh_token(identity, "a")
        identity_store.add_refresh_token(identity, "b")
        assert identity_store.remove_refresh_token(identity, "a") is True
        assert not identity_store.has_refresh_token(identity.id, "a")
        assert identity_store.has_refresh_token(identity.id, "b")

    def test_remove_unknown_token(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE)
        assert identity_store.remove_refresh_token(identity, "never-issued") is False

    def test_clear_removes_all(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE)
        identity_store.add_refresh_token(identity, "a")
        identity_store.add_refresh_token(identity, "b")
        assert identity_store.clear_refresh_tokens(identity) == 2
        assert identity.refresh_tokens == []
        assert identity_store.get_by_id(identity.id).refresh_tokens == []

    def test_clear_leaves_other_identities_alone(self, identity_store: IdentityStore) -> None:
        first = identity_store.create(phone=PHONE)
        second = identity_store.create(phone="8888888888")
        identity_store.add_refresh_token(first, "a")
        identity_store.add_refresh_token(second, "b")
        identity_store.clear_refresh_tokens(first)
        assert identity_store.has_refresh_token(second.id, "b")

    def test_replace_swaps_tokens(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE)
        identity_store.add_refresh_token(identity, "old")
        assert identity_store.replace_refresh_token(identity, "old", "new") is True
        assert not identity_store.has_refresh_token(identity.id, "old")
        assert identity_store.has_refresh_token(identity.id, "new")

    def test_replace_of_missing_token_inserts_nothing(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE)
        assert identity_store.replace_refresh_token(identity, "gone", "new") is False
        assert not identity_store.has_refresh_token(identity.id, "new")

    def test_mutation_updates_timestamp(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE)
        identity_store.add_refresh_token(identity, "a")
        stored = identity_store.get_by_id(identity.id)
        assert stored.updated_at >= stored.created_at

    def test_cap_evicts_oldest(self) -> None:
        store = IdentityStore("sqlite:///:memory:", max_refresh_tokens=3)
        identity = store.create(phone=PHONE)
        for token in ("a", "b", "c", "d", "e"):
            store.add_refresh_token(identity, token)
        stored = store.get_by_id(identity.id)
        assert [entry.token for entry in stored.refresh_tokens] == ["c", "d", "e"]
        store.close()

    def test_expired_rows_are_purged(self, identity_store: IdentityStore) -> None:
        identity = identity_store.create(phone=PHONE)
        identity_store.add_refresh_token(identity, "stale", ttl_days=-1)
        identity_store.add_refresh_token(identity, "live", ttl_days=7)
        assert identity_store.purge_expired_refresh_tokens() == 1
        assert identity_store.has_refresh_token(identity.id, "live")
        assert not identity_store.has_refresh_token(identity.id, "stale")


class TestGetOrCreateByPhone:
    def test_creates_once(self, identity_store: IdentityStore) -> None:
        first, created = identity_store.get_or_create_by_phone(PHONE)
        second, created_again = identity_store.get_or_create_by_phone(PHONE)
        assert created is True
        assert created_again is False
        assert first.id == second.id
        assert first.password_hash is None
        assert first.email is None

    def test_reuses_password_registered_identity(self, identity_store: IdentityStore) -> None:
        registered = identity_store.create(phone=PHONE, email="asha@example.com", password="secret")
        found, created = identity_store.get_or_create_by_phone(PHONE)
        assert created is False
        assert found.id == registered.id

    def test_lost_race_returns_winner(self, identity_store: IdentityStore, monkeypatch: pytest.MonkeyPatch) -> None:
        """The first lookup misses, the insert conflicts, the re-read finds the winner."""
        winner = identity_store.create(phone=PHONE)
        real_get_by_phone = IdentityStore.get_by_phone
        calls = {"n": 0}

        def flaky_get_by_phone(self, phone):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_get_by_phone(self, phone)

        monkeypatch.setattr(IdentityStore, "get_by_phone", flaky_get_by_phone)
        found, created = identity_store.get_or_create_by_phone(PHONE)
        assert created is False
        assert found.id == winner.id


class TestConcurrency:
    def test_parallel_appends_lose_nothing(self, tmp_path) -> None:
        store = IdentityStore(f"sqlite:///{tmp_path / 'identities.db'}", max_refresh_tokens=50)
        identity = store.create(phone=PHONE)
        barrier = threading.Barrier(10)
        errors: list[BaseException] = []

        def append(n: int) -> None:
            try:
                barrier.wait()
                handle = store.get_by_id(identity.id)
                store.add_refresh_token(handle, f"tok-{n}")
            except BaseException as exc:  # surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=append, args=(n,)) for n in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        stored = store.get_by_id(identity.id)
        assert sorted(entry.token for entry in stored.refresh_tokens) == sorted(f"tok-{n}" for n in range(10))
        store.close()
