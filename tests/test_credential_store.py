"""
tests/test_credential_store.py -- Unit tests for CredentialStore.

Covers the store-level guarantees the services rely on:
  - create_user rolls back when the role callback refuses
  - lookups are case-insensitive
  - reset tokens are stored hashed and consumed exactly once
  - spent reset tokens are purged and open ones capped per user
  - malformed email addresses are refused
  - delete_user removes roles and tokens and reports unknown ids
"""

from __future__ import annotations

import pytest
from sqlalchemy import select

from auth.models import User
from auth.results import AuthorizationError, NotFoundError, TokenError, ValidationError
from auth.roles import Role
from auth.store import MAX_OPEN_RESET_TOKENS, CredentialStore, _reset_tokens, _user_roles
from conftest import NEW_PASSWORD, PASSWORD


def _create(store: CredentialStore, name: str, role: Role = Role.USER) -> User:
    user, _ = store.create_user(User(username=name, email=f"{name}@example.com"), PASSWORD, lambda count: role)
    return user


class TestCreateUser:
    def test_role_callback_sees_count_including_new_row(self, credential_store: CredentialStore) -> None:
        seen: list[int] = []

        def pick(count: int) -> Role:
            seen.append(count)
            return Role.USER

        credential_store.create_user(User(username="a", email="a@example.com"), PASSWORD, pick)
        credential_store.create_user(User(username="b", email="b@example.com"), PASSWORD, pick)

        assert seen == [1, 2]

    def test_refusing_callback_rolls_back_insert(self, credential_store: CredentialStore) -> None:
        def refuse(count: int) -> Role:
            raise AuthorizationError()

        with pytest.raises(AuthorizationError):
            credential_store.create_user(User(username="a", email="a@example.com"), PASSWORD, refuse)

        assert credential_store.count_users() == 0

    def test_missing_fields_reported_together(self, credential_store: CredentialStore) -> None:
        with pytest.raises(ValidationError) as excinfo:
            credential_store.create_user(User(username=" ", email="nope"), PASSWORD, lambda c: Role.USER)
        assert [e.field for e in excinfo.value.errors] == ["username", "email"]

    @pytest.mark.parametrize("email", ["a@@b.com", "a@b..", "a@.", "a@b.com@d.be", "anna@", "anna example.com"])
    def test_malformed_email_rejected(self, credential_store: CredentialStore, email: str) -> None:
        with pytest.raises(ValidationError) as excinfo:
            credential_store.create_user(User(username="anna", email=email), PASSWORD, lambda c: Role.USER)
        assert [e.field for e in excinfo.value.errors] == ["email"]
        assert credential_store.count_users() == 0

    def test_set_email_rejects_malformed(self, credential_store: CredentialStore) -> None:
        anna = _create(credential_store, "anna")
        with pytest.raises(ValidationError):
            credential_store.set_email(anna, "anna@@example.com")
        assert anna.email == "anna@example.com"

    def test_password_is_hashed(self, credential_store: CredentialStore) -> None:
        user = _create(credential_store, "anna")
        assert user.hashed_password != PASSWORD
        assert user.hashed_password.startswith("$2")


class TestLookups:
    def test_case_insensitive(self, credential_store: CredentialStore) -> None:
        anna = _create(credential_store, "Anna")
        assert credential_store.get_by_username("anna").id == anna.id
        assert credential_store.get_by_email("ANNA@EXAMPLE.COM").id == anna.id

    def test_missing(self, credential_store: CredentialStore) -> None:
        assert credential_store.get_by_username("ghost") is None
        assert credential_store.get_by_email("") is None
        assert credential_store.get_by_id(None) is None


class TestResetTokens:
    def test_only_hash_is_stored(self, credential_store: CredentialStore) -> None:
        anna = _create(credential_store, "anna")
        raw = credential_store.generate_reset_token(anna.id)
        with credential_store.engine.connect() as conn:
            stored = conn.execute(select(_reset_tokens.c.token_hash)).scalar()
        assert stored != raw
        assert len(stored) == 64

    def test_consumed_once(self, credential_store: CredentialStore) -> None:
        anna = _create(credential_store, "anna")
        raw = credential_store.generate_reset_token(anna.id)

        credential_store.consume_reset_token(anna.id, raw, NEW_PASSWORD)

        with pytest.raises(TokenError):
            credential_store.consume_reset_token(anna.id, raw, "Ander3!x")
        assert credential_store.check_password(credential_store.get_by_id(anna.id), NEW_PASSWORD)

    def test_reset_clears_lockout(self, credential_store: CredentialStore) -> None:
        anna = _create(credential_store, "anna")
        for _ in range(5):
            credential_store.check_password(credential_store.get_by_id(anna.id), "Verkeerd1!")
        assert credential_store.is_locked_out(credential_store.get_by_id(anna.id))

        raw = credential_store.generate_reset_token(anna.id)
        credential_store.consume_reset_token(anna.id, raw, NEW_PASSWORD)

        assert not credential_store.is_locked_out(credential_store.get_by_id(anna.id))

    def test_open_tokens_are_capped(self, credential_store: CredentialStore) -> None:
        anna = _create(credential_store, "anna")
        issued = [credential_store.generate_reset_token(anna.id) for _ in range(MAX_OPEN_RESET_TOKENS + 3)]

        with credential_store.engine.connect() as conn:
            rows = conn.execute(select(_reset_tokens)).fetchall()
        assert len(rows) == MAX_OPEN_RESET_TOKENS

        with pytest.raises(TokenError):
            credential_store.consume_reset_token(anna.id, issued[0], "Ander3!x")
        credential_store.consume_reset_token(anna.id, issued[-1], NEW_PASSWORD)

    def test_spent_tokens_purged_on_next_issue(self, credential_store: CredentialStore) -> None:
        anna = _create(credential_store, "anna")
        raw = credential_store.generate_reset_token(anna.id)
        credential_store.consume_reset_token(anna.id, raw, NEW_PASSWORD)
        with credential_store.engine.begin() as conn:
            conn.execute(
                _reset_tokens.insert().values(
                    token_hash="0" * 64,
                    user_id=anna.id,
                    created_at="2000-01-01T00:00:00+00:00",
                    expires_at="2000-01-02T00:00:00+00:00",
                )
            )

        credential_store.generate_reset_token(anna.id)

        with credential_store.engine.connect() as conn:
            rows = conn.execute(select(_reset_tokens)).fetchall()
        assert len(rows) == 1
        assert rows[0].consumed_at is None

    def test_other_users_tokens_untouched(self, credential_store: CredentialStore) -> None:
        anna = _create(credential_store, "anna")
        bob = _create(credential_store, "bob")
        raw = credential_store.generate_reset_token(bob.id)
        for _ in range(MAX_OPEN_RESET_TOKENS + 1):
            credential_store.generate_reset_token(anna.id)

        credential_store.consume_reset_token(bob.id, raw, NEW_PASSWORD)


class TestRoles:
    def test_remove_roles_only_drops_named_roles(self, credential_store: CredentialStore) -> None:
        anna = _create(credential_store, "anna", Role.COOK)
        credential_store.add_role(anna.id, Role.WAITER)

        credential_store.remove_roles(anna.id, {Role.COOK})

        assert credential_store.get_roles_for(anna.id) == {Role.WAITER}

    def test_remove_no_roles_is_noop(self, credential_store: CredentialStore) -> None:
        anna = _create(credential_store, "anna", Role.COOK)
        credential_store.remove_roles(anna.id, set())
        assert credential_store.get_roles_for(anna.id) == {Role.COOK}


class TestDelete:
    def test_delete_removes_dependents(self, credential_store: CredentialStore) -> None:
        anna = _create(credential_store, "anna", Role.COOK)
        credential_store.generate_reset_token(anna.id)

        assert credential_store.delete_user(anna.id) is True

        with credential_store.engine.connect() as conn:
            assert conn.execute(select(_user_roles)).fetchall() == []
            assert conn.execute(select(_reset_tokens)).fetchall() == []

    def test_delete_unknown(self, credential_store: CredentialStore) -> None:
        assert credential_store.delete_user("missing") is False

    def test_update_unknown(self, credential_store: CredentialStore) -> None:
        with pytest.raises(NotFoundError):
            credential_store.update_user(User(username="x", email="x@example.com", id="missing"))


def test_unknown_role_name_rejected(credential_store: CredentialStore) -> None:
    anna = _create(credential_store, "anna")
    with pytest.raises(ValidationError):
        credential_store.add_role(anna.id, "Admin")
    assert credential_store.get_roles_for(anna.id) == {Role.USER}
