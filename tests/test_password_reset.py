"""
tests/test_password_reset.py -- Unit tests for PasswordResetFlow.

Covers:
  - request_reset mails a link for a known address and audits it
  - request_reset for an unknown address returns the same result, sends nothing
  - a mail delivery failure still returns success
  - repeated requests keep only a bounded number of open tokens
  - reset with a valid token changes the password ("Reset wachtwoord succesvol")
  - a consumed token fails on every later use ("Reset wachtwoord mislukt")
  - a policy failure leaves the token usable
  - an unknown address on reset is reported as INVALID_REQUEST with no audit
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import select

from audit.store import AuditStore
from auth.password_reset import PasswordResetFlow, ResetOutcome, build_reset_link
from auth.results import TokenError, ValidationError
from auth.store import MAX_OPEN_RESET_TOKENS, CredentialStore, _reset_tokens
from conftest import NEW_PASSWORD, PASSWORD, RecordingMailer, token_from_mail
from core.config import get_settings


class TestRequestReset:
    def test_known_email_sends_link(self, reset_flow, make_user, mailer: RecordingMailer, audit_store) -> None:
        anna = make_user("anna")

        result = reset_flow.request_reset("anna@example.com")

        assert result.ok
        assert len(mailer.sent) == 1
        to, subject, body = mailer.sent[0]
        assert to == "anna@example.com"
        assert subject == "Wachtwoord resetten"
        assert token_from_mail(body)
        entry = audit_store.list_entries()[0]
        assert (entry.action, entry.actor_id) == ("Wachtwoord vergeten", anna.id)

    def test_unknown_email_looks_the_same(self, reset_flow, make_user, mailer: RecordingMailer) -> None:
        make_user("anna")

        known = reset_flow.request_reset("anna@example.com")
        unknown = reset_flow.request_reset("nobody@example.com")

        assert known.ok and unknown.ok
        assert known.value == unknown.value
        assert [to for to, _, _ in mailer.sent] == ["anna@example.com"]

    def test_unknown_email_audited_without_actor(self, reset_flow, audit_store: AuditStore) -> None:
        reset_flow.request_reset("nobody@example.com")
        entry = audit_store.list_entries()[0]
        assert entry.action == "Wachtwoord vergeten"
        assert entry.actor_id == "Onbekend"

    def test_mail_failure_still_succeeds(self, credential_store, audit, make_user, audit_store) -> None:
        make_user("anna")
        flow = PasswordResetFlow(credential_store, RecordingMailer(succeed=False), audit)

        assert flow.request_reset("anna@example.com").ok
        assert "mislukt" in audit_store.list_entries()[0].message

    def test_repeated_requests_keep_token_table_bounded(
        self, reset_flow, make_user, mailer: RecordingMailer, credential_store: CredentialStore
    ) -> None:
        anna = make_user("anna")

        for _ in range(20):
            reset_flow.request_reset("anna@example.com")

        with credential_store.engine.connect() as conn:
            rows = conn.execute(select(_reset_tokens).where(_reset_tokens.c.user_id == anna.id)).fetchall()
        assert len(rows) == MAX_OPEN_RESET_TOKENS
        latest = token_from_mail(mailer.sent[-1][2])
        assert reset_flow.reset_password(latest, "anna@example.com", NEW_PASSWORD).ok


class TestResetPassword:
    def _issue(self, reset_flow, mailer: RecordingMailer, email: str = "anna@example.com") -> str:
        reset_flow.request_reset(email)
        return token_from_mail(mailer.sent[-1][2])

    def test_valid_token_changes_password(
        self, reset_flow, make_user, mailer, authentication, audit_store: AuditStore
    ) -> None:
        anna = make_user("anna")
        token = self._issue(reset_flow, mailer)

        result = reset_flow.reset_password(token, "anna@example.com", NEW_PASSWORD)

        assert result.unwrap() is ResetOutcome.SUCCESS
        assert authentication.login("anna", NEW_PASSWORD).ok
        assert not authentication.login("anna", PASSWORD).ok
        actions = [e.action for e in audit_store.list_entries(actor_id=anna.id)]
        assert "Reset wachtwoord succesvol" in actions

    def test_token_is_single_use(self, reset_flow, make_user, mailer, audit_store: AuditStore) -> None:
        make_user("anna")
        token = self._issue(reset_flow, mailer)
        assert reset_flow.reset_password(token, "anna@example.com", NEW_PASSWORD).ok

        for attempt in ("Derde3#x", "Vierde4$x"):
            result = reset_flow.reset_password(token, "anna@example.com", attempt)
            assert isinstance(result.error, TokenError)
        assert audit_store.list_entries()[0].action == "Reset wachtwoord mislukt"

    def test_policy_failure_keeps_token_usable(self, reset_flow, make_user, mailer) -> None:
        make_user("anna")
        token = self._issue(reset_flow, mailer)

        weak = reset_flow.reset_password(token, "anna@example.com", "abc")
        assert isinstance(weak.error, ValidationError)
        assert all(e.field == "password" for e in weak.errors)

        assert reset_flow.reset_password(token, "anna@example.com", NEW_PASSWORD).ok

    def test_token_bound_to_its_user(self, reset_flow, make_user, mailer) -> None:
        make_user("anna")
        make_user("bram")
        token = self._issue(reset_flow, mailer, "anna@example.com")

        result = reset_flow.reset_password(token, "bram@example.com", NEW_PASSWORD)

        assert isinstance(result.error, TokenError)

    def test_garbage_token_rejected(self, reset_flow, make_user) -> None:
        make_user("anna")
        result = reset_flow.reset_password("not-a-token", "anna@example.com", NEW_PASSWORD)
        assert isinstance(result.error, TokenError)

    def test_expired_token_rejected(self, reset_flow, make_user, mailer, monkeypatch) -> None:
        make_user("anna")
        monkeypatch.setattr(get_settings(), "reset_token_expire_seconds", -1)
        token = self._issue(reset_flow, mailer)

        result = reset_flow.reset_password(token, "anna@example.com", NEW_PASSWORD)

        assert isinstance(result.error, TokenError)

    def test_unknown_email_is_invalid_request_without_audit(self, reset_flow, audit_store: AuditStore) -> None:
        result = reset_flow.reset_password("whatever", "nobody@example.com", NEW_PASSWORD)

        assert result.ok
        assert result.value is ResetOutcome.INVALID_REQUEST
        assert audit_store.list_entries() == []

    @pytest.mark.parametrize("token,email,field", [("", "anna@example.com", "token"), ("abc", "", "email")])
    def test_missing_fields(self, reset_flow, token, email, field) -> None:
        result = reset_flow.reset_password(token, email, NEW_PASSWORD)
        assert isinstance(result.error, ValidationError)
        assert [e.field for e in result.errors] == [field]

    def test_password_change_retires_outstanding_tokens(
        self, reset_flow, make_user, mailer, credential_store: CredentialStore
    ) -> None:
        anna = make_user("anna")
        token = self._issue(reset_flow, mailer)

        credential_store.change_password(anna.id, PASSWORD, NEW_PASSWORD)

        result = reset_flow.reset_password(token, "anna@example.com", "Ander3!x")
        assert isinstance(result.error, TokenError)


def test_reset_link_carries_token_and_email() -> None:
    link = build_reset_link("tok+en/=", "anna+test@example.com")
    query = parse_qs(urlparse(link).query)
    assert link.startswith(get_settings().reset_password_url)
    assert query["token"] == ["tok+en/="]
    assert query["email"] == ["anna+test@example.com"]
