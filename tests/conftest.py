"""
tests/conftest.py -- Shared test fixtures for the identity service.

This module provides:
  - RecordingMailer: MailService double that keeps sent mails in memory
  - credential_store / audit_store: fresh in-memory stores per test
  - service fixtures (audit, roles, authentication, reset_flow, accounts,
    user_admin) wired exactly as api/main.py wires them
  - make_user: factory that creates accounts through the bootstrap path
  - api_client: TestClient with an Owner account for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the API client because TestClient runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Service-level tests run on one thread and use plain
:memory: stores.

DEBUG, ALLOWED_HOSTS and the rate limits must be set before any app import:
get_settings() is cached on first use and api/main.py reads the host list at
import time.
"""

from __future__ import annotations

import html
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from urllib.parse import parse_qs, urlparse

# CRITICAL: Set before any auth/core/api import (see module docstring).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("RESET_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from audit.logger import AuditLogger
from audit.store import AuditStore
from auth.account import AccountSelfService
from auth.admin import UserAdminService
from auth.authentication import AuthenticationService
from auth.models import User
from auth.password_reset import PasswordResetFlow
from auth.roles import Role, RoleAssignmentService
from auth.store import CredentialStore
from auth.tokens import create_access_token

PASSWORD = "Geheim1!"
NEW_PASSWORD = "Nieuw2?x"


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------


class RecordingMailer:
    """Stands in for MailService. Records every message instead of sending it."""

    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.sent: list[tuple[str, str, str]] = []

    @property
    def configured(self) -> bool:
        return True

    def send_email(self, to_email: str, subject: str, html_body: str) -> tuple[bool, str]:
        if not self.succeed:
            return False, "SMTP error: connection refused"
        self.sent.append((to_email, subject, html_body))
        return True, ""


def token_from_mail(html_body: str) -> str:
    """Pull the raw reset token out of a reset mail body."""
    start = html_body.index("href='") + len("href='")
    link = html.unescape(html_body[start : html_body.index("'", start)])
    return parse_qs(urlparse(link).query)["token"][0]


# ---------------------------------------------------------------------------
# Stores and services
# ---------------------------------------------------------------------------


@pytest.fixture
def credential_store() -> Generator[CredentialStore, None, None]:
    store = CredentialStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def audit_store() -> Generator[AuditStore, None, None]:
    store = AuditStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def audit(audit_store: AuditStore) -> AuditLogger:
    return AuditLogger(audit_store)


@pytest.fixture
def roles(credential_store: CredentialStore, audit: AuditLogger) -> RoleAssignmentService:
    return RoleAssignmentService(credential_store, audit)


@pytest.fixture
def authentication(credential_store: CredentialStore, audit: AuditLogger) -> AuthenticationService:
    return AuthenticationService(credential_store, audit)


@pytest.fixture
def reset_flow(credential_store: CredentialStore, mailer: RecordingMailer, audit: AuditLogger) -> PasswordResetFlow:
    return PasswordResetFlow(credential_store, mailer, audit)


@pytest.fixture
def accounts(
    credential_store: CredentialStore,
    authentication: AuthenticationService,
    roles: RoleAssignmentService,
    audit: AuditLogger,
) -> AccountSelfService:
    return AccountSelfService(credential_store, authentication, roles, audit)


@pytest.fixture
def user_admin(
    credential_store: CredentialStore,
    roles: RoleAssignmentService,
    accounts: AccountSelfService,
    audit: AuditLogger,
) -> UserAdminService:
    return UserAdminService(credential_store, roles, accounts, audit)


@pytest.fixture
def make_user(roles: RoleAssignmentService):
    """Factory: make_user("anna", role=Role.COOK) -> stored User.

    The first call creates the Owner. Later calls are made with operator
    rights so any role can be requested.
    """

    def _make(username: str, role: Role | None = None, password: str = PASSWORD, **profile) -> User:
        user = User(username=username, email=f"{username}@example.com", **profile)
        return roles.bootstrap_first_user(user, password, role, trusted=True).unwrap()

    return _make


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[CredentialStore, AuditStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    auth_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    audit_url = f"sqlite:///file:test_audit_{db_suffix}?mode=memory&cache=shared&uri=true"
    return CredentialStore(db_url=auth_url), AuditStore(db_url=audit_url)


def _patch_lifespan(credential_store: CredentialStore, audit_store: AuditStore, mailer: RecordingMailer):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores and the recording mailer through the same
    wire_services() helper the real lifespan uses.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, credential_store, audit_store, mailer)
        yield

    return test_lifespan


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def session_token(credential_store: CredentialStore, user_id: str) -> str:
    """Sign a token for the user's current security stamp."""
    user = credential_store.get_by_id(user_id)
    names = sorted(r.value for r in credential_store.get_roles_for(user_id))
    return create_access_token(user.id, user.username, names, user.security_stamp, expire_seconds=3600)


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, owner_token, owner_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use isolated in-memory stores. The Owner is
    the first account and is created before the client starts.

    The client keeps cookies between requests and the cookie wins over the
    Authorization header, so tests that log in clear client.cookies afterwards.
    """
    credential_store, audit_store = _make_test_stores(uuid.uuid4().hex[:8])
    mailer = RecordingMailer()

    roles = RoleAssignmentService(credential_store, AuditLogger(audit_store))
    owner = roles.bootstrap_first_user(User(username="testowner", email="owner@example.com"), PASSWORD).unwrap()
    token = session_token(credential_store, owner.id)

    app.router.lifespan_context = _patch_lifespan(credential_store, audit_store, mailer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, owner.id

    credential_store.close()
    audit_store.close()
