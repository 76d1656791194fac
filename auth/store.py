"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_user is the mapper. Services never
touch SQL directly and never hash or compare passwords themselves.

Atomic units (one engine.begin() transaction each):
  create_user        lock Owner role row + insert + count + initial role assignment
  generate_reset_token  purge spent tokens + cap open tokens + insert
  replace_roles      clear all roles + add one
  consume_reset_token  mark token consumed + set password + retire other tokens
  change_password    verify old + set new + retire tokens
  delete_user        delete roles + tokens + user row

The single-use guarantee of reset tokens rests on a conditional UPDATE
(WHERE consumed_at IS NULL) whose rowcount must be 1. Two concurrent consumers
of the same token cannot both succeed.

Security:
  All queries use bound parameters. Reset tokens are stored as HMAC hashes.

Layer rule: no imports from api/, audit/ or mail/.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import PROFILE_FIELDS, User
from auth.results import ConflictError, FieldError, NotFoundError, TokenError, ValidationError
from auth.roles import Role
from auth.tokens import (
    generate_reset_token,
    hash_password,
    hash_reset_token,
    new_security_stamp,
    validate_password,
    verify_password,
)
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_countries = Table(
    "countries",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
)

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("address", String(255)),
    Column("house_number", String(20)),
    Column("postal_code", String(20)),
    Column("city", String(100)),
    Column("email_confirmed", Integer, nullable=False, server_default="0"),
    Column("country_id", Integer),
    Column("security_stamp", String(64), nullable=False),
    Column("access_failed_count", Integer, nullable=False, server_default="0"),
    Column("lockout_end", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_roles = Table(
    "roles",
    _metadata,
    Column("name", String(50), primary_key=True),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", String(32), primary_key=True),
    Column("role_name", String(50), primary_key=True),
)

_reset_tokens = Table(
    "reset_tokens",
    _metadata,
    Column("token_hash", String(64), primary_key=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
)

# Open (unconsumed, unexpired) reset tokens kept per user.
MAX_OPEN_RESET_TOKENS = 5


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _now().isoformat()


def _policy_check(password: str) -> None:
    errors = validate_password(password or "")
    if errors:
        raise ValidationError(errors=errors)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, roles, reset tokens and lockout state.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        user, role = store.create_user(User(username="anna", email="anna@example.com"), "S3cret!", lambda n: Role.USER)
        store.check_password(user, "S3cret!")
        store.close()
    """

    def __init__(self, db_url: str | None = None, default_country: str | None = None) -> None:
        settings = get_settings()
        db_url = db_url or settings.auth_db_url
        self.default_country = default_country or settings.default_country
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            if db_url.startswith("sqlite:///") and ":memory:" not in db_url and "mode=memory" not in db_url:
                Path(db_url[len("sqlite:///") :]).parent.mkdir(parents=True, exist_ok=True)
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._seed_roles()
        self.ensure_default_country()

    def _seed_roles(self) -> None:
        """Insert any Role member missing from the roles table. Idempotent."""
        with self.engine.begin() as conn:
            existing = {r.name for r in conn.execute(_roles.select()).fetchall()}
            for role in Role:
                if role.value not in existing:
                    conn.execute(_roles.insert().values(name=role.value))

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    def get_by_id(self, user_id: str | None) -> User | None:
        if not user_id:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Case-insensitive username lookup. Returns None if not found."""
        if not username:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(func.lower(_users.c.username) == username.strip().lower())
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive email lookup. Returns None if not found."""
        if not email:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(func.lower(_users.c.email) == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    # ------------------------------------------------------------------
    # User mutations
    # ------------------------------------------------------------------

    def create_user(self, user: User, password: str, role_for_count: Callable[[int], Role]) -> tuple[User, Role]:
        """Insert a user and assign its initial role in one transaction.

        role_for_count receives the user count including the new row and
        returns the role to assign. If it raises, the insert is rolled back.

        Raises ValidationError (missing fields, password policy),
        ConflictError (duplicate username or email) or whatever role_for_count
        raises.
        """
        errors: list[FieldError] = []
        if not (user.username or "").strip():
            errors.append(FieldError("username", "Username is required."))
        if not _valid_email(user.email):
            errors.append(FieldError("email", "A valid email address is required."))
        errors.extend(validate_password(password or ""))
        if errors:
            raise ValidationError(errors=errors)

        user_id = uuid.uuid4().hex
        try:
            with self.engine.begin() as conn:
                # Serializes sign-ups so the count below sees every committed user.
                conn.execute(select(_roles.c.name).where(_roles.c.name == Role.OWNER.value).with_for_update())
                self._check_unique(conn, user.username, user.email)
                country_id = user.country_id or self._ensure_country(conn, self.default_country)
                values = {f: getattr(user, f) for f in PROFILE_FIELDS}
                conn.execute(
                    _users.insert().values(
                        id=user_id,
                        username=user.username.strip(),
                        email=user.email.strip(),
                        hashed_password=hash_password(password),
                        email_confirmed=1,
                        country_id=country_id,
                        security_stamp=new_security_stamp(),
                        access_failed_count=0,
                        created_at=_now_iso(),
                        **values,
                    )
                )
                count = conn.execute(select(func.count()).select_from(_users)).scalar() or 0
                role = role_for_count(count)
                self._require_role(conn, role)
                conn.execute(_user_roles.insert().values(user_id=user_id, role_name=role.value))
        except IntegrityError as exc:
            # A concurrent insert won the UNIQUE race after _check_unique passed.
            raise ConflictError("A user with that username or email already exists.", field="username") from exc

        created = self.get_by_id(user_id)
        return created, role

    def _check_unique(self, conn: Connection, username: str, email: str, exclude_id: str | None = None) -> None:
        errors: list[FieldError] = []
        for column, value, fname, label in (
            (_users.c.username, username, "username", "username"),
            (_users.c.email, email, "email", "email address"),
        ):
            if value is None:
                continue
            query = select(_users.c.id).where(func.lower(column) == value.strip().lower())
            if exclude_id is not None:
                query = query.where(_users.c.id != exclude_id)
            if conn.execute(query).fetchone() is not None:
                errors.append(FieldError(fname, f"That {label} is already in use."))
        if errors:
            raise ConflictError(errors=errors)

    def _ensure_country(self, conn: Connection, name: str) -> int:
        row = conn.execute(select(_countries.c.id).order_by(_countries.c.id).limit(1)).fetchone()
        if row is not None:
            return row.id
        result = conn.execute(_countries.insert().values(name=name))
        return result.inserted_primary_key[0]

    def ensure_default_country(self) -> int:
        """Return the id of the first country, creating the default one if none exists."""
        with self.engine.begin() as conn:
            return self._ensure_country(conn, self.default_country)

    def set_email(self, user: User, email: str) -> None:
        """Stage an email change on the user object.

        Validates format and uniqueness and clears email_confirmed. Nothing is
        written until update_user() persists the user.
        """
        if not _valid_email(email):
            raise ValidationError("A valid email address is required.", field="email")
        with self.engine.connect() as conn:
            self._check_unique(conn, None, email, exclude_id=user.id)
        user.email = email.strip()
        user.email_confirmed = False

    def update_user(self, user: User) -> None:
        """Persist email and profile fields of an existing user.

        Raises NotFoundError if the user no longer exists, ConflictError if the
        email collides with another account.
        """
        values = {f: getattr(user, f) for f in PROFILE_FIELDS}
        values["email"] = user.email
        values["email_confirmed"] = 1 if user.email_confirmed else 0
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_users.update().where(_users.c.id == user.id).values(**values))
        except IntegrityError as exc:
            raise ConflictError("That email address is already in use.", field="email") from exc
        if result.rowcount == 0:
            raise NotFoundError()

    def delete_user(self, user_id: str) -> bool:
        """Delete the user with its roles and reset tokens. Returns False if not found."""
        with self.engine.begin() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            conn.execute(_reset_tokens.delete().where(_reset_tokens.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def rotate_security_stamp(self, user_id: str) -> str | None:
        """Replace the security stamp, revoking every session token of the user."""
        stamp = new_security_stamp()
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(security_stamp=stamp))
        return stamp if result.rowcount > 0 else None

    # ------------------------------------------------------------------
    # Password verification and lockout
    # ------------------------------------------------------------------

    def is_locked_out(self, user: User) -> bool:
        if not user.lockout_end:
            return False
        return datetime.fromisoformat(user.lockout_end) > _now()

    def check_password(self, user: User, password: str) -> bool:
        """Verify a login password and update the lockout bookkeeping.

        Failure increments access_failed_count; reaching lockout_max_attempts
        locks the account for lockout_minutes and resets the counter. Success
        clears the counter and stamps last_login.
        """
        settings = get_settings()
        if verify_password(password or "", user.hashed_password or ""):
            with self.engine.begin() as conn:
                conn.execute(
                    _users.update()
                    .where(_users.c.id == user.id)
                    .values(access_failed_count=0, lockout_end=None, last_login=_now_iso())
                )
            return True

        if settings.lockout_max_attempts == 0:
            return False
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user.id)
                .values(access_failed_count=_users.c.access_failed_count + 1)
            )
            failed = conn.execute(select(_users.c.access_failed_count).where(_users.c.id == user.id)).scalar() or 0
            if failed >= settings.lockout_max_attempts:
                lockout_end = _now() + timedelta(minutes=settings.lockout_minutes)
                conn.execute(
                    _users.update()
                    .where(_users.c.id == user.id)
                    .values(access_failed_count=0, lockout_end=lockout_end.isoformat())
                )
        return False

    def change_password(self, user_id: str, old_password: str, new_password: str) -> None:
        """Verified password change. Raises NotFoundError or ValidationError."""
        with self.engine.begin() as conn:
            row = conn.execute(select(_users.c.hashed_password).where(_users.c.id == user_id)).fetchone()
            if row is None:
                raise NotFoundError()
            if not verify_password(old_password or "", row.hashed_password):
                raise ValidationError("Incorrect password.", field="old_password")
            _policy_check(new_password)
            self._set_password(conn, user_id, new_password)

    def _set_password(self, conn: Connection, user_id: str, new_password: str) -> None:
        now = _now_iso()
        conn.execute(
            _users.update()
            .where(_users.c.id == user_id)
            .values(
                hashed_password=hash_password(new_password),
                security_stamp=new_security_stamp(),
                access_failed_count=0,
                lockout_end=None,
            )
        )
        conn.execute(
            _reset_tokens.update()
            .where((_reset_tokens.c.user_id == user_id) & (_reset_tokens.c.consumed_at.is_(None)))
            .values(consumed_at=now)
        )

    # ------------------------------------------------------------------
    # Reset tokens
    # ------------------------------------------------------------------

    def generate_reset_token(self, user_id: str) -> str:
        """Issue a single-use reset token. Returns the raw value; only its HMAC is stored.

        Expired and consumed rows of the user are purged first, and only the
        newest MAX_OPEN_RESET_TOKENS - 1 open tokens survive next to the new one.
        """
        raw = generate_reset_token()
        now = _now()
        expires = now + timedelta(seconds=get_settings().reset_token_expire_seconds)
        mine = _reset_tokens.c.user_id == user_id
        with self.engine.begin() as conn:
            conn.execute(
                _reset_tokens.delete().where(
                    mine & (_reset_tokens.c.consumed_at.is_not(None) | (_reset_tokens.c.expires_at <= now.isoformat()))
                )
            )
            surplus = [
                r.token_hash
                for r in conn.execute(
                    select(_reset_tokens.c.token_hash)
                    .where(mine)
                    .order_by(_reset_tokens.c.created_at.desc())
                    .offset(MAX_OPEN_RESET_TOKENS - 1)
                ).fetchall()
            ]
            if surplus:
                conn.execute(_reset_tokens.delete().where(_reset_tokens.c.token_hash.in_(surplus)))
            conn.execute(
                _reset_tokens.insert().values(
                    token_hash=hash_reset_token(raw),
                    user_id=user_id,
                    created_at=now.isoformat(),
                    expires_at=expires.isoformat(),
                )
            )
        return raw

    def consume_reset_token(self, user_id: str, raw_token: str, new_password: str) -> None:
        """Consume a reset token and set the new password atomically.

        Raises TokenError for unknown, expired or already consumed tokens and
        ValidationError for a policy-rejected password. In both cases nothing
        is written and, for a policy failure, the token stays usable.
        """
        if not raw_token:
            raise TokenError()
        token_hash = hash_reset_token(raw_token)
        now = _now_iso()
        with self.engine.begin() as conn:
            row = conn.execute(
                _reset_tokens.select().where(
                    (_reset_tokens.c.token_hash == token_hash) & (_reset_tokens.c.user_id == user_id)
                )
            ).fetchone()
            if row is None or row.consumed_at is not None:
                raise TokenError()
            if datetime.fromisoformat(row.expires_at) <= _now():
                raise TokenError()
            _policy_check(new_password)
            claimed = conn.execute(
                _reset_tokens.update()
                .where((_reset_tokens.c.token_hash == token_hash) & (_reset_tokens.c.consumed_at.is_(None)))
                .values(consumed_at=now)
            )
            if claimed.rowcount != 1:
                raise TokenError()
            self._set_password(conn, user_id, new_password)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            names = [r.name for r in conn.execute(_roles.select()).fetchall()]
        return [role for role in Role if role.value in names]

    def get_roles_for(self, user_id: str) -> set[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_user_roles.c.role_name).where(_user_roles.c.user_id == user_id)
            ).fetchall()
        return {Role(r.role_name) for r in rows}

    def count_users_with_role(self, role: Role) -> int:
        """Used by the admin service to protect the last Owner account."""
        with self.engine.connect() as conn:
            return (
                conn.execute(
                    select(func.count()).select_from(_user_roles).where(_user_roles.c.role_name == role.value)
                ).scalar()
                or 0
            )

    def remove_roles(self, user_id: str, roles: set[Role]) -> None:
        if not roles:
            return
        with self.engine.begin() as conn:
            conn.execute(
                _user_roles.delete().where(
                    (_user_roles.c.user_id == user_id) & (_user_roles.c.role_name.in_([r.value for r in roles]))
                )
            )

    def add_role(self, user_id: str, role: Role | str) -> None:
        with self.engine.begin() as conn:
            name = self._require_role(conn, role)
            exists = conn.execute(
                select(_user_roles.c.user_id).where(
                    (_user_roles.c.user_id == user_id) & (_user_roles.c.role_name == name)
                )
            ).fetchone()
            if exists is None:
                conn.execute(_user_roles.insert().values(user_id=user_id, role_name=name))

    def replace_roles(self, user_id: str, role: Role | str | None) -> set[Role]:
        """Clear every role of the user, then add role if given. One transaction."""
        with self.engine.begin() as conn:
            if conn.execute(select(_users.c.id).where(_users.c.id == user_id)).fetchone() is None:
                raise NotFoundError()
            name = self._require_role(conn, role) if role else None
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            if name is not None:
                conn.execute(_user_roles.insert().values(user_id=user_id, role_name=name))
        return {Role(name)} if name is not None else set()

    def _require_role(self, conn: Connection, role: Role | str) -> str:
        name = role.value if isinstance(role, Role) else str(role)
        if conn.execute(select(_roles.c.name).where(_roles.c.name == name)).fetchone() is None:
            raise ValidationError(f"Unknown role '{name}'.", field="role")
        return name

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(func.count()).select_from(_roles))
        return True

    def close(self) -> None:
        self.engine.dispose()


def _valid_email(value: str | None) -> bool:
    if not value or not value.strip():
        return False
    try:
        validate_email(value.strip(), check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        address=row.address,
        house_number=row.house_number,
        postal_code=row.postal_code,
        city=row.city,
        email_confirmed=bool(row.email_confirmed),
        country_id=row.country_id,
        security_stamp=row.security_stamp,
        access_failed_count=row.access_failed_count,
        lockout_end=row.lockout_end,
        created_at=row.created_at,
        last_login=row.last_login,
    )
