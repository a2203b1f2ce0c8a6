"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore and RefreshTokenStore are the repositories; _row_to_user /
_row_to_record are the mappers. Route and auth code never touches SQL directly.

The auth core depends on two narrow interfaces, declared here as Protocols:
  UserDirectory   -- get_by_username()
  RevocationStore -- get() / put() / delete() / list()
Any backing implementation (SQL, a distributed KV, a test double) that
satisfies them can be injected into SessionResolver / TokenLifecycleManager.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Refresh tokens are stored under an HMAC fingerprint, never in raw form.

Failure policy:
  Calls on the authentication path translate SQLAlchemyError into
  AuthError(STORE_UNAVAILABLE). Callers must fail closed on that kind.
  The driver timeout (store_timeout_seconds) bounds how long a locked or
  unreachable database can stall a request.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import AuthError, AuthErrorKind
from auth.models import RefreshTokenRecord, User

# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class UserDirectory(Protocol):
    def get_by_username(self, username: str) -> User | None: ...


class RevocationStore(Protocol):
    def get(self, key: str) -> RefreshTokenRecord | None: ...

    def put(self, key: str, record: RefreshTokenRecord) -> None: ...

    def delete(self, key: str) -> bool: ...

    def list(self, prefix: str) -> list[RefreshTokenRecord]: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(64), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("token_key", String(128), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("expires_at", Integer, nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _create_engine(db_url: str, timeout_seconds: float) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_seconds
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


def _fail_closed(method):
    """Translate database failures into AuthError(STORE_UNAVAILABLE).

    IntegrityError is a conflict, not an outage, and passes through unchanged.
    """

    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise AuthError(AuthErrorKind.STORE_UNAVAILABLE) from exc

    return wrapper


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# User directory
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Usage:
        store = UserStore()
        store.create_user(User(username="admin", email="a@x.io", role="admin", hashed_password=...))
        user = store.get_by_username("admin")
        store.close()
    """

    def __init__(self, db_url: str, timeout_seconds: float = 5.0) -> None:
        self.engine: Engine = _create_engine(db_url, timeout_seconds)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    @_fail_closed
    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users")).scalar()
        return (result or 0) > 0

    @_fail_closed
    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers translate that into 409.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    @_fail_closed
    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    @_fail_closed
    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    @_fail_closed
    def list_users(self) -> list[User]:
        """Return all users ordered by username."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    @_fail_closed
    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: role, is_active, hashed_password, email.
        Returns True if a row was updated, False if user_id was not found.
        """
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    @_fail_closed
    def count_active_admins(self) -> int:
        """Used by PATCH /users/{id} to prevent deactivating the last admin."""
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users WHERE role = 'admin' AND is_active = 1")).scalar()
        return result or 0

    @_fail_closed
    def update_last_login(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Revocation store
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Durable key-value store of live refresh tokens.

    A row's presence is the only thing that makes a refresh token redeemable.
    Rows carry ``expires_at``; nothing here filters on it. Expiry is enforced
    lazily by TokenLifecycleManager on redemption and swept by its
    cleanup_expired().
    """

    def __init__(self, db_url: str, timeout_seconds: float = 5.0) -> None:
        self.engine: Engine = _create_engine(db_url, timeout_seconds)

    @_fail_closed
    def get(self, key: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_key == key)).fetchone()
        return _row_to_record(row) if row is not None else None

    @_fail_closed
    def put(self, key: str, record: RefreshTokenRecord) -> None:
        """Insert or replace the record stored under ``key``."""
        with self.engine.begin() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token_key == key))
            conn.execute(
                _refresh_tokens.insert().values(
                    token_key=key,
                    user_id=str(record.user_id),
                    expires_at=record.expires_at,
                )
            )

    @_fail_closed
    def delete(self, key: str) -> bool:
        """Delete ``key``. Returns True only if this call removed a row.

        Deleting an absent key is not an error. The return value lets callers
        claim a record exactly once when several requests race on it.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token_key == key))
        return result.rowcount > 0

    @_fail_closed
    def list(self, prefix: str) -> list[RefreshTokenRecord]:
        """Return every record whose key starts with ``prefix``."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.token_key.startswith(prefix, autoescape=True))
                .order_by(_refresh_tokens.c.token_key)
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        created_at=row.created_at,
        last_login=row.last_login,
        is_active=bool(row.is_active),
    )


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        token_key=row.token_key,
        user_id=row.user_id,
        expires_at=row.expires_at,
    )
