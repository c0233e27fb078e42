"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the user repository and owns
the engine; SessionStore (auth/sessions.py) borrows that engine so both tables
live in one database and the sessions -> users foreign key can be enforced.
_row_to_user is the mapper. Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(provider, provider_id) is enforced in SQL. Unlike the nullable
  linking columns of a password+OAuth system, both columns are NOT NULL here,
  so the constraint is total: two concurrent create_user() calls for the same
  identity cannot both insert. The loser's IntegrityError becomes ConflictError.

  sessions.user_id REFERENCES users(id) ON DELETE CASCADE. SQLite only honours
  it with PRAGMA foreign_keys=ON, which is set on every new connection.

DB URL: Settings.database_url (default auth/ssogate.db). Any SQLAlchemy URL
works; SQLite-only PRAGMAs are skipped for other dialects.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import ConflictError, NotFoundError, StorageError, ValidationError
from auth.models import OAuthProfile, Provider, User

logger = logging.getLogger("ssogate.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'ssogate.db'}"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PROVIDERS = {p.value for p in Provider}
_UPDATABLE_FIELDS = {"username", "email"}
_IMMUTABLE_FIELDS = {"provider", "provider_id", "id"}

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),  # uuid4
    Column("username", String(255), nullable=False),
    Column("email", String(320), nullable=False),
    Column("provider", String(30), nullable=False),  # "microsoft" | "github"
    Column("provider_id", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_id", name="uq_users_provider_identity"),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", String(64), primary_key=True),  # 32 random bytes, hex
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    # Fixed-width ISO 8601 (microseconds, +00:00) so string order == time order.
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Index("idx_sessions_user_id", "user_id"),
    Index("idx_sessions_expires_at", "expires_at"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Without foreign_keys=ON the ON DELETE CASCADE
    on sessions.user_id is silently ignored.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(db_url: str) -> Engine:
    """Build an engine and create both tables if they do not exist."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def clean_input(value) -> str:
    """Trim string input. Anything that is not a string counts as empty."""
    if not isinstance(value, str):
        return ""
    return value.strip()


@contextmanager
def translate_db_errors(action: str) -> Iterator[None]:
    """Re-raise driver failures as StorageError so callers see one error family."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Database error while trying to %s: %s", action, exc)
        raise StorageError(f"Failed to {action}", details={"error": str(exc)}) from exc


def validate_user_fields(username: str, email: str, provider: str, provider_id: str) -> list[str]:
    """Return a list of problems with a user record. Empty list means valid."""
    errors: list[str] = []
    if not username:
        errors.append("Username is required")
    if not email or not _EMAIL_RE.match(email):
        errors.append("Valid email is required")
    if provider not in _PROVIDERS:
        errors.append("Valid provider is required (microsoft or github)")
    if not provider_id:
        errors.append("Provider ID is required")
    return errors


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore()
        user = store.create_user(OAuthProfile(id="42", username="alice",
                                              email="a@example.com", provider="github"))
        store.find_by_provider_id("42", "github")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = create_db_engine(db_url)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_by_provider_id(self, provider_id: str, provider: str) -> User | None:
        """Look up a user by (provider, provider_id).

        Both arguments are trimmed first, so surrounding whitespace never
        affects matching. Provider matching is case-sensitive.

        Raises ValidationError if either argument is empty or the provider is
        not recognized. A miss returns None.
        """
        provider_id = clean_input(provider_id)
        provider = clean_input(provider)
        if not provider_id or not provider:
            raise ValidationError(
                "Provider ID and provider are required",
                details={"provider_id": provider_id, "provider": provider},
            )
        if provider not in _PROVIDERS:
            raise ValidationError("Invalid provider. Must be microsoft or github", details={"provider": provider})
        with translate_db_errors("find user by provider ID"), self.engine.connect() as conn:
            row = conn.execute(
                users.select().where((users.c.provider == provider) & (users.c.provider_id == provider_id))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None for an empty id or a miss."""
        user_id = clean_input(user_id)
        if not user_id:
            return None
        with translate_db_errors("find user by ID"), self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def user_exists(self, user_id: str) -> bool:
        """Cheap existence check used before a session is created."""
        user_id = clean_input(user_id)
        if not user_id:
            return False
        with translate_db_errors("check user existence"), self.engine.connect() as conn:
            row = conn.execute(select(users.c.id).where(users.c.id == user_id).limit(1)).fetchone()
        return row is not None

    def get_all_users(self) -> list[User]:
        """Return all users, most recently created first. Admin/test helper."""
        with translate_db_errors("list users"), self.engine.connect() as conn:
            rows = conn.execute(users.select().order_by(users.c.created_at.desc())).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_users(self) -> int:
        with translate_db_errors("count users"), self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users)).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, profile: OAuthProfile) -> User:
        """Insert a new user from a normalized provider profile.

        profile.id is the provider-assigned id; the local id is a fresh uuid4.
        All fields are trimmed and validated before anything is written.

        Raises:
            ValidationError: username, email format, provider or provider id invalid.
            ConflictError:   (provider, provider_id) already exists -- either
                             found by the pre-check or rejected by the UNIQUE
                             constraint when a concurrent insert won the race.
        """
        username = clean_input(profile.username)
        email = clean_input(profile.email)
        provider = clean_input(profile.provider)
        provider_id = clean_input(profile.id)

        errors = validate_user_fields(username, email, provider, provider_id)
        if errors:
            raise ValidationError("User validation failed", details={"errors": errors})

        if self.find_by_provider_id(provider_id, provider) is not None:
            raise ConflictError(
                "User already exists with this provider ID",
                details={"provider_id": provider_id, "provider": provider},
            )

        now = _now_iso()
        user = User(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            provider=provider,
            provider_id=provider_id,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    users.insert().values(
                        id=user.id,
                        username=user.username,
                        email=user.email,
                        provider=user.provider,
                        provider_id=user.provider_id,
                        created_at=user.created_at,
                        updated_at=user.updated_at,
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise ConflictError(
                "User already exists with this provider ID",
                details={"provider_id": provider_id, "provider": provider},
            ) from exc
        except SQLAlchemyError as exc:
            raise StorageError("Failed to create user", details={"error": str(exc)}) from exc
        return user

    def update_user(self, user_id: str, **fields) -> User:
        """Apply a partial profile update and return the updated user.

        Accepted fields: username, email. Only the fields passed are changed;
        the merged record is re-validated and updated_at is bumped.
        provider and provider_id are fixed at creation.

        Raises:
            ValidationError: empty user_id, unknown/immutable field, or the
                             merged record is invalid.
            NotFoundError:   no user with this id.
        """
        user_id = clean_input(user_id)
        if not user_id:
            raise ValidationError("User ID is required", details={"user_id": user_id})

        rejected = set(fields) - _UPDATABLE_FIELDS
        if rejected:
            immutable = rejected & _IMMUTABLE_FIELDS
            reason = "Immutable user fields" if immutable else "Unknown user fields"
            raise ValidationError(f"{reason}: {sorted(rejected)!r}", details={"fields": sorted(rejected)})

        existing = self.find_by_id(user_id)
        if existing is None:
            raise NotFoundError("User not found", details={"user_id": user_id})

        if "username" in fields:
            existing.username = clean_input(fields["username"])
        if "email" in fields:
            existing.email = clean_input(fields["email"])

        errors = validate_user_fields(existing.username, existing.email, existing.provider, existing.provider_id)
        if errors:
            raise ValidationError("User validation failed", details={"errors": errors})

        existing.updated_at = _now_iso()
        with translate_db_errors("update user"), self.engine.connect() as conn:
            result = conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(username=existing.username, email=existing.email, updated_at=existing.updated_at)
            )
            conn.commit()
        if result.rowcount == 0:
            # Deleted between the lookup and the update.
            raise NotFoundError("User not found", details={"user_id": user_id})
        return existing

    def delete_user(self, user_id: str) -> bool:
        """Permanently delete a user. Returns True if a row was removed.

        Administrative only -- the login flow never deletes users. Sessions
        owned by the user go with it (ON DELETE CASCADE).
        """
        user_id = clean_input(user_id)
        if not user_id:
            raise ValidationError("User ID is required", details={"user_id": user_id})
        with translate_db_errors("delete user"), self.engine.connect() as conn:
            result = conn.execute(users.delete().where(users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        provider=row.provider,
        provider_id=row.provider_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
