"""
auth/sessions.py -- Server-side session persistence.

Pattern: Repository (same as auth/store.py). SessionStore owns the sessions
table; it shares the UserStore's engine and asks the UserStore about users
rather than reading the users table itself.

Error philosophy:
  create() and destroy() raise typed errors (ValidationError, NotFoundError,
  StorageError) -- the caller asked for a state change and must know if it
  did not happen.

  validate() and the read-side helpers never raise. A session that cannot be
  confirmed valid, for whatever reason, is simply not a session: they return
  None / [] / zeros and log the failure.

Expiry:
  A row is expired once now > expires_at. validate() deletes an expired row
  before returning None; cleanup() removes all of them in one statement.
  Rows are always created with expires_at in the future, so a sweep running
  concurrently with create() can never remove a fresh session, and a sweep
  racing validate() over the same expired row converges on "row absent".

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AuthError, NotFoundError, ValidationError
from auth.models import Session, SessionStats, User
from auth.store import UserStore, clean_input, sessions, translate_db_errors
from auth.tokens import generate_session_id, redact

logger = logging.getLogger("ssogate.auth.sessions")

DEFAULT_SESSION_DURATION = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SessionStore:
    """Repository for Session entities.

    Usage:
        store = SessionStore(user_store)
        session = store.create(user.id)
        store.validate(session.id)      # Session or None
        store.destroy(session.id)
        store.cleanup()                 # call periodically

    clock is injectable so tests can move time without sleeping.
    """

    def __init__(self, user_store: UserStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self._users = user_store
        self.engine = user_store.engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, user_id: str, duration: timedelta = DEFAULT_SESSION_DURATION) -> Session:
        """Create and persist a session for an existing user.

        Raises:
            ValidationError: empty user_id, or expires_at would not be after
                             created_at (non-positive duration).
            NotFoundError:   the user does not exist.
            StorageError:    the insert failed.
        """
        user_id = clean_input(user_id)
        if not user_id:
            raise ValidationError("User ID is required to create session", details={"user_id": user_id})

        if not self._users.user_exists(user_id):
            raise NotFoundError("Cannot create session for non-existent user", details={"user_id": user_id})

        created_at = self._clock()
        session = Session(
            id=generate_session_id(),
            user_id=user_id,
            created_at=created_at,
            expires_at=created_at + duration,
        )
        if session.expires_at <= session.created_at:
            raise ValidationError(
                "Session validation failed",
                details={"errors": ["Session expiration time must be after creation time"]},
            )

        with translate_db_errors("create session"), self.engine.connect() as conn:
            conn.execute(
                sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    created_at=_to_iso(session.created_at),
                    expires_at=_to_iso(session.expires_at),
                )
            )
            conn.commit()
        logger.debug("Session %s created for user %s", redact(session.id), user_id)
        return session

    def validate(self, session_id: str) -> Session | None:
        """Return the session if it exists, is unexpired and well-formed; else None.

        Never raises. An expired row is deleted before None is returned, so a
        second call for the same id also finds nothing.
        """
        session_id = clean_input(session_id)
        if not session_id:
            return None
        try:
            with self.engine.connect() as conn:
                row = conn.execute(sessions.select().where(sessions.c.id == session_id)).fetchone()
            if row is None:
                return None
            session = _row_to_session(row)
            if self._is_expired(session):
                self.destroy(session.id)
                return None
            if not session.user_id.strip():
                return None
            return session
        except (SQLAlchemyError, AuthError, ValueError) as exc:
            logger.error("Session validation error for %s: %s", redact(session_id), exc)
            return None

    def destroy(self, session_id: str) -> None:
        """Delete a session. Deleting an absent session is not an error.

        Raises ValidationError for an empty id, StorageError if the delete fails.
        """
        session_id = clean_input(session_id)
        if not session_id:
            raise ValidationError("Session ID is required", details={"session_id": session_id})
        with translate_db_errors("destroy session"), self.engine.connect() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.id == session_id))
            conn.commit()
        if result.rowcount == 0:
            logger.debug("Session %s was not found for deletion", redact(session_id))

    def cleanup(self) -> int:
        """Delete every session whose expiry is in the past. Returns rows removed."""
        cutoff = _to_iso(self._clock())
        with translate_db_errors("clean up expired sessions"), self.engine.connect() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.expires_at < cutoff))
            conn.commit()
        removed = result.rowcount or 0
        if removed > 0:
            logger.info("Cleaned up %d expired sessions", removed)
        return removed

    # ------------------------------------------------------------------
    # Composite / per-user operations
    # ------------------------------------------------------------------

    def get_session_with_user(self, session_id: str) -> tuple[Session, User] | None:
        """Validate a session and load its owner.

        A valid session whose user no longer exists is orphaned: it is
        destroyed and None is returned. Never raises.
        """
        session = self.validate(session_id)
        if session is None:
            return None
        try:
            user = self._users.find_by_id(session.user_id)
            if user is None:
                logger.warning("Destroying orphaned session %s (user %s missing)", redact(session.id), session.user_id)
                self.destroy(session.id)
                return None
            return session, user
        except AuthError as exc:
            logger.error("Error getting session with user for %s: %s", redact(session.id), exc)
            return None

    def destroy_all_user_sessions(self, user_id: str) -> int:
        """Delete every session owned by a user. Returns rows removed."""
        user_id = clean_input(user_id)
        if not user_id:
            raise ValidationError("User ID is required", details={"user_id": user_id})
        with translate_db_errors("destroy user sessions"), self.engine.connect() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.user_id == user_id))
            conn.commit()
        return result.rowcount or 0

    def get_user_sessions(self, user_id: str) -> list[Session]:
        """Return a user's unexpired sessions, newest first. [] on any failure."""
        user_id = clean_input(user_id)
        if not user_id:
            return []
        now = _to_iso(self._clock())
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    sessions.select()
                    .where((sessions.c.user_id == user_id) & (sessions.c.expires_at > now))
                    .order_by(sessions.c.created_at.desc())
                ).fetchall()
        except SQLAlchemyError as exc:
            logger.error("Error getting sessions for user %s: %s", user_id, exc)
            return []
        return [_row_to_session(r) for r in rows]

    def extend_session(self, session_id: str, duration: timedelta = DEFAULT_SESSION_DURATION) -> Session | None:
        """Push a valid session's expiry to now + duration.

        Returns the updated session, or None if it was not valid (or the
        update failed). Never raises.
        """
        session = self.validate(session_id)
        if session is None:
            return None
        new_expiry = self._clock() + duration
        if new_expiry <= session.created_at:
            return None
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    sessions.update().where(sessions.c.id == session.id).values(expires_at=_to_iso(new_expiry))
                )
                conn.commit()
        except SQLAlchemyError as exc:
            logger.error("Error extending session %s: %s", redact(session.id), exc)
            return None
        if result.rowcount == 0:
            return None
        session.expires_at = new_expiry
        return session

    def get_session_stats(self) -> SessionStats:
        """Return total / active / expired counts. All zeros on failure."""
        now = _to_iso(self._clock())
        count = select(func.count()).select_from(sessions)
        try:
            with self.engine.connect() as conn:
                total = conn.execute(count).scalar() or 0
                active = conn.execute(count.where(sessions.c.expires_at > now)).scalar() or 0
                expired = conn.execute(count.where(sessions.c.expires_at <= now)).scalar() or 0
        except SQLAlchemyError as exc:
            logger.error("Error getting session stats: %s", exc)
            return SessionStats()
        return SessionStats(total=total, active=active, expired=expired)

    def count_sessions(self, session_id: str) -> int:
        """Number of rows stored under a session id (0 or 1). Used by admin checks and tests."""
        with translate_db_errors("count sessions"), self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(sessions).where(sessions.c.id == clean_input(session_id))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_expired(self, session: Session) -> bool:
        return self._clock() > session.expires_at


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id or "",
        created_at=datetime.fromisoformat(row.created_at),
        expires_at=datetime.fromisoformat(row.expires_at),
    )
