from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from arkeep.logging import get_logger
from arkeep.storage.common import ensure_aware, generate_uuid, safe_row_value
from arkeep.storage.errors import ConstraintViolation
from arkeep.storage.models import SessionRecord, User, utcnow

# Serializes every write to one rotation chain. hashtext() folds the family id
# into the advisory lock key space; collisions only cost extra serialization.
_FAMILY_LOCK_SQL = "SELECT pg_advisory_xact_lock(hashtext(%s))"


class PostgresStore:
    """Postgres-backed store for users and refresh token rotation chains."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` and ``session_record`` tables if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id TEXT PRIMARY KEY,
                    provider TEXT NOT NULL,
                    provider_user_id TEXT NOT NULL,
                    display_name TEXT,
                    avatar_url TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    UNIQUE (provider, provider_user_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS session_record (
                    id BIGSERIAL PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES app_user(id),
                    token TEXT NOT NULL UNIQUE,
                    family_id TEXT NOT NULL,
                    issued_at TIMESTAMPTZ NOT NULL,
                    expires_at TIMESTAMPTZ NOT NULL,
                    revoked BOOLEAN NOT NULL DEFAULT FALSE
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS session_record_family_idx ON session_record (family_id)"
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    # -- users ---------------------------------------------------------

    def find_or_create_user(
        self,
        provider: str,
        subject: str,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO app_user (id, provider, provider_user_id, display_name, avatar_url)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (provider, provider_user_id) DO NOTHING
                RETURNING *
                """,
                (generate_uuid(), provider, subject, display_name, avatar_url),
            ).fetchone()
            if row:
                self.logger.info("user_created", user_id=str(row["id"]), provider=provider)
            else:
                row = conn.execute(
                    "SELECT * FROM app_user WHERE provider = %s AND provider_user_id = %s",
                    (provider, subject),
                ).fetchone()
        return self._user_from_row(row)

    def update_user_profile(
        self,
        user_id: str,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET display_name = COALESCE(%s, display_name),
                    avatar_url = COALESCE(%s, avatar_url)
                WHERE id = %s
                RETURNING *
                """,
                (display_name, avatar_url, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    # -- session records -----------------------------------------------

    def insert_session_record(self, record: SessionRecord) -> int:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(_FAMILY_LOCK_SQL, (record.family_id,))
                row = conn.execute(
                    """
                    INSERT INTO session_record (user_id, token, family_id, issued_at, expires_at, revoked)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    self._record_params(record),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session token already exists", {"family_id": record.family_id}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session owner missing", {"user_id": record.user_id}
            )
        record.id = int(row["id"])
        return record.id

    def get_session_record_by_token(self, token: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM session_record WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return self._record_from_row(row)

    def revoke_session_record(self, record_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE session_record SET revoked = TRUE WHERE id = %s AND revoked = FALSE",
                (record_id,),
            )

    def revoke_active_in_family(self, family_id: str) -> int:
        with self._connect() as conn, conn.transaction():
            conn.execute(_FAMILY_LOCK_SQL, (family_id,))
            cur = conn.execute(
                "UPDATE session_record SET revoked = TRUE WHERE family_id = %s AND revoked = FALSE",
                (family_id,),
            )
            return max(cur.rowcount, 0)

    def rotate_session_record(
        self, record_id: int, successor: SessionRecord
    ) -> Optional[SessionRecord]:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(_FAMILY_LOCK_SQL, (successor.family_id,))
                swapped = conn.execute(
                    """
                    UPDATE session_record SET revoked = TRUE
                    WHERE id = %s AND family_id = %s AND revoked = FALSE
                    RETURNING id
                    """,
                    (record_id, successor.family_id),
                ).fetchone()
                if not swapped:
                    return None
                row = conn.execute(
                    """
                    INSERT INTO session_record (user_id, token, family_id, issued_at, expires_at, revoked)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    self._record_params(successor),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session token already exists", {"family_id": successor.family_id}
            )
        successor.id = int(row["id"])
        return successor

    def list_family_records(self, family_id: str) -> List[SessionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM session_record WHERE family_id = %s ORDER BY issued_at, id",
                (family_id,),
            ).fetchall()
        return [self._record_from_row(row) for row in rows]

    # -- row mapping ---------------------------------------------------

    @staticmethod
    def _record_params(record: SessionRecord) -> tuple:
        return (
            record.user_id,
            record.token,
            record.family_id,
            record.issued_at,
            record.expires_at,
            record.revoked,
        )

    @staticmethod
    def _record_from_row(row: Any) -> SessionRecord:
        return SessionRecord(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            family_id=str(row["family_id"]),
            issued_at=ensure_aware(row["issued_at"]),
            expires_at=ensure_aware(row["expires_at"]),
            revoked=bool(row["revoked"]),
        )

    @staticmethod
    def _user_from_row(row: Any) -> User:
        created_at: Optional[datetime] = safe_row_value(row, "created_at")
        return User(
            id=str(row["id"]),
            provider=row["provider"],
            provider_user_id=row["provider_user_id"],
            display_name=safe_row_value(row, "display_name"),
            avatar_url=safe_row_value(row, "avatar_url"),
            created_at=ensure_aware(created_at) if created_at else utcnow(),
        )
