from contextlib import nullcontext
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from arkeep.logging import get_logger
from arkeep.storage.errors import ConstraintViolation
from arkeep.storage.models import SessionRecord
from arkeep.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self.row = row
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.row

    def fetchall(self):
        return self.rows


class FakeConnection:
    """Records SQL and replays scripted cursors in order."""

    def __init__(self, responses=None, raise_on=None):
        self.responses = list(responses or [])
        self.raise_on = raise_on or {}
        self.executed = []
        self.transactions = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def transaction(self):
        self.transactions += 1
        return nullcontext()

    def execute(self, sql, params=None):
        normalized = " ".join(sql.split())
        self.executed.append((normalized, params))
        for fragment, exc in self.raise_on.items():
            if fragment in normalized:
                raise exc
        return self.responses.pop(0) if self.responses else FakeCursor()


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.logger = get_logger("test")
    return store


def _record(family_id="fam-1"):
    return SessionRecord.new("user-1", ttl=timedelta(days=14), now=NOW, family_id=family_id)


def test_rotate_locks_family_then_swaps_and_inserts():
    conn = FakeConnection([FakeCursor(), FakeCursor(row={"id": 7}), FakeCursor(row={"id": 8})])
    successor = _record()
    stored = _store(conn).rotate_session_record(7, successor)

    assert stored is successor and stored.id == 8
    assert conn.transactions == 1
    lock_sql, lock_params = conn.executed[0]
    assert "pg_advisory_xact_lock" in lock_sql
    assert lock_params == ("fam-1",)
    swap_sql, swap_params = conn.executed[1]
    assert swap_sql.startswith("UPDATE session_record SET revoked = TRUE")
    assert "AND revoked = FALSE" in swap_sql
    assert swap_params == (7, "fam-1")
    assert conn.executed[2][0].startswith("INSERT INTO session_record")


def test_rotate_lost_swap_inserts_nothing():
    conn = FakeConnection([FakeCursor(), FakeCursor(row=None)])
    assert _store(conn).rotate_session_record(7, _record()) is None
    assert len(conn.executed) == 2
    assert not any(sql.startswith("INSERT") for sql, _ in conn.executed)


def test_rotate_token_collision_raises_constraint():
    conn = FakeConnection(
        [FakeCursor(), FakeCursor(row={"id": 7})],
        raise_on={"INSERT INTO session_record": errors.UniqueViolation("dup")},
    )
    with pytest.raises(ConstraintViolation):
        _store(conn).rotate_session_record(7, _record())


def test_revoke_family_is_single_locked_statement():
    conn = FakeConnection([FakeCursor(), FakeCursor(rowcount=3)])
    assert _store(conn).revoke_active_in_family("fam-1") == 3
    assert conn.transactions == 1
    assert "pg_advisory_xact_lock" in conn.executed[0][0]
    update_sql, params = conn.executed[1]
    assert update_sql == (
        "UPDATE session_record SET revoked = TRUE WHERE family_id = %s AND revoked = FALSE"
    )
    assert params == ("fam-1",)


def test_insert_takes_family_lock_and_assigns_id():
    conn = FakeConnection([FakeCursor(), FakeCursor(row={"id": 42})])
    record = _record()
    assert _store(conn).insert_session_record(record) == 42
    assert record.id == 42
    assert "pg_advisory_xact_lock" in conn.executed[0][0]


def test_insert_duplicate_token():
    conn = FakeConnection(raise_on={"INSERT": errors.UniqueViolation("dup")})
    with pytest.raises(ConstraintViolation):
        _store(conn).insert_session_record(_record())


def test_insert_missing_owner():
    conn = FakeConnection(raise_on={"INSERT": errors.ForeignKeyViolation("fk")})
    with pytest.raises(ConstraintViolation) as excinfo:
        _store(conn).insert_session_record(_record())
    assert excinfo.value.detail == {"user_id": "user-1"}


def test_lookup_maps_naive_timestamps_to_utc():
    row = {
        "id": 3,
        "user_id": "user-1",
        "token": "tok",
        "family_id": "fam-1",
        "issued_at": datetime(2024, 1, 1),
        "expires_at": datetime(2024, 1, 15),
        "revoked": False,
    }
    conn = FakeConnection([FakeCursor(row=row)])
    record = _store(conn).get_session_record_by_token("tok")
    assert record.id == 3
    assert record.expires_at == datetime(2024, 1, 15, tzinfo=timezone.utc)
    assert conn.executed[0][1] == ("tok",)


def test_lookup_missing_token():
    conn = FakeConnection([FakeCursor(row=None)])
    assert _store(conn).get_session_record_by_token("nope") is None


def test_find_or_create_falls_back_to_select():
    existing = {
        "id": "user-1",
        "provider": "google",
        "provider_user_id": "sub-1",
        "display_name": "Ada",
        "avatar_url": None,
        "created_at": NOW,
    }
    conn = FakeConnection([FakeCursor(row=None), FakeCursor(row=existing)])
    user = _store(conn).find_or_create_user("google", "sub-1", display_name="Ignored")
    assert user.id == "user-1"
    assert user.display_name == "Ada"
    assert "ON CONFLICT (provider, provider_user_id) DO NOTHING" in conn.executed[0][0]
    assert conn.executed[1][1] == ("google", "sub-1")


def test_update_profile_keeps_missing_fields():
    row = {
        "id": "user-1",
        "provider": "google",
        "provider_user_id": "sub-1",
        "display_name": "Ada",
        "avatar_url": "https://img/a.png",
        "created_at": NOW,
    }
    conn = FakeConnection([FakeCursor(row=row)])
    user = _store(conn).update_user_profile("user-1", display_name="Ada")
    sql, params = conn.executed[0]
    assert "COALESCE(%s, avatar_url)" in sql
    assert params == ("Ada", None, "user-1")
    assert user.avatar_url == "https://img/a.png"
