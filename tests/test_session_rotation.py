"""Tests for refresh token rotation and reuse detection.

Covers:
- Rotation keeps the family and changes the token
- Reuse of a consumed token revokes the whole family
- Concurrent rotation of one token has exactly one winner
- Expiry revokes only the presented record
- Logout cascades and is idempotent
- Separate logins never affect each other
"""

import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from arkeep.service.errors import (
    InvalidTokenError,
    ReuseDetectedError,
    TokenExpiredError,
)
from arkeep.service.sessions import SessionRotationEngine
from arkeep.storage.errors import ConstraintViolation
from arkeep.storage.memory import MemoryStore

ROTATION_TTL = timedelta(days=14)


class SpyStore(MemoryStore):
    """Memory store that records family revocations."""

    def __init__(self):
        super().__init__()
        self.family_revocations: list[str] = []

    def revoke_active_in_family(self, family_id):
        self.family_revocations.append(family_id)
        return super().revoke_active_in_family(family_id)


class StaleReadStore(MemoryStore):
    """Returns records as they looked before any revocation.

    Simulates a reader that fetched the record just before a concurrent
    rotation consumed it.
    """

    def get_session_record_by_token(self, token):
        record = super().get_session_record_by_token(token)
        return replace(record, revoked=False) if record else None


@pytest.fixture
def store():
    return SpyStore()


@pytest.fixture
def engine(store, clock):
    return SessionRotationEngine(store, rotation_ttl=ROTATION_TTL, clock=clock)


def _current(store, family_id, now):
    return [r for r in store.list_family_records(family_id) if r.is_current(now)]


class TestStartSession:
    def test_opens_new_family(self, engine, clock):
        record = engine.start_session("user-1")
        assert record.id is not None
        assert record.user_id == "user-1"
        assert record.revoked is False
        assert record.issued_at == clock.now
        assert record.expires_at == clock.now + ROTATION_TTL

    def test_each_login_gets_its_own_family(self, engine):
        first = engine.start_session("user-1")
        second = engine.start_session("user-1")
        assert first.family_id != second.family_id
        assert first.token != second.token

    def test_token_collision_is_not_retried(self, engine, store, monkeypatch):
        monkeypatch.setattr(
            "arkeep.storage.models.new_refresh_token", lambda: "fixed-token"
        )
        engine.start_session("user-1")
        with pytest.raises(ConstraintViolation):
            engine.start_session("user-1")
        assert len(store.session_records) == 1

    def test_rejects_non_positive_ttl(self, store):
        with pytest.raises(ValueError):
            SessionRotationEngine(store, rotation_ttl=timedelta(0))


class TestRotate:
    def test_rotation_changes_token_keeps_family(self, engine, clock):
        original = engine.start_session("user-1")
        clock.advance(minutes=5)
        rotated = engine.rotate(original.token)
        assert rotated.token != original.token
        assert rotated.family_id == original.family_id
        assert rotated.user_id == "user-1"
        assert rotated.issued_at == clock.now
        assert rotated.expires_at == clock.now + ROTATION_TTL

    def test_rotation_consumes_presented_record(self, engine, store, clock):
        original = engine.start_session("user-1")
        rotated = engine.rotate(original.token)
        assert store.get_session_record_by_token(original.token).revoked is True
        assert [r.id for r in _current(store, original.family_id, clock.now)] == [rotated.id]

    def test_chain_of_rotations(self, engine, store, clock):
        record = engine.start_session("user-1")
        for _ in range(5):
            clock.advance(minutes=10)
            record = engine.rotate(record.token)
        records = store.list_family_records(record.family_id)
        assert len(records) == 6
        assert [r.revoked for r in records] == [True] * 5 + [False]

    def test_unknown_token(self, engine):
        with pytest.raises(InvalidTokenError):
            engine.rotate("never-issued")

    def test_blank_token(self, engine):
        with pytest.raises(InvalidTokenError):
            engine.rotate("")

    def test_reuse_after_rotation_poisons_chain(self, engine, store, clock):
        token_a = engine.start_session("user-1").token
        token_b = engine.rotate(token_a).token

        with pytest.raises(ReuseDetectedError) as excinfo:
            engine.rotate(token_a)
        assert excinfo.value.revoked_count == 1
        assert excinfo.value.reason == "reuse_detected"

        with pytest.raises(ReuseDetectedError):
            engine.rotate(token_b)
        family_id = excinfo.value.family_id
        assert _current(store, family_id, clock.now) == []

    def test_revoked_wins_over_expired(self, engine, clock):
        token_a = engine.start_session("user-1").token
        engine.rotate(token_a)
        clock.advance(days=30)
        with pytest.raises(ReuseDetectedError):
            engine.rotate(token_a)

    def test_u1_scenario(self, engine, store, clock):
        rt1 = engine.start_session("u1")
        rt2 = engine.rotate(rt1.token)
        assert rt2.token != rt1.token

        with pytest.raises(ReuseDetectedError):
            engine.rotate(rt1.token)
        # rt2 was never replayed but its family is gone
        with pytest.raises(ReuseDetectedError):
            engine.rotate(rt2.token)
        assert all(r.revoked for r in store.list_family_records(rt1.family_id))


class TestExpiry:
    def test_expired_token_fails_and_is_revoked(self, engine, store, clock):
        record = engine.start_session("user-1")
        clock.advance(days=14)
        with pytest.raises(TokenExpiredError):
            engine.rotate(record.token)
        assert store.get_session_record_by_token(record.token).revoked is True

    def test_boundary_instant_is_expired(self, engine, clock):
        record = engine.start_session("user-1")
        clock.now = record.expires_at
        with pytest.raises(TokenExpiredError):
            engine.rotate(record.token)

    def test_expiry_does_not_cascade(self, engine, store, clock):
        record = engine.start_session("user-1")
        clock.advance(days=15)
        with pytest.raises(TokenExpiredError):
            engine.rotate(record.token)
        assert store.family_revocations == []

    def test_expired_token_never_succeeds_later(self, engine, clock):
        record = engine.start_session("user-1")
        clock.advance(days=15)
        with pytest.raises(TokenExpiredError):
            engine.rotate(record.token)
        # Already marked revoked, so the second attempt is treated as reuse
        with pytest.raises(ReuseDetectedError):
            engine.rotate(record.token)


class TestEndSession:
    def test_logout_revokes_family(self, engine, store, clock):
        record = engine.start_session("user-1")
        rotated = engine.rotate(record.token)
        assert engine.end_session(rotated.token) == 1
        assert _current(store, record.family_id, clock.now) == []
        with pytest.raises(ReuseDetectedError):
            engine.rotate(rotated.token)

    def test_logout_with_old_token_still_cascades(self, engine, store, clock):
        record = engine.start_session("user-1")
        engine.rotate(record.token)
        assert engine.end_session(record.token) == 1
        assert _current(store, record.family_id, clock.now) == []

    def test_logout_is_idempotent(self, engine):
        record = engine.start_session("user-1")
        assert engine.end_session(record.token) == 1
        assert engine.end_session(record.token) == 0

    def test_logout_unknown_token_is_silent(self, engine):
        assert engine.end_session("never-issued") == 0
        assert engine.end_session("") == 0


class TestFamilyIsolation:
    def test_families_are_independent(self, engine, store, clock):
        phone = engine.start_session("user-1")
        laptop = engine.start_session("user-1")

        phone_next = engine.rotate(phone.token)
        with pytest.raises(ReuseDetectedError):
            engine.rotate(phone.token)

        assert store.get_session_record_by_token(phone_next.token).revoked is True
        assert store.get_session_record_by_token(laptop.token).revoked is False
        laptop_next = engine.rotate(laptop.token)
        assert laptop_next.family_id == laptop.family_id

    def test_logout_leaves_other_family(self, engine, store):
        phone = engine.start_session("user-1")
        laptop = engine.start_session("user-1")
        engine.end_session(phone.token)
        assert engine.rotate(laptop.token).family_id == laptop.family_id


class TestConcurrentRotation:
    def test_stale_read_loses_compare_and_swap(self, clock):
        store = StaleReadStore()
        engine = SessionRotationEngine(store, rotation_ttl=ROTATION_TTL, clock=clock)
        original = engine.start_session("user-1")
        winner = engine.rotate(original.token)

        # The second caller still sees revoked=False and reaches the swap
        with pytest.raises(ReuseDetectedError) as excinfo:
            engine.rotate(original.token)
        assert excinfo.value.revoked_count == 1
        assert store.session_records[winner.id].revoked is True

    def test_single_winner_under_threads(self, clock):
        store = MemoryStore()
        engine = SessionRotationEngine(store, rotation_ttl=ROTATION_TTL, clock=clock)

        for _ in range(25):
            original = engine.start_session("user-1")
            barrier = threading.Barrier(2)
            successes = []
            failures = []

            def attempt():
                barrier.wait()
                try:
                    successes.append(engine.rotate(original.token))
                except ReuseDetectedError as exc:
                    failures.append(exc)

            threads = [threading.Thread(target=attempt) for _ in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert len(successes) == 1
            assert len(failures) == 1
            assert _current(store, original.family_id, clock.now) == []
