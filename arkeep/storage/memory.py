from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from arkeep.logging import get_logger
from arkeep.storage.common import ensure_aware, generate_uuid
from arkeep.storage.errors import ConstraintViolation
from arkeep.storage.models import SessionRecord, User


class MemoryStore:
    """In-process backing store for users and refresh token rotation chains.

    One re-entrant lock guards every read and write, which makes rotation and
    family revocation atomic with respect to each other. When ``fs_root`` is
    given, state is written to ``fs_root/state/memory_store.json`` after every
    mutation and reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.provider_index: Dict[Tuple[str, str], str] = {}
        self.session_records: Dict[int, SessionRecord] = {}
        self.token_index: Dict[str, int] = {}
        self._record_id_seq: int = 1
        # RLock so helpers can be called with the lock already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- users ---------------------------------------------------------

    def find_or_create_user(
        self,
        provider: str,
        subject: str,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            user_id = self.provider_index.get((provider, subject))
            if user_id is not None:
                return replace(self.users[user_id])
            user = User(
                id=generate_uuid(),
                provider=provider,
                provider_user_id=subject,
                display_name=display_name,
                avatar_url=avatar_url,
            )
            self.users[user.id] = user
            self.provider_index[(provider, subject)] = user.id
            self._persist_state()
            self.logger.info("user_created", user_id=user.id, provider=provider)
            return replace(user)

    def update_user_profile(
        self,
        user_id: str,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if display_name is not None:
                user.display_name = display_name
            if avatar_url is not None:
                user.avatar_url = avatar_url
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    # -- session records -----------------------------------------------

    def insert_session_record(self, record: SessionRecord) -> int:
        with self._data_lock:
            stored = self._insert_locked(record)
            try:
                self._persist_state()
            except RuntimeError:
                self._drop_locked(stored)
                record.id = None
                raise
            return record.id

    def _insert_locked(self, record: SessionRecord) -> SessionRecord:
        if record.token in self.token_index:
            raise ConstraintViolation(
                "session token already exists", {"family_id": record.family_id}
            )
        record.id = self._record_id_seq
        self._record_id_seq += 1
        stored = replace(record)
        self.session_records[stored.id] = stored
        self.token_index[stored.token] = stored.id
        return stored

    def _drop_locked(self, record: SessionRecord) -> None:
        self.session_records.pop(record.id, None)
        self.token_index.pop(record.token, None)
        self._record_id_seq = record.id

    def get_session_record_by_token(self, token: str) -> Optional[SessionRecord]:
        with self._data_lock:
            record_id = self.token_index.get(token)
            if record_id is None:
                return None
            return replace(self.session_records[record_id])

    def revoke_session_record(self, record_id: int) -> None:
        with self._data_lock:
            record = self.session_records.get(record_id)
            if record and not record.revoked:
                record.revoked = True
                self._persist_state()

    def revoke_active_in_family(self, family_id: str) -> int:
        with self._data_lock:
            count = 0
            for record in self.session_records.values():
                if record.family_id == family_id and not record.revoked:
                    record.revoked = True
                    count += 1
            if count:
                self._persist_state()
            return count

    def rotate_session_record(
        self, record_id: int, successor: SessionRecord
    ) -> Optional[SessionRecord]:
        with self._data_lock:
            current = self.session_records.get(record_id)
            if current is None or current.revoked:
                return None
            if successor.family_id != current.family_id:
                raise ConstraintViolation(
                    "successor must stay in the same family",
                    {"family_id": current.family_id},
                )
            # Insert first so a token collision leaves the current record untouched
            stored = self._insert_locked(successor)
            current.revoked = True
            try:
                self._persist_state()
            except RuntimeError:
                # Nothing is committed unless it reached disk
                current.revoked = False
                self._drop_locked(stored)
                raise
            return replace(stored)

    def list_family_records(self, family_id: str) -> List[SessionRecord]:
        with self._data_lock:
            records = [
                replace(r)
                for r in self.session_records.values()
                if r.family_id == family_id
            ]
        return sorted(records, key=lambda r: (r.issued_at, r.id or 0))

    # -- persistence ---------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "session_records": [
                self._serialize_session_record(r)
                for r in self.session_records.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        with self._data_lock:
            self.users = {
                u["id"]: self._deserialize_user(u) for u in data.get("users", [])
            }
            self.provider_index = {
                (u.provider, u.provider_user_id): u.id for u in self.users.values()
            }
            records = [
                self._deserialize_session_record(r)
                for r in data.get("session_records", [])
            ]
            self.session_records = {r.id: r for r in records}
            self.token_index = {r.token: r.id for r in records}
            self._record_id_seq = max((r.id for r in records), default=0) + 1
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            session_records=len(self.session_records),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return ensure_aware(datetime.fromisoformat(raw))

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "provider": user.provider,
            "provider_user_id": user.provider_user_id,
            "display_name": user.display_name,
            "avatar_url": user.avatar_url,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            provider=data["provider"],
            provider_user_id=data["provider_user_id"],
            display_name=data.get("display_name"),
            avatar_url=data.get("avatar_url"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session_record(self, record: SessionRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token": record.token,
            "family_id": record.family_id,
            "issued_at": self._serialize_datetime(record.issued_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
        }

    def _deserialize_session_record(self, data: dict) -> SessionRecord:
        return SessionRecord(
            id=int(data["id"]),
            user_id=str(data["user_id"]),
            token=data["token"],
            family_id=data["family_id"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
        )
