from __future__ import annotations

import enum
import json
import time
from dataclasses import asdict, dataclass
from typing import Optional, Tuple

from authcore.core.errors import KeyValueStoreError
from authcore.core.kv import CasResult, KeyValueStore
from authcore.core.tokens import new_token_id


@dataclass(frozen=True)
class RefreshSessionRecord:
    userId: int
    jti: str
    createdAt: int  # epoch millis

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "RefreshSessionRecord":
        try:
            data = json.loads(raw)
            return cls(userId=int(data["userId"]), jti=str(data["jti"]), createdAt=int(data["createdAt"]))
        except (ValueError, KeyError, TypeError) as exc:
            raise KeyValueStoreError("corrupt refresh session record") from exc


class RotateOutcome(str, enum.Enum):
    ROTATED = "rotated"
    ABSENT = "absent"
    # stored jti moved on between read and write
    CONFLICT = "conflict"


class RefreshSessionStore:
    """
    One record per refresh session, keyed by session id, TTL = refresh lifetime.

    Rotation model:
    - the record holds the only `jti` that may be presented next;
    - `rotate` replaces it and slides the TTL window;
    - `revoke` drops the whole session (logout, reuse detection).
    """

    def __init__(self, kv: KeyValueStore, ttl_seconds: int, prefix: str = ""):
        self._kv = kv
        self._ttl = int(ttl_seconds)
        self._prefix = prefix

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}rt:{session_id}"

    def create(self, user_id: int) -> Tuple[str, str]:
        session_id = new_token_id()
        jti = new_token_id()
        record = RefreshSessionRecord(userId=int(user_id), jti=jti, createdAt=int(time.time() * 1000))
        self._kv.set(self._key(session_id), record.to_json(), ttl_seconds=self._ttl)
        return session_id, jti

    def get(self, session_id: str) -> Optional[RefreshSessionRecord]:
        raw = self._kv.get(self._key(session_id))
        if raw is None:
            return None
        return RefreshSessionRecord.from_json(raw)

    def rotate(self, session_id: str, next_jti: str, expected_jti: Optional[str] = None) -> RotateOutcome:
        """
        Replace the session's current jti with `next_jti`.

        With `expected_jti` the write is a compare-and-set against the exact
        record that was read, so two concurrent rotations of one token cannot
        both succeed.
        """
        key = self._key(session_id)
        raw = self._kv.get(key)
        if raw is None:
            return RotateOutcome.ABSENT
        current = RefreshSessionRecord.from_json(raw)
        if expected_jti is not None and current.jti != expected_jti:
            return RotateOutcome.CONFLICT
        updated = RefreshSessionRecord(userId=current.userId, jti=next_jti, createdAt=current.createdAt)
        if expected_jti is None:
            self._kv.set(key, updated.to_json(), ttl_seconds=self._ttl)
            return RotateOutcome.ROTATED
        result = self._kv.compare_and_set(key, raw, updated.to_json(), self._ttl)
        if result is CasResult.SWAPPED:
            return RotateOutcome.ROTATED
        if result is CasResult.MISSING:
            return RotateOutcome.ABSENT
        return RotateOutcome.CONFLICT

    def revoke(self, session_id: str) -> None:
        self._kv.delete(self._key(session_id))
