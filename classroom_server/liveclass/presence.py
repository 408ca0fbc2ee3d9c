"""
Connection liveness per stream token.

WHY:
- Channels groups do not provide a way to list members or notice a socket that
  vanished without a close frame.
- Each record carries a `last_seen` timestamp that inbound frames and `ping`
  refresh. The registry sweeper asks for records older than the heartbeat
  timeout and treats them as disconnects.

Design:
- One dict keyed by connection_id: holds the presence record (token, role, user)
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass
class PresenceRecord:
    connection_id: str
    token: str
    role: str
    user_id: str
    channel_name: str
    connected_at: float
    last_seen: float


class PresenceBook:
    def __init__(self) -> None:
        self._records: Dict[str, PresenceRecord] = {}  # connection_id -> record

    def upsert_connection(
        self,
        *,
        token: str,
        connection_id: str,
        role: str,
        user_id: str,
        channel_name: str = "",
        now: Optional[float] = None,
    ) -> PresenceRecord:
        """
        Register or update a connection's presence record.

        `connected_at` is first-write-wins; an empty `channel_name` keeps the
        one already on record.
        """
        now = time.time() if now is None else now
        record = self._records.get(connection_id)
        if record is None:
            record = PresenceRecord(
                connection_id=connection_id,
                token=token,
                role=role,
                user_id=user_id,
                channel_name=channel_name,
                connected_at=now,
                last_seen=now,
            )
            self._records[connection_id] = record
        else:
            record.token = token
            record.role = role
            record.user_id = user_id
            record.channel_name = channel_name or record.channel_name
            record.last_seen = now
        return record

    def refresh_connection(self, connection_id: str, *, now: Optional[float] = None) -> bool:
        """
        Bump last_seen for a connection.
        Returns True if the record exists, False if it was missing.
        """
        record = self._records.get(connection_id)
        if record is None:
            return False
        record.last_seen = time.time() if now is None else now
        return True

    def remove_connection(self, connection_id: str) -> Optional[PresenceRecord]:
        return self._records.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[PresenceRecord]:
        return self._records.get(connection_id)

    def expired_connections(self, *, ttl_seconds: float, now: Optional[float] = None) -> List[PresenceRecord]:
        now = time.time() if now is None else now
        cutoff = now - ttl_seconds
        return [r for r in self._records.values() if r.last_seen < cutoff]

    def clear(self) -> None:
        self._records.clear()
