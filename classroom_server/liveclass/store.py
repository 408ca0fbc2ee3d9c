"""
Async access to live class records for the relay.

The registry only needs a handful of reads/writes, so they are collected here
behind `LiveClassStore`. Tests swap in an in-memory store with the same
coroutine methods.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from channels.db import database_sync_to_async
from django.db import DatabaseError
from django.db.models import F
from django.db.models.functions import Greatest
from django.utils import timezone

from .errors import PersistenceFailure
from .models import LiveClass, LiveClassChatMessage


@dataclass(frozen=True)
class LiveClassRecord:
    class_id: str
    course_id: str
    teacher_id: str
    title: str
    stream_key: str


def _to_record(live_class: LiveClass) -> LiveClassRecord:
    return LiveClassRecord(
        class_id=str(live_class.pk),
        course_id=str(live_class.course_id),
        teacher_id=str(live_class.course.teacher_id),
        title=live_class.title,
        stream_key=live_class.stream_key,
    )


@database_sync_to_async
def _get_live_class(stream_key: str) -> Optional[LiveClassRecord]:
    live_class = LiveClass.objects.select_related("course").filter(stream_key=stream_key).first()
    return _to_record(live_class) if live_class else None


@database_sync_to_async
def _mark_live(stream_key: str, resumed: bool) -> int:
    updates = {"is_live": True, "is_completed": False}
    if not resumed:
        updates.update(current_viewer_count=0, started_at=timezone.now(), ended_at=None)
    return LiveClass.objects.filter(stream_key=stream_key).update(**updates)


@database_sync_to_async
def _mark_ended(stream_key: str, peak_viewer_count: int) -> int:
    return LiveClass.objects.filter(stream_key=stream_key).update(
        is_live=False,
        is_completed=True,
        current_viewer_count=0,
        peak_viewer_count=Greatest(F("peak_viewer_count"), peak_viewer_count),
        ended_at=timezone.now(),
    )


@database_sync_to_async
def _append_chat_message(stream_key: str, user_id: str, user_name: str, message: str, timestamp: datetime) -> None:
    live_class = LiveClass.objects.only("pk").get(stream_key=stream_key)
    LiveClassChatMessage.objects.create(
        live_class=live_class,
        user_id=user_id,
        user_name=user_name,
        message=message,
        timestamp=timestamp,
    )


class LiveClassStore:
    """Django ORM backed store used by the process-wide registry."""

    async def get_live_class(self, stream_key: str) -> Optional[LiveClassRecord]:
        return await _get_live_class(stream_key)

    async def mark_live(self, stream_key: str, *, resumed: bool = False) -> None:
        try:
            await _mark_live(stream_key, resumed)
        except DatabaseError as exc:
            raise PersistenceFailure(f"Could not mark {stream_key} live") from exc

    async def mark_ended(self, stream_key: str, *, peak_viewer_count: int) -> None:
        try:
            await _mark_ended(stream_key, peak_viewer_count)
        except DatabaseError as exc:
            raise PersistenceFailure(f"Could not mark {stream_key} ended") from exc

    async def append_chat_message(
        self,
        stream_key: str,
        *,
        user_id: str,
        user_name: str,
        message: str,
        timestamp: datetime,
    ) -> None:
        try:
            await _append_chat_message(stream_key, user_id, user_name, message, timestamp)
        except (DatabaseError, LiveClass.DoesNotExist) as exc:
            raise PersistenceFailure(f"Could not store chat message for {stream_key}") from exc
