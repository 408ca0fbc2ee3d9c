import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest
from channels.layers import InMemoryChannelLayer, get_channel_layer
from django.utils import timezone

from liveclass.errors import PersistenceFailure
from liveclass.registry import StreamRegistry, stream_registry
from liveclass.store import LiveClassRecord

TOKEN = "tok1"
COURSE_ID = "c1"
CLASS_ID = "l1"
TEACHER_ID = "teacher-1"


class FakeStore:
    """In-memory stand-in for LiveClassStore; records every write."""

    def __init__(self, records: Optional[List[LiveClassRecord]] = None):
        self.records: Dict[str, LiveClassRecord] = {r.stream_key: r for r in records or []}
        self.calls: List[tuple] = []
        self.fail_writes = False

    def add(self, record: LiveClassRecord) -> None:
        self.records[record.stream_key] = record

    async def get_live_class(self, stream_key: str) -> Optional[LiveClassRecord]:
        return self.records.get(stream_key)

    async def mark_live(self, stream_key: str, *, resumed: bool = False) -> None:
        self._write("mark_live", stream_key, resumed)

    async def mark_ended(self, stream_key: str, *, peak_viewer_count: int) -> None:
        self._write("mark_ended", stream_key, peak_viewer_count)

    async def append_chat_message(self, stream_key: str, *, user_id, user_name, message, timestamp) -> None:
        self._write("append_chat_message", stream_key, user_id, message)

    def _write(self, *call: Any) -> None:
        if self.fail_writes:
            raise PersistenceFailure(f"{call[0]} failed")
        self.calls.append(call)

    def calls_named(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]


@dataclass
class Conn:
    """A participant as the registry sees it: connection id plus layer channel."""

    connection_id: str
    channel_name: str
    user_id: str
    display_name: str


class Inbox:
    """Reads what the channel layer delivered to one connection, applying the consumer's exclude rule."""

    def __init__(self, layer):
        self.layer = layer

    async def frames(self, conn: Conn, timeout: float = 0.05) -> List[dict]:
        frames = []
        while True:
            try:
                message = await asyncio.wait_for(self.layer.receive(conn.channel_name), timeout)
            except asyncio.TimeoutError:
                return frames
            if message.get("exclude") == conn.connection_id:
                continue
            if "payload" in message:
                frames.append(message["payload"])
            else:
                frames.append(message)

    async def types(self, conn: Conn) -> List[str]:
        return [f["type"] for f in await self.frames(conn)]


@pytest.fixture
def store():
    return FakeStore(
        [
            LiveClassRecord(
                class_id=CLASS_ID,
                course_id=COURSE_ID,
                teacher_id=TEACHER_ID,
                title="Algebra I",
                stream_key=TOKEN,
            )
        ]
    )


@pytest.fixture
def layer():
    return InMemoryChannelLayer()


@pytest.fixture
async def registry(store, layer):
    reg = StreamRegistry(
        store=store,
        channel_layer=layer,
        host_grace_seconds=0,
        heartbeat_timeout_seconds=90,
        sweep_interval_seconds=3600,
        max_session_seconds=0,
        chat_max_length=200,
        allow_broadcast_offer=True,
    )
    yield reg
    await reg.drain()
    await reg.reset()


@pytest.fixture
def inbox(layer):
    return Inbox(layer)


@pytest.fixture
def make_conn(layer):
    counter = {"n": 0}

    async def _make(user_id: str, display_name: Optional[str] = None) -> Conn:
        counter["n"] += 1
        channel_name = await layer.new_channel()
        return Conn(
            connection_id=f"conn-{counter['n']}",
            channel_name=channel_name,
            user_id=user_id,
            display_name=display_name or user_id.title(),
        )

    return _make


@pytest.fixture
def start_as(registry):
    async def _start(conn: Conn, token: str = TOKEN, **kwargs):
        return await registry.start(
            token,
            connection_id=conn.connection_id,
            channel_name=conn.channel_name,
            user_id=conn.user_id,
            display_name=conn.display_name,
            **kwargs,
        )

    return _start


@pytest.fixture
def join_as(registry):
    async def _join(conn: Conn, token: str = TOKEN) -> int:
        return await registry.join(
            token,
            connection_id=conn.connection_id,
            channel_name=conn.channel_name,
            user_id=conn.user_id,
            display_name=conn.display_name,
        )

    return _join


# Database-backed fixtures (consumer, view and store tests)


@pytest.fixture
async def reset_global_registry(db):
    """The process-wide registry and channel layer, emptied after the test (before the DB teardown)."""
    yield stream_registry
    await stream_registry.drain()
    await stream_registry.reset()
    await get_channel_layer().flush()


@pytest.fixture
def course(db):
    from liveclass.models import Course

    return Course.objects.create(title="Algebra I", teacher_id=TEACHER_ID)


@pytest.fixture
def live_class(course):
    from liveclass.models import LiveClass

    return LiveClass.objects.create(
        course=course,
        title="Week 1: Linear equations",
        scheduled_date=timezone.now() + timedelta(hours=1),
        duration=60,
    )


@pytest.fixture
def enrollment(course):
    from liveclass.models import Enrollment

    return Enrollment.objects.create(course=course, student_id="student-1")
