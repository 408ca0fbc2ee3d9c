from datetime import datetime, timezone

import pytest

from liveclass.errors import PersistenceFailure
from liveclass.models import LiveClass, LiveClassChatMessage
from liveclass.store import LiveClassStore

from .conftest import TEACHER_ID

pytestmark = pytest.mark.django_db(transaction=True)


@pytest.fixture
def store():
    return LiveClassStore()


async def test_get_live_class_record(store, live_class):
    record = await store.get_live_class(live_class.stream_key)

    assert record.class_id == str(live_class.pk)
    assert record.course_id == str(live_class.course_id)
    assert record.teacher_id == TEACHER_ID
    assert await store.get_live_class("missing") is None


async def test_mark_live_then_ended_keeps_highest_peak(store, live_class):
    await LiveClass.objects.filter(pk=live_class.pk).aupdate(peak_viewer_count=5)

    await store.mark_live(live_class.stream_key)
    stored = await LiveClass.objects.aget(pk=live_class.pk)
    assert (stored.is_live, stored.is_completed) == (True, False)
    assert stored.started_at is not None

    await store.mark_ended(live_class.stream_key, peak_viewer_count=3)
    stored = await LiveClass.objects.aget(pk=live_class.pk)
    assert (stored.is_live, stored.is_completed, stored.peak_viewer_count) == (False, True, 5)
    assert stored.ended_at is not None


async def test_resumed_mark_live_keeps_start_time(store, live_class):
    await store.mark_live(live_class.stream_key)
    first = (await LiveClass.objects.aget(pk=live_class.pk)).started_at

    await store.mark_live(live_class.stream_key, resumed=True)
    assert (await LiveClass.objects.aget(pk=live_class.pk)).started_at == first


async def test_append_chat_message(store, live_class):
    sent_at = datetime(2026, 1, 5, 10, 30, tzinfo=timezone.utc)
    await store.append_chat_message(
        live_class.stream_key, user_id="student-1", user_name="Arnold", message="hi", timestamp=sent_at
    )

    saved = await LiveClassChatMessage.objects.aget(live_class_id=live_class.pk)
    assert (saved.user_id, saved.user_name, saved.message, saved.timestamp) == ("student-1", "Arnold", "hi", sent_at)


async def test_append_chat_message_for_unknown_stream_fails(store, db):
    with pytest.raises(PersistenceFailure):
        await store.append_chat_message(
            "missing", user_id="u", user_name="U", message="lost", timestamp=datetime.now(timezone.utc)
        )
