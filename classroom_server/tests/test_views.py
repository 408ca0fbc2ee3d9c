import pytest
from django.test import AsyncClient

from liveclass.models import Enrollment, LiveClass, LiveClassChatMessage
from liveclass.registry import stream_registry
from liveclass.tickets import ROLE_HOST, ROLE_VIEWER, read_ticket

from .conftest import TEACHER_ID

pytestmark = [pytest.mark.django_db(transaction=True), pytest.mark.usefixtures("reset_global_registry")]


@pytest.fixture
def client():
    return AsyncClient()


def _start_url(live_class, action="start"):
    return f"/api/courses/{live_class.course_id}/live-classes/{live_class.pk}/{action}/"


async def _go_live(live_class, *, viewers=()):
    await stream_registry.start(
        live_class.stream_key,
        connection_id="host-conn",
        channel_name=await stream_registry.channel_layer.new_channel(),
        user_id=TEACHER_ID,
        display_name="Ms. Frizzle",
    )
    for user_id in viewers:
        await stream_registry.join(
            live_class.stream_key,
            connection_id=f"{user_id}-conn",
            channel_name=await stream_registry.channel_layer.new_channel(),
            user_id=user_id,
            display_name=user_id,
        )


async def test_details_for_enrolled_student(client, live_class, enrollment):
    response = await client.get(f"/api/live/{live_class.stream_key}/", {"userId": "student-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["isEnrolled"] is True
    assert body["isTeacher"] is False
    assert body["liveClass"]["isLive"] is False
    assert body["liveClass"]["streamKey"] == live_class.stream_key
    assert body["course"] == {"id": str(live_class.course_id), "title": "Algebra I", "teacherId": TEACHER_ID}


async def test_details_report_registry_state(client, live_class, enrollment):
    await _go_live(live_class, viewers=["student-1", "student-2"])

    response = await client.get(f"/api/live/{live_class.stream_key}/", {"userId": TEACHER_ID})

    body = response.json()
    assert body["isTeacher"] is True
    assert body["liveClass"]["isLive"] is True
    assert body["liveClass"]["viewerCount"] == 2
    assert body["liveClass"]["peakViewerCount"] == 2
    assert body["liveClass"]["hostConnected"] is True


async def test_details_forbidden_for_outsider(client, live_class):
    response = await client.get(f"/api/live/{live_class.stream_key}/", {"userId": "stranger"})
    assert response.status_code == 403
    assert "enrolled" in response.json()["detail"]


async def test_details_forbidden_without_user_id(client, live_class):
    response = await client.get(f"/api/live/{live_class.stream_key}/")

    assert response.status_code == 403
    assert "streamKey" not in response.content.decode()


async def test_details_unknown_stream(client, db):
    response = await client.get("/api/live/does-not-exist/")
    assert response.status_code == 404
    assert response.json() == {"detail": "Stream not found"}


async def test_ticket_roles(client, live_class, enrollment):
    viewer = await client.post(
        f"/api/live/{live_class.stream_key}/ticket/",
        {"userId": "student-1", "displayName": "Arnold"},
        content_type="application/json",
    )
    host = await client.post(
        f"/api/live/{live_class.stream_key}/ticket/",
        {"userId": TEACHER_ID},
        content_type="application/json",
    )

    assert viewer.status_code == 200
    viewer_ticket = read_ticket(viewer.json()["ticket"])
    assert (viewer_ticket.role, viewer_ticket.user_id, viewer_ticket.display_name) == (ROLE_VIEWER, "student-1", "Arnold")
    assert viewer_ticket.token == live_class.stream_key

    assert host.json()["role"] == ROLE_HOST
    assert read_ticket(host.json()["ticket"]).display_name == TEACHER_ID


async def test_ticket_refused_for_cancelled_enrollment(client, live_class, enrollment):
    await Enrollment.objects.filter(pk=enrollment.pk).aupdate(status=Enrollment.Status.CANCELLED)

    response = await client.post(
        f"/api/live/{live_class.stream_key}/ticket/", {"userId": "student-1"}, content_type="application/json"
    )
    assert response.status_code == 403


async def test_ticket_request_validation(client, live_class):
    missing_user = await client.post(
        f"/api/live/{live_class.stream_key}/ticket/", {"displayName": "x"}, content_type="application/json"
    )
    bad_json = await client.post(
        f"/api/live/{live_class.stream_key}/ticket/", "{oops", content_type="application/json"
    )
    assert missing_user.status_code == 400
    assert bad_json.status_code == 400
    assert bad_json.json() == {"detail": "Invalid JSON"}


async def test_start_returns_host_ticket(client, live_class):
    response = await client.post(_start_url(live_class), {"userId": TEACHER_ID}, content_type="application/json")

    assert response.status_code == 200
    body = response.json()
    assert body["streamKey"] == live_class.stream_key
    assert body["isResuming"] is False
    ticket = read_ticket(body["ticket"])
    assert (ticket.role, ticket.course_id, ticket.class_id) == (ROLE_HOST, str(live_class.course_id), str(live_class.pk))

    # The flag flips only when the host socket starts the stream.
    stored = await LiveClass.objects.aget(pk=live_class.pk)
    assert stored.is_live is False


async def test_start_reports_resume_when_live(client, live_class):
    await _go_live(live_class)
    response = await client.post(_start_url(live_class), {"userId": TEACHER_ID}, content_type="application/json")
    assert response.json()["isResuming"] is True


async def test_start_and_stop_require_teacher(client, live_class):
    for action in ("start", "stop"):
        response = await client.post(
            _start_url(live_class, action), {"userId": "student-1"}, content_type="application/json"
        )
        assert response.status_code == 403
        assert response.json()["detail"] == f"Not authorized to {action} stream for this course"


async def test_start_unknown_class(client, live_class):
    response = await client.post(
        f"/api/courses/{live_class.course_id}/live-classes/999999/start/",
        {"userId": TEACHER_ID},
        content_type="application/json",
    )
    assert response.status_code == 404


async def test_stop_ends_live_stream_and_reports_stats(client, live_class):
    await _go_live(live_class, viewers=["student-1", "student-2", "student-3"])
    await stream_registry.chat_message(live_class.stream_key, connection_id="student-1-conn", text="bye!")

    response = await client.post(_start_url(live_class, "stop"), {"userId": TEACHER_ID}, content_type="application/json")

    assert response.status_code == 200
    assert response.json()["stats"] == {"peakViewers": 3, "totalMessages": 1}
    assert not stream_registry.is_active(live_class.stream_key)
    stored = await LiveClass.objects.aget(pk=live_class.pk)
    assert (stored.is_live, stored.is_completed, stored.current_viewer_count) == (False, True, 0)
    assert await LiveClassChatMessage.objects.acount() == 1


async def test_stop_when_not_live_marks_completed(client, live_class):
    response = await client.post(_start_url(live_class, "stop"), {"userId": TEACHER_ID}, content_type="application/json")

    assert response.status_code == 200
    assert response.json()["stats"] == {"peakViewers": 0, "totalMessages": 0}
    stored = await LiveClass.objects.aget(pk=live_class.pk)
    assert stored.is_completed is True
    assert stored.ended_at is not None


async def test_live_endpoints_reject_wrong_method(client, live_class):
    response = await client.get(_start_url(live_class))
    assert response.status_code == 405


async def test_health(client):
    response = await client.get("/health/")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["activeStreams"] == 0


async def test_api_key_required_when_configured(client, live_class, settings):
    settings.AUTH_API_KEY = "sekret"
    url = f"/api/live/{live_class.stream_key}/"

    assert (await client.get(url, {"userId": TEACHER_ID})).status_code == 401
    assert (await client.get(url, {"userId": TEACHER_ID}, headers={"X-API-KEY": "wrong"})).status_code == 401
    assert (await client.get(url, {"userId": TEACHER_ID}, headers={"X-API-KEY": "sekret"})).status_code == 200
    assert (await client.get("/health/")).status_code == 200
