"""
Django async views for the live class REST surface.

The registry is the single authority on whether a class is live: these views
query it for status and route teacher stop requests through it, so the
stored `is_live` flag only changes as a side effect of the relay.
"""

import json
from typing import Optional, Tuple, Type

from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods
from pydantic import ValidationError

from .config import config
from .models import Course, Enrollment, LiveClass
from .registry import stream_registry
from .serializers import Frame, TeacherActionRequest, TicketRequest
from .tickets import ROLE_HOST, ROLE_VIEWER, JoinTicket, issue_ticket


def _parse_body(request, model: Type[Frame]) -> Tuple[Optional[Frame], Optional[JsonResponse]]:
    try:
        body = json.loads(request.body or b"{}")
    except json.JSONDecodeError:
        return None, JsonResponse({"detail": "Invalid JSON"}, status=400)
    if not isinstance(body, dict):
        return None, JsonResponse({"detail": "Body must be a JSON object"}, status=400)
    try:
        return model.model_validate(body), None
    except ValidationError as e:
        return None, JsonResponse({"detail": e.errors(include_url=False, include_context=False)}, status=400)


async def _is_enrolled(course: Course, user_id: str) -> bool:
    return await Enrollment.objects.filter(
        course=course,
        student_id=user_id,
        status=Enrollment.Status.ACTIVE,
    ).aexists()


def _live_class_json(live_class: LiveClass) -> dict:
    snapshot = stream_registry.snapshot(live_class.stream_key)
    return {
        "id": str(live_class.pk),
        "title": live_class.title,
        "description": live_class.description,
        "scheduledDate": live_class.scheduled_date.isoformat(),
        "duration": live_class.duration,
        "streamKey": live_class.stream_key,
        "isLive": snapshot is not None,
        "isCompleted": live_class.is_completed,
        "viewerCount": snapshot["viewerCount"] if snapshot else 0,
        "peakViewerCount": max(live_class.peak_viewer_count, snapshot["peakViewerCount"] if snapshot else 0),
        "hostConnected": bool(snapshot and snapshot["hostConnected"]),
    }


def _course_json(course: Course) -> dict:
    return {"id": str(course.pk), "title": course.title, "teacherId": course.teacher_id}


async def _teacher_live_class(course_id: int, class_id: int, user_id: str, action: str):
    """Load (course, live_class) for a teacher action, or an error response."""
    course = await Course.objects.filter(pk=course_id).afirst()
    if course is None:
        return None, JsonResponse({"detail": "Course not found"}, status=404)
    if not course.is_teacher(user_id):
        return None, JsonResponse({"detail": f"Not authorized to {action} stream for this course"}, status=403)
    live_class = await LiveClass.objects.select_related("course").filter(pk=class_id, course=course).afirst()
    if live_class is None:
        return None, JsonResponse({"detail": "Live class not found"}, status=404)
    return live_class, None


@require_http_methods(["GET"])
async def live_class_details(request, stream_key: str):
    """GET /api/live/<stream_key>/ - live class status for a viewer or the teacher."""
    live_class = await LiveClass.objects.select_related("course").filter(stream_key=stream_key).afirst()
    if live_class is None:
        return JsonResponse({"detail": "Stream not found"}, status=404)

    course = live_class.course
    user_id = (request.GET.get("userId") or "").strip()
    is_teacher = course.is_teacher(user_id)
    is_enrolled = False
    if not is_teacher:
        is_enrolled = bool(user_id) and await _is_enrolled(course, user_id)
        if not is_enrolled:
            return JsonResponse(
                {"detail": "You must be enrolled in this course to access the stream. Please enroll first."},
                status=403,
            )

    return JsonResponse(
        {
            "liveClass": _live_class_json(live_class),
            "course": _course_json(course),
            "isEnrolled": is_enrolled,
            "isTeacher": is_teacher,
        }
    )


@csrf_exempt
@require_http_methods(["POST"])
async def live_class_ticket(request, stream_key: str):
    """POST /api/live/<stream_key>/ticket/ - mint a join ticket for the teacher or an enrollee."""
    body, error = _parse_body(request, TicketRequest)
    if error:
        return error

    live_class = await LiveClass.objects.select_related("course").filter(stream_key=stream_key).afirst()
    if live_class is None:
        return JsonResponse({"detail": "Stream not found"}, status=404)

    course = live_class.course
    if course.is_teacher(body.user_id):
        role = ROLE_HOST
    elif await _is_enrolled(course, body.user_id):
        role = ROLE_VIEWER
    else:
        return JsonResponse(
            {"detail": "You must be enrolled in this course to access the stream. Please enroll first."},
            status=403,
        )

    ticket = issue_ticket(
        JoinTicket(
            token=live_class.stream_key,
            user_id=body.user_id,
            display_name=body.display_name or body.user_id,
            role=role,
            course_id=str(course.pk),
            class_id=str(live_class.pk),
        )
    )
    return JsonResponse(
        {
            "ticket": ticket,
            "role": role,
            "token": live_class.stream_key,
            "expiresIn": config.TICKET_MAX_AGE_SECONDS,
        }
    )


@csrf_exempt
@require_http_methods(["POST"])
async def start_live_class(request, course_id: int, class_id: int):
    """
    POST /api/courses/<course_id>/live-classes/<class_id>/start/

    Hands the teacher a host ticket. The class goes live once the host socket
    sends start-stream with it.
    """
    body, error = _parse_body(request, TeacherActionRequest)
    if error:
        return error
    live_class, error = await _teacher_live_class(course_id, class_id, body.user_id, "start")
    if error:
        return error

    is_resuming = stream_registry.is_active(live_class.stream_key)
    ticket = issue_ticket(
        JoinTicket(
            token=live_class.stream_key,
            user_id=body.user_id,
            display_name=body.display_name or body.user_id,
            role=ROLE_HOST,
            course_id=str(course_id),
            class_id=str(class_id),
        )
    )
    return JsonResponse(
        {
            "message": "Stream can be resumed" if is_resuming else "Stream ready to start",
            "streamKey": live_class.stream_key,
            "ticket": ticket,
            "isResuming": is_resuming,
            "liveClass": _live_class_json(live_class),
        }
    )


@csrf_exempt
@require_http_methods(["POST"])
async def stop_live_class(request, course_id: int, class_id: int):
    """POST /api/courses/<course_id>/live-classes/<class_id>/stop/ - end the stream through the registry."""
    body, error = _parse_body(request, TeacherActionRequest)
    if error:
        return error
    live_class, error = await _teacher_live_class(course_id, class_id, body.user_id, "stop")
    if error:
        return error

    stats = await stream_registry.stop(live_class.stream_key, reason="stopped_by_teacher")
    # Pending chat and status writes land before stats are read back.
    await stream_registry.drain()
    if stats is None:
        await LiveClass.objects.filter(pk=live_class.pk).aupdate(
            is_live=False,
            is_completed=True,
            current_viewer_count=0,
            ended_at=timezone.now(),
        )

    live_class = await LiveClass.objects.aget(pk=live_class.pk)
    total_messages = await live_class.chat_messages.acount()
    return JsonResponse(
        {
            "message": "Stream stopped successfully",
            "stats": {
                "peakViewers": max(live_class.peak_viewer_count, stats["peakViewers"] if stats else 0),
                "totalMessages": total_messages,
            },
        }
    )
