from django.urls import re_path

from .consumers import CourseUpdatesConsumer, LiveClassConsumer


websocket_urlpatterns = [
    # Host/viewer signaling, chat and presence (stream token travels in each frame)
    re_path(r"^ws/live/$", LiveClassConsumer.as_asgi()),
    # Course audience: stream-started / stream-ended notices
    re_path(r"^ws/courses/(?P<course_id>[^/]+)/$", CourseUpdatesConsumer.as_asgi()),
]
