from __future__ import annotations

import os
import time

from django.http import JsonResponse

from liveclass.registry import stream_registry


def health(request):
    """
    Load balancer health check endpoint.

    No DB or Redis call; the stream count comes from process memory.
    """

    return JsonResponse(
        {
            "status": "ok",
            "ts": int(time.time()),
            "instance_id": os.environ.get("INSTANCE_ID", "unknown-instance"),
            "activeStreams": stream_registry.active_count,
        }
    )
