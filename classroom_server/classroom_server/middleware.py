"""
HTTP middleware for the relay.

- HealthCheckAllowHttpMiddleware: keeps /health/ reachable over plain HTTP for
  load balancer probes (no SSL redirect, no CSRF, permissive CORS).
- ApiKeyAuthMiddleware: when AUTH_API_KEY is set, every other endpoint needs a
  matching X-API-KEY header.
"""

from __future__ import annotations

import hmac
import logging

from django.conf import settings
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def _is_health_path(request) -> bool:
    path = (request.path or "").rstrip("/") or "/"
    return path == "/health"


def _is_admin_path(request) -> bool:
    return (request.path or "").startswith("/admin/")


class ApiKeyAuthMiddleware:
    """
    Returns 401 with a JSON body if the key is missing or wrong. Health checks,
    CORS preflights and the Django admin (which has its own login) pass through.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        auth_key = getattr(settings, "AUTH_API_KEY", None)
        if not auth_key or request.method == "OPTIONS" or _is_health_path(request) or _is_admin_path(request):
            return self.get_response(request)

        provided = (request.META.get("HTTP_X_API_KEY") or "").strip()
        if not provided or not hmac.compare_digest(provided, auth_key):
            logger.warning("Rejected request without valid API key: %s %s", request.method, request.path)
            return JsonResponse(
                {"detail": "Missing or invalid API key. Use X-API-KEY header."},
                status=401,
            )
        return self.get_response(request)


class HealthCheckAllowHttpMiddleware:
    """
    Must run before SecurityMiddleware.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        is_health = _is_health_path(request)
        if is_health:
            # SecurityMiddleware treats the probe as already secure.
            request.META["HTTP_X_FORWARDED_PROTO"] = "https"
            request.csrf_processing_done = True
        response = self.get_response(request)
        if is_health:
            response["Access-Control-Allow-Origin"] = "*"
        return response
