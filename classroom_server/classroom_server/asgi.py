"""
ASGI entrypoint for the live class relay.

HTTP goes to Django (REST + admin); websockets go through Channels to the
live class consumers.
"""
# Load secrets (if configured) before Django settings are loaded
import classroom_server.env_bootstrap  # noqa: F401

import os

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "classroom_server.settings")

from channels.auth import AuthMiddlewareStack
from channels.routing import ProtocolTypeRouter, URLRouter
from django.conf import settings
from django.core.asgi import get_asgi_application

# Django must be set up before anything imports models.
django_asgi_app = get_asgi_application()

from classroom_server.routing import websocket_urlpatterns  # noqa: E402
from classroom_server.ws_origin import AllowedHostsOrForwardedHostOriginValidator  # noqa: E402

# Outside DEBUG the origin validator allows a socket when Origin's host, or
# (when a proxy dropped Origin) Host / X-Forwarded-Host, is in ALLOWED_HOSTS.
websocket_app = AuthMiddlewareStack(URLRouter(websocket_urlpatterns))
if not settings.DEBUG:
    websocket_app = AllowedHostsOrForwardedHostOriginValidator(websocket_app)

application = ProtocolTypeRouter(
    {
        "http": django_asgi_app,
        "websocket": websocket_app,
    }
)
