"""
WSGI entrypoint. Serves the REST views and admin only; websockets need asgi.py.
"""
# Load secrets (if configured) before Django settings are loaded
import classroom_server.env_bootstrap  # noqa: F401

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "classroom_server.settings")

application = get_wsgi_application()
