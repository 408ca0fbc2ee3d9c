"""
Project-level Channels routing.

Keeping routing in the Django project package ensures `classroom_server.asgi` can import it.
"""

from liveclass.routing import websocket_urlpatterns

__all__ = ["websocket_urlpatterns"]
