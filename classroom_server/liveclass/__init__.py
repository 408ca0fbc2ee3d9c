"""
Live class relay app.

This app contains:
- A Channels consumer for `/ws/live/` that relays WebRTC signaling and chat
  between one host and many viewers per stream token
- A course audience consumer for `/ws/courses/<course_id>/`
- An in-process stream registry with per-stream locking and liveness sweeping
- REST views that mint join tickets and start/stop classes through the registry
"""
