"""
Live stream registry.

Tracks active live class streams (one host, many viewers per stream token)
and mediates control, signaling and chat frames between them over the
Channels layer.

Key behavior:
- One process-wide `stream_registry`. Deployments with several instances must
  route every socket for a token to the same instance.
- Each stream has its own asyncio.Lock; every mutation of a stream and the
  broadcasts it triggers happen under that lock, so join/leave cannot lose
  updates and group frames go out in processing order.
- Store writes (live flag, chat history) run as background tasks after the
  frames are sent. A failed write is logged and never retried.
- Connection liveness is tracked in a PresenceBook; a sweeper evicts sockets
  that stop sending frames and applies normal disconnect handling.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Set

from channels.exceptions import ChannelFull
from channels.layers import get_channel_layer

from .config import config
from .errors import Conflict, InvalidMessage, InvalidTarget, PersistenceFailure, StreamNotFound, Unauthorized
from .presence import PresenceBook
from .serializers import (
    ChatMessageEvent,
    HostDisconnectedEvent,
    HostReconnectedEvent,
    NewViewerEvent,
    StreamEndedEvent,
    StreamLiveEvent,
    StreamStartedEvent,
    ViewerCountEvent,
    ViewerLeftEvent,
    dump,
)
from .store import LiveClassStore
from .tickets import ROLE_HOST, ROLE_VIEWER

logger = logging.getLogger(__name__)

# Channel layer message types; consumers implement liveclass_event / liveclass_evict.
EVENT_MESSAGE = "liveclass.event"
EVICT_MESSAGE = "liveclass.evict"

# Relayed signaling kinds and the frame key carrying their payload.
SIGNAL_KEYS = {
    "offer": "offer",
    "answer": "answer",
    "ice-candidate": "candidate",
}


def _safe_name(value: str) -> str:
    """
    Channels group names must be ASCII and relatively short.
    Anything that had to be rewritten gets a digest suffix so two different
    tokens never share a group.
    """

    safe = re.sub(r"[^a-zA-Z0-9_.-]", "_", value)[:64]
    if safe != value:
        safe = f"{safe}-{hashlib.sha1(value.encode('utf-8')).hexdigest()[:12]}"
    return safe


def stream_group(token: str) -> str:
    return f"stream.{_safe_name(token)}"


def course_group(course_id: str) -> str:
    return f"course.{_safe_name(str(course_id))}"


@dataclass
class Participant:
    connection_id: str
    channel_name: str
    user_id: str
    display_name: str


@dataclass
class LiveSession:
    token: str
    course_id: str
    class_id: str
    host: Participant
    viewers: Dict[str, Participant] = field(default_factory=dict)  # user_id -> viewer
    started_at: float = field(default_factory=time.time)
    peak_viewer_count: int = 0
    host_lost_at: Optional[float] = None
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def group_name(self) -> str:
        return stream_group(self.token)

    @property
    def viewer_count(self) -> int:
        return len(self.viewers)

    @property
    def host_connected(self) -> bool:
        return self.host_lost_at is None

    def viewer_by_connection(self, connection_id: str) -> Optional[Participant]:
        for viewer in self.viewers.values():
            if viewer.connection_id == connection_id:
                return viewer
        return None

    def participant(self, connection_id: str) -> Optional[Participant]:
        if self.host.connection_id == connection_id:
            return self.host
        return self.viewer_by_connection(connection_id)


class StreamRegistry:
    def __init__(
        self,
        *,
        store: Any = None,
        channel_layer: Any = None,
        host_grace_seconds: Optional[float] = None,
        heartbeat_timeout_seconds: Optional[float] = None,
        sweep_interval_seconds: Optional[float] = None,
        max_session_seconds: Optional[float] = None,
        chat_max_length: Optional[int] = None,
        allow_broadcast_offer: Optional[bool] = None,
    ):
        self._store = store if store is not None else LiveClassStore()
        self._channel_layer = channel_layer
        self.host_grace_seconds = _default(host_grace_seconds, config.HOST_GRACE_SECONDS)
        self.heartbeat_timeout_seconds = _default(heartbeat_timeout_seconds, config.HEARTBEAT_TIMEOUT_SECONDS)
        self.sweep_interval_seconds = _default(sweep_interval_seconds, config.SWEEP_INTERVAL_SECONDS)
        self.max_session_seconds = _default(max_session_seconds, config.MAX_SESSION_SECONDS)
        self.chat_max_length = _default(chat_max_length, config.CHAT_MAX_LENGTH)
        self.allow_broadcast_offer = _default(allow_broadcast_offer, config.ALLOW_BROADCAST_OFFER)

        self._sessions: Dict[str, LiveSession] = {}
        self._presence = PresenceBook()
        self._grace_tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def channel_layer(self):
        return self._channel_layer if self._channel_layer is not None else get_channel_layer()

    # Queries

    def is_active(self, token: str) -> bool:
        return token in self._sessions

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def snapshot(self, token: str) -> Optional[Dict[str, Any]]:
        session = self._sessions.get(token)
        if session is None:
            return None
        return {
            "token": session.token,
            "courseId": session.course_id,
            "classId": session.class_id,
            "viewerCount": session.viewer_count,
            "peakViewerCount": session.peak_viewer_count,
            "startedAt": datetime.fromtimestamp(session.started_at, tz=timezone.utc).isoformat(),
            "hostConnected": session.host_connected,
        }

    def binding(self, connection_id: str):
        """Presence record (token, role, user) for a connection, if bound."""
        return self._presence.get(connection_id)

    # Operations

    async def start(
        self,
        token: str,
        *,
        connection_id: str,
        channel_name: str,
        user_id: str,
        display_name: str,
        course_id: Optional[str] = None,
        class_id: Optional[str] = None,
    ) -> LiveSession:
        record = await self._store.get_live_class(token)
        if (
            record is None
            or (course_id and str(course_id) != record.course_id)
            or (class_id and str(class_id) != record.class_id)
        ):
            raise StreamNotFound("Live class not found")
        if record.teacher_id != str(user_id):
            raise Unauthorized("Only the course teacher can start this stream")

        bound = self._presence.get(connection_id)
        if bound is not None and (bound.token != token or bound.role != ROLE_HOST):
            raise Conflict("Connection is already part of another stream")

        host = Participant(
            connection_id=connection_id,
            channel_name=channel_name,
            user_id=str(user_id),
            display_name=display_name,
        )

        # Re-check after the store read: the table may have changed meanwhile.
        existing = self._sessions.get(token)
        if existing is not None:
            return await self._resume(existing, host)

        session = LiveSession(token=token, course_id=record.course_id, class_id=record.class_id, host=host)
        self._sessions[token] = session
        async with session.lock:
            self._bind(session, host, ROLE_HOST)
            await self.channel_layer.group_add(session.group_name, channel_name)
            await self._send_to(host, dump(StreamLiveEvent(token=token, viewer_count=0)))
            await self._send_group(
                course_group(session.course_id),
                dump(StreamStartedEvent(token=token, class_id=session.class_id, course_id=session.course_id)),
            )

        logger.info(
            "Stream started token=%s class=%s (%s) host=%s", token, session.class_id, record.title, connection_id
        )
        self._spawn(self._store.mark_live(token, resumed=False), "mark live")
        self._ensure_sweeper()
        return session

    async def _resume(self, session: LiveSession, host: Participant) -> LiveSession:
        async with session.lock:
            if session.closed:
                raise StreamNotFound()
            if session.host.user_id != host.user_id:
                raise Conflict()

            previous = session.host
            replaced = previous.connection_id != host.connection_id
            if replaced:
                self._presence.remove_connection(previous.connection_id)
                await self.channel_layer.group_discard(session.group_name, previous.channel_name)
                if session.host_connected:
                    # Older tab of the same host is still open; it no longer owns the stream.
                    await self._send_to(previous, dump(StreamEndedEvent(reason="host_replaced")))

            self._cancel_grace(session.token)
            session.host = host
            session.host_lost_at = None
            self._bind(session, host, ROLE_HOST)
            await self.channel_layer.group_add(session.group_name, host.channel_name)

            await self._send_to(
                host,
                dump(StreamLiveEvent(token=session.token, viewer_count=session.viewer_count, resumed=True)),
            )
            # Host rebuilds one peer connection per viewer.
            for viewer in session.viewers.values():
                await self._send_to(
                    host,
                    dump(
                        NewViewerEvent(
                            display_name=viewer.display_name,
                            count=session.viewer_count,
                            viewer_connection_id=viewer.connection_id,
                        )
                    ),
                )
            if replaced:
                await self._send_group(
                    session.group_name,
                    dump(HostReconnectedEvent(host_connection_id=host.connection_id)),
                    exclude=host.connection_id,
                )

        logger.info("Stream resumed token=%s host=%s", session.token, host.connection_id)
        self._spawn(self._store.mark_live(session.token, resumed=True), "mark live")
        return session

    async def join(
        self,
        token: str,
        *,
        connection_id: str,
        channel_name: str,
        user_id: str,
        display_name: str,
    ) -> int:
        session = self._sessions.get(token)
        if session is None:
            raise StreamNotFound()

        bound = self._presence.get(connection_id)
        if bound is not None and (bound.token != token or bound.role != ROLE_VIEWER):
            raise Conflict("Connection is already part of another stream")

        viewer = Participant(
            connection_id=connection_id,
            channel_name=channel_name,
            user_id=str(user_id),
            display_name=display_name,
        )
        async with session.lock:
            if session.closed:
                raise StreamNotFound()

            previous = session.viewers.get(viewer.user_id)
            if previous is not None and previous.connection_id != connection_id:
                # Same user on a new socket: the old socket stops being a viewer.
                self._presence.remove_connection(previous.connection_id)
                await self.channel_layer.group_discard(session.group_name, previous.channel_name)
                await self._notify_host(
                    session,
                    dump(
                        ViewerLeftEvent(
                            display_name=previous.display_name,
                            count=session.viewer_count,
                            viewer_connection_id=previous.connection_id,
                        )
                    ),
                )

            session.viewers[viewer.user_id] = viewer
            session.peak_viewer_count = max(session.peak_viewer_count, session.viewer_count)
            self._bind(session, viewer, ROLE_VIEWER)
            await self.channel_layer.group_add(session.group_name, channel_name)

            count = session.viewer_count
            await self._send_group(session.group_name, dump(ViewerCountEvent(count=count)))
            await self._notify_host(
                session,
                dump(NewViewerEvent(display_name=display_name, count=count, viewer_connection_id=connection_id)),
            )

        logger.info("Viewer joined token=%s connection=%s count=%d", token, connection_id, count)
        return count

    async def relay(
        self,
        kind: str,
        token: str,
        *,
        connection_id: str,
        payload: Any,
        target_connection_id: Optional[str] = None,
    ) -> None:
        if kind not in SIGNAL_KEYS:
            raise InvalidMessage(f"Unknown signaling message: {kind}")
        session = self._sessions.get(token)
        if session is None:
            raise StreamNotFound()

        async with session.lock:
            if session.closed:
                raise StreamNotFound()
            sender = session.participant(connection_id)
            if sender is None:
                raise Unauthorized("Connection is not part of this stream")
            if kind == "offer" and sender is not session.host:
                raise Unauthorized("Only the host can send offers")

            frame = {"type": kind, SIGNAL_KEYS[kind]: payload, "fromConnectionId": connection_id}

            if target_connection_id:
                target = session.participant(target_connection_id)
                if target is None or target is sender:
                    raise InvalidTarget()
                if target is session.host and not session.host_connected:
                    raise InvalidTarget("Host is reconnecting")
                await self._send_to(target, frame)
                return

            if kind == "offer":
                if not self.allow_broadcast_offer:
                    raise InvalidTarget("Offers must name a targetConnectionId")
                logger.warning("Untargeted offer broadcast token=%s host=%s", token, connection_id)
            await self._send_group(session.group_name, frame, exclude=connection_id)

    async def chat_message(self, token: str, *, connection_id: str, text: str) -> Dict[str, Any]:
        session = self._sessions.get(token)
        if session is None:
            raise StreamNotFound()

        text = (text or "").strip()
        if not text:
            raise InvalidMessage("Message cannot be empty")
        if len(text) > self.chat_max_length:
            raise InvalidMessage(f"Message is longer than {self.chat_max_length} characters")

        async with session.lock:
            if session.closed:
                raise StreamNotFound()
            sender = session.participant(connection_id)
            if sender is None:
                raise Unauthorized("Connection is not part of this stream")

            sent_at = datetime.now(timezone.utc)
            frame = dump(
                ChatMessageEvent(
                    sender_id=sender.user_id,
                    sender_name=sender.display_name,
                    message=text,
                    timestamp=sent_at.isoformat(),
                )
            )
            await self._send_group(session.group_name, frame)

        self._spawn(
            self._store.append_chat_message(
                token,
                user_id=sender.user_id,
                user_name=sender.display_name,
                message=text,
                timestamp=sent_at,
            ),
            "append chat message",
        )
        return frame

    async def leave(self, connection_id: str) -> bool:
        bound = self._presence.get(connection_id)
        if bound is None or bound.role != ROLE_VIEWER:
            return False
        session = self._sessions.get(bound.token)
        if session is None:
            self._presence.remove_connection(connection_id)
            return False

        async with session.lock:
            self._presence.remove_connection(connection_id)
            viewer = session.viewer_by_connection(connection_id)
            if viewer is None:
                return False
            del session.viewers[viewer.user_id]
            await self.channel_layer.group_discard(session.group_name, viewer.channel_name)

            count = session.viewer_count
            await self._send_group(session.group_name, dump(ViewerCountEvent(count=count)))
            await self._notify_host(
                session,
                dump(
                    ViewerLeftEvent(
                        display_name=viewer.display_name,
                        count=count,
                        viewer_connection_id=connection_id,
                    )
                ),
            )

        logger.info("Viewer left token=%s connection=%s count=%d", session.token, connection_id, count)
        return True

    async def stop(
        self,
        token: str,
        *,
        reason: str = "stopped",
        connection_id: Optional[str] = None,
    ) -> Optional[Dict[str, int]]:
        """
        End a stream. `connection_id` is set when a socket asked for the stop;
        only the current host may do that.
        """

        session = self._sessions.get(token)
        if session is None:
            return None

        async with session.lock:
            if session.closed:
                return None
            if connection_id is not None and connection_id != session.host.connection_id:
                raise Unauthorized("Only the host can stop this stream")

            session.closed = True
            if self._sessions.get(token) is session:
                del self._sessions[token]
            self._cancel_grace(token)

            await self._send_group(session.group_name, dump(StreamEndedEvent(reason=reason)))
            await self._send_group(
                course_group(session.course_id),
                dump(StreamEndedEvent(token=token, class_id=session.class_id, course_id=session.course_id)),
            )

            for participant in [session.host, *session.viewers.values()]:
                self._presence.remove_connection(participant.connection_id)
                await self.channel_layer.group_discard(session.group_name, participant.channel_name)

            stats = {"peakViewers": session.peak_viewer_count, "viewerCount": session.viewer_count}
            session.viewers.clear()

        logger.info("Stream ended token=%s reason=%s peak=%d", token, reason, stats["peakViewers"])
        self._spawn(self._store.mark_ended(token, peak_viewer_count=stats["peakViewers"]), "mark ended")
        return stats

    async def disconnect(self, connection_id: str) -> None:
        bound = self._presence.get(connection_id)
        if bound is None:
            return
        if bound.role == ROLE_VIEWER:
            await self.leave(connection_id)
            return

        session = self._sessions.get(bound.token)
        if session is None or session.host.connection_id != connection_id:
            self._presence.remove_connection(connection_id)
            return

        if self.host_grace_seconds <= 0:
            await self.stop(bound.token, reason="host_disconnected")
            return

        async with session.lock:
            if session.closed or session.host.connection_id != connection_id:
                return
            self._presence.remove_connection(connection_id)
            session.host_lost_at = time.time()
            await self.channel_layer.group_discard(session.group_name, session.host.channel_name)
            await self._send_group(
                session.group_name,
                dump(HostDisconnectedEvent(grace_seconds=self.host_grace_seconds)),
            )
            self._cancel_grace(session.token)
            self._grace_tasks[session.token] = asyncio.create_task(
                self._expire_host(session.token, connection_id)
            )

        logger.info(
            "Host disconnected token=%s connection=%s grace=%ss",
            session.token,
            connection_id,
            self.host_grace_seconds,
        )

    def touch(self, connection_id: str) -> bool:
        return self._presence.refresh_connection(connection_id)

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        """
        Evict connections that went quiet and end streams past the maximum
        duration. Returns the evicted connection ids.
        """

        now = time.time() if now is None else now
        evicted: List[str] = []
        for record in self._presence.expired_connections(ttl_seconds=self.heartbeat_timeout_seconds, now=now):
            logger.info("Evicting stale connection=%s token=%s role=%s", record.connection_id, record.token, record.role)
            if record.channel_name:
                try:
                    await self.channel_layer.send(record.channel_name, {"type": EVICT_MESSAGE, "reason": "stale"})
                except ChannelFull:
                    logger.warning("Evict frame dropped, channel full: %s", record.channel_name)
            await self.disconnect(record.connection_id)
            evicted.append(record.connection_id)

        if self.max_session_seconds and self.max_session_seconds > 0:
            for token, session in list(self._sessions.items()):
                if now - session.started_at > self.max_session_seconds:
                    await self.stop(token, reason="max_duration")
        return evicted

    async def drain(self) -> None:
        """Wait for pending store writes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def reset(self) -> None:
        """Drop every stream and cancel timers (shutdown and tests)."""
        tasks = [t for t in (self._sweeper, *self._grace_tasks.values(), *self._background) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._sweeper = None
        self._grace_tasks.clear()
        self._background.clear()
        self._sessions.clear()
        self._presence.clear()

    # Internals

    def _bind(self, session: LiveSession, participant: Participant, role: str) -> None:
        self._presence.upsert_connection(
            token=session.token,
            connection_id=participant.connection_id,
            role=role,
            user_id=participant.user_id,
            channel_name=participant.channel_name,
        )

    async def _send_group(self, group: str, payload: Dict[str, Any], exclude: Optional[str] = None) -> None:
        await self.channel_layer.group_send(group, {"type": EVENT_MESSAGE, "payload": payload, "exclude": exclude})

    async def _send_to(self, participant: Participant, payload: Dict[str, Any]) -> None:
        await self.channel_layer.send(participant.channel_name, {"type": EVENT_MESSAGE, "payload": payload})

    async def _notify_host(self, session: LiveSession, payload: Dict[str, Any]) -> None:
        # No socket to deliver to while the host is inside its reconnect grace period.
        if session.host_connected:
            await self._send_to(session.host, payload)

    def _cancel_grace(self, token: str) -> None:
        task = self._grace_tasks.pop(token, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _expire_host(self, token: str, connection_id: str) -> None:
        await asyncio.sleep(self.host_grace_seconds)
        session = self._sessions.get(token)
        if session is None or session.host.connection_id != connection_id or session.host_connected:
            return
        logger.info("Host did not return within grace period token=%s", token)
        await self.stop(token, reason="host_disconnected")

    def _spawn(self, coro: Awaitable[Any], what: str) -> None:
        task = asyncio.create_task(self._run_background(coro, what))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_background(self, coro: Awaitable[Any], what: str) -> None:
        try:
            await coro
        except PersistenceFailure:
            logger.exception("Live class store write failed (%s)", what)
        except Exception:
            logger.exception("Unexpected error in background task (%s)", what)

    def _ensure_sweeper(self) -> None:
        loop = asyncio.get_running_loop()
        if self._sweeper is None or self._sweeper.done() or self._sweeper.get_loop() is not loop:
            self._sweeper = loop.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Stream sweep failed")


def _default(value, fallback):
    return fallback if value is None else value


# Global registry instance
stream_registry = StreamRegistry()
