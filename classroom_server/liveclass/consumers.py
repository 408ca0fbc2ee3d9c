"""
WebSocket consumers for live classes.

Key behavior:
- URL: /ws/live/ carries every stream operation; the stream token travels in
  each frame, so one socket can host or watch whichever stream it starts/joins.
- URL: /ws/courses/<course_id>/ is receive-only and hears when a class of
  that course goes live or ends.
- All state lives in `stream_registry`; the consumer only parses frames,
  resolves identity, and turns registry errors into `error` frames for this
  socket alone.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional, Tuple

from channels.generic.websocket import AsyncWebsocketConsumer
from pydantic import ValidationError

from .config import config
from .errors import InvalidMessage, InvalidTicket, LiveClassError
from .registry import course_group, stream_registry
from .serializers import (
    AnswerRequest,
    ChatMessageRequest,
    ConnectedEvent,
    IceCandidateRequest,
    JoinStreamRequest,
    OfferRequest,
    PongEvent,
    StartStreamRequest,
    StopStreamRequest,
    dump,
)
from .tickets import ROLE_HOST, read_ticket

logger = logging.getLogger(__name__)

# Close code sent when the sweeper decides a socket went quiet.
CLOSE_STALE = 4408


class JsonSocketConsumer(AsyncWebsocketConsumer):
    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.connection_id: str = uuid.uuid4().hex  # server-assigned per-connection id

    async def send_json(self, payload: Dict[str, Any]) -> None:
        await self.send(text_data=json.dumps(payload, separators=(",", ":"), ensure_ascii=False))

    async def send_error(self, error: LiveClassError) -> None:
        await self.send_json(error.as_event())

    async def liveclass_event(self, event: Dict[str, Any]) -> None:
        """
        Handler for registry frames (group broadcasts and direct sends).
        """
        if event.get("exclude") and event["exclude"] == self.connection_id:
            return
        await self.send_json(event["payload"])


class LiveClassConsumer(JsonSocketConsumer):
    """
    Host/viewer socket.

    Client frames: start-stream, join-stream, offer, answer, ice-candidate,
    chat-message, leave-stream, stop-stream, ping.
    """

    async def connect(self) -> None:
        await self.accept()
        await self.send_json(dump(ConnectedEvent(connection_id=self.connection_id)))

    async def disconnect(self, close_code: int) -> None:
        await stream_registry.disconnect(self.connection_id)

    async def receive(self, text_data: Optional[str] = None, bytes_data: Optional[bytes] = None) -> None:
        if not text_data:
            return

        try:
            msg = json.loads(text_data)
        except json.JSONDecodeError:
            await self.send_error(InvalidMessage("Invalid JSON"))
            return
        if not isinstance(msg, dict):
            await self.send_error(InvalidMessage("Frame must be a JSON object"))
            return

        # Any inbound frame counts as a heartbeat.
        stream_registry.touch(self.connection_id)

        msg_type = msg.get("type")
        handler = self._handlers.get(msg_type)
        if handler is None:
            await self.send_error(InvalidMessage(f"Unknown message type: {msg_type}"))
            return

        try:
            await handler(self, msg)
        except ValidationError as e:
            await self.send_error(InvalidMessage(f"Invalid {msg_type} frame: {e.errors()[0]['msg']}"))
        except LiveClassError as e:
            logger.warning(
                "Rejected %s from connection=%s: %s (%s)", msg_type, self.connection_id, e.message, e.code
            )
            await self.send_error(e)
        except Exception:
            logger.exception("Live class handler failed (type=%s connection=%s)", msg_type, self.connection_id)
            await self.send_json({"type": "error", "code": "internal_error", "message": "Internal error"})

    async def _start_stream(self, msg: Dict[str, Any]) -> None:
        request = StartStreamRequest.model_validate(msg)
        user_id, display_name, course_id, class_id = self._identity(
            request.token,
            ticket=request.ticket,
            user_id=request.user_id,
            display_name=request.display_name,
            require_host=True,
        )
        if request.ticket and (
            (request.course_id and request.course_id != course_id)
            or (request.class_id and request.class_id != class_id)
        ):
            raise InvalidTicket("Ticket does not match this live class")

        await stream_registry.start(
            request.token,
            connection_id=self.connection_id,
            channel_name=self.channel_name,
            user_id=user_id,
            display_name=display_name,
            course_id=course_id or request.course_id,
            class_id=class_id or request.class_id,
        )

    async def _join_stream(self, msg: Dict[str, Any]) -> None:
        request = JoinStreamRequest.model_validate(msg)
        user_id, display_name, _, _ = self._identity(
            request.token,
            ticket=request.ticket,
            user_id=request.user_id,
            display_name=request.display_name,
        )
        await stream_registry.join(
            request.token,
            connection_id=self.connection_id,
            channel_name=self.channel_name,
            user_id=user_id,
            display_name=display_name,
        )

    async def _relay(self, kind: str, request) -> None:
        await stream_registry.relay(
            kind,
            request.token,
            connection_id=self.connection_id,
            payload=request.payload,
            target_connection_id=request.target_connection_id,
        )

    async def _offer(self, msg: Dict[str, Any]) -> None:
        await self._relay("offer", OfferRequest.model_validate(msg))

    async def _answer(self, msg: Dict[str, Any]) -> None:
        await self._relay("answer", AnswerRequest.model_validate(msg))

    async def _ice_candidate(self, msg: Dict[str, Any]) -> None:
        await self._relay("ice-candidate", IceCandidateRequest.model_validate(msg))

    async def _chat_message(self, msg: Dict[str, Any]) -> None:
        request = ChatMessageRequest.model_validate(msg)
        await stream_registry.chat_message(request.token, connection_id=self.connection_id, text=request.message)

    async def _leave_stream(self, msg: Dict[str, Any]) -> None:
        await stream_registry.leave(self.connection_id)

    async def _stop_stream(self, msg: Dict[str, Any]) -> None:
        request = StopStreamRequest.model_validate(msg)
        await stream_registry.stop(request.token, reason="stopped_by_host", connection_id=self.connection_id)

    async def _ping(self, msg: Dict[str, Any]) -> None:
        await self.send_json(dump(PongEvent()))

    _handlers = {
        "start-stream": _start_stream,
        "join-stream": _join_stream,
        "offer": _offer,
        "answer": _answer,
        "ice-candidate": _ice_candidate,
        "chat-message": _chat_message,
        "leave-stream": _leave_stream,
        "stop-stream": _stop_stream,
        "ping": _ping,
    }

    def _identity(
        self,
        token: str,
        *,
        ticket: Optional[str],
        user_id: Optional[str],
        display_name: Optional[str],
        require_host: bool = False,
    ) -> Tuple[str, str, Optional[str], Optional[str]]:
        """
        Resolve (user_id, display_name, course_id, class_id) for start/join.

        With tickets required, identity comes only from the signed ticket.
        """

        if ticket:
            join_ticket = read_ticket(ticket)
            if join_ticket.token != token:
                raise InvalidTicket("Ticket was issued for a different stream")
            if require_host and join_ticket.role != ROLE_HOST:
                raise InvalidTicket("Ticket does not allow starting this stream")
            return (
                join_ticket.user_id,
                join_ticket.display_name or join_ticket.user_id,
                join_ticket.course_id,
                join_ticket.class_id,
            )

        if config.REQUIRE_TICKET:
            raise InvalidTicket("A join ticket is required")
        if not user_id:
            raise InvalidMessage("userId is required")
        return user_id, display_name or user_id, None, None

    async def liveclass_evict(self, event: Dict[str, Any]) -> None:
        logger.info("Closing stale connection=%s", self.connection_id)
        await self.close(code=CLOSE_STALE)


class CourseUpdatesConsumer(JsonSocketConsumer):
    """
    Course audience socket: hears stream-started / stream-ended for one course.
    """

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.group_name: Optional[str] = None

    async def connect(self) -> None:
        course_id = self.scope["url_route"]["kwargs"]["course_id"]
        self.group_name = course_group(course_id)

        await self.accept()
        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.send_json(dump(ConnectedEvent(connection_id=self.connection_id)))

    async def disconnect(self, close_code: int) -> None:
        if self.group_name:
            await self.channel_layer.group_discard(self.group_name, self.channel_name)

    async def receive(self, text_data: Optional[str] = None, bytes_data: Optional[bytes] = None) -> None:
        if not text_data:
            return
        try:
            msg = json.loads(text_data)
        except json.JSONDecodeError:
            await self.send_error(InvalidMessage("Invalid JSON"))
            return
        if isinstance(msg, dict) and msg.get("type") == "ping":
            await self.send_json(dump(PongEvent()))
            return
        await self.send_error(InvalidMessage("Course updates are receive-only"))
