"""
Pydantic models for websocket frames and REST payloads.

Wire format is camelCase; Python attributes are snake_case.
"""

from __future__ import annotations

from typing import Any, ClassVar, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Frame(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )


# Client -> server

class StartStreamRequest(Frame):
    token: str = Field(min_length=1)
    user_id: Optional[str] = None
    course_id: Optional[str] = None
    class_id: Optional[str] = None
    display_name: Optional[str] = None
    ticket: Optional[str] = None


class JoinStreamRequest(Frame):
    token: str = Field(min_length=1)
    user_id: Optional[str] = None
    display_name: Optional[str] = None
    ticket: Optional[str] = None


class SignalRequest(Frame):
    """Offer, answer or ICE frame; subclasses name the field carrying the payload."""

    payload_field: ClassVar[str]

    token: str = Field(min_length=1)
    target_connection_id: Optional[str] = None

    @property
    def payload(self) -> Any:
        return getattr(self, self.payload_field)


class OfferRequest(SignalRequest):
    payload_field = "offer"

    offer: Any


class AnswerRequest(SignalRequest):
    payload_field = "answer"

    answer: Any


class IceCandidateRequest(SignalRequest):
    payload_field = "candidate"

    candidate: Any


class ChatMessageRequest(Frame):
    token: str = Field(min_length=1)
    message: str


class StopStreamRequest(Frame):
    token: str = Field(min_length=1)


# REST bodies

class TicketRequest(Frame):
    user_id: str = Field(min_length=1)
    display_name: str = ""


class TeacherActionRequest(Frame):
    user_id: str = Field(min_length=1)
    display_name: str = ""


# Server -> client

class ConnectedEvent(Frame):
    type: Literal["connected"] = "connected"
    connection_id: str


class StreamLiveEvent(Frame):
    """Acknowledges start-stream to the host."""
    type: Literal["stream-live"] = "stream-live"
    token: str
    viewer_count: int
    resumed: bool = False


class StreamStartedEvent(Frame):
    """Course audience notice that a class went live."""
    type: Literal["stream-started"] = "stream-started"
    token: str
    class_id: str
    course_id: str


class StreamEndedEvent(Frame):
    type: Literal["stream-ended"] = "stream-ended"
    reason: Optional[str] = None
    token: Optional[str] = None
    class_id: Optional[str] = None
    course_id: Optional[str] = None


class ViewerCountEvent(Frame):
    type: Literal["viewer-count-updated"] = "viewer-count-updated"
    count: int


class NewViewerEvent(Frame):
    type: Literal["new-viewer"] = "new-viewer"
    display_name: str
    count: int
    viewer_connection_id: str


class ViewerLeftEvent(Frame):
    type: Literal["viewer-left"] = "viewer-left"
    display_name: str
    count: int
    viewer_connection_id: str


class HostDisconnectedEvent(Frame):
    type: Literal["host-disconnected"] = "host-disconnected"
    grace_seconds: float


class HostReconnectedEvent(Frame):
    type: Literal["host-reconnected"] = "host-reconnected"
    host_connection_id: str


class ChatMessageEvent(Frame):
    type: Literal["chat-message"] = "chat-message"
    sender_id: str
    sender_name: str
    message: str
    timestamp: str


class PongEvent(Frame):
    type: Literal["pong"] = "pong"


def dump(event: Frame) -> dict:
    return event.model_dump(by_alias=True, exclude_none=True)
