"""
Short-lived join tickets.

The REST layer checks that a user is the course teacher or an active enrollee
and then signs a ticket binding (token, user, role). The websocket consumer
only trusts identities that arrive inside a ticket, so enrollment is enforced
without a database round trip on every join.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional

from django.core import signing

from .config import config
from .errors import InvalidTicket

TICKET_SALT = "liveclass.join-ticket"

ROLE_HOST = "host"
ROLE_VIEWER = "viewer"


@dataclass(frozen=True)
class JoinTicket:
    token: str
    user_id: str
    display_name: str
    role: str
    course_id: str
    class_id: str


def issue_ticket(ticket: JoinTicket) -> str:
    return signing.dumps(asdict(ticket), salt=TICKET_SALT, compress=True)


def read_ticket(raw: str, *, max_age: Optional[int] = None) -> JoinTicket:
    if max_age is None:
        max_age = config.TICKET_MAX_AGE_SECONDS
    try:
        data = signing.loads(raw, salt=TICKET_SALT, max_age=max_age)
    except signing.SignatureExpired as exc:
        raise InvalidTicket("Join ticket expired") from exc
    except signing.BadSignature as exc:
        raise InvalidTicket() from exc

    try:
        return JoinTicket(**data)
    except TypeError as exc:
        raise InvalidTicket() from exc
