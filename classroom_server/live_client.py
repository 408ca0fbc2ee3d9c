"""
CLI client for smoke testing the live class relay.

Supports:
- Minting a join ticket:     POST /api/live/<stream_key>/ticket/
- Hosting a stream:          POST .../start/ then /ws/live/ start-stream
- Watching a stream:         ticket, then /ws/live/ join-stream

No media flows: the host answers each `new-viewer` with a placeholder SDP
offer and the viewer answers it, which is enough to watch the signaling
path end to end. Lines typed on stdin are sent as chat messages.

WebSocket protocol (`LiveClassConsumer`):
- Server sends {"type":"connected","connectionId":...} first.
- Client sends start-stream / join-stream / offer / answer / ice-candidate /
  chat-message / leave-stream / stop-stream / ping (camelCase fields).
- Server sends stream-live, viewer-count-updated, new-viewer, viewer-left,
  offer, answer, chat-message, stream-ended, error, ...

HTTP endpoints require X-API-KEY when the server has AUTH_API_KEY set.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Optional

import aiohttp
import websockets

PLACEHOLDER_SDP = "v=0\r\no=- 0 0 IN IP4 127.0.0.1\r\ns=live-client\r\nt=0 0\r\n"
PING_INTERVAL_SECONDS = 30


def _rstrip_slash(s: str) -> str:
    return s[:-1] if s.endswith("/") else s


def _http_url(http_base: str, path: str) -> str:
    return f"{_rstrip_slash(http_base)}{path}"


def _ws_live_url(ws_base: str) -> str:
    return f"{_rstrip_slash(ws_base)}/ws/live/"


def _dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


async def _stdin_line() -> str:
    return await asyncio.to_thread(sys.stdin.readline)


class HttpClient:
    def __init__(self, http_base: str, api_key: Optional[str]):
        self.http_base = http_base
        self.api_key = api_key
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "HttpClient":
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _headers(self) -> Dict[str, str]:
        h: Dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            h["X-API-KEY"] = self.api_key
        return h

    async def post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._session is not None
        url = _http_url(self.http_base, path)
        async with self._session.post(url, headers=self._headers(), data=_dumps(payload)) as resp:
            text = await resp.text()
            try:
                data = json.loads(text) if text else {}
            except json.JSONDecodeError:
                raise RuntimeError(f"Non-JSON response from {path}: {resp.status} {text}")
            if resp.status >= 400:
                raise RuntimeError(f"HTTP {resp.status}: {data.get('detail', data)}")
            return data


class LiveSocket:
    """Thin wrapper over a /ws/live/ connection that prints every frame it sees."""

    def __init__(self, ws, *, label: str):
        self.ws = ws
        self.label = label
        self.connection_id: Optional[str] = None

    async def send(self, payload: Dict[str, Any]) -> None:
        await self.ws.send(_dumps(payload))

    async def send_last(self, payload: Dict[str, Any]) -> None:
        try:
            await self.send(payload)
        except websockets.ConnectionClosed:
            pass

    async def recv(self) -> Dict[str, Any]:
        msg = json.loads(await self.ws.recv())
        sys.stderr.write(f"[{self.label}] <- {_dumps(msg)}\n")
        sys.stderr.flush()
        if msg.get("type") == "connected":
            self.connection_id = msg.get("connectionId")
        return msg

    async def keepalive(self) -> None:
        while True:
            await asyncio.sleep(PING_INTERVAL_SECONDS)
            await self.send({"type": "ping"})

    async def chat_from_stdin(self, token: str) -> None:
        sys.stderr.write("Type a line and press Enter to chat. Ctrl+C to quit.\n")
        sys.stderr.flush()
        while True:
            line = (await _stdin_line()).rstrip("\n")
            if line:
                await self.send({"type": "chat-message", "token": token, "message": line})


def _connect(ws_base: str, origin: Optional[str]):
    kwargs: Dict[str, Any] = {}
    if origin:
        kwargs["origin"] = origin
    return websockets.connect(_ws_live_url(ws_base), **kwargs)


async def _run_socket(live: LiveSocket, token: str, on_frame) -> int:
    tasks = [
        asyncio.create_task(live.keepalive()),
        asyncio.create_task(live.chat_from_stdin(token)),
    ]
    try:
        while True:
            msg = await live.recv()
            t = msg.get("type")
            if t == "stream-ended":
                return 0
            if t == "error" and msg.get("code") in ("not_found", "unauthorized", "invalid_ticket", "conflict"):
                return 1
            await on_frame(msg)
    finally:
        for task in tasks:
            task.cancel()


async def cmd_ticket(args: argparse.Namespace) -> int:
    async with HttpClient(args.http, args.api_key) as http:
        data = await http.post_json(
            f"/api/live/{args.stream_key}/ticket/",
            {"userId": args.user_id, "displayName": args.display_name or args.user_id},
        )
    print(json.dumps(data, indent=2, ensure_ascii=False))
    return 0


async def cmd_host(args: argparse.Namespace) -> int:
    async with HttpClient(args.http, args.api_key) as http:
        started = await http.post_json(
            f"/api/courses/{args.course_id}/live-classes/{args.class_id}/start/",
            {"userId": args.user_id, "displayName": args.display_name or args.user_id},
        )
    token = started["streamKey"]
    sys.stderr.write(f"{started['message']} (streamKey={token})\n")

    async with _connect(args.ws, args.origin) as ws:
        live = LiveSocket(ws, label="host")
        await live.recv()
        await live.send(
            {
                "type": "start-stream",
                "token": token,
                "courseId": str(args.course_id),
                "classId": str(args.class_id),
                "ticket": started["ticket"],
            }
        )

        async def on_frame(msg: Dict[str, Any]) -> None:
            if msg.get("type") == "new-viewer":
                await live.send(
                    {
                        "type": "offer",
                        "token": token,
                        "targetConnectionId": msg["viewerConnectionId"],
                        "offer": {"type": "offer", "sdp": PLACEHOLDER_SDP},
                    }
                )

        try:
            return await _run_socket(live, token, on_frame)
        finally:
            if not args.keep_live:
                await live.send_last({"type": "stop-stream", "token": token})


async def cmd_watch(args: argparse.Namespace) -> int:
    async with HttpClient(args.http, args.api_key) as http:
        issued = await http.post_json(
            f"/api/live/{args.stream_key}/ticket/",
            {"userId": args.user_id, "displayName": args.display_name or args.user_id},
        )
    token = issued["token"]

    async with _connect(args.ws, args.origin) as ws:
        live = LiveSocket(ws, label="viewer")
        await live.recv()
        await live.send({"type": "join-stream", "token": token, "ticket": issued["ticket"]})

        async def on_frame(msg: Dict[str, Any]) -> None:
            if msg.get("type") == "offer":
                await live.send(
                    {
                        "type": "answer",
                        "token": token,
                        "targetConnectionId": msg.get("fromConnectionId"),
                        "answer": {"type": "answer", "sdp": PLACEHOLDER_SDP},
                    }
                )

        try:
            return await _run_socket(live, token, on_frame)
        finally:
            await live.send_last({"type": "leave-stream"})


async def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="CLI client for the live class relay")
    parser.add_argument("--http", default="http://localhost:8000", help="HTTP base, e.g. http://localhost:8000")
    parser.add_argument("--ws", default="ws://localhost:8000", help="WS base, e.g. ws://localhost:8000")
    parser.add_argument("--api-key", help="X-API-KEY header value (must match AUTH_API_KEY)")
    parser.add_argument("--origin", help="Optional Origin header for WebSocket handshake")

    sub = parser.add_subparsers(dest="cmd", required=True)

    p_ticket = sub.add_parser("ticket", help="Mint a join ticket (HTTP)")
    p_ticket.add_argument("--stream-key", required=True)
    p_ticket.add_argument("--user-id", required=True)
    p_ticket.add_argument("--display-name")

    p_host = sub.add_parser("host", help="Start a live class and act as its host")
    p_host.add_argument("--course-id", required=True, type=int)
    p_host.add_argument("--class-id", required=True, type=int)
    p_host.add_argument("--user-id", required=True, help="Course teacher id")
    p_host.add_argument("--display-name")
    p_host.add_argument("--keep-live", action="store_true", help="Do not send stop-stream on exit")

    p_watch = sub.add_parser("watch", help="Join a live class as a viewer")
    p_watch.add_argument("--stream-key", required=True)
    p_watch.add_argument("--user-id", required=True, help="Enrolled student id")
    p_watch.add_argument("--display-name")

    args = parser.parse_args(argv)

    handlers = {"ticket": cmd_ticket, "host": cmd_host, "watch": cmd_watch}
    try:
        return await handlers[args.cmd](args)
    except RuntimeError as e:
        sys.stderr.write(f"{e}\n")
        return 1


def run() -> None:
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        raise SystemExit(130)


if __name__ == "__main__":
    run()
