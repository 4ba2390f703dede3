#!/usr/bin/env python3
"""
chat_stub_server.py — Local stand-in for the chat-stream edge function

FastAPI application emitting the same line protocol as the production
backend, with replies from the local symptom responder. Used for local
development of chat clients and for integration tests.

Endpoints:
  POST /functions/v1/chat-stream — streamed reply (text/event-stream)
  GET  /healthz                  — Liveness probe

Options (environment):
  MAMA_STUB_API_KEY     — expected bearer token (unset: auth disabled)
  MAMA_STUB_PROXY_WRAP  — "1" wraps every line in one extra "data:" envelope,
                          as the edge proxy does
  MAMA_STUB_CACHE_SIZE  — max conversations kept in memory
"""

import json
import os
import re
import time
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterator, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from config_loader import DEFAULT_CHAT_PATH
from stream_decoder import DATA_PREFIX
from symptom_responder import SymptomResponder

# --- Configuration ---

STUB_API_KEY = os.environ.get("MAMA_STUB_API_KEY", "")
STUB_PROXY_WRAP = os.environ.get("MAMA_STUB_PROXY_WRAP", "") == "1"
RESPONDER_CACHE_MAX_SIZE = int(os.environ.get("MAMA_STUB_CACHE_SIZE", "1000"))

START_TIME = time.monotonic()


# --- Responder Cache ---


class ResponderCache:
    """LRU map of conversation id -> SymptomResponder.

    Least recently used conversations are forgotten past max_size.
    """

    def __init__(self, max_size: int = 1000):
        self._cache: "OrderedDict[str, SymptomResponder]" = OrderedDict()
        self._max_size = max_size

    def get_or_create(self, conversation_id: str) -> SymptomResponder:
        responder = self._cache.get(conversation_id)
        if responder is None:
            responder = SymptomResponder()
            self._cache[conversation_id] = responder
        self._cache.move_to_end(conversation_id)

        while len(self._cache) > self._max_size:
            self._cache.popitem(last=False)

        return responder

    def clear(self) -> None:
        self._cache.clear()

    @property
    def size(self) -> int:
        return len(self._cache)


# --- Wire Rendering ---


def escape_text(text: str) -> str:
    """Escape line breaks so a delta fits on one protocol line."""
    return text.replace("\r", "\\r").replace("\n", "\\n")


def split_deltas(reply: str) -> List[str]:
    """Split a reply into line-sized deltas; each keeps its trailing newline.

    Limitation: pieces go out verbatim after escape_text, so a piece that
    clients would read as something other than text is not representable.
    That covers a piece starting with "{" that parses as a JSON object, the
    "[DONE]" sentinel, a piece starting with "event:", "data:" or ":", and
    leading or trailing spaces, which the payload trim removes. The
    responder's canned replies contain none of these.
    """
    return [piece for piece in re.split(r"(?<=\n)", reply) if piece]


def render_stream(conversation_id: str, reply: str) -> Iterator[str]:
    """Yield protocol lines (without terminators) for one reply."""
    yield "event: init"
    yield "data: " + json.dumps({"conversationId": conversation_id})
    yield ""
    for piece in split_deltas(reply):
        yield "data: " + escape_text(piece)
    yield ""
    yield "event: complete"
    yield "data: " + json.dumps({"status": "done"})
    yield ""


def wrap_line(line: str) -> str:
    """Add the proxy's extra "data:" envelope."""
    return DATA_PREFIX + line


async def _encode(lines: List[str]) -> AsyncIterator[bytes]:
    for line in lines:
        yield (line + "\n").encode("utf-8")


# --- Bearer Middleware ---


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Check the bearer token on all non-GET requests.

    GET requests (/healthz) bypass verification. An empty api_key disables
    the check.
    """

    def __init__(self, app: Any, api_key: str = ""):
        super().__init__(app)
        self._api_key = api_key

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        if request.method == "GET" or not self._api_key:
            return await call_next(request)

        authorization = request.headers.get("authorization", "")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or token.strip() != self._api_key:
            return JSONResponse(
                status_code=401,
                content={"error": "No autorizado"},
            )

        return await call_next(request)


# --- Application ---


def create_app(
    api_key: Optional[str] = None,
    proxy_wrap: Optional[bool] = None,
    cache_size: int = RESPONDER_CACHE_MAX_SIZE,
) -> FastAPI:
    """Build the stub app. Unset arguments fall back to the environment."""
    key = STUB_API_KEY if api_key is None else api_key
    wrap = STUB_PROXY_WRAP if proxy_wrap is None else proxy_wrap

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Log config on startup (no secrets)."""
        print(f"[chat-stub] Serving {DEFAULT_CHAT_PATH}", flush=True)
        print(f"[chat-stub] Auth: {'configured' if key else 'DISABLED'}", flush=True)
        print(f"[chat-stub] Proxy wrap: {'on' if wrap else 'off'}", flush=True)
        yield
        print("[chat-stub] Shutdown complete", flush=True)

    app = FastAPI(title="Mama Chat Stub", docs_url=None, redoc_url=None, lifespan=lifespan)
    app.add_middleware(BearerAuthMiddleware, api_key=key)
    app.state.responders = ResponderCache(max_size=cache_size)
    app.state.proxy_wrap = wrap

    @app.get("/healthz")
    async def healthz() -> dict:
        """Liveness probe."""
        return {
            "status": "alive",
            "uptime_s": round(time.monotonic() - START_TIME, 2),
            "conversations": app.state.responders.size,
        }

    @app.post(DEFAULT_CHAT_PATH)
    async def chat_stream(request: Request) -> Response:
        """Stream a responder reply in the chat-stream line protocol."""
        body = await request.body()
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            return JSONResponse(
                status_code=400,
                content={"error": "El cuerpo de la petición no es JSON válido"},
            )
        if not isinstance(payload, dict):
            return JSONResponse(
                status_code=400,
                content={"error": "El cuerpo de la petición debe ser un objeto"},
            )

        message = payload.get("message")
        if not isinstance(message, str) or not message.strip():
            return JSONResponse(
                status_code=400,
                content={"error": "El mensaje está vacío"},
            )

        conversation_id = payload.get("conversationId") or str(uuid.uuid4())
        responder = app.state.responders.get_or_create(conversation_id)
        reply = responder.respond(message)

        lines = list(render_stream(conversation_id, reply))
        if app.state.proxy_wrap:
            lines = [wrap_line(line) for line in lines]

        return StreamingResponse(_encode(lines), media_type="text/event-stream")

    return app


app = create_app()
