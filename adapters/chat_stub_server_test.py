#!/usr/bin/env python3
"""
chat_stub_server_test.py — Stub chat-stream server tests

Tests the wire rendering helpers, bearer middleware, request validation,
and a full round trip through ChatStreamClient in direct and
proxy-wrapped modes.

Run: pytest adapters/chat_stub_server_test.py
"""

import asyncio
import os
import sys

import httpx
import pytest
from starlette.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from chat_client import ChatStreamClient
from chat_session import ConversationSession
from chat_stub_server import (
    ResponderCache,
    create_app,
    escape_text,
    render_stream,
    split_deltas,
    wrap_line,
)
from config_loader import DEFAULT_CHAT_PATH, ChatConfig
from stream_decoder import DeltaEvent, process_line
from symptom_responder import (
    APPOINTMENT_REPLY,
    DEFAULT_RESPONSES,
    GREETING_REPLY,
    SYMPTOM_TOPICS,
    THANKS_REPLY,
)

FEVER = SYMPTOM_TOPICS[1]

CANNED_REPLIES = (
    [topic.follow_up for topic in SYMPTOM_TOPICS]
    + [topic.recommendation for topic in SYMPTOM_TOPICS]
    + [THANKS_REPLY, APPOINTMENT_REPLY, GREETING_REPLY]
    + DEFAULT_RESPONSES
)


def run(coro):
    """Run async test in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# --- Rendering ---


class TestRendering:
    def test_split_deltas_rejoins_to_reply(self):
        reply = FEVER.recommendation
        pieces = split_deltas(reply)
        assert len(pieces) > 1
        assert "".join(pieces) == reply

    def test_split_deltas_single_line(self):
        assert split_deltas("Hola") == ["Hola"]

    def test_escape_text(self):
        assert escape_text("a\nb\r") == "a\\nb\\r"

    def test_render_stream_shape(self):
        lines = list(render_stream("c-1", "uno\ndos"))
        assert lines == [
            "event: init",
            'data: {"conversationId": "c-1"}',
            "",
            "data: uno\\n",
            "data: dos",
            "",
            "event: complete",
            'data: {"status": "done"}',
            "",
        ]

    def test_wrap_line(self):
        assert wrap_line("event: init") == "data:event: init"
        assert wrap_line("") == "data:"

    @pytest.mark.parametrize("reply", CANNED_REPLIES)
    def test_canned_reply_pieces_decode_as_text(self, reply):
        for piece in split_deltas(reply):
            assert process_line("data: " + escape_text(piece)) == DeltaEvent(piece)

    def test_json_object_piece_is_not_text(self):
        piece = '{"status": "done"}'
        assert process_line("data: " + escape_text(piece)) != DeltaEvent(piece)


class TestResponderCache:
    def test_same_conversation_same_responder(self):
        cache = ResponderCache()
        assert cache.get_or_create("a") is cache.get_or_create("a")

    def test_evicts_least_recently_used(self):
        cache = ResponderCache(max_size=2)
        first = cache.get_or_create("a")
        cache.get_or_create("b")
        cache.get_or_create("a")
        cache.get_or_create("c")
        assert cache.size == 2
        assert cache.get_or_create("a") is first
        cache.clear()
        assert cache.size == 0


# --- HTTP surface ---


class TestEndpoints:
    def test_healthz(self):
        client = TestClient(create_app(api_key="secret"))
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_missing_bearer_rejected(self):
        client = TestClient(create_app(api_key="secret"))
        response = client.post(DEFAULT_CHAT_PATH, json={"message": "hola"})
        assert response.status_code == 401
        assert "error" in response.json()

    def test_wrong_bearer_rejected(self):
        client = TestClient(create_app(api_key="secret"))
        response = client.post(
            DEFAULT_CHAT_PATH,
            json={"message": "hola"},
            headers={"Authorization": "Bearer nope"},
        )
        assert response.status_code == 401

    def test_invalid_json_400(self):
        client = TestClient(create_app(api_key=""))
        response = client.post(DEFAULT_CHAT_PATH, content=b"{nope")
        assert response.status_code == 400
        assert "error" in response.json()

    def test_empty_message_400(self):
        client = TestClient(create_app(api_key=""))
        response = client.post(DEFAULT_CHAT_PATH, json={"message": "  ", "patientId": 1})
        assert response.status_code == 400

    def test_stream_body(self):
        client = TestClient(create_app(api_key="secret", proxy_wrap=False))
        response = client.post(
            DEFAULT_CHAT_PATH,
            json={"message": "Buenas", "patientId": 1, "conversationId": "c-5"},
            headers={"Authorization": "Bearer secret"},
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        lines = response.text.split("\n")
        assert lines[0] == "event: init"
        assert lines[1] == 'data: {"conversationId": "c-5"}'

    def test_proxy_wrapped_body(self):
        client = TestClient(create_app(api_key="", proxy_wrap=True))
        response = client.post(DEFAULT_CHAT_PATH, json={"message": "Buenas"})
        lines = [line for line in response.text.split("\n") if line]
        assert all(line.startswith("data:") for line in lines)
        assert lines[0] == "data:event: init"


# --- Round trip through the client ---


async def _round_trip(app, messages, api_key="pk-stub"):
    config = ChatConfig(base_url="http://stub", api_key=api_key)
    bound = []
    session = ConversationSession(patient_id="42", on_conversation_id=bound.append)
    replies = []
    errors = []
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport) as http:
        client = ChatStreamClient(config, session, http_client=http, on_error=errors.append)
        for message in messages:
            pieces = []
            done = []
            await client.send_message(message, pieces.append, lambda: done.append(True))
            assert done == [True]
            replies.append("".join(pieces))
    return replies, bound, errors


class TestRoundTrip:
    @pytest.mark.parametrize("proxy_wrap", [False, True])
    def test_follow_up_then_recommendation(self, proxy_wrap):
        app = create_app(api_key="pk-stub", proxy_wrap=proxy_wrap)
        replies, bound, errors = run(_round_trip(app, ["Tengo fiebre", "Sigo con fiebre"]))
        assert errors == []
        assert replies == [FEVER.follow_up, FEVER.recommendation]
        assert len(bound) == 1

    def test_auth_failure_reported(self):
        app = create_app(api_key="pk-stub")
        replies, bound, errors = run(_round_trip(app, ["Hola"], api_key="wrong"))
        assert replies == [""]
        assert bound == []
        assert len(errors) == 1
        assert errors[0].code == "transport_error"
        assert errors[0].status_code == 401
        assert str(errors[0]) == "No autorizado"
