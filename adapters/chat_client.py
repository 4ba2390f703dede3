"""
chat_client.py — Streaming chat client for the assistant endpoint

One send = one POST to the chat-stream endpoint, read incrementally through
stream_decoder. No retries: a failed send ends there and the caller decides.

Send lifecycle:
  Idle -> Sending -> StreamOpen -> (Draining | Failed) -> Done

Callbacks:
  on_delta(text)   — each text fragment, in arrival order
  on_done()        — exactly once per send, on success and on failure
  on_error(error)  — user-visible failure notification (ChatStreamError)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Callable, Dict, Optional

import httpx

from chat_session import ConversationSession
from config_loader import ChatConfig, redact_headers
from stream_decoder import (
    ChatStreamError,
    ConversationAssigned,
    DeltaEvent,
    StreamDone,
    decode_stream,
    parse_structured,
)

logger = logging.getLogger("mama.chat_client")

DEFAULT_TRANSPORT_ERROR = "Error al conectar con el asistente"
ABORTED_MESSAGE = "Envío cancelado"

DeltaCallback = Callable[[str], None]
DoneCallback = Callable[[], None]
ErrorCallback = Callable[[ChatStreamError], None]


def build_timeout(config: ChatConfig) -> httpx.Timeout:
    return httpx.Timeout(
        connect=config.connect_timeout_ms / 1000.0,
        read=config.read_timeout_ms / 1000.0,
        write=30.0,
        pool=config.connect_timeout_ms / 1000.0,
    )


async def _transport_error(response: httpx.Response) -> ChatStreamError:
    """Build the error for a non-2xx response, preferring its JSON "error" field."""
    await response.aread()
    payload = parse_structured(response.text.strip()) or {}
    message = payload.get("error") or DEFAULT_TRANSPORT_ERROR
    return ChatStreamError(
        code="transport_error",
        message=str(message),
        status_code=response.status_code,
    )


def _aborted() -> ChatStreamError:
    return ChatStreamError(code="aborted", message=ABORTED_MESSAGE)


async def _abortable(
    chunks: AsyncIterator[bytes], abort: Optional[asyncio.Event]
) -> AsyncIterator[bytes]:
    """Pass chunks through until the abort event is set.

    Each read races the abort event, so a stalled body is interrupted as
    soon as abort is set rather than at the next chunk or read timeout.
    """
    if abort is None:
        async for chunk in chunks:
            yield chunk
        return

    iterator = chunks.__aiter__()
    abort_wait = asyncio.ensure_future(abort.wait())
    try:
        while not abort.is_set():
            next_chunk = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait(
                {next_chunk, abort_wait}, return_when=asyncio.FIRST_COMPLETED
            )
            if abort_wait in done:
                next_chunk.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await next_chunk
                break
            try:
                chunk = next_chunk.result()
            except StopAsyncIteration:
                return
            yield chunk
        raise _aborted()
    finally:
        abort_wait.cancel()


class ChatStreamClient:
    """Sends chat messages and dispatches the streamed reply.

    The session outlives individual sends: a conversation id assigned by
    the backend is reused by the next send until session.reset().
    """

    def __init__(
        self,
        config: ChatConfig,
        session: ConversationSession,
        http_client: Optional[httpx.AsyncClient] = None,
        on_error: Optional[ErrorCallback] = None,
    ):
        self._config = config
        self.session = session
        self._on_error = on_error
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=build_timeout(config))
        self._busy = False

    @property
    def is_busy(self) -> bool:
        """True while a send is in flight."""
        return self._busy

    @property
    def conversation_id(self) -> Optional[str]:
        return self.session.conversation_id

    def reset_conversation(self) -> None:
        self.session.reset()

    def build_request_body(self, message: str) -> Dict[str, object]:
        body: Dict[str, object] = {
            "message": message,
            "patientId": self.session.patient_id,
        }
        if self.session.conversation_id:
            body["conversationId"] = self.session.conversation_id
        return body

    def build_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._config.api_key}",
        }

    async def send_message(
        self,
        message: str,
        on_delta: DeltaCallback,
        on_done: DoneCallback,
        abort: Optional[asyncio.Event] = None,
    ) -> bool:
        """Send one message and stream the reply into the callbacks.

        Returns True if the stream completed, False if it failed. Failures
        are reported through on_error, never raised; on_done fires in every
        case. Setting abort interrupts the read at once, even while waiting
        on a stalled body.
        """
        if self._busy:
            logger.warning(
                "send_message called while another send is in flight "
                "(conversationId=%s)",
                self.session.conversation_id,
            )
        self._busy = True
        received_content = False

        try:
            body = self.build_request_body(message)
            headers = self.build_headers()
            logger.info(
                "Sending to %s (patientId=%s, conversationId=%s)",
                self._config.chat_url,
                body["patientId"],
                body.get("conversationId"),
            )
            logger.debug("Request headers: %s", redact_headers(headers))

            async with self._client.stream(
                "POST", self._config.chat_url, json=body, headers=headers
            ) as response:
                if not response.is_success:
                    raise await _transport_error(response)

                async for event in decode_stream(
                    _abortable(response.aiter_bytes(), abort)
                ):
                    if isinstance(event, DeltaEvent):
                        logger.debug("Content chunk: %.50s", event.text)
                        on_delta(event.text)
                        received_content = True
                    elif isinstance(event, ConversationAssigned):
                        self.session.bind(event.conversation_id)
                    elif isinstance(event, StreamDone):
                        logger.debug("Stream reported done")

                if abort is not None and abort.is_set():
                    raise _aborted()

            logger.info("Stream ended, received content: %s", received_content)
            return True

        except ChatStreamError as e:
            self._report(e)
            return False

        except httpx.HTTPError as e:
            self._report(
                ChatStreamError(code="network_error", message=f"Connection failed: {e}")
            )
            return False

        finally:
            self._busy = False
            on_done()

    def _report(self, error: ChatStreamError) -> None:
        logger.warning(
            "Chat stream failed: code=%s status=%s message=%s",
            error.code,
            error.status_code,
            error,
        )
        if self._on_error is not None:
            self._on_error(error)

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()
