"""Signaling channel to the conversation backend.

A single WebSocket carries both directions of the conversation once the
session has been negotiated:

    - outbound binary frames: captured microphone chunks
    - inbound binary frames: synthesized speech, forwarded verbatim
    - inbound text frames: JSON advisory messages, logged only

Failures inside the receive loop are reported through ``on_error`` and never
raised out of it.
"""

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from websockets.asyncio.client import ClientConnection, connect

from avatar_call.audio.frames import AudioFrame, decode_inbound_frame
from avatar_call.config import SignalingConfig
from avatar_call.errors import SignalingError
from avatar_call.protocol import ServerTextMessage

logger = logging.getLogger(__name__)

SESSION_QUERY_PARAM = "connectionId"

AudioCallback = Callable[[AudioFrame], Awaitable[None] | None]
MessageCallback = Callable[[ServerTextMessage], Awaitable[None] | None]
ErrorCallback = Callable[[SignalingError], Awaitable[None] | None]
CloseCallback = Callable[[], Awaitable[None] | None]


class ChannelState(Enum):
    """Signaling channel states.

    State Transitions:
    - NEW → CONNECTING (on open)
    - CONNECTING → OPEN (handshake complete)
    - CONNECTING → ERRORED (handshake failed)
    - OPEN → CLOSED (local close or clean remote close)
    - OPEN → ERRORED (connection-level failure)
    """

    NEW = "new"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"


def build_channel_url(ws_url: str, session_id: str) -> str:
    """Add the session identifier to the signaling URL as a query parameter.

    Args:
        ws_url: Base WebSocket URL (may already carry a query string)
        session_id: Negotiated session identifier

    Returns:
        URL with ``connectionId=<session_id>`` appended
    """
    parts = urlsplit(ws_url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query = [(k, v) for k, v in query if k != SESSION_QUERY_PARAM]
    query.append((SESSION_QUERY_PARAM, session_id))
    return urlunsplit(parts._replace(query=urlencode(query)))


async def _invoke(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Call a sync or async callback."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class SignalingChannel:
    """WebSocket signaling channel bound to one negotiated session."""

    def __init__(
        self,
        config: SignalingConfig | None = None,
        on_audio: AudioCallback | None = None,
        on_message: MessageCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_close: CloseCallback | None = None,
    ) -> None:
        """Initialize signaling channel.

        Args:
            config: Signaling endpoint configuration
            on_audio: Receives each inbound binary payload as an AudioFrame
            on_message: Receives each parsed inbound text message
            on_error: Receives connection-level failures after the channel opened
            on_close: Called when the remote side closes the connection cleanly
        """
        self.config = config or SignalingConfig()
        self.on_audio = on_audio
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close

        self._state = ChannelState.NEW
        self._ws: ClientConnection | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._session_id: str | None = None
        self._url: str | None = None
        self._closed = False

        self.frames_received = 0
        self.bytes_received = 0
        self.chunks_sent = 0

    @property
    def state(self) -> ChannelState:
        """Current channel state."""
        return self._state

    @property
    def is_open(self) -> bool:
        """Whether outbound audio can be sent."""
        return self._state == ChannelState.OPEN and not self._closed

    @property
    def session_id(self) -> str | None:
        """Session identifier this channel is bound to."""
        return self._session_id

    @property
    def url(self) -> str | None:
        """Address the channel connected (or tried to connect) to."""
        return self._url

    async def open(self, session_id: str) -> None:
        """Connect to the backend for the given session.

        Args:
            session_id: Negotiated session identifier (non-empty)

        Raises:
            SignalingError: If the session id is empty, the channel was already
                used, or the connection could not be established
        """
        if not session_id:
            raise SignalingError("Cannot open signaling channel without a session id")
        if self._state != ChannelState.NEW or self._closed:
            raise SignalingError(f"Signaling channel already used (state={self._state.value})")

        self._session_id = session_id
        self._url = build_channel_url(self.config.ws_url, session_id)
        self._state = ChannelState.CONNECTING

        try:
            ws = await asyncio.wait_for(
                connect(self._url, max_size=self.config.max_message_bytes),
                timeout=self.config.connect_timeout_s,
            )
        except asyncio.TimeoutError as e:
            self._state = ChannelState.ERRORED
            logger.error("Signaling connect timeout", extra={"session_id": session_id})
            raise SignalingError("Signaling connection timeout") from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            self._state = ChannelState.ERRORED
            logger.error(
                "Signaling connect failed", extra={"session_id": session_id, "error": str(e)}
            )
            raise SignalingError(f"Signaling connection failed: {e}") from e

        if self._closed:
            # close() ran while the handshake was in flight
            await ws.close()
            return

        self._ws = ws
        self._state = ChannelState.OPEN
        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        logger.info("Connected to signaling server", extra={"session_id": session_id})

    async def send_audio(self, chunk: bytes) -> bool:
        """Send one captured chunk as a binary frame.

        Args:
            chunk: Raw PCM bytes

        Returns:
            True if the chunk was handed to the socket, False if dropped
        """
        if not self.is_open or self._ws is None:
            logger.debug("send_audio skipped: channel not open", extra={"state": self._state.value})
            return False

        try:
            await self._ws.send(chunk)
        except (websockets.exceptions.WebSocketException, OSError) as e:
            logger.warning("Failed to send audio chunk", extra={"error": str(e)})
            return False

        self.chunks_sent += 1
        return True

    async def _receive_loop(self, ws: ClientConnection) -> None:
        """Dispatch inbound frames until the connection ends."""
        error: SignalingError | None = None
        try:
            async for message in ws:
                if isinstance(message, bytes):
                    await self._handle_binary(message)
                else:
                    await self._handle_text(message)
        except websockets.exceptions.ConnectionClosedOK:
            pass
        except websockets.exceptions.ConnectionClosedError as e:
            error = SignalingError(f"Signaling connection lost: {e}")
        except Exception as e:
            error = SignalingError(f"Signaling receive error: {e}")

        if self._closed:
            return

        if error is not None:
            self._state = ChannelState.ERRORED
            logger.error(
                "WebSocket error", extra={"session_id": self._session_id, "error": str(error)}
            )
            await self._notify(self.on_error, error)
        else:
            self._state = ChannelState.CLOSED
            logger.info("Signaling connection closed by server", extra={"session_id": self._session_id})
            await self._notify(self.on_close)

    async def _handle_binary(self, payload: bytes) -> None:
        frame = decode_inbound_frame(payload)
        self.frames_received += 1
        self.bytes_received += len(frame)
        await self._notify(self.on_audio, frame)

    async def _handle_text(self, raw: str) -> None:
        try:
            message = ServerTextMessage.from_payload(json.loads(raw))
        except (ValueError, RecursionError) as e:
            logger.warning(
                "Ignoring malformed text message",
                extra={"session_id": self._session_id, "error": str(e), "size": len(raw)},
            )
            return

        logger.debug(
            "Text message received",
            extra={"session_id": self._session_id, "message_type": message.type},
        )
        await self._notify(self.on_message, message)

    async def _notify(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        """Run a callback without letting its failure stop the receive loop."""
        try:
            await _invoke(callback, *args)
        except Exception as e:
            logger.error(
                "Signaling callback failed",
                extra={"session_id": self._session_id, "error": str(e)},
            )

    async def close(self) -> None:
        """Close the channel. Idempotent; a never-opened channel is a no-op."""
        if self._closed:
            return
        self._closed = True

        task, self._receive_task = self._receive_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("WebSocket close error", extra={"error": str(e)})

        if self._state in (ChannelState.OPEN, ChannelState.CONNECTING):
            self._state = ChannelState.CLOSED
            logger.info("Signaling channel closed", extra={"session_id": self._session_id})
