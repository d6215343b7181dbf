"""Conversation session negotiation.

Performs the one-shot ``POST /start-conversation`` exchange with the voice
backend and returns the session identifier that binds the signaling channel
to the new conversation.
"""

import asyncio
import logging

import aiohttp
from pydantic import ValidationError

from avatar_call.config import NegotiatorConfig
from avatar_call.errors import NegotiationFailed
from avatar_call.protocol import StartConversationRequest, StartConversationResponse

logger = logging.getLogger(__name__)

START_CONVERSATION_PATH = "/start-conversation"


class SessionNegotiator:
    """Starts remote conversations over HTTP.

    The underlying aiohttp session is created lazily and reused across calls
    until ``close()``.
    """

    def __init__(self, config: NegotiatorConfig | None = None) -> None:
        """Initialize negotiator.

        Args:
            config: Backend endpoint configuration
        """
        self.config = config or NegotiatorConfig()
        self._session: aiohttp.ClientSession | None = None

    @property
    def endpoint(self) -> str:
        """Full URL of the start-conversation endpoint."""
        return f"{self.config.backend_url}{START_CONVERSATION_PATH}"

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_s)
            )
        return self._session

    async def negotiate(self, prompt: str, voice_id: str) -> str:
        """Start a conversation and return its session identifier.

        Args:
            prompt: Initial system prompt (non-empty)
            voice_id: Voice identifier (non-empty)

        Returns:
            Opaque session identifier (the backend's ``connectionId``)

        Raises:
            NegotiationFailed: On invalid arguments, non-2xx status, network
                error, timeout or malformed response body
        """
        try:
            request = StartConversationRequest(prompt=prompt, voice_id=voice_id)
        except ValidationError as e:
            raise NegotiationFailed(f"Invalid negotiation arguments: {e}") from e

        session = self._ensure_session()

        try:
            async with session.post(self.endpoint, json=request.to_json_body()) as response:
                if not 200 <= response.status < 300:
                    error_text = await response.text(errors="replace")
                    logger.error(
                        "Start conversation rejected",
                        extra={"status": response.status, "body": error_text[:200]},
                    )
                    raise NegotiationFailed(f"Failed to start conversation: HTTP {response.status}")

                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise NegotiationFailed(f"Malformed response body: {e}") from e

        except aiohttp.ClientError as e:
            logger.error("HTTP error starting conversation", extra={"error": str(e)})
            raise NegotiationFailed(f"HTTP error: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error("Start conversation timed out", extra={"timeout_s": self.config.timeout_s})
            raise NegotiationFailed("Start conversation timed out") from e

        try:
            parsed = StartConversationResponse.model_validate(data)
        except ValidationError as e:
            raise NegotiationFailed(f"Malformed response body: {e}") from e

        logger.info("Conversation started", extra={"backend_message": parsed.message})
        return parsed.connection_id

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
