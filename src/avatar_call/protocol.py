"""Wire message definitions.

Defines Pydantic models for the conversation backend's HTTP negotiation
exchange and for the JSON text messages it pushes over the signaling
WebSocket. Audio itself travels as binary WebSocket frames and has no model.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StartConversationRequest(BaseModel):
    """Client → Backend: start a conversation.

    Serialized with camelCase keys: ``{"prompt": ..., "voiceId": ...}``.
    """

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    prompt: str = Field(..., min_length=1, description="Initial system prompt")
    voice_id: str = Field(..., min_length=1, alias="voiceId", description="Voice to speak with")

    def to_json_body(self) -> dict[str, str]:
        """Build the JSON request body."""
        return self.model_dump(by_alias=True)


class StartConversationResponse(BaseModel):
    """Backend → Client: conversation started.

    ``connectionId`` is an opaque capability token binding the signaling
    WebSocket to this conversation; it is never parsed.
    """

    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(default="", description="Human-readable status from the backend")
    connection_id: str = Field(
        ..., min_length=1, alias="connectionId", description="Signaling session identifier"
    )


class ServerTextMessage(BaseModel):
    """Backend → Client: JSON text frame on the signaling channel.

    These messages are advisory (transcripts, agent status) and are only
    logged. Unknown fields are kept so nothing is lost when logging.
    """

    model_config = ConfigDict(extra="allow")

    type: str = Field(default="unknown", description="Message type discriminator")

    @classmethod
    def from_payload(cls, payload: Any) -> "ServerTextMessage":
        """Build a message from decoded JSON.

        Args:
            payload: Decoded JSON value

        Returns:
            Parsed message (non-object payloads are wrapped under ``value``)
        """
        if isinstance(payload, dict):
            data = dict(payload)
            data["type"] = str(data.get("type") or "unknown")
            return cls.model_validate(data)
        return cls.model_validate({"type": "unknown", "value": payload})
