"""Avatar transport contract.

Defines the interface the call driver requires from a real-time avatar
renderer. The renderer accepts synthesized speech as raw PCM frames and
streams back an animated face over a peer connection; how it does so is up to
the implementation.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from avatar_call.audio.frames import AudioFrame

# Receives a remote media track (video or audio) once the avatar stream is up
MediaSink = Callable[[Any], None]


@dataclass(frozen=True)
class AvatarDescriptor:
    """One-time initialization data for an avatar transport."""

    api_key: str
    face_id: str
    handle_silence: bool = True
    video_sink: MediaSink | None = None
    audio_sink: MediaSink | None = None


class AvatarTransport(ABC):
    """Base class for avatar renderers driven by a call.

    Lifecycle: ``initialize`` once, then any number of ``start`` → ``close``
    cycles, one per call.
    """

    @abstractmethod
    def initialize(self, descriptor: AvatarDescriptor) -> None:
        """Store the avatar identity and media sinks.

        Args:
            descriptor: Avatar initialization data
        """

    @abstractmethod
    async def start(self) -> None:
        """Begin establishing the peer connection.

        The connection may still be settling when this returns; full
        readiness is observed through ``is_ready``.

        Raises:
            TransportError: If the connection could not be initiated
        """

    @abstractmethod
    async def send_audio_data(self, frame: AudioFrame) -> None:
        """Feed synthesized speech to the avatar.

        Args:
            frame: Raw PCM audio (16-bit LE)
        """

    @abstractmethod
    async def close(self) -> None:
        """Tear down the peer connection. Idempotent."""

    @abstractmethod
    def is_ready(self) -> bool:
        """Whether the peer connection and its data path are both established."""

    def set_muted(self, muted: bool) -> None:
        """Tell the renderer whether the user's microphone is muted.

        Transports without mute support ignore the request.
        """

    def set_video_enabled(self, enabled: bool) -> None:
        """Enable or disable the avatar's video output.

        Transports without video control ignore the request.
        """
