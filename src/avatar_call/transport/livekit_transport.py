"""LiveKit avatar transport for WebRTC rendering.

Joins a LiveKit room shared with an avatar rendering participant, publishes
the synthesized speech as a local audio track for the avatar to lip-sync, and
hands the avatar's video/audio tracks to the descriptor's media sinks.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import numpy as np
from livekit import rtc
from livekit.api import AccessToken, VideoGrants

from avatar_call.audio.frames import BYTES_PER_SAMPLE, CHANNELS, SAMPLE_RATE_HZ, AudioFrame
from avatar_call.config import LiveKitConfig
from avatar_call.errors import TransportError
from avatar_call.transport.base import AvatarDescriptor, AvatarTransport

logger = logging.getLogger(__name__)

DATA_TOPIC = "avatar"


def create_access_token(config: LiveKitConfig) -> str:
    """Generate a JWT allowing the client to join the avatar room.

    Args:
        config: LiveKit server configuration

    Returns:
        JWT token string
    """
    token = AccessToken(config.api_key, config.api_secret)
    token.with_identity(config.identity)
    token.with_name(config.identity)
    token.with_grants(
        VideoGrants(
            room_join=True,
            room=config.room_name,
            can_publish=True,
            can_subscribe=True,
            can_publish_data=True,
        )
    )
    token.with_ttl(timedelta(hours=config.token_ttl_hours))
    return token.to_jwt()


class LiveKitAvatarTransport(AvatarTransport):
    """Avatar transport over a LiveKit room.

    Ready once the room is connected, the speech track is published and the
    avatar participant has joined.
    """

    def __init__(
        self,
        config: LiveKitConfig | None = None,
        room_factory: Callable[[], rtc.Room] = rtc.Room,
    ) -> None:
        """Initialize LiveKit avatar transport.

        Args:
            config: LiveKit server configuration
            room_factory: Creates the room for each call
        """
        self.config = config or LiveKitConfig()
        self._room_factory = room_factory
        self._descriptor: AvatarDescriptor | None = None

        self._room: rtc.Room | None = None
        self._audio_source: rtc.AudioSource | None = None
        self._audio_track: rtc.LocalAudioTrack | None = None
        self._avatar: rtc.RemoteParticipant | None = None
        self._pending_byte = b""
        self._background: set[asyncio.Task[None]] = set()

        self.frames_sent = 0

    @property
    def descriptor(self) -> AvatarDescriptor | None:
        """Descriptor passed to ``initialize``."""
        return self._descriptor

    def initialize(self, descriptor: AvatarDescriptor) -> None:
        self._descriptor = descriptor
        logger.info(
            "LiveKit avatar transport initialized",
            extra={"face_id": descriptor.face_id, "room": self.config.room_name},
        )

    def is_ready(self) -> bool:
        room = self._room
        return (
            room is not None
            and room.connection_state == rtc.ConnectionState.CONN_CONNECTED
            and self._audio_track is not None
            and self._avatar is not None
        )

    def _is_avatar(self, participant: rtc.RemoteParticipant) -> bool:
        expected = self.config.avatar_identity
        return expected is None or participant.identity == expected

    async def start(self) -> None:
        """Connect to the room and publish the speech track.

        Raises:
            TransportError: If not initialized, already started, or the room
                connection fails
        """
        if self._descriptor is None:
            raise TransportError("Avatar transport not initialized. Call initialize() first.")
        if self._room is not None:
            raise TransportError("Avatar transport already started")

        room = self._room_factory()
        self._room = room
        self._register_handlers(room)

        try:
            await room.connect(self.config.url, create_access_token(self.config))

            self._audio_source = rtc.AudioSource(SAMPLE_RATE_HZ, num_channels=CHANNELS)
            track = rtc.LocalAudioTrack.create_audio_track("avatar-speech", self._audio_source)
            await room.local_participant.publish_track(
                track,
                rtc.TrackPublishOptions(source=rtc.TrackSource.SOURCE_MICROPHONE),
            )
            self._audio_track = track
        except Exception as e:
            logger.error("Failed to start avatar transport", extra={"error": str(e)})
            await self.close()
            raise TransportError(f"LiveKit connection failed: {e}") from e

        logger.info("Avatar room joined", extra={"room": self.config.room_name})

        # The avatar may already be waiting in the room
        for participant in room.remote_participants.values():
            if self._is_avatar(participant):
                self._on_avatar_joined(participant)
                break

    def _register_handlers(self, room: rtc.Room) -> None:
        def on_participant_connected(participant: rtc.RemoteParticipant) -> None:
            if self._avatar is None and self._is_avatar(participant):
                self._on_avatar_joined(participant)

        def on_participant_disconnected(participant: rtc.RemoteParticipant) -> None:
            if self._avatar is not None and participant.identity == self._avatar.identity:
                logger.warning("Avatar participant left", extra={"participant": participant.identity})
                self._avatar = None

        def on_track_subscribed(
            track: rtc.Track,
            publication: rtc.RemoteTrackPublication,
            participant: rtc.RemoteParticipant,
        ) -> None:
            if not self._is_avatar(participant) or self._descriptor is None:
                return
            if track.kind == rtc.TrackKind.KIND_VIDEO:
                sink = self._descriptor.video_sink
            else:
                sink = self._descriptor.audio_sink
            if sink is not None:
                sink(track)

        room.on("participant_connected", on_participant_connected)
        room.on("participant_disconnected", on_participant_disconnected)
        room.on("track_subscribed", on_track_subscribed)

    def _on_avatar_joined(self, participant: rtc.RemoteParticipant) -> None:
        self._avatar = participant
        logger.info("Avatar participant joined", extra={"participant": participant.identity})

        descriptor = self._descriptor
        if descriptor is None:
            return
        self._publish_in_background(
            {
                "type": "avatar_init",
                "apiKey": descriptor.api_key,
                "faceId": descriptor.face_id,
                "handleSilence": descriptor.handle_silence,
            },
            destination=participant.identity,
        )

    def _publish_in_background(self, message: dict[str, Any], destination: str | None = None) -> None:
        if self._room is None:
            return
        task = asyncio.get_running_loop().create_task(self._publish(message, destination))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _publish(self, message: dict[str, Any], destination: str | None) -> None:
        room = self._room
        if room is None:
            return
        try:
            await room.local_participant.publish_data(
                json.dumps(message),
                reliable=True,
                destination_identities=[destination] if destination else [],
                topic=DATA_TOPIC,
            )
        except Exception as e:
            logger.warning(
                "Failed to publish avatar message",
                extra={"message_type": message.get("type"), "error": str(e)},
            )

    async def send_audio_data(self, frame: AudioFrame) -> None:
        """Push speech into the published track.

        An odd trailing byte is carried over to the next frame so sample
        alignment survives arbitrary payload splits.

        Raises:
            TransportError: If the speech track is not published
        """
        if self._audio_source is None:
            raise TransportError("Avatar transport not started")

        data = self._pending_byte + frame.data
        usable = len(data) - (len(data) % BYTES_PER_SAMPLE)
        self._pending_byte = data[usable:]
        if usable == 0:
            return

        pcm = np.frombuffer(data[:usable], dtype=np.int16)
        audio_frame = rtc.AudioFrame.create(
            sample_rate=SAMPLE_RATE_HZ,
            num_channels=CHANNELS,
            samples_per_channel=len(pcm) // CHANNELS,
        )
        np.copyto(np.asarray(audio_frame.data), pcm)

        try:
            await self._audio_source.capture_frame(audio_frame)
        except Exception as e:
            raise TransportError(f"Failed to send audio to avatar: {e}") from e

        self.frames_sent += 1

    def set_muted(self, muted: bool) -> None:
        if self._avatar is None:
            return
        self._publish_in_background(
            {"type": "mute", "muted": muted}, destination=self._avatar.identity
        )

    def set_video_enabled(self, enabled: bool) -> None:
        if self._avatar is None:
            return
        self._publish_in_background(
            {"type": "video", "enabled": enabled}, destination=self._avatar.identity
        )

    async def close(self) -> None:
        """Unpublish the speech track and leave the room. Idempotent."""
        room, self._room = self._room, None
        track, self._audio_track = self._audio_track, None
        self._audio_source = None
        self._avatar = None
        self._pending_byte = b""

        for task in list(self._background):
            task.cancel()
        self._background.clear()

        if room is None:
            return

        try:
            if track is not None:
                await room.local_participant.unpublish_track(track.sid)
            await room.disconnect()
        except Exception as e:
            logger.warning("Error during avatar transport close", extra={"error": str(e)})

        logger.info("Avatar room left", extra={"room": self.config.room_name, "frames_sent": self.frames_sent})
