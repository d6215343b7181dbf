"""Unit tests for the LiveKit avatar transport.

Uses mocked LiveKit SDK objects to verify room lifecycle, readiness,
avatar handshake messages and PCM delivery.
"""

import asyncio
import json
from collections.abc import Iterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import numpy as np
import pytest
from livekit import rtc

from avatar_call.audio.frames import AudioFrame
from avatar_call.config import LiveKitConfig
from avatar_call.errors import TransportError
from avatar_call.transport.base import AvatarDescriptor
from avatar_call.transport.livekit_transport import (
    DATA_TOPIC,
    LiveKitAvatarTransport,
    create_access_token,
)

MODULE = "avatar_call.transport.livekit_transport"


@pytest.fixture
def livekit_config() -> LiveKitConfig:
    """Create LiveKit configuration for testing."""
    return LiveKitConfig(
        url="ws://localhost:7880",
        api_key="test-key",
        api_secret="test-secret-with-enough-length-for-hs256",
        room_name="test-room",
        avatar_identity="avatar-bot",
    )


@pytest.fixture
def mock_room() -> Mock:
    """Create mock LiveKit Room."""
    room = Mock(spec=rtc.Room)
    room.connection_state = rtc.ConnectionState.CONN_CONNECTED
    room.remote_participants = {}
    room.local_participant = Mock()
    room.local_participant.publish_track = AsyncMock()
    room.local_participant.unpublish_track = AsyncMock()
    room.local_participant.publish_data = AsyncMock()
    room.disconnect = AsyncMock()
    room.connect = AsyncMock()
    room.on = Mock()
    return room


@pytest.fixture
def mock_rtc_audio() -> Iterator[tuple[MagicMock, MagicMock]]:
    """Patch AudioSource and LocalAudioTrack construction."""
    with (
        patch(f"{MODULE}.rtc.AudioSource") as mock_source_class,
        patch(f"{MODULE}.rtc.LocalAudioTrack") as mock_track_class,
    ):
        mock_source_class.return_value = MagicMock(capture_frame=AsyncMock())
        track = Mock()
        track.sid = "TR_speech"
        mock_track_class.create_audio_track.return_value = track
        yield mock_source_class, mock_track_class


@pytest.fixture
def descriptor() -> AvatarDescriptor:
    """Create an avatar descriptor with recording sinks."""
    return AvatarDescriptor(
        api_key="avatar-key",
        face_id="face-1",
        handle_silence=True,
        video_sink=Mock(),
        audio_sink=Mock(),
    )


@pytest.fixture
def transport(livekit_config: LiveKitConfig, mock_room: Mock) -> LiveKitAvatarTransport:
    """Create a transport whose room factory returns the mock room."""
    return LiveKitAvatarTransport(livekit_config, room_factory=lambda: mock_room)


def make_participant(identity: str) -> Mock:
    """Create mock RemoteParticipant."""
    participant = Mock(spec=rtc.RemoteParticipant)
    participant.identity = identity
    return participant


def handler_for(room: Mock, event: str) -> Any:
    """Return the callback registered for a room event."""
    for call in room.on.call_args_list:
        if call.args[0] == event:
            return call.args[1]
    raise AssertionError(f"No handler registered for {event}")


def test_create_access_token(livekit_config: LiveKitConfig) -> None:
    """Test token generation produces a JWT."""
    token = create_access_token(livekit_config)
    assert isinstance(token, str)
    assert token.count(".") == 2


class TestStart:
    """Test room connection."""

    async def test_start_requires_initialize(self, transport: LiveKitAvatarTransport) -> None:
        """Test start() before initialize() fails."""
        with pytest.raises(TransportError, match="not initialized"):
            await transport.start()

    async def test_start_publishes_speech_track(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_room: Mock,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test start() joins the room and publishes a 16kHz mono track."""
        mock_source_class, mock_track_class = mock_rtc_audio
        transport.initialize(descriptor)

        await transport.start()

        mock_room.connect.assert_called_once()
        assert mock_room.connect.call_args.args[0] == "ws://localhost:7880"
        mock_source_class.assert_called_once_with(16000, num_channels=1)
        mock_track_class.create_audio_track.assert_called_once_with(
            "avatar-speech", mock_source_class.return_value
        )
        mock_room.local_participant.publish_track.assert_called_once()
        await transport.close()

    async def test_start_twice(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test a second start() without close() fails."""
        transport.initialize(descriptor)
        await transport.start()

        with pytest.raises(TransportError, match="already started"):
            await transport.start()
        await transport.close()

    async def test_connect_failure(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_room: Mock,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test a room connection failure raises TransportError and cleans up."""
        mock_room.connect.side_effect = Exception("connection refused")
        transport.initialize(descriptor)

        with pytest.raises(TransportError, match="LiveKit connection failed"):
            await transport.start()

        mock_room.disconnect.assert_called_once()
        assert not transport.is_ready()

    async def test_restart_after_close(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_room: Mock,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test the transport can start again after close()."""
        transport.initialize(descriptor)
        await transport.start()
        await transport.close()
        await transport.start()

        assert mock_room.connect.call_count == 2
        await transport.close()


class TestReadiness:
    """Test readiness and the avatar handshake."""

    async def test_not_ready_until_avatar_joins(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_room: Mock,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test readiness requires the avatar participant."""
        transport.initialize(descriptor)
        await transport.start()
        assert not transport.is_ready()

        handler_for(mock_room, "participant_connected")(make_participant("avatar-bot"))

        assert transport.is_ready()
        await transport.close()

    async def test_other_participants_ignored(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_room: Mock,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test participants with another identity do not count as the avatar."""
        transport.initialize(descriptor)
        await transport.start()

        handler_for(mock_room, "participant_connected")(make_participant("someone-else"))

        assert not transport.is_ready()
        await transport.close()

    async def test_avatar_already_in_room(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_room: Mock,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test an avatar present before start() is picked up."""
        mock_room.remote_participants = {"PA_1": make_participant("avatar-bot")}
        transport.initialize(descriptor)

        await transport.start()

        assert transport.is_ready()
        await transport.close()

    async def test_not_ready_when_disconnected(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_room: Mock,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test a dropped room connection is not ready."""
        mock_room.remote_participants = {"PA_1": make_participant("avatar-bot")}
        transport.initialize(descriptor)
        await transport.start()

        mock_room.connection_state = rtc.ConnectionState.CONN_DISCONNECTED

        assert not transport.is_ready()
        await transport.close()

    async def test_avatar_leaving(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_room: Mock,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test readiness is lost when the avatar leaves."""
        avatar = make_participant("avatar-bot")
        transport.initialize(descriptor)
        await transport.start()
        handler_for(mock_room, "participant_connected")(avatar)

        handler_for(mock_room, "participant_disconnected")(avatar)

        assert not transport.is_ready()
        await transport.close()

    async def test_avatar_init_message(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_room: Mock,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test the avatar receives its face and key when it joins."""
        transport.initialize(descriptor)
        await transport.start()

        handler_for(mock_room, "participant_connected")(make_participant("avatar-bot"))
        await asyncio.sleep(0)

        publish = mock_room.local_participant.publish_data
        publish.assert_called_once()
        payload = json.loads(publish.call_args.args[0])
        assert payload == {
            "type": "avatar_init",
            "apiKey": "avatar-key",
            "faceId": "face-1",
            "handleSilence": True,
        }
        assert publish.call_args.kwargs["destination_identities"] == ["avatar-bot"]
        assert publish.call_args.kwargs["topic"] == DATA_TOPIC
        await transport.close()

    async def test_tracks_routed_to_sinks(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_room: Mock,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test avatar video and audio tracks reach the descriptor sinks."""
        transport.initialize(descriptor)
        await transport.start()
        on_track = handler_for(mock_room, "track_subscribed")
        avatar = make_participant("avatar-bot")

        video = Mock(kind=rtc.TrackKind.KIND_VIDEO)
        audio = Mock(kind=rtc.TrackKind.KIND_AUDIO)
        on_track(video, Mock(), avatar)
        on_track(audio, Mock(), avatar)
        on_track(Mock(kind=rtc.TrackKind.KIND_VIDEO), Mock(), make_participant("someone-else"))

        descriptor.video_sink.assert_called_once_with(video)  # type: ignore[union-attr]
        descriptor.audio_sink.assert_called_once_with(audio)  # type: ignore[union-attr]
        await transport.close()


class TestSendAudio:
    """Test PCM delivery to the speech track."""

    async def test_send_before_start(self, transport: LiveKitAvatarTransport) -> None:
        """Test sending before start() fails."""
        with pytest.raises(TransportError, match="not started"):
            await transport.send_audio_data(AudioFrame(data=b"\x00\x00"))

    async def test_send_audio_frame(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test PCM is copied into a 16kHz LiveKit frame."""
        mock_source_class, _ = mock_rtc_audio
        transport.initialize(descriptor)
        await transport.start()

        with patch(f"{MODULE}.rtc.AudioFrame") as mock_frame_class:
            mock_frame = Mock()
            mock_frame.data = np.zeros(3, dtype=np.int16)
            mock_frame_class.create.return_value = mock_frame

            await transport.send_audio_data(AudioFrame(data=b"\x01\x00\x02\x00\xff\xff"))

        mock_frame_class.create.assert_called_once_with(
            sample_rate=16000, num_channels=1, samples_per_channel=3
        )
        assert mock_frame.data.tolist() == [1, 2, -1]
        mock_source_class.return_value.capture_frame.assert_called_once_with(mock_frame)
        assert transport.frames_sent == 1
        await transport.close()

    async def test_odd_byte_carried_over(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test a split sample is reassembled across frames."""
        transport.initialize(descriptor)
        await transport.start()

        with patch(f"{MODULE}.rtc.AudioFrame") as mock_frame_class:
            frames = [Mock(data=np.zeros(1, dtype=np.int16)) for _ in range(2)]
            mock_frame_class.create.side_effect = frames

            await transport.send_audio_data(AudioFrame(data=b"\x05\x00\x07"))
            await transport.send_audio_data(AudioFrame(data=b"\x00"))

        assert frames[0].data.tolist() == [5]
        assert frames[1].data.tolist() == [7]
        await transport.close()

    async def test_capture_failure(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test a capture_frame error surfaces as TransportError."""
        mock_source_class, _ = mock_rtc_audio
        mock_source_class.return_value.capture_frame.side_effect = RuntimeError("queue full")
        transport.initialize(descriptor)
        await transport.start()

        with patch(f"{MODULE}.rtc.AudioFrame") as mock_frame_class:
            mock_frame_class.create.return_value = Mock(data=np.zeros(1, dtype=np.int16))
            with pytest.raises(TransportError, match="queue full"):
                await transport.send_audio_data(AudioFrame(data=b"\x00\x00"))
        await transport.close()


class TestControlsAndClose:
    """Test mute/video messages and teardown."""

    async def test_mute_message(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_room: Mock,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test mute and video toggles are sent to the avatar."""
        mock_room.remote_participants = {"PA_1": make_participant("avatar-bot")}
        transport.initialize(descriptor)
        await transport.start()
        await asyncio.sleep(0)
        publish = mock_room.local_participant.publish_data
        publish.reset_mock()

        transport.set_muted(True)
        transport.set_video_enabled(False)
        await asyncio.sleep(0)

        payloads = [json.loads(call.args[0]) for call in publish.call_args_list]
        assert {"type": "mute", "muted": True} in payloads
        assert {"type": "video", "enabled": False} in payloads
        await transport.close()

    async def test_mute_without_avatar(self, transport: LiveKitAvatarTransport) -> None:
        """Test mute before the avatar joins is ignored."""
        transport.set_muted(True)
        transport.set_video_enabled(False)

    async def test_close_leaves_room(
        self,
        transport: LiveKitAvatarTransport,
        descriptor: AvatarDescriptor,
        mock_room: Mock,
        mock_rtc_audio: tuple[MagicMock, MagicMock],
    ) -> None:
        """Test close() unpublishes the track and disconnects, once."""
        transport.initialize(descriptor)
        await transport.start()

        await transport.close()
        await transport.close()

        mock_room.local_participant.unpublish_track.assert_called_once_with("TR_speech")
        mock_room.disconnect.assert_called_once()
        assert not transport.is_ready()

    async def test_close_never_started(self, transport: LiveKitAvatarTransport) -> None:
        """Test closing an unstarted transport is a no-op."""
        await transport.close()
