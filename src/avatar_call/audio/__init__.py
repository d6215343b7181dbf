"""Audio capture and frame utilities.

This module provides the microphone capture source and the raw PCM frame
type exchanged between the signaling channel and the avatar transport.
"""

from .capture import MediaCaptureHandle, MediaCaptureSource, SoundDeviceCaptureSource
from .frames import (
    PRIMING_FRAME_SIZE_BYTES,
    AudioFrame,
    FrameDirection,
    chunk_size_bytes,
    decode_inbound_frame,
    silent_priming_frame,
)

__all__ = [
    "AudioFrame",
    "FrameDirection",
    "MediaCaptureHandle",
    "MediaCaptureSource",
    "PRIMING_FRAME_SIZE_BYTES",
    "SoundDeviceCaptureSource",
    "chunk_size_bytes",
    "decode_inbound_frame",
    "silent_priming_frame",
]
