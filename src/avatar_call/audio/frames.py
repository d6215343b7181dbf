"""Audio frame types and PCM helpers.

Audio flows in two directions during a call:
    - outbound: microphone chunks uploaded over the signaling channel
    - inbound: synthesized speech delivered by the backend and handed to the
      avatar transport

Both directions carry raw 16-bit signed little-endian PCM. Inbound payloads are
forwarded verbatim; the frame type only records where the bytes came from and
how to interpret them.
"""

from dataclasses import dataclass
from enum import Enum

import numpy as np

# Audio constants
SAMPLE_RATE_HZ: int = 16000
CHANNELS: int = 1
BYTES_PER_SAMPLE: int = 2
CHUNK_DURATION_MS: int = 100

# Zero-filled frame pushed to the avatar as soon as it is live, to warm up its
# audio pipeline before the first synthesized speech arrives.
PRIMING_FRAME_SIZE_BYTES: int = 6000


class FrameDirection(Enum):
    """Which way a frame travels."""

    OUTBOUND = "outbound"  # microphone → signaling channel
    INBOUND = "inbound"  # signaling channel → avatar transport


@dataclass(frozen=True)
class AudioFrame:
    """Immutable buffer of raw PCM audio samples."""

    data: bytes
    direction: FrameDirection = FrameDirection.INBOUND
    sample_rate: int = SAMPLE_RATE_HZ
    channels: int = CHANNELS

    def __len__(self) -> int:
        return len(self.data)

    @property
    def duration_ms(self) -> float:
        """Duration of the frame, ignoring any trailing partial sample."""
        bytes_per_second = self.sample_rate * self.channels * BYTES_PER_SAMPLE
        return len(self.data) * 1000.0 / bytes_per_second

    def to_samples(self) -> np.ndarray:
        """View the frame as int16 samples.

        A trailing odd byte (half a sample) is dropped.

        Returns:
            1-D int16 array of interleaved samples
        """
        usable = len(self.data) - (len(self.data) % BYTES_PER_SAMPLE)
        return np.frombuffer(self.data[:usable], dtype=np.int16)


def chunk_size_bytes(
    sample_rate: int = SAMPLE_RATE_HZ,
    chunk_ms: int = CHUNK_DURATION_MS,
    channels: int = CHANNELS,
) -> int:
    """Size in bytes of one captured chunk.

    Args:
        sample_rate: Sample rate in Hz
        chunk_ms: Chunk duration in milliseconds
        channels: Number of channels

    Returns:
        Bytes per chunk (e.g. 3200 for 100ms @ 16kHz mono)
    """
    return samples_per_chunk(sample_rate, chunk_ms) * channels * BYTES_PER_SAMPLE


def samples_per_chunk(sample_rate: int = SAMPLE_RATE_HZ, chunk_ms: int = CHUNK_DURATION_MS) -> int:
    """Number of samples per channel in one captured chunk."""
    return sample_rate * chunk_ms // 1000


def decode_inbound_frame(payload: bytes | bytearray | memoryview) -> AudioFrame:
    """Wrap a binary signaling payload as an inbound frame, byte-for-byte.

    Args:
        payload: Raw binary WebSocket message

    Returns:
        Inbound AudioFrame holding an immutable copy of the payload
    """
    return AudioFrame(data=bytes(payload), direction=FrameDirection.INBOUND)


def silent_priming_frame() -> AudioFrame:
    """Build the zero-filled frame sent when the avatar goes live."""
    return AudioFrame(data=bytes(PRIMING_FRAME_SIZE_BYTES), direction=FrameDirection.INBOUND)
