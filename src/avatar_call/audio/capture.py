"""Microphone capture.

A capture source acquires the local microphone and returns a handle that
yields raw PCM chunks (~100ms each) for as long as it is held. The PortAudio
callback runs on its own thread and only hands bytes to the event loop; all
consumers read from the loop side.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from typing import Any

from avatar_call.audio.frames import samples_per_chunk
from avatar_call.config import CaptureConfig
from avatar_call.errors import DeviceUnavailable, PermissionDenied

logger = logging.getLogger(__name__)

_PERMISSION_MARKERS = ("permission", "denied", "not authorized", "not permitted")


class MediaCaptureHandle:
    """Handle on an active microphone stream.

    Chunks are buffered in a bounded queue; when the consumer falls behind the
    oldest chunk is dropped so capture never blocks the audio thread.
    """

    def __init__(
        self,
        on_release: Callable[[], None] | None = None,
        max_pending_chunks: int = 50,
    ) -> None:
        """Initialize handle.

        Args:
            on_release: Called once when the handle is released (stops the device)
            max_pending_chunks: Chunks buffered before the oldest is dropped
        """
        self._on_release = on_release
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=max_pending_chunks)
        self._released = False
        self.chunks_captured = 0
        self.chunks_dropped = 0

    @property
    def is_active(self) -> bool:
        """Whether the microphone is still held."""
        return not self._released

    def bind_release(self, on_release: Callable[[], None]) -> None:
        """Set the device shutdown hook once the stream exists."""
        self._on_release = on_release

    def push_chunk(self, data: bytes) -> None:
        """Add a captured chunk. Must be called on the event loop thread.

        Args:
            data: Raw PCM bytes for one chunk
        """
        if self._released or not data:
            return

        if self._queue.full():
            try:
                self._queue.get_nowait()
                self.chunks_dropped += 1
            except asyncio.QueueEmpty:
                pass

        self._queue.put_nowait(data)
        self.chunks_captured += 1

    async def chunks(self) -> AsyncIterator[bytes]:
        """Iterate over captured chunks until the handle is released.

        May be called again after a previous iteration stopped; iteration
        resumes with the next buffered chunk.

        Yields:
            bytes: Raw PCM chunk
        """
        while not self._released:
            chunk = await self._queue.get()
            if chunk is None:
                break
            yield chunk

    def release(self) -> None:
        """Stop capture and end any running iteration. Idempotent."""
        if self._released:
            return
        self._released = True

        # Drain and wake a pending consumer
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(None)

        if self._on_release is not None:
            on_release, self._on_release = self._on_release, None
            on_release()

        logger.info(
            "Microphone released",
            extra={"chunks_captured": self.chunks_captured, "chunks_dropped": self.chunks_dropped},
        )


class MediaCaptureSource(ABC):
    """Source of microphone streams."""

    @abstractmethod
    async def acquire(self) -> MediaCaptureHandle:
        """Acquire the microphone.

        Returns:
            Handle yielding captured chunks

        Raises:
            PermissionDenied: If microphone access was refused
            DeviceUnavailable: If no input device could be opened
        """


def _load_sounddevice() -> Any:
    """Import sounddevice, mapping a missing PortAudio library to DeviceUnavailable."""
    try:
        import sounddevice as sd
    except (ImportError, OSError) as e:
        raise DeviceUnavailable(f"Audio input backend unavailable: {e}") from e
    return sd


def classify_capture_error(error: Exception) -> DeviceUnavailable | PermissionDenied:
    """Turn a PortAudio/device error into the matching capture failure.

    Args:
        error: Exception raised while opening the input stream

    Returns:
        PermissionDenied if the message points at an access refusal,
        DeviceUnavailable otherwise
    """
    text = str(error).lower()
    if any(marker in text for marker in _PERMISSION_MARKERS):
        return PermissionDenied(f"Microphone access denied: {error}")
    return DeviceUnavailable(f"Microphone unavailable: {error}")


class SoundDeviceCaptureSource(MediaCaptureSource):
    """Captures int16 PCM from a PortAudio input device via sounddevice."""

    def __init__(self, config: CaptureConfig | None = None) -> None:
        self.config = config or CaptureConfig()

    async def acquire(self) -> MediaCaptureHandle:
        loop = asyncio.get_running_loop()
        handle = MediaCaptureHandle()

        def audio_callback(indata: Any, frames: int, time_info: Any, status: Any) -> None:
            if status:
                logger.debug("Input stream status", extra={"status": str(status)})
            try:
                loop.call_soon_threadsafe(handle.push_chunk, indata.tobytes())
            except RuntimeError:
                # Event loop already closed; the stream is about to be stopped
                pass

        future = loop.run_in_executor(None, self._open_stream, audio_callback)
        try:
            stream = await asyncio.shield(future)
        except asyncio.CancelledError:
            # The device keeps opening in the worker thread; close it on arrival
            future.add_done_callback(self._close_abandoned_stream)
            raise
        except (DeviceUnavailable, PermissionDenied):
            raise
        except Exception as e:
            logger.error("Failed to open microphone", extra={"error": str(e)})
            raise classify_capture_error(e) from e

        handle.bind_release(lambda: self._close_stream(stream))

        logger.info(
            "Microphone acquired",
            extra={
                "device": self.config.device,
                "sample_rate": self.config.sample_rate,
                "chunk_ms": self.config.chunk_ms,
            },
        )
        return handle

    def _open_stream(self, callback: Callable[..., None]) -> Any:
        """Open and start the input stream (blocking, runs in an executor)."""
        sd = _load_sounddevice()

        sd.check_input_settings(
            device=self.config.device,
            channels=self.config.channels,
            dtype="int16",
            samplerate=self.config.sample_rate,
        )

        stream = sd.InputStream(
            samplerate=self.config.sample_rate,
            channels=self.config.channels,
            dtype="int16",
            blocksize=samples_per_chunk(self.config.sample_rate, self.config.chunk_ms),
            device=self.config.device,
            callback=callback,
        )
        stream.start()
        return stream

    def _close_abandoned_stream(self, future: "asyncio.Future[Any]") -> None:
        if future.cancelled() or future.exception() is not None:
            return
        logger.info("Closing microphone opened after acquisition was cancelled")
        self._close_stream(future.result())

    @staticmethod
    def _close_stream(stream: Any) -> None:
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning("Error closing input stream", extra={"error": str(e)})
