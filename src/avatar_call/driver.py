"""Call session driver.

Sequences and supervises one avatar call at a time:

    1. acquire the microphone
    2. negotiate a conversation session with the backend
    3. open the signaling channel (background) and start the avatar transport
    4. poll the transport until it is ready, then go live with a priming frame
    5. tear everything down on end-call, error or remote disconnect

All work runs on the event loop. ``start()`` returns as soon as the call has
been scheduled; failures in the background are converted to a single
user-visible ``error_message`` and always followed by teardown.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from avatar_call.audio.capture import MediaCaptureHandle, MediaCaptureSource
from avatar_call.audio.frames import AudioFrame, silent_priming_frame
from avatar_call.config import CallConfig
from avatar_call.errors import CallError, TransportError, TransportTimeout, user_message_for
from avatar_call.negotiator import SessionNegotiator
from avatar_call.protocol import ServerTextMessage
from avatar_call.session import CallPhase, CallSession
from avatar_call.signaling import SignalingChannel
from avatar_call.transport.base import AvatarDescriptor, AvatarTransport, MediaSink

logger = logging.getLogger(__name__)

StateObserver = Callable[["CallSessionDriver"], Awaitable[None] | None]
ChannelFactory = Callable[..., SignalingChannel]


class CallSessionDriver:
    """Orchestrates the avatar call lifecycle.

    The driver owns the current ``CallSession`` and every per-call resource
    (capture handle, signaling channel, background tasks). The avatar
    transport is initialized once and reused across calls.
    """

    def __init__(
        self,
        config: CallConfig,
        capture_source: MediaCaptureSource,
        negotiator: SessionNegotiator,
        transport: AvatarTransport,
        channel_factory: ChannelFactory | None = None,
        on_state_change: StateObserver | None = None,
        video_sink: MediaSink | None = None,
        audio_sink: MediaSink | None = None,
    ) -> None:
        """Initialize call driver.

        Args:
            config: Call configuration
            capture_source: Microphone source
            negotiator: Conversation session negotiator
            transport: Avatar transport (reused across calls)
            channel_factory: Builds a signaling channel from callback keyword
                arguments (defaults to ``SignalingChannel`` with ``config.signaling``)
            on_state_change: Observer called after every phase change
            video_sink: Receives the avatar's video track
            audio_sink: Receives the avatar's audio track
        """
        self.config = config
        self._capture_source = capture_source
        self._negotiator = negotiator
        self._transport = transport
        self._channel_factory = channel_factory or self._default_channel_factory
        self._on_state_change = on_state_change
        self._video_sink = video_sink
        self._audio_sink = audio_sink

        self._initialized = False
        self._session: CallSession | None = None
        self._capture: MediaCaptureHandle | None = None
        self._channel: SignalingChannel | None = None

        self._start_task: asyncio.Task[None] | None = None
        self._channel_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._uplink_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._teardown_done: asyncio.Event | None = None

        self.error_message: str | None = None
        self.is_avatar_visible = False
        self.is_muted = False
        self.is_video_off = False

    def _default_channel_factory(self, **callbacks: Any) -> SignalingChannel:
        return SignalingChannel(self.config.signaling, **callbacks)

    @property
    def session(self) -> CallSession | None:
        """Current call, if any."""
        return self._session

    @property
    def phase(self) -> CallPhase:
        """Current phase (IDLE when there is no call)."""
        return self._session.phase if self._session is not None else CallPhase.IDLE

    @property
    def is_recording(self) -> bool:
        """Whether the microphone is held."""
        return self._capture is not None and self._capture.is_active

    @property
    def channel(self) -> SignalingChannel | None:
        """Signaling channel of the current call."""
        return self._channel

    def initialize(self) -> None:
        """Send the avatar descriptor to the transport. Runs once."""
        if self._initialized:
            return

        avatar = self.config.avatar
        self._transport.initialize(
            AvatarDescriptor(
                api_key=avatar.api_key,
                face_id=avatar.face_id,
                handle_silence=avatar.handle_silence,
                video_sink=self._video_sink,
                audio_sink=self._audio_sink,
            )
        )
        self._initialized = True
        logger.info("Avatar transport initialized", extra={"face_id": avatar.face_id})

    # ------------------------------------------------------------------
    # Start sequence
    # ------------------------------------------------------------------

    async def start(self, prompt: str | None = None, voice_id: str | None = None) -> bool:
        """Begin a call without waiting for it to be established.

        Args:
            prompt: Initial prompt (defaults to ``config.prompt``)
            voice_id: Voice identifier (defaults to ``config.voice_id``)

        Returns:
            True if the call was scheduled, False if a call is already active
        """
        if self._session is not None:
            logger.warning(
                "Start rejected: a call is already active",
                extra={"phase": self._session.phase.value},
            )
            return False

        self.initialize()

        session = CallSession()
        self._session = session
        self.error_message = None
        self.is_avatar_visible = False

        await self._transition(session, CallPhase.STARTING)

        self._start_task = asyncio.create_task(
            self._run_start(
                session,
                prompt if prompt is not None else self.config.prompt,
                voice_id if voice_id is not None else self.config.voice_id,
            )
        )
        return True

    async def _run_start(self, session: CallSession, prompt: str, voice_id: str) -> None:
        try:
            logger.info("Acquiring microphone", extra={"generation": session.generation})
            handle = await self._capture_source.acquire()
            if not self._is_current(session):
                handle.release()
                return
            self._capture = handle

            logger.info("Starting conversation", extra={"generation": session.generation})
            session_id = await self._negotiator.negotiate(prompt, voice_id)
            if not self._is_current(session):
                logger.info("Discarding negotiation result for ended call", extra={"session_id": session_id})
                return
            session.session_id = session_id

            channel = self._channel_factory(
                on_audio=lambda frame: self._forward_to_avatar(session, frame),
                on_message=lambda message: self._on_channel_message(session, message),
                on_error=lambda error: self._spawn(self._fail(session, error)),
                on_close=lambda: self._spawn(self._teardown(session, "remote_disconnect")),
            )
            self._channel = channel
            self._channel_task = asyncio.create_task(self._open_channel(session, channel))

            logger.info("Starting avatar transport", extra={"session_id": session_id})
            try:
                await self._transport.start()
            except CallError:
                raise
            except Exception as e:
                raise TransportError(f"Avatar transport failed to start: {e}") from e

            if not self._is_current(session):
                return
            await self._transition(session, CallPhase.AWAITING_TRANSPORT_READY)
            self._poll_task = asyncio.create_task(self._poll_readiness(session))

        except CallError as e:
            await self._fail(session, e)
        except Exception as e:
            logger.exception("Unexpected error starting call")
            await self._fail(session, e)

    async def _open_channel(self, session: CallSession, channel: SignalingChannel) -> None:
        try:
            await channel.open(session.session_id or "")
        except CallError as e:
            await self._fail(session, e)
            return

        if not self._is_current(session):
            await channel.close()
            return

        handle = self._capture
        if handle is not None and handle.is_active:
            self._uplink_task = asyncio.create_task(self._uplink(session, handle, channel))

    async def _uplink(
        self, session: CallSession, handle: MediaCaptureHandle, channel: SignalingChannel
    ) -> None:
        """Forward captured chunks to the signaling channel as they arrive."""
        async for chunk in handle.chunks():
            if not self._is_current(session) or not channel.is_open:
                break
            if self.is_muted:
                session.metrics.chunks_skipped_muted += 1
                continue
            if await channel.send_audio(chunk):
                session.metrics.chunks_uploaded += 1

    async def _forward_to_avatar(self, session: CallSession, frame: AudioFrame) -> None:
        """Hand one inbound frame from the backend to the avatar."""
        if not self._is_current(session) or session.is_ending:
            return
        try:
            await self._transport.send_audio_data(frame)
        except Exception as e:
            logger.warning(
                "Failed to forward audio to avatar",
                extra={"session_id": session.session_id, "size": len(frame), "error": str(e)},
            )
            return
        session.metrics.record_frame_forwarded(len(frame))

    def _on_channel_message(self, session: CallSession, message: ServerTextMessage) -> None:
        logger.debug(
            "Backend message",
            extra={"session_id": session.session_id, "message_type": message.type},
        )

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    async def _poll_readiness(self, session: CallSession) -> None:
        """Check transport readiness on a fixed schedule until ready or out of attempts."""
        polling = self.config.polling
        attempts = 0

        try:
            await asyncio.sleep(polling.initial_delay_s)

            while self._is_current(session) and session.phase is CallPhase.AWAITING_TRANSPORT_READY:
                attempts += 1
                session.metrics.readiness_checks += 1

                if self._transport.is_ready():
                    await self._go_live(session)
                    return

                if polling.max_attempts is not None and attempts >= polling.max_attempts:
                    raise TransportTimeout(
                        f"Avatar transport not ready after {attempts} checks"
                    )

                logger.debug("Waiting for avatar connection", extra={"attempt": attempts})
                await asyncio.sleep(polling.interval_s)

        except CallError as e:
            await self._fail(session, e)
        except Exception as e:
            await self._fail(session, TransportError(f"Readiness check failed: {e}"))

    async def _go_live(self, session: CallSession) -> None:
        await self._transition(session, CallPhase.LIVE)
        session.metrics.record_live()
        self.is_avatar_visible = True
        logger.info(
            "Avatar connection established",
            extra={"session_id": session.session_id, "time_to_live_ms": session.metrics.time_to_live_ms},
        )

        try:
            await self._transport.send_audio_data(silent_priming_frame())
        except Exception as e:
            raise TransportError(f"Failed to send priming frame: {e}") from e
        logger.info("Sent initial audio data", extra={"session_id": session.session_id})

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    def toggle_mute(self) -> bool:
        """Mute or unmute the microphone uplink.

        Returns:
            New muted state
        """
        self.is_muted = not self.is_muted
        try:
            self._transport.set_muted(self.is_muted)
        except Exception as e:
            logger.warning("Transport rejected mute change", extra={"error": str(e)})
        return self.is_muted

    def toggle_video(self) -> bool:
        """Turn the avatar video off or back on.

        Returns:
            New video-off state
        """
        self.is_video_off = not self.is_video_off
        try:
            self._transport.set_video_enabled(not self.is_video_off)
        except Exception as e:
            logger.warning("Transport rejected video change", extra={"error": str(e)})
        return self.is_video_off

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def end(self) -> None:
        """End the current call. Safe from any phase; a no-op when idle."""
        session = self._session
        if session is None:
            return
        self.error_message = None
        await self._teardown(session, "user")

    cancel = end

    async def shutdown(self) -> None:
        """End any call and release the transport and HTTP session for good."""
        await self.end()
        for close in (self._transport.close, self._negotiator.close):
            try:
                await close()
            except Exception as e:
                logger.warning("Error during shutdown", extra={"error": str(e)})

        pending = [t for t in self._background if not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._initialized = False

    async def _fail(self, session: CallSession, error: BaseException) -> None:
        """Record a failure on the current call and tear it down."""
        if not self._is_current(session) or session.is_ending or session.phase is CallPhase.ERROR:
            logger.debug("Ignoring failure for ended call", extra={"error": str(error)})
            return

        message = user_message_for(error)
        self.error_message = message
        session.error_message = message
        logger.error(
            "Call failed",
            extra={
                "session_id": session.session_id,
                "phase": session.phase.value,
                "error_type": type(error).__name__,
                "error": str(error),
            },
        )

        await self._transition(session, CallPhase.ERROR)
        await self._teardown(session, "error")

    async def _teardown(self, session: CallSession, reason: str) -> None:
        if not self._is_current(session):
            return
        if session.is_ending:
            # Another teardown is in flight; wait for it
            if self._teardown_done is not None:
                await self._teardown_done.wait()
            return

        done = asyncio.Event()
        self._teardown_done = done
        try:
            await self._transition(session, CallPhase.ENDING)
            logger.info("Ending call", extra={"session_id": session.session_id, "reason": reason})

            await self._cancel_tasks()
            self.is_avatar_visible = False

            channel, self._channel = self._channel, None
            if channel is not None:
                try:
                    await channel.close()
                except Exception as e:
                    logger.warning("Error closing signaling channel", extra={"error": str(e)})

            capture, self._capture = self._capture, None
            if capture is not None:
                try:
                    capture.release()
                except Exception as e:
                    logger.warning("Error releasing microphone", extra={"error": str(e)})

            try:
                await self._transport.close()
            except Exception as e:
                logger.warning("Error closing avatar transport", extra={"error": str(e)})

            session.metrics.finalize()
            logger.info("Call ended", extra=session.get_metrics_summary())
        finally:
            if self._session is session:
                self._session = None
            if session.phase is CallPhase.ENDING:
                session.transition(CallPhase.IDLE)
            self._teardown_done = None
            done.set()

        await self._emit_state()

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [self._start_task, self._channel_task, self._poll_task, self._uplink_task]
        self._start_task = self._channel_task = self._poll_task = self._uplink_task = None

        cancelled = []
        for task in tasks:
            if task is None or task is current or task.done():
                continue
            task.cancel()
            cancelled.append(task)

        for task in cancelled:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug("Background task ended with error", extra={"error": str(e)})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_current(self, session: CallSession) -> bool:
        return self._session is session

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _transition(self, session: CallSession, phase: CallPhase) -> None:
        session.transition(phase)
        await self._emit_state()

    async def _emit_state(self) -> None:
        if self._on_state_change is None:
            return
        try:
            result = self._on_state_change(self)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("State observer failed", extra={"error": str(e)})
