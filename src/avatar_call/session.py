"""Call session state.

Holds the lifecycle phase of a single avatar call, the table of allowed phase
changes, and per-call metrics. Only the call driver mutates a session.
"""

import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class CallPhase(Enum):
    """Call lifecycle phases.

    State Transitions:
    - IDLE → STARTING (on start)
    - STARTING → AWAITING_TRANSPORT_READY (transport started)
    - AWAITING_TRANSPORT_READY → LIVE (readiness check passed)
    - STARTING/AWAITING_TRANSPORT_READY/LIVE → ERROR (any failure)
    - any non-idle → ENDING (end call, error, remote disconnect)
    - ENDING → IDLE (teardown complete)

    States:
    - IDLE: No call
    - STARTING: Acquiring microphone, negotiating, opening channel
    - AWAITING_TRANSPORT_READY: Polling the avatar transport for readiness
    - LIVE: Avatar visible, audio flowing both ways
    - ERROR: A failure was recorded; teardown follows immediately
    - ENDING: Releasing resources
    """

    IDLE = "idle"
    STARTING = "starting"
    AWAITING_TRANSPORT_READY = "awaiting_transport_ready"
    LIVE = "live"
    ERROR = "error"
    ENDING = "ending"


# Valid phase transitions
VALID_TRANSITIONS: dict[CallPhase, set[CallPhase]] = {
    CallPhase.IDLE: {CallPhase.STARTING},
    CallPhase.STARTING: {
        CallPhase.AWAITING_TRANSPORT_READY,
        CallPhase.ERROR,
        CallPhase.ENDING,
    },
    CallPhase.AWAITING_TRANSPORT_READY: {
        CallPhase.LIVE,
        CallPhase.ERROR,
        CallPhase.ENDING,
    },
    CallPhase.LIVE: {CallPhase.ERROR, CallPhase.ENDING},
    CallPhase.ERROR: {CallPhase.ENDING},
    CallPhase.ENDING: {CallPhase.IDLE},
}

_generation_counter = itertools.count(1)


@dataclass
class CallMetrics:
    """Per-call activity counters and timings."""

    call_start_ts: float = field(default_factory=time.monotonic)
    live_ts: float | None = None
    call_end_ts: float | None = None

    readiness_checks: int = 0
    chunks_uploaded: int = 0
    chunks_skipped_muted: int = 0
    frames_forwarded: int = 0
    bytes_forwarded: int = 0

    def record_live(self) -> None:
        """Record the moment the avatar went live."""
        self.live_ts = time.monotonic()

    def record_frame_forwarded(self, size: int) -> None:
        """Record an inbound frame handed to the avatar."""
        self.frames_forwarded += 1
        self.bytes_forwarded += size

    @property
    def time_to_live_ms(self) -> float | None:
        """Milliseconds from start to live, or None if never live."""
        if self.live_ts is None:
            return None
        return (self.live_ts - self.call_start_ts) * 1000.0

    def finalize(self) -> None:
        """Mark call as complete and record end time."""
        self.call_end_ts = time.monotonic()


@dataclass
class CallSession:
    """One active call, owned by the driver.

    ``generation`` is unique per session; background work compares it with the
    driver's current session to detect that it has gone stale.
    """

    phase: CallPhase = CallPhase.IDLE
    session_id: str | None = None
    error_message: str | None = None
    generation: int = field(default_factory=lambda: next(_generation_counter))
    metrics: CallMetrics = field(default_factory=CallMetrics)

    def transition(self, new_phase: CallPhase) -> None:
        """Move to a new phase with validation.

        Args:
            new_phase: Target phase

        Raises:
            ValueError: If transition is invalid
        """
        if new_phase not in VALID_TRANSITIONS.get(self.phase, set()):
            raise ValueError(f"Invalid phase transition: {self.phase.value} → {new_phase.value}")

        old_phase = self.phase
        self.phase = new_phase

        logger.info(
            "Call phase transition",
            extra={
                "session_id": self.session_id,
                "generation": self.generation,
                "from_phase": old_phase.value,
                "to_phase": new_phase.value,
            },
        )

    @property
    def is_ending(self) -> bool:
        """Whether teardown has begun."""
        return self.phase in (CallPhase.ENDING, CallPhase.IDLE)

    def get_metrics_summary(self) -> dict[str, str | float | int | None]:
        """Get call metrics summary for logging.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "session_id": self.session_id,
            "phase": self.phase.value,
            "time_to_live_ms": self.metrics.time_to_live_ms,
            "readiness_checks": self.metrics.readiness_checks,
            "chunks_uploaded": self.metrics.chunks_uploaded,
            "chunks_skipped_muted": self.metrics.chunks_skipped_muted,
            "frames_forwarded": self.metrics.frames_forwarded,
            "bytes_forwarded": self.metrics.bytes_forwarded,
            "call_duration_s": (
                (self.metrics.call_end_ts or time.monotonic()) - self.metrics.call_start_ts
            ),
        }
