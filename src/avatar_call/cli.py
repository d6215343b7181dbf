"""Command-line avatar call client.

Starts a single avatar call from the terminal: captures the default
microphone, negotiates a conversation with the backend, and drives a LiveKit
avatar. Press Ctrl+C to end the call.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from avatar_call.audio.capture import SoundDeviceCaptureSource
from avatar_call.config import CallConfig
from avatar_call.driver import CallSessionDriver
from avatar_call.negotiator import SessionNegotiator
from avatar_call.session import CallPhase
from avatar_call.transport.livekit_transport import LiveKitAvatarTransport

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for the CLI.

    Args:
        level: Logging level name
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    for noisy in ("websockets", "aiohttp", "livekit"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class CallConsole:
    """Prints call progress and remembers whether the call ended on its own."""

    def __init__(self) -> None:
        self.finished = asyncio.Event()
        self._last_phase = CallPhase.IDLE
        self._seen_start = False

    def on_state_change(self, driver: CallSessionDriver) -> None:
        phase = driver.phase
        if phase is self._last_phase:
            return
        self._last_phase = phase

        if phase is CallPhase.STARTING:
            self._seen_start = True
            print("📞 Starting call...")
        elif phase is CallPhase.AWAITING_TRANSPORT_READY:
            print("⏳ Waiting for avatar connection...")
        elif phase is CallPhase.LIVE:
            print("🟢 Avatar is live. Speak now (Ctrl+C to end).")
        elif phase is CallPhase.ERROR and driver.error_message:
            print(f"❌ {driver.error_message}")
        elif phase is CallPhase.IDLE and self._seen_start:
            print("✓ Call ended")
            self.finished.set()

    @staticmethod
    def on_avatar_track(track: Any) -> None:
        logger.info("Avatar track available", extra={"track_sid": getattr(track, "sid", None)})


async def run_call(config: CallConfig) -> int:
    """Run one call until it ends or the user interrupts.

    Args:
        config: Call configuration

    Returns:
        Process exit code (0 on normal end, 1 if the call failed)
    """
    console = CallConsole()
    driver = CallSessionDriver(
        config,
        capture_source=SoundDeviceCaptureSource(config.capture),
        negotiator=SessionNegotiator(config.negotiator),
        transport=LiveKitAvatarTransport(config.livekit),
        on_state_change=console.on_state_change,
        video_sink=console.on_avatar_track,
        audio_sink=console.on_avatar_track,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, console.finished.set)

    try:
        await driver.start()
        await console.finished.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        failed = driver.error_message is not None
        await driver.shutdown()

    return 1 if failed else 0


def main() -> None:
    """Main entry point for the avatar call CLI."""
    parser = argparse.ArgumentParser(description="Real-time avatar call client")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/call.yaml"),
        help="Path to YAML configuration (default: configs/call.yaml)",
    )
    parser.add_argument("--prompt", type=str, default=None, help="Override the initial prompt")
    parser.add_argument("--voice-id", type=str, default=None, help="Override the voice id")
    parser.add_argument("--face-id", type=str, default=None, help="Override the avatar face id")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    try:
        config = CallConfig.from_yaml_with_defaults(args.config)
    except (ValueError, OSError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    if args.prompt:
        config.prompt = args.prompt
    if args.voice_id:
        config.voice_id = args.voice_id
    if args.face_id:
        config.avatar.face_id = args.face_id

    setup_logging("DEBUG" if args.verbose else config.log_level)

    try:
        sys.exit(asyncio.run(run_call(config)))
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
