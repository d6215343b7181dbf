"""Error taxonomy for avatar calls.

Every failure in the call lifecycle is represented by a ``CallError`` subclass
carrying the single user-visible message shown in the error banner. Internal
detail goes into the exception message and the logs, never to the user.
"""


class CallError(Exception):
    """Base class for all call lifecycle failures."""

    user_message: str = "Call failed. Please try again."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)


class PermissionDenied(CallError):
    """Microphone access was refused."""

    user_message = "Error accessing microphone. Please check your permissions."


class DeviceUnavailable(CallError):
    """No usable input device could be opened."""

    user_message = "Error accessing microphone. Please check your permissions."


class NegotiationFailed(CallError):
    """The backend did not start a conversation."""

    user_message = "Failed to start conversation. Please try again."


class SignalingError(CallError):
    """The signaling WebSocket failed to open or errored while open."""

    user_message = "WebSocket connection error. Please check if the server is running."


class TransportError(CallError):
    """The avatar transport failed to start or deliver audio."""

    user_message = "Avatar connection failed. Please try again."


class TransportTimeout(TransportError):
    """The avatar transport never became ready within the polling budget."""

    user_message = "Avatar connection timed out. Please try again."


def user_message_for(error: BaseException) -> str:
    """Map any exception to the message shown to the user.

    Args:
        error: Exception raised somewhere in the call lifecycle

    Returns:
        User-visible error string
    """
    if isinstance(error, CallError):
        return error.user_message
    return CallError.user_message
