"""Avatar transport layer.

Provides the contract the call driver uses to feed synthesized speech to a
real-time avatar renderer, and a LiveKit/WebRTC implementation of it.
"""

from avatar_call.transport.base import AvatarDescriptor, AvatarTransport, MediaSink
from avatar_call.transport.livekit_transport import LiveKitAvatarTransport

__all__ = [
    "AvatarDescriptor",
    "AvatarTransport",
    "LiveKitAvatarTransport",
    "MediaSink",
]
