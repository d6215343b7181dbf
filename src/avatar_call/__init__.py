"""Avatar call client.

This package drives a real-time avatar call: it captures microphone audio,
negotiates a conversation with a voice backend, exchanges audio over a
WebSocket signaling channel, and feeds synthesized speech into a WebRTC
avatar transport.
"""

__version__ = "0.1.0"
