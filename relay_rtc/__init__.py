"""relay-rtc: WebRTC screen sharing over a signaling relay."""

__version__ = "0.1.0"
