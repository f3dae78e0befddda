"""Response stream parsing, stall guarding and attempt updates."""

from genledger.services.streaming.processor import StreamProcessor
from genledger.services.streaming.stall_guard import GuardWindows, StallGuard

__all__ = ["GuardWindows", "StallGuard", "StreamProcessor"]
