"""Moderation detection and retry policy."""

from genledger.services.moderation.detector import (
    detect_moderated_content,
    extract_moderation_reason,
)
from genledger.services.moderation.retry_controller import (
    RetryController,
    RetryDecision,
    RetryPolicy,
    compute_retry_delay,
    is_video_capable_path,
)

__all__ = [
    "RetryController",
    "RetryDecision",
    "RetryPolicy",
    "compute_retry_delay",
    "detect_moderated_content",
    "extract_moderation_reason",
    "is_video_capable_path",
]
