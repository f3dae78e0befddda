"""Moderation detection over parsed generator responses."""

from typing import Any, Optional

from genledger.services.correlation.extractors import get_nested

DEFAULT_MODERATION_REASON = "Content flagged by moderation system"


def detect_moderated_content(response: Any) -> bool:
    """True if a parsed response carries any known moderation marker."""
    if not isinstance(response, dict):
        return False

    error = response.get("error") if isinstance(response.get("error"), dict) else {}
    nested = get_nested(response, ("result", "response"))
    nested = nested if isinstance(nested, dict) else {}

    return any(
        (
            response.get("moderated") is True,
            response.get("isRefused") is True,
            response.get("content_moderated") is True,
            response.get("status") == "moderated",
            error.get("type") == "content_policy_violation",
            error.get("code") == "moderation_filter_triggered",
            bool(response.get("refusalReason")),
            bool(response.get("moderationReason")),
            nested.get("moderated") is True,
            nested.get("isRefused") is True,
            nested.get("status") == "moderated",
        )
    )


def extract_moderation_reason(response: Any) -> Optional[str]:
    """Most specific moderation reason in a response (generic default otherwise)."""
    if not response:
        return None
    if not isinstance(response, dict):
        return DEFAULT_MODERATION_REASON

    candidates = (
        get_nested(response, ("error", "message")),
        response.get("moderationReason"),
        get_nested(response, ("result", "response", "moderationReason")),
        response.get("refusalReason"),
    )
    for reason in candidates:
        if isinstance(reason, str) and reason:
            return reason
    return DEFAULT_MODERATION_REASON

