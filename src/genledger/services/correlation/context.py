"""Correlation state passed explicitly between components.

``AccountContext`` replaces a process-wide "active account" global: the
tracker owns one instance and hands it to every correlation and merge call.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog

from genledger.models.history import keep_tail, utcnow

logger = structlog.get_logger()


class AccountContext:
    """Active-account pointer plus the last image touched per account."""

    def __init__(self, active_account_id: Optional[str] = None):
        self._active: Optional[str] = active_account_id
        self._last_image: dict[str, str] = {}

    @property
    def active_account_id(self) -> Optional[str]:
        return self._active

    def set_active(self, account_id: Optional[str], source: str = "unknown") -> bool:
        """Switch the active account.

        Returns:
            True if the active account changed
        """
        if not account_id or account_id == self._active:
            return False
        self._active = account_id
        logger.info("account.active_changed", account_id=account_id, source=source)
        return True

    def set_last_image(self, account_id: Optional[str], image_id: str) -> None:
        if account_id:
            self._last_image[account_id] = image_id

    def get_last_image(self, account_id: Optional[str]) -> Optional[str]:
        if not account_id:
            return None
        return self._last_image.get(account_id)

    def forget_image(self, image_id: str) -> None:
        """Drop ``image_id`` from every account's last-image slot."""
        for account_id in [a for a, i in self._last_image.items() if i == image_id]:
            del self._last_image[account_id]


@dataclass
class OutboundRequest:
    """An observed outbound HTTP request from the generator page."""

    url: str
    method: str = "POST"
    body: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)
    request_id: Optional[str] = None


@dataclass
class PendingUpload:
    """Upload whose ids are consumed by the next correlated request."""

    account_id: str
    image_id: str
    file_uri: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ArmedRequest:
    """Correlation record living between request send and stream finalize."""

    request_id: str
    account_id: Optional[str]
    image_id: str
    attempt_id: str
    headers: dict[str, str] = field(default_factory=dict)
    request_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


class ArmedRequestRegistry:
    """Armed request ids awaiting their response stream."""

    def __init__(self) -> None:
        self._armed: dict[str, ArmedRequest] = {}

    def __len__(self) -> int:
        return len(self._armed)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._armed

    def arm(self, armed: ArmedRequest) -> None:
        self._armed[armed.request_id] = armed

    def get(self, request_id: str) -> Optional[ArmedRequest]:
        return self._armed.get(request_id)

    def disarm(self, request_id: Optional[str]) -> Optional[ArmedRequest]:
        if not request_id:
            return None
        return self._armed.pop(request_id, None)


@dataclass
class GenerationContext:
    """Mutable per-request stream state shared by the processor and its guard.

    ``completed`` flips once, at finalize; anything arriving afterwards
    (records, guard expiry) is ignored.
    """

    request_id: str
    account_id: Optional[str]
    image_id: str
    attempt_id: str
    prompt: Optional[str] = None
    thumbnail_url: Optional[str] = None
    image_reference: Optional[str] = None
    last_progress: float = 0
    moderated: bool = False
    moderation_reason: Optional[str] = None
    video_url: Optional[str] = None
    video_id: Optional[str] = None
    video_prompt: Optional[str] = None
    final_message: Optional[str] = None
    raw_chunks: list[str] = field(default_factory=list)
    raw_chars: int = 0
    last_event_at: datetime = field(default_factory=utcnow)
    completed: bool = False
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def capture(self, text: str, max_chars: int) -> None:
        """Keep the tail of the raw stream within ``max_chars``."""
        if not text:
            return
        self.raw_chunks.append(text)
        self.raw_chars += len(text)
        while self.raw_chars > max_chars and len(self.raw_chunks) > 1:
            self.raw_chars -= len(self.raw_chunks.pop(0))

    def raw_stream(self, max_chars: int) -> Optional[str]:
        if not self.raw_chunks:
            return None
        return keep_tail("".join(self.raw_chunks), max_chars)
