"""Request Correlator - ties an outbound job request to an ImageEntry/Attempt.

No single reliable key links a job request to its source image, so ids are
resolved through ordered fallbacks:

    account_id: payload walk -> raw body text -> thumbnail URL
                -> pending upload -> active account
    image_id:   payload tables (see extractors) -> account's last image
                -> pending upload -> page location

A request whose ids cannot be resolved is simply not tracked.
"""

import itertools
import json
import time
from typing import Any, Optional

import structlog

from genledger.services.correlation import extractors
from genledger.services.correlation.context import (
    AccountContext,
    ArmedRequest,
    ArmedRequestRegistry,
    GenerationContext,
    OutboundRequest,
    PendingUpload,
)
from genledger.services.history.service import HistoryService

logger = structlog.get_logger()

_request_sequence = itertools.count(1)


def generate_request_id(prefix: str = "req") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{next(_request_sequence):x}"


def safe_parse_json(text: Optional[str]) -> Any:
    if not text or not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError:
        logger.debug("correlation.payload_not_json", preview=text[:120])
        return None


class RequestCorrelator:
    """Creates attempts for observed job requests and arms them for their stream."""

    def __init__(
        self,
        history: HistoryService,
        registry: ArmedRequestRegistry,
        endpoint_path: str = "/rest/app-chat/conversations/new",
        asset_base_url: str = "https://assets.grok.com",
    ):
        self.history = history
        self.registry = registry
        self.endpoint_path = endpoint_path
        self.asset_base_url = asset_base_url
        self._pending_upload: Optional[PendingUpload] = None

    @property
    def pending_upload(self) -> Optional[PendingUpload]:
        return self._pending_upload

    def is_generation_request(self, request: OutboundRequest) -> bool:
        return request.method.upper() == "POST" and self.endpoint_path in (request.url or "")

    async def correlate(
        self,
        request: OutboundRequest,
        accounts: AccountContext,
        page_url: Optional[str] = None,
    ) -> GenerationContext | None:
        """Resolve ids, create the attempt and arm the request.

        Args:
            request: Observed outbound request
            accounts: Active-account context (updated in place)
            page_url: Location of the page that issued the request

        Returns:
            Stream context for the armed request, or None if the request is
            not a generation request or its ids cannot be resolved
        """
        if not self.is_generation_request(request):
            return None

        payload = safe_parse_json(request.body)
        if payload is None:
            logger.warning("correlation.payload_missing", url=request.url)

        account_id = extractors.extract_account_id(payload)
        if not account_id:
            account_id = extractors.extract_account_id_from_string(request.body)
        thumbnail_url = extractors.extract_thumbnail_url(payload)
        if not account_id and thumbnail_url:
            account_id = extractors.extract_account_id_from_string(thumbnail_url)

        # A pending upload is consumed by the first request that follows it
        pending, self._pending_upload = self._pending_upload, None
        if not account_id and pending:
            account_id = pending.account_id
        if not thumbnail_url and pending:
            thumbnail_url = extractors.normalize_asset_url(pending.file_uri, self.asset_base_url)

        if not account_id and accounts.active_account_id:
            account_id = accounts.active_account_id
            logger.info("correlation.account_from_active", account_id=account_id)

        if not account_id:
            logger.warning(
                "correlation.account_unresolved",
                url=request.url,
                has_payload=payload is not None,
                thumbnail_url=thumbnail_url,
            )
            return None
        accounts.set_active(account_id, "conversation-request")

        image_id = extractors.extract_image_id(payload)
        if not image_id:
            image_id = accounts.get_last_image(account_id)
        if not image_id and pending:
            image_id = pending.image_id
        if not image_id:
            image_id = extractors.extract_page_image_id(page_url)
            if image_id:
                logger.info("correlation.image_from_page", image_id=image_id)

        if not image_id:
            logger.info("correlation.image_unresolved", url=request.url, account_id=account_id)
            return None

        request_id = request.request_id or generate_request_id("multigen")
        prompt = extractors.extract_prompt_text(payload)
        payload_snapshot = request.body or (json.dumps(payload) if payload is not None else None)

        accounts.set_last_image(account_id, image_id)
        attempt = await self.history.create_attempt(
            image_id,
            prompt=prompt or None,
            payload_snapshot=payload_snapshot,
            response_id=request_id,
            account_id=account_id,
            thumbnail_url=thumbnail_url,
        )

        self.registry.arm(
            ArmedRequest(
                request_id=request_id,
                account_id=account_id,
                image_id=image_id,
                attempt_id=attempt.id,
                headers=dict(request.headers),
                request_url=request.url,
            )
        )

        image_reference = thumbnail_url
        if not image_reference and isinstance(payload, dict):
            image_reference = extractors.extract_url(payload.get("message"))

        logger.info(
            "correlation.armed",
            request_id=request_id,
            image_id=image_id,
            attempt_id=attempt.id,
            account_id=account_id,
        )
        return GenerationContext(
            request_id=request_id,
            account_id=account_id,
            image_id=image_id,
            attempt_id=attempt.id,
            prompt=attempt.prompt,
            thumbnail_url=thumbnail_url,
            image_reference=image_reference,
        )

    async def observe_content_request(self, url: str, accounts: AccountContext) -> Optional[str]:
        """Track an image content fetch as the account's current image.

        Returns:
            The image id, or None if the URL is not an image content URL
        """
        parsed = extractors.parse_content_request_url(url)
        if parsed is None:
            return None
        account_id, image_id, thumbnail_url = parsed
        accounts.set_active(account_id, "image-content")
        await self.history.ensure_entry(image_id, account_id, thumbnail_url)
        accounts.set_last_image(account_id, image_id)
        return image_id

    def register_upload(self, response: Any, accounts: AccountContext) -> Optional[PendingUpload]:
        """Remember an upload response so the next request can fall back on its ids."""
        file_uri = response.get("fileUri") if isinstance(response, dict) else None
        parsed = extractors.parse_upload_file_uri(file_uri)
        if parsed is None:
            logger.warning("correlation.upload_uri_unparsed", file_uri=file_uri)
            return None
        account_id, image_id = parsed
        self._pending_upload = PendingUpload(
            account_id=account_id, image_id=image_id, file_uri=file_uri  # type: ignore[arg-type]
        )
        accounts.set_active(account_id, "upload")
        logger.info("correlation.upload_registered", account_id=account_id, image_id=image_id)
        return self._pending_upload
