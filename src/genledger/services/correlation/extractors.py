"""Pure extraction helpers for request bodies, URLs and stream values.

String-level helpers (``extract_uuid``, ``extract_url``, ...) know nothing about
payload shapes. Payload walkers are built from ordered tables of small
extractors; the first extractor that yields a value wins.

Image id sources, in priority order:

    ======  =============================================================
    rank    source
    ======  =============================================================
    1-5     responseMetadata.modelConfigOverride.modelMap.videoGenModelConfig
            .{parentPostId, inputImagePostId, imagePostId, assetId,
            sourcePostId}
    6       responseMetadata.modelConfigOverride.imagePostId
    7       responseMetadata.parentPostId
    8       modelConfigOverride.modelMap.videoGenModelConfig.parentPostId
    9-10    modelConfigOverride.videoGenModelConfig.{parentPostId, imagePostId}
    11      modelConfigOverride.parentPostId
    12-17   parentPostId, imageId, assetId, originalPostId, postId,
            selectedImageId
    18      attachment lists (fileAttachments, fileAttachmentsMetadata,
            imageReferences, attachments): string items, or the first UUID
            among id, postId, assetId, imageId, url, uri of object items
    19      free text fields: message, prompt, input, body, query
    ======  =============================================================
"""

import math
import re
from typing import Any, Callable, Iterable, Optional

UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
URL_RE = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)
ACCOUNT_IN_PATH_RE = re.compile(rf"users/({UUID_RE.pattern})", re.IGNORECASE)
VIDEO_URL_ACCOUNT_RE = re.compile(r"users/([^/]+)", re.IGNORECASE)
PAGE_POST_RE = re.compile(r"/imagine/post/([a-f0-9-]{36})", re.IGNORECASE)
UPLOAD_FILE_URI_RE = re.compile(r"users/([0-9a-f-]{36})/([0-9a-f-]{36})", re.IGNORECASE)
CONTENT_REQUEST_RE = re.compile(r"/users/([0-9a-f-]+)/([0-9a-f-]+)/content", re.IGNORECASE)
MODE_TAG_RE = re.compile(r"\s*--mode=\S+")
PROGRESS_JUNK_RE = re.compile(r"[^0-9.+-]")
NUMBER_PREFIX_RE = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)")

ACCOUNT_SEARCH_DEPTH = 4

Extractor = Callable[[dict], Optional[str]]


# ----------------------------------------------------------------------
# String helpers
# ----------------------------------------------------------------------


def extract_uuid(value: Any) -> Optional[str]:
    """First UUID embedded in a string, or None for non-strings."""
    if not isinstance(value, str) or not value:
        return None
    match = UUID_RE.search(value)
    return match.group(0) if match else None


def _prefer_asset_url(urls: list[str]) -> Optional[str]:
    for pattern in (r"/content\b", r"assets\.grok\.com", r"imagine-public\."):
        for url in urls:
            if re.search(pattern, url, re.IGNORECASE):
                return url
    return urls[0] if urls else None


def extract_url(value: Any) -> Optional[str]:
    """Pick the most asset-like http(s) URL from free text.

    Preference: image content URLs, then the asset host, then the public
    image host, then the first URL found.
    """
    if not isinstance(value, str) or not value:
        return None
    return _prefer_asset_url(URL_RE.findall(value))


def extract_account_id_from_string(value: Any) -> Optional[str]:
    """Account UUID from a ``users/<uuid>`` path segment."""
    if not isinstance(value, str) or not value:
        return None
    match = ACCOUNT_IN_PATH_RE.search(value)
    return match.group(1) if match else None


def extract_account_id_from_video_url(video_url: Optional[str]) -> Optional[str]:
    if not video_url:
        return None
    match = VIDEO_URL_ACCOUNT_RE.search(video_url)
    return match.group(1) if match else None


def extract_page_image_id(page_url: Optional[str]) -> Optional[str]:
    """Image id from a ``/imagine/post/<uuid>`` page location."""
    if not page_url:
        return None
    match = PAGE_POST_RE.search(page_url)
    return match.group(1) if match else None


def parse_upload_file_uri(file_uri: Any) -> Optional[tuple[str, str]]:
    """(account_id, image_id) from an upload ``fileUri``."""
    if not isinstance(file_uri, str):
        return None
    match = UPLOAD_FILE_URI_RE.search(file_uri)
    return (match.group(1), match.group(2)) if match else None


def parse_content_request_url(url: Any) -> Optional[tuple[str, str, str]]:
    """(account_id, image_id, thumbnail_url) from an image content request URL."""
    if not isinstance(url, str):
        return None
    match = CONTENT_REQUEST_RE.search(url)
    if not match:
        return None
    return match.group(1), match.group(2), url.split("?")[0]


def normalize_asset_url(url: Any, asset_base_url: str = "https://assets.grok.com") -> Optional[str]:
    """Absolute asset URL; relative ``users/...`` paths are rebased on the asset host."""
    if not isinstance(url, str):
        return None
    trimmed = url.strip()
    if not trimmed:
        return None
    if re.match(r"^https?://", trimmed, re.IGNORECASE):
        return trimmed
    return f"{asset_base_url.rstrip('/')}/{trimmed.lstrip('/')}"


def strip_query(url: Optional[str]) -> Optional[str]:
    if not url:
        return url
    return url.split("?")[0]


def cleanup_prompt_text(raw: Any) -> str:
    """Remove embedded URLs and mode tags, collapse whitespace."""
    if not isinstance(raw, str):
        return ""
    text = raw.strip()
    if not text:
        return ""
    text = URL_RE.sub(" ", text)
    text = MODE_TAG_RE.sub(" ", text)
    return re.sub(r"\s{2,}", " ", text).strip()


def coerce_progress(raw: Any) -> Optional[float]:
    """Normalize a progress value to 0-100.

    Accepts numbers, numeric or percent strings (``"42%"``) and
    ``{"progress": ...}`` / ``{"value": ...}`` objects. Anything else is None.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
        return max(0.0, min(100.0, value)) if math.isfinite(value) else None
    if isinstance(raw, str):
        trimmed = raw.strip()
        if trimmed.endswith("%"):
            trimmed = trimmed[:-1]
        normalized = PROGRESS_JUNK_RE.sub("", trimmed)
        match = NUMBER_PREFIX_RE.match(normalized)
        if not match:
            return None
        return coerce_progress(float(match.group(0)))
    if isinstance(raw, dict):
        inner = raw.get("progress")
        if inner is None:
            inner = raw.get("value")
        if isinstance(inner, (int, float, str)) and not isinstance(inner, bool):
            return coerce_progress(inner)
    return None


# ----------------------------------------------------------------------
# Payload walkers
# ----------------------------------------------------------------------


def get_nested(obj: Any, path: Iterable[str]) -> Any:
    current = obj
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _uuid_at(*path: str) -> Extractor:
    def _extract(payload: dict) -> Optional[str]:
        return extract_uuid(get_nested(payload, path))

    _extract.__name__ = "uuid_at_" + ".".join(path)
    return _extract


ATTACHMENT_LISTS = ("fileAttachments", "fileAttachmentsMetadata", "imageReferences", "attachments")
ATTACHMENT_ID_KEYS = ("id", "postId", "assetId", "imageId", "url", "uri")
TEXT_FIELDS = ("message", "prompt", "input", "body", "query")


def _uuid_from_attachments(payload: dict) -> Optional[str]:
    for list_key in ATTACHMENT_LISTS:
        items = payload.get(list_key)
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, str):
                uuid = extract_uuid(item)
            elif isinstance(item, dict):
                uuid = next(
                    (u for u in (extract_uuid(item.get(k)) for k in ATTACHMENT_ID_KEYS) if u),
                    None,
                )
            else:
                uuid = None
            if uuid:
                return uuid
    return None


def _uuid_from_text_fields(payload: dict) -> Optional[str]:
    for key in TEXT_FIELDS:
        uuid = extract_uuid(payload.get(key))
        if uuid:
            return uuid
    return None


_VIDEO_CONFIG = ("responseMetadata", "modelConfigOverride", "modelMap", "videoGenModelConfig")

IMAGE_ID_EXTRACTORS: tuple[Extractor, ...] = (
    *(
        _uuid_at(*_VIDEO_CONFIG, key)
        for key in ("parentPostId", "inputImagePostId", "imagePostId", "assetId", "sourcePostId")
    ),
    _uuid_at("responseMetadata", "modelConfigOverride", "imagePostId"),
    _uuid_at("responseMetadata", "parentPostId"),
    _uuid_at("modelConfigOverride", "modelMap", "videoGenModelConfig", "parentPostId"),
    _uuid_at("modelConfigOverride", "videoGenModelConfig", "parentPostId"),
    _uuid_at("modelConfigOverride", "videoGenModelConfig", "imagePostId"),
    _uuid_at("modelConfigOverride", "parentPostId"),
    *(
        _uuid_at(key)
        for key in (
            "parentPostId",
            "imageId",
            "assetId",
            "originalPostId",
            "postId",
            "selectedImageId",
        )
    ),
    _uuid_from_attachments,
    _uuid_from_text_fields,
)


def first_match(extractors: Iterable[Extractor], payload: dict) -> Optional[str]:
    for extractor in extractors:
        value = extractor(payload)
        if value:
            return value
    return None


def extract_image_id(payload: Any) -> Optional[str]:
    """Source image id from a job request body (see module table)."""
    if isinstance(payload, str):
        return extract_uuid(payload)
    if not isinstance(payload, dict):
        return None
    return first_match(IMAGE_ID_EXTRACTORS, payload)


def extract_account_id(payload: Any, depth: int = 0) -> Optional[str]:
    """First ``users/<uuid>`` account id anywhere in the payload (bounded depth)."""
    if payload is None or depth > ACCOUNT_SEARCH_DEPTH:
        return None
    if isinstance(payload, str):
        return extract_account_id_from_string(payload)
    if isinstance(payload, list):
        values: Iterable[Any] = payload
    elif isinstance(payload, dict):
        values = payload.values()
    else:
        return None
    for value in values:
        candidate = extract_account_id(value, depth + 1)
        if candidate:
            return candidate
    return None


THUMBNAIL_FIELDS = (
    "thumbnailUrl",
    "imageUrl",
    "mediaUrl",
    "previewUrl",
    "contentUrl",
    "url",
    "referenceUrl",
    "message",
    "prompt",
)
THUMBNAIL_LISTS = (
    "imageUrls",
    "mediaUrls",
    "previewUrls",
    "fileAttachments",
    "fileUris",
    "attachments",
)


def extract_thumbnail_url(payload: Any) -> Optional[str]:
    """Best candidate image URL referenced by a job request body."""
    if isinstance(payload, str):
        return extract_url(payload)
    if not isinstance(payload, dict):
        return None

    candidates: list[str] = []

    def consider(value: Any) -> None:
        if not isinstance(value, str) or not value.strip():
            return
        url = extract_url(value)
        # Bare asset paths (users/<id>/...) count as URLs; plain prompt text does not
        if url is None and value.strip().startswith(("/", "users/")):
            url = value.strip()
        if url and url not in candidates:
            candidates.append(url)

    for key in THUMBNAIL_FIELDS:
        consider(payload.get(key))
    consider(get_nested(payload, (*_VIDEO_CONFIG, "imageReference")))

    for key in THUMBNAIL_LISTS:
        items = payload.get(key)
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, str):
                consider(item)
            elif isinstance(item, dict):
                consider(item.get("url") or item.get("uri") or item.get("href") or "")

    return _prefer_asset_url(candidates)


def extract_prompt_text(payload: Any, fallback: str = "") -> str:
    """Prompt text from ``message``, the latest of ``messages``, ``prompt`` or ``input``."""
    if isinstance(payload, str):
        return cleanup_prompt_text(payload) or fallback
    if not isinstance(payload, dict):
        return fallback

    cleaned = cleanup_prompt_text(payload.get("message"))
    if cleaned:
        return cleaned

    messages = payload.get("messages")
    if isinstance(messages, list):
        for message in reversed(messages):
            content = message.get("content") if isinstance(message, dict) else message
            cleaned = cleanup_prompt_text(content)
            if cleaned:
                return cleaned

    for key in ("prompt", "input"):
        cleaned = cleanup_prompt_text(payload.get(key))
        if cleaned:
            return cleaned

    return fallback
