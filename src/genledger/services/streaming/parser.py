"""Incremental decoding of generation response streams.

Responses arrive as newline-delimited JSON, optionally SSE-framed
(``data: {...}``). Frames may split anywhere, including inside a multi-byte
character, so bytes go through an incremental UTF-8 decoder and text is held
in a rolling buffer until a newline completes the line.
"""

import codecs
import json
from dataclasses import dataclass
from typing import Any, Optional

from genledger.services.correlation.extractors import (
    coerce_progress,
    get_nested,
    normalize_asset_url,
)
from genledger.services.exceptions import StreamParseError

# Nesting depths at which the video generation object appears
VIDEO_RESPONSE_PATHS = (
    ("result", "response", "streamingVideoGenerationResponse"),
    ("streamingVideoGenerationResponse",),
    ("result", "streamingVideoGenerationResponse"),
)

PROGRESS_FIELDS = (
    "progress",
    "progressValue",
    "progressPercent",
    "progress_percentage",
    "percentage",
    "percent",
)


class LineBuffer:
    """Turns arbitrary text/byte chunks into complete lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        """Add a chunk and return the lines it completed."""
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return lines

    def flush(self) -> list[str]:
        """Return whatever is left once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return [rest] if rest.strip() else []


def parse_stream_line(line: str) -> Optional[dict]:
    """Parse one stream line into a JSON object.

    Blank lines, SSE ``event:``/``id:`` fields and ``[DONE]`` markers yield
    None.

    Raises:
        StreamParseError: If the line holds an object that is not valid JSON
    """
    text = line.strip()
    if not text or text.startswith("event:") or text.startswith("id:"):
        return None
    if text.startswith("data:"):
        text = text[len("data:") :].strip()
    if not text or text == "[DONE]":
        return None

    start = text.find("{")
    if start == -1:
        return None
    text = text[start:]

    try:
        parsed = json.loads(text)
    except ValueError as e:
        raise StreamParseError(f"Malformed stream record: {e}") from e
    return parsed if isinstance(parsed, dict) else None


def locate_video_response(payload: dict) -> Optional[dict]:
    for path in VIDEO_RESPONSE_PATHS:
        found = get_nested(payload, path)
        if isinstance(found, dict):
            return found
    return None


def _raw_progress(video: dict) -> Any:
    for key in PROGRESS_FIELDS:
        if video.get(key) is not None:
            return video[key]
    status = video.get("status")
    if isinstance(status, dict):
        return status.get("progress")
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value)


@dataclass
class VideoSignal:
    """Signals read from one video generation object."""

    progress: Optional[float]
    moderated: bool
    moderation_reason: Optional[str]
    video_url: Optional[str]
    video_id: Optional[str]
    video_prompt: Optional[str]
    has_video_prompt: bool
    image_reference: Optional[str]
    model_name: Optional[str]
    mode: Optional[str]


@dataclass
class StreamRecord:
    """Everything the processor uses from one parsed stream record."""

    video: Optional[VideoSignal]
    user_message: Optional[str]
    model_message: Optional[str]


def extract_video_signal(video: dict, asset_base_url: str) -> VideoSignal:
    return VideoSignal(
        progress=coerce_progress(_raw_progress(video)),
        moderated=video.get("moderated") is True,
        moderation_reason=video.get("moderationReason") or None,
        video_url=normalize_asset_url(video.get("videoUrl"), asset_base_url),
        video_id=video.get("videoId") or None,
        video_prompt=_as_text(video.get("videoPrompt")),
        has_video_prompt="videoPrompt" in video,
        image_reference=video.get("imageReference") or None,
        model_name=video.get("modelName") or None,
        mode=video.get("mode") or None,
    )


def read_stream_record(payload: dict, asset_base_url: str) -> StreamRecord:
    video = locate_video_response(payload)
    user_message = get_nested(payload, ("result", "response", "userResponse", "message"))
    model_message = get_nested(payload, ("result", "response", "modelResponse", "message"))
    return StreamRecord(
        video=extract_video_signal(video, asset_base_url) if video is not None else None,
        user_message=user_message if isinstance(user_message, str) else None,
        model_message=model_message if isinstance(model_message, str) else None,
    )
