"""Progressive prompt softening for moderation retries.

Only structured (JSON) prompts of elevated-mode jobs are modified:

    retry 0   unchanged
    retry 1   safety tags appended, conservative cinematography prefix
    retry 2+  sensitive words replaced in every string field
"""

import json
import re
from typing import Any

import structlog

logger = structlog.get_logger()

SAFETY_TAGS = ("professional", "broadcast-safe", "family-friendly")
CINEMATOGRAPHY_PREFIX = "professional broadcast quality. "

SENSITIVE_WORDS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile("violent", re.IGNORECASE), "dynamic"),
    (re.compile("aggressive", re.IGNORECASE), "energetic"),
    (re.compile("extreme", re.IGNORECASE), "notable"),
    (re.compile("intense", re.IGNORECASE), "focused"),
    (re.compile("brutal", re.IGNORECASE), "impactful"),
    (re.compile("graphic", re.IGNORECASE), "detailed"),
)


def is_json_prompt(prompt: str) -> bool:
    try:
        json.loads(prompt)
    except (TypeError, ValueError):
        return False
    return True


def add_safety_hints(prompt: str) -> str:
    """Append safety tags and prefix the cinematography style."""
    try:
        data = json.loads(prompt)
    except ValueError as e:
        logger.error("softening.safety_hints_failed", error=str(e))
        return prompt
    if not isinstance(data, dict):
        return prompt

    tags = data.get("tags")
    if isinstance(tags, list):
        for tag in SAFETY_TAGS:
            if tag not in tags:
                tags.append(tag)

    cinematography = data.get("cinematography")
    if isinstance(cinematography, dict):
        style = cinematography.get("style") or ""
        if "professional" not in style:
            cinematography["style"] = CINEMATOGRAPHY_PREFIX + style

    return json.dumps(data)


def replace_in_object(value: Any, replacements=SENSITIVE_WORDS) -> Any:
    """Apply word replacements to every string nested in ``value``."""
    if isinstance(value, str):
        for pattern, replacement in replacements:
            value = pattern.sub(replacement, value)
        return value
    if isinstance(value, list):
        return [replace_in_object(item, replacements) for item in value]
    if isinstance(value, dict):
        return {key: replace_in_object(item, replacements) for key, item in value.items()}
    return value


def tone_down(prompt: str) -> str:
    try:
        data = json.loads(prompt)
    except ValueError as e:
        logger.error("softening.tone_down_failed", error=str(e))
        return prompt
    return json.dumps(replace_in_object(data))


def apply_progressive_enhancement(prompt: str, retry_index: int, use_spicy: bool) -> str:
    """Soften ``prompt`` for the ``retry_index``-th retry (0-based)."""
    if not use_spicy or retry_index <= 0 or not is_json_prompt(prompt):
        return prompt
    if retry_index == 1:
        logger.info("softening.safety_hints_added")
        return add_safety_hints(prompt)
    logger.info("softening.content_toned_down", retry_index=retry_index)
    return tone_down(prompt)
