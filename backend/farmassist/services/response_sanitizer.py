"""
Response Sanitizer - strips internal text from the final narration

Models occasionally echo validation meta-commentary or literal tool invocation
syntax such as getFields(). Neither should reach the farmer.
"""

import logging
import re

logger = logging.getLogger(__name__)

ACTION_PLACEHOLDER = "[action performed]"

_META_PATTERNS = [
    re.compile(r"Response Validation\s*\d+%?\s*confidence", re.IGNORECASE),
    re.compile(r"The LLM response accurately[^.]+\.", re.IGNORECASE),
    re.compile(r"confidence:\s*\d+%?", re.IGNORECASE),
    re.compile(r"validation (passed|failed|completed)", re.IGNORECASE),
    re.compile(r"\b\d+%?\s*confidence\b", re.IGNORECASE),
]

# verbIdentifier(...) e.g. getFields(), getCurrentWeather(lat, lon), list_equipment().
# Prose with a verb word before parentheses, like "update (see below)", matches too.
_TOOL_INVOCATION = re.compile(r"\b(?:get|list|create|update|delete|fetch|schedule)[A-Za-z0-9_]*\s*\([^)]*\)")

_EXCESS_NEWLINES = re.compile(r"\n\s*\n\s*\n")


def _sanitize_once(text: str) -> str:
    for pattern in _META_PATTERNS:
        text = pattern.sub("", text)
    text = _TOOL_INVOCATION.sub(ACTION_PLACEHOLDER, text)
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


def sanitize_response_content(text: str) -> str:
    """
    Remove validation/confidence meta-text and literal tool calls from a response.

    Idempotent: sanitizing an already sanitized text returns it unchanged.
    """
    if not text:
        return ""

    # A pass can expose a new match, so repeat until stable. Every pass that changes
    # the text either shortens it or consumes a closing parenthesis, so this ends.
    result = _sanitize_once(text)
    while True:
        cleaned = _sanitize_once(result)
        if cleaned == result:
            break
        result = cleaned

    if result != text.strip():
        logger.debug(f"Sanitized response ({len(text)} -> {len(result)} chars)")
    return result
