"""
Classification of captured output lines.

Turns one raw line from the supervised server into a rendering instruction:
drop it, show it as an error, or show it as a parsed log record. Verbose
traceback dumps (locals boxes, frame listings, memory addresses) are dropped
since they only bury the useful lines.
"""

import re

from .models import (
    Channel,
    PlainError,
    PlainText,
    RawLine,
    RenderedEvent,
    StructuredLog,
    Suppressed,
)

UNICODE_ERROR_MESSAGE = "ERROR: Unicode encoding issue with OpenWebUI output (continuing...)"
SPECIAL_CHARACTERS_PLACEHOLDER = "[OpenWebUI output contains special characters]"

# Substrings that mark traceback noise
_SUPPRESSED_SUBSTRINGS = (
    "+----- locals -----+",
    "+-------------------------------- locals ---------------------------------+",
    "| +",
    "Traceback (most recent call last)",
    "at 0x",
)
_SUPPRESSED_PREFIXES = ("| |",)
_ESCAPE_DUMP_MIN_LENGTH = 100

# Block and double-line box characters used in banners
_BOX_TRANSLATION = str.maketrans(
    {
        "█": "#",
        "╗": "+",
        "═": "-",
        "╔": "+",
        "╝": "+",
        "║": "|",
    }
)

LOG_LINE_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}:\d{2}\.\d{3})\s*\|\s*"
    r"(INFO|ERROR|WARNING|DEBUG|TRACE|WARN|CRITICAL)\s*\|\s*(.*)$"
)


def is_suppressed(text: str) -> bool:
    """Check whether a line is traceback noise."""
    if any(marker in text for marker in _SUPPRESSED_SUBSTRINGS):
        return True
    if text.startswith(_SUPPRESSED_PREFIXES):
        return True
    return len(text) > _ESCAPE_DUMP_MIN_LENGTH and "\\u" in text


def sanitize(text: str) -> str:
    """Replace box-drawing characters with ASCII.

    Text that cannot be encoded as UTF-8 (undecodable bytes carried through
    as surrogates) is replaced by a placeholder.
    """
    try:
        cleaned = text.translate(_BOX_TRANSLATION)
        cleaned.encode("utf-8")
    except UnicodeError:
        return SPECIAL_CHARACTERS_PLACEHOLDER
    return cleaned


def classify(line: RawLine) -> RenderedEvent:
    """Map a captured line to a rendered event. First matching rule wins."""
    text = line.text

    if is_suppressed(text):
        return Suppressed()

    if line.channel is Channel.STDERR and "UnicodeEncodeError" in text:
        return PlainError(UNICODE_ERROR_MESSAGE)

    cleaned = sanitize(text)

    match = LOG_LINE_RE.match(cleaned)
    if match:
        timestamp, level, message = match.groups()
        return StructuredLog(timestamp=timestamp, level=level, message=message)

    if "ERROR" in cleaned.upper():
        return PlainError(cleaned)
    return PlainText(cleaned)
