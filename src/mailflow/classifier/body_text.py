"""Plain-text rendering of message bodies.

Rules (`body` conditions) and the heuristic financial analyzer work on plain
text. Bodies arrive as text or HTML; this module strips markup, drops quoted
reply/forward headers and signature blocks, collapses whitespace and
truncates.

All regex operations use the `regex` library with a timeout so hostile
message content cannot stall a sync.

Usage:
    from mailflow.classifier.body_text import to_plain_text

    text = to_plain_text(body, is_html=True, max_length=5000)
"""

from __future__ import annotations

import html

import regex

from mailflow.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_LENGTH = 5000

REGEX_TIMEOUT = 1.0

# Style/script blocks carry no readable text
NON_TEXT_BLOCK_PATTERN = regex.compile(
    r"<(style|script)[^>]*>.*?</\1>", regex.IGNORECASE | regex.DOTALL
)
BLOCK_BREAK_PATTERN = regex.compile(r"<(br|/p|/div|/tr|/li)[^>]*>", regex.IGNORECASE)
HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")

QUOTED_HEADER_PATTERNS = [
    regex.compile(
        r"^-{5,}\s*(Forwarded message|Mensaje reenviado)\s*-{5,}.*?(?=\n\n|\Z)",
        regex.MULTILINE | regex.IGNORECASE | regex.DOTALL,
    ),
    regex.compile(r"^(On|El) .+? (wrote|escribió):\s*$", regex.MULTILINE),
    regex.compile(
        r"^(From|De):\s+.+?\n(Sent|Enviado):\s+.+?\n(To|Para):\s+.+?(?=\n\n|\Z)",
        regex.MULTILINE | regex.DOTALL,
    ),
]

SIGNATURE_PATTERN = regex.compile(r"^--\s*\n.*", regex.MULTILINE | regex.DOTALL)

EXCESSIVE_NEWLINES = regex.compile(r"\n{3,}")
EXCESSIVE_SPACES = regex.compile(r"[ \t\xa0]{2,}")


def _safe_sub(pattern: regex.Pattern, repl: str, text: str) -> str:
    try:
        return pattern.sub(repl, text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("Regex timeout during body cleanup", pattern=pattern.pattern[:50])
        return text


def strip_html(text: str) -> str:
    """Remove tags and decode entities, keeping line breaks at block ends."""
    text = _safe_sub(NON_TEXT_BLOCK_PATTERN, " ", text)
    text = _safe_sub(BLOCK_BREAK_PATTERN, "\n", text)
    text = _safe_sub(HTML_TAG_PATTERN, " ", text)
    return html.unescape(text)


def to_plain_text(
    body: str | None, is_html: bool = False, max_length: int = DEFAULT_MAX_LENGTH
) -> str:
    """Readable text of a message body, at most max_length characters."""
    if not body:
        return ""

    text = strip_html(body) if is_html else body
    text = text.replace("\r\n", "\n")
    for pattern in QUOTED_HEADER_PATTERNS:
        text = _safe_sub(pattern, "", text)
    text = _safe_sub(SIGNATURE_PATTERN, "", text)
    text = _safe_sub(EXCESSIVE_NEWLINES, "\n\n", text)
    text = _safe_sub(EXCESSIVE_SPACES, " ", text)
    return text.strip()[:max_length]
