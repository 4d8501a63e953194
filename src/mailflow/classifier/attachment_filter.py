"""Attachment filtering and file categorization.

Signature images, logos and tracking pixels make up a large share of mail
attachments and carry no business content. They are skipped before any
bytes are downloaded or stored.

Usage:
    from mailflow.classifier.attachment_filter import ignore_reason, categorize_file

    reason = ignore_reason("image001.png", "image/png", 4_200, is_inline=True)
    category = categorize_file("Factura_A123.pdf", "application/pdf")  # "invoice"
"""

import regex

from mailflow.core.logging import get_logger

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

MIN_USEFUL_FILE_SIZE = 1024
MAX_INLINE_IMAGE_SIZE = 50 * 1024
MAX_INLINE_GIF_SIZE = 100 * 1024

SIGNATURE_PATTERNS = [
    regex.compile(r"^image\d{3,}\.(png|gif|jpg|jpeg)$", regex.IGNORECASE),
    regex.compile(r"^signature\.(png|gif|jpg|jpeg)$", regex.IGNORECASE),
    regex.compile(r"^logo\.(png|gif|jpg|jpeg)$", regex.IGNORECASE),
    regex.compile(r"^(spacer|pixel|blank|transparent|1x1)\.(gif|png)$", regex.IGNORECASE),
    regex.compile(r"^.*_signature_.*\.(png|gif|jpg|jpeg)$", regex.IGNORECASE),
    regex.compile(r"^cid:.*$", regex.IGNORECASE),
]

# Ordered: first matching category wins
_CATEGORY_KEYWORDS = [
    ("payment", ("payment", "pago", "transferencia", "transfer")),
    ("expense", ("expense", "gasto", "recibo", "receipt")),
    ("invoice", ("invoice", "factura", "bill")),
    ("contract", ("contract", "contrato", "agreement")),
]


def _matches_signature_name(filename: str) -> bool:
    for pattern in SIGNATURE_PATTERNS:
        try:
            if pattern.match(filename, timeout=REGEX_TIMEOUT):
                return True
        except TimeoutError:
            logger.warning("Regex timeout during attachment filter", pattern=pattern.pattern[:50])
    return False


def ignore_reason(filename: str, mime_type: str, size: int, is_inline: bool) -> str | None:
    """Why an attachment should be skipped, or None if it is worth storing."""
    mime_type = (mime_type or "").lower()

    if size < MIN_USEFUL_FILE_SIZE:
        return "tracking_pixel_or_too_small"
    if is_inline and mime_type.startswith("image/") and size < MAX_INLINE_IMAGE_SIZE:
        return "inline_signature_image"
    if _matches_signature_name(filename or ""):
        return "signature_filename"
    if is_inline and mime_type == "image/gif" and size < MAX_INLINE_GIF_SIZE:
        return "inline_gif"
    return None


def should_ignore(filename: str, mime_type: str, size: int, is_inline: bool) -> bool:
    return ignore_reason(filename, mime_type, size, is_inline) is not None


def categorize_file(filename: str, mime_type: str) -> str | None:
    """File category used when linking attachments to an operation.

    Returns one of image, payment, expense, invoice, contract, document, or
    None when nothing applies.
    """
    name = (filename or "").lower()
    mime = (mime_type or "").lower()

    if mime.startswith("image/"):
        return "image"

    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in name for keyword in keywords):
            return category

    if "pdf" in mime or "word" in mime or "document" in mime:
        return "document"
    return None
