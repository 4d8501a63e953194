"""Message and attachment classification.

This package provides:
- Spam classification from configurable allow/deny lists
- Attachment filtering (signature images, tracking pixels) and categorization
- Body text cleaning for analyzers and rule matching
"""

from mailflow.classifier.attachment_filter import categorize_file, ignore_reason, should_ignore
from mailflow.classifier.body_text import strip_html, to_plain_text
from mailflow.classifier.spam_filter import SpamClassifier, SpamVerdict

__all__ = [
    # Attachments
    "categorize_file",
    "ignore_reason",
    "should_ignore",
    # Body text
    "strip_html",
    "to_plain_text",
    # Spam
    "SpamClassifier",
    "SpamVerdict",
]
