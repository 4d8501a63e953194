"""Spam classification applied to every newly synced message.

The classifier decides keep/drop before any body, attachment, automation or
detection work happens. Financially and legally significant mail is
protected by allowlists that are checked before any spam signal.

Policy, first match wins:
1. Sender domain (or a parent domain) is an important domain -> keep, high
2. Subject contains an important keyword -> keep, high
3. Any spam signal -> drop, medium:
   - sender local part matches a marketing/no-reply pattern, or sender
     domain is a known bulk-mail domain
   - subject contains at least `min_spam_keyword_hits` spam keywords
   - subject matches a newsletter pattern
   - provider already flagged the message as spam
4. Otherwise -> keep, low

All lists come from the `spam_policy` config section (optionally an external
YAML file), so they can be tuned without a code change.

Usage:
    from mailflow.classifier.spam_filter import SpamClassifier

    classifier = SpamClassifier(config.spam_policy)
    verdict = classifier.classify(message)
    if not verdict.keep:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatch
from typing import TYPE_CHECKING, Literal

import regex

from mailflow.core.logging import get_logger

if TYPE_CHECKING:
    from mailflow.config_schema import SpamPolicyConfig
    from mailflow.db.store import Message

logger = get_logger(__name__)

# Regex timeout in seconds; every pattern evaluation passes it
REGEX_TIMEOUT = 1.0

PROVIDER_SPAM_LABELS = frozenset({"spam", "junk", "junkemail"})

Confidence = Literal["high", "medium", "low"]


@dataclass(frozen=True, slots=True)
class SpamVerdict:
    """Outcome of classification.

    Attributes:
        keep: False means the message is recorded as spam and not processed further
        reason: Machine-readable reason, stored as spam_reason when dropped
        confidence: high / medium / low
    """

    keep: bool
    reason: str
    confidence: Confidence


def sender_domain(sender_email: str | None) -> str:
    """Lowercased domain part of an address, or '' if there is none."""
    if not sender_email or "@" not in sender_email:
        return ""
    return sender_email.rsplit("@", 1)[1].strip().strip(">").lower()


def _domain_matches(domain: str, listed: str) -> bool:
    listed = listed.lower().lstrip(".")
    return domain == listed or domain.endswith("." + listed)


def _keyword_pattern(keyword: str) -> regex.Pattern:
    # Word-bounded so "free" does not fire on "freight"
    return regex.compile(rf"(?<!\w){regex.escape(keyword.lower())}(?!\w)", regex.IGNORECASE)


class SpamClassifier:
    """Applies a SpamPolicyConfig to messages.

    Patterns are compiled once per instance. Build a new instance after a
    config reload to pick up changed lists.
    """

    def __init__(self, policy: SpamPolicyConfig):
        self.policy = policy
        self._important_domains = [d.lower() for d in policy.important_domains]
        self._important_keywords = [k.lower() for k in policy.important_keywords]
        self._spam_domains = [d.lower() for d in policy.spam_domains]
        self._sender_patterns = [p.lower() for p in policy.spam_sender_patterns]
        self._spam_keywords = [(k, _keyword_pattern(k)) for k in policy.spam_keywords]
        self._newsletter_patterns = []
        for pattern in policy.newsletter_patterns:
            try:
                self._newsletter_patterns.append(regex.compile(pattern, regex.IGNORECASE))
            except regex.error as e:
                logger.warning("invalid_newsletter_pattern", pattern=pattern[:50], error=str(e))

    def classify(self, message: Message) -> SpamVerdict:
        """Decide whether a message is kept."""
        if not self.policy.enabled:
            return SpamVerdict(keep=True, reason="spam_filter_disabled", confidence="low")

        sender = (message.sender_email or "").lower().strip()
        domain = sender_domain(sender)
        subject = message.subject or ""
        subject_lower = subject.lower()

        if domain and any(_domain_matches(domain, d) for d in self._important_domains):
            return SpamVerdict(keep=True, reason=f"important_domain:{domain}", confidence="high")

        for keyword in self._important_keywords:
            if keyword in subject_lower:
                return SpamVerdict(
                    keep=True, reason=f"important_keyword:{keyword}", confidence="high"
                )

        spam_reason = self._spam_signal(sender, domain, subject, message.labels)
        if spam_reason:
            logger.debug(
                "message_classified_spam",
                sender_domain=domain,
                reason=spam_reason,
            )
            return SpamVerdict(keep=False, reason=spam_reason, confidence="medium")

        return SpamVerdict(keep=True, reason="no_spam_signal", confidence="low")

    def _spam_signal(
        self, sender: str, domain: str, subject: str, labels: list[str]
    ) -> str | None:
        """First spam signal found, or None."""
        local_part = sender.split("@", 1)[0] + "@" if "@" in sender else sender
        for pattern in self._sender_patterns:
            if "*" in pattern or "?" in pattern:
                if fnmatch(sender, pattern):
                    return f"spam_sender:{pattern}"
            elif pattern.endswith("@"):
                if local_part == pattern:
                    return f"spam_sender:{pattern}"
            elif pattern in sender:
                return f"spam_sender:{pattern}"

        if domain and any(_domain_matches(domain, d) for d in self._spam_domains):
            return f"spam_domain:{domain}"

        hits = [kw for kw, pattern in self._spam_keywords if self._search(pattern, subject)]
        if len(hits) >= self.policy.min_spam_keyword_hits:
            return "spam_keywords:" + ",".join(hits[:5])

        for pattern in self._newsletter_patterns:
            if self._search(pattern, subject):
                return "newsletter_pattern"

        if self.policy.honor_provider_spam_label and any(
            label.lower() in PROVIDER_SPAM_LABELS for label in labels
        ):
            return "provider_spam_label"

        return None

    @staticmethod
    def _search(pattern: regex.Pattern, text: str) -> bool:
        try:
            return pattern.search(text, timeout=REGEX_TIMEOUT) is not None
        except TimeoutError:
            logger.warning("Regex timeout during spam check", pattern=pattern.pattern[:50])
            return False
