"""Tests for the spam classifier.

Important senders and subjects must survive even when they also carry spam
signals; everything else follows the configured deny lists.
"""

from pathlib import Path

import pytest

from mailflow.classifier.spam_filter import SpamClassifier, sender_domain
from mailflow.config_schema import SpamPolicyConfig
from mailflow.db.store import Message


def _message(sender: str, subject: str, labels: list[str] | None = None) -> Message:
    return Message(
        account_id=1,
        provider_message_id="msg-1",
        sender_email=sender,
        subject=subject,
        labels=labels or [],
    )


@pytest.fixture
def classifier() -> SpamClassifier:
    return SpamClassifier(SpamPolicyConfig())


class TestSenderDomain:
    @pytest.mark.parametrize(
        "sender,expected",
        [
            ("Agent@Maersk.COM", "maersk.com"),
            ("no-at-sign", ""),
            (None, ""),
            ("a@b@mail.example.com", "mail.example.com"),
        ],
    )
    def test_domain(self, sender, expected):
        assert sender_domain(sender) == expected


class TestKeep:
    def test_important_domain_beats_spam_signals(self, classifier: SpamClassifier):
        verdict = classifier.classify(_message("noreply@bbva.mx", "Exclusive offer, buy now"))
        assert verdict.keep is True
        assert verdict.confidence == "high"
        assert verdict.reason == "important_domain:bbva.mx"

    def test_important_subdomain(self, classifier: SpamClassifier):
        verdict = classifier.classify(_message("alerts@notify.stripe.com", "Weekly digest"))
        assert verdict.keep is True
        assert verdict.reason.startswith("important_domain:")

    def test_noreply_invoice_is_kept(self, classifier: SpamClassifier):
        """A no-reply sender is a spam signal, but an invoice subject wins."""
        verdict = classifier.classify(_message("noreply@retailer.com", "Your invoice #123"))
        assert verdict.keep is True
        assert verdict.confidence == "high"
        assert verdict.reason == "important_keyword:invoice"

    def test_spanish_keyword(self, classifier: SpamClassifier):
        verdict = classifier.classify(_message("newsletter@proveedor.mx", "Factura CFDI A-4411"))
        assert verdict.keep is True

    def test_ordinary_mail_kept_low(self, classifier: SpamClassifier):
        verdict = classifier.classify(_message("juan@cliente.mx", "Reunión el martes"))
        assert verdict.keep is True
        assert verdict.confidence == "low"
        assert verdict.reason == "no_spam_signal"

    def test_disabled_policy_keeps_everything(self):
        classifier = SpamClassifier(SpamPolicyConfig(enabled=False))
        verdict = classifier.classify(_message("marketing@mailchimp.com", "Buy now, free gift"))
        assert verdict.keep is True
        assert verdict.reason == "spam_filter_disabled"


class TestDrop:
    def test_noreply_sender(self, classifier: SpamClassifier):
        verdict = classifier.classify(_message("noreply@shop.example", "Hola"))
        assert verdict.keep is False
        assert verdict.confidence == "medium"
        assert verdict.reason == "spam_sender:noreply@"

    def test_spam_domain(self, classifier: SpamClassifier):
        verdict = classifier.classify(_message("ana@mcsv.net", "Hola"))
        assert verdict.keep is False
        assert verdict.reason == "spam_domain:mcsv.net"

    def test_two_spam_keywords(self, classifier: SpamClassifier):
        verdict = classifier.classify(_message("hello@shop.example", "Exclusive offer: buy now"))
        assert verdict.keep is False
        assert verdict.reason.startswith("spam_keywords:")

    def test_single_spam_keyword_not_enough(self, classifier: SpamClassifier):
        verdict = classifier.classify(_message("hello@shop.example", "Free shipping update"))
        assert verdict.keep is True

    def test_keywords_are_word_bounded(self, classifier: SpamClassifier):
        """'free' and 'sale' must not fire inside 'freight' and 'wholesale'."""
        verdict = classifier.classify(_message("ops@carrier.example", "Freight wholesale rates"))
        assert verdict.keep is True
        assert verdict.reason == "no_spam_signal"

    def test_newsletter_pattern(self, classifier: SpamClassifier):
        verdict = classifier.classify(_message("editor@blog.example", "The weekly logistics digest"))
        assert verdict.keep is False
        assert verdict.reason == "newsletter_pattern"

    def test_provider_label(self, classifier: SpamClassifier):
        verdict = classifier.classify(_message("x@unknown.example", "Hola", labels=["JunkEmail"]))
        assert verdict.keep is False
        assert verdict.reason == "provider_spam_label"

    def test_provider_label_ignored_when_disabled(self):
        classifier = SpamClassifier(SpamPolicyConfig(honor_provider_spam_label=False))
        verdict = classifier.classify(_message("x@unknown.example", "Hola", labels=["spam"]))
        assert verdict.keep is True


class TestConfigurableLists:
    def test_custom_lists_replace_defaults(self):
        policy = SpamPolicyConfig(
            important_domains=["navi.mx"],
            important_keywords=[],
            spam_sender_patterns=["*@promo.example"],
            spam_domains=["bbva.mx"],
        )
        classifier = SpamClassifier(policy)

        assert classifier.classify(_message("noreply@navi.mx", "x")).keep is True
        assert classifier.classify(_message("a@promo.example", "x")).reason == (
            "spam_sender:*@promo.example"
        )
        # Defaults are gone: bbva.mx is no longer protected
        assert classifier.classify(_message("alertas@bbva.mx", "x")).reason == "spam_domain:bbva.mx"

    def test_lists_loaded_from_file(self, tmp_path: Path):
        lists = tmp_path / "spam_lists.yaml"
        lists.write_text("important_domains:\n  - navi.mx\nspam_domains:\n  - junkmail.example\n")

        policy = SpamPolicyConfig(lists_path=str(lists))

        assert policy.important_domains == ["navi.mx"]
        assert policy.spam_domains == ["junkmail.example"]
        # Keys absent from the file keep their defaults
        assert "invoice" in policy.important_keywords

    def test_invalid_newsletter_pattern_is_skipped(self):
        classifier = SpamClassifier(SpamPolicyConfig(newsletter_patterns=["(unclosed", r"digest"]))
        verdict = classifier.classify(_message("a@blog.example", "Monthly digest"))
        assert verdict.reason == "newsletter_pattern"
