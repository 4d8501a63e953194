"""Tests for attachment filtering, file categorization and body text cleanup."""

import pytest

from mailflow.classifier.attachment_filter import categorize_file, ignore_reason, should_ignore
from mailflow.classifier.body_text import strip_html, to_plain_text

# ---------------------------------------------------------------------------
# Attachment filter
# ---------------------------------------------------------------------------


class TestIgnoreReason:
    def test_tracking_pixel(self):
        assert ignore_reason("pixel.gif", "image/gif", 43, is_inline=True) == (
            "tracking_pixel_or_too_small"
        )

    def test_small_inline_image(self):
        assert ignore_reason("photo.png", "image/png", 12_000, is_inline=True) == (
            "inline_signature_image"
        )

    @pytest.mark.parametrize(
        "filename",
        ["image001.png", "signature.jpg", "logo.PNG", "ana_signature_2024.png", "cid:abc@x"],
    )
    def test_signature_filenames(self, filename):
        assert ignore_reason(filename, "image/png", 80_000, is_inline=False) == "signature_filename"

    def test_inline_gif_below_limit(self):
        assert ignore_reason("banner.gif", "image/gif", 70_000, is_inline=True) == "inline_gif"

    def test_large_inline_png_kept(self):
        assert ignore_reason("scan.png", "image/png", 300_000, is_inline=True) is None

    def test_pdf_kept(self):
        assert should_ignore("Factura_A123.pdf", "application/pdf", 80_000, is_inline=False) is False


class TestCategorizeFile:
    @pytest.mark.parametrize(
        "filename,mime,expected",
        [
            ("foto.jpg", "image/jpeg", "image"),
            ("comprobante_pago.pdf", "application/pdf", "payment"),
            ("recibo_gasolina.pdf", "application/pdf", "expense"),
            ("Factura_A123.pdf", "application/pdf", "invoice"),
            ("contrato_servicio.docx", "application/msword", "contract"),
            ("BL-7781.pdf", "application/pdf", "document"),
            ("data.csv", "text/csv", None),
        ],
    )
    def test_categories(self, filename, mime, expected):
        assert categorize_file(filename, mime) == expected

    def test_payment_wins_over_invoice(self):
        assert categorize_file("pago_factura_99.pdf", "application/pdf") == "payment"


# ---------------------------------------------------------------------------
# Body text
# ---------------------------------------------------------------------------


class TestStripHtml:
    def test_removes_tags_and_blocks(self):
        text = strip_html(
            "<html><style>p{color:red}</style><p>Total:&nbsp;<b>$500</b></p><script>x()</script></html>"
        )
        assert "color" not in text
        assert "x()" not in text
        assert "<" not in text
        assert "Total:" in text
        assert "$500" in text

    def test_block_ends_become_newlines(self):
        assert "line one\n" in strip_html("<div>line one</div><div>line two</div>")


class TestToPlainText:
    def test_empty(self):
        assert to_plain_text(None) == ""
        assert to_plain_text("") == ""

    def test_html_body(self):
        text = to_plain_text("<p>Pago recibido</p><p>Monto: 500 USD</p>", is_html=True)
        assert "Pago recibido" in text
        assert "Monto: 500 USD" in text

    def test_removes_reply_header(self):
        body = "Confirmado.\n\nOn Mon, Mar 2, 2026 at 10:00 AM Ana <ana@navi.mx> wrote:\n> old text"
        text = to_plain_text(body)
        assert "wrote:" not in text
        assert text.startswith("Confirmado.")

    def test_removes_spanish_reply_header(self):
        body = "Listo.\n\nEl lun, 2 mar 2026 a las 10:00, Ana <ana@navi.mx> escribió:\n> texto"
        assert "escribió" not in to_plain_text(body)

    def test_removes_outlook_header_block(self):
        body = "Adjunto factura.\n\nFrom: Ana\nSent: Monday\nTo: Ops\nSubject: NAVI-1\n\nold"
        text = to_plain_text(body)
        assert "Sent:" not in text
        assert "Adjunto factura." in text

    def test_removes_signature(self):
        body = "Pago enviado.\n-- \nAna López\nNAVI Logistics"
        text = to_plain_text(body)
        assert text == "Pago enviado."

    def test_collapses_whitespace(self):
        text = to_plain_text("a    b\n\n\n\n\nc")
        assert text == "a b\n\nc"

    def test_truncates(self):
        assert len(to_plain_text("x" * 10_000, max_length=5000)) == 5000
