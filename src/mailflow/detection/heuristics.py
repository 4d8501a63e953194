"""Keyword/regex financial extraction used when the AI service is unavailable.

Scores the message text (subject + body + attachment filename) against
Spanish and English payment/expense vocabularies, then pulls the most
plausible amount, a date, a reference and the currency. Confidence is
deliberately fixed and modest (65, or 60 when both vocabularies match) so
heuristic suggestions always read as lower quality than AI ones.

All patterns run through the `regex` library with a timeout.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal, InvalidOperation

import regex

from mailflow.core.logging import get_logger
from mailflow.detection.ai_analyzer import MAX_AMOUNT, FinancialExtraction

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

SINGLE_TYPE_CONFIDENCE = 65
MIXED_TYPE_CONFIDENCE = 60

PAYMENT_KEYWORDS = [
    "pago",
    "pagó",
    "transferencia",
    "depósito",
    "deposito",
    "abono",
    "cobro",
    "recibo",
    "comprobante de pago",
    "voucher",
    "payment",
    "paid",
    "transfer",
    "deposit",
    "receipt",
    "remittance",
]

EXPENSE_KEYWORDS = [
    "gasto",
    "factura",
    "compra",
    "costo",
    "cargo",
    "servicio",
    "proveedor",
    "invoice",
    "bill",
    "expense",
    "purchase",
    "cost",
    "charge",
    "supplier",
    "vendor",
]

PAYMENT_METHOD_KEYWORDS: dict[str, list[str]] = {
    "transfer": ["transferencia", "transfer", "spei", "wire"],
    "cash": ["efectivo", "cash"],
    "check": ["cheque", "check"],
    "card": ["tarjeta", "card", "crédito", "credito", "débito", "debito"],
}

EXPENSE_CATEGORY_KEYWORDS: dict[str, list[str]] = {
    "travel": ["viaje", "hotel", "vuelo", "travel", "flight", "taxi", "uber"],
    "supplies": ["material", "suministro", "papelería", "papeleria", "supplies", "office"],
    "services": ["servicio", "honorarios", "consultoría", "consultoria", "service", "consulting"],
    "customs": ["aduana", "pedimento", "arancel", "customs", "duty", "tariff"],
    "freight": ["flete", "transporte", "naviera", "freight", "shipping", "carrier"],
}

AMOUNT_PATTERN = regex.compile(
    r"(?P<prefix>\$|USD|MXN|EUR|ARS)?\s?(?<![\d.,])"
    r"(?P<value>\d{1,3}(?:,\d{3})+(?:\.\d{2})?|\d+(?:\.\d{2})?)(?!\d|,\d)"
    r"\s?(?P<suffix>USD|MXN|EUR|ARS)?",
    regex.IGNORECASE,
)
REFERENCE_PATTERN = regex.compile(
    r"\b(?:REFERENCIA|REFERENCE|REF|SPEI|FOLIO|NO\.|CLAVE)[\s:.#-]*(?=[A-Z0-9]*\d)([A-Z0-9]{4,})",
    regex.IGNORECASE,
)
ISO_DATE_PATTERN = regex.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
DMY_DATE_PATTERN = regex.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
MONTH_DATE_PATTERN = regex.compile(
    r"\b(January|February|March|April|May|June|July|August|September|October|November|December"
    r"|Jan|Feb|Mar|Apr|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec)\.?\s+(\d{1,2}),?\s+(\d{4})\b",
    regex.IGNORECASE,
)
CURRENCY_PATTERN = regex.compile(r"\b(USD|MXN|EUR|ARS|D[OÓ]LAR(?:ES)?|PESOS?)\b", regex.IGNORECASE)

MONTHS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}


def _keyword_hits(text: str, keywords: list[str]) -> int:
    hits = 0
    for keyword in keywords:
        try:
            if regex.search(
                rf"(?<!\w){regex.escape(keyword)}(?!\w)",
                text,
                regex.IGNORECASE,
                timeout=REGEX_TIMEOUT,
            ):
                hits += 1
        except TimeoutError:
            logger.warning("Regex timeout during keyword scan", keyword=keyword)
    return hits


def _first_keyword_group(text: str, groups: dict[str, list[str]]) -> str | None:
    for name, keywords in groups.items():
        if _keyword_hits(text, keywords):
            return name
    return None


class HeuristicAnalyzer:
    """Regex-based payment/expense extraction from plain text.

    Attributes:
        default_currency: Currency assumed when none is mentioned
        today: Callable returning the reference date for plausibility checks
    """

    def __init__(self, default_currency: str = "MXN", today=date.today):
        self.default_currency = default_currency.upper()
        self._today = today

    def analyze(self, text: str, filename: str | None = None) -> list[FinancialExtraction]:
        """Return at most one extraction for the text; empty when nothing plausible is found."""
        if not text or not text.strip():
            return []

        haystack = f"{text} {filename or ''}"
        payment_hits = _keyword_hits(haystack, PAYMENT_KEYWORDS)
        expense_hits = _keyword_hits(haystack, EXPENSE_KEYWORDS)
        if not payment_hits and not expense_hits:
            return []

        amount = self.extract_amount(text)
        if amount is None:
            return []

        if payment_hits and expense_hits:
            name = (filename or "").lower()
            kind = "payment" if ("pago" in name or "payment" in name) else "expense"
            confidence = MIXED_TYPE_CONFIDENCE
        else:
            kind = "payment" if payment_hits else "expense"
            confidence = SINGLE_TYPE_CONFIDENCE

        extraction = FinancialExtraction(
            kind=kind,
            amount=amount,
            currency=self.extract_currency(text),
            date=self.extract_date(text),
            description=" ".join(text.split())[:200],
            reference=self.extract_reference(text),
            payment_method=(
                _first_keyword_group(haystack, PAYMENT_METHOD_KEYWORDS) or "other"
                if kind == "payment"
                else None
            ),
            category=(
                _first_keyword_group(haystack, EXPENSE_CATEGORY_KEYWORDS) or "other"
                if kind == "expense"
                else None
            ),
            confidence=confidence,
            method="heuristic",
        )
        logger.debug(
            "heuristic_extraction",
            kind=kind,
            amount=str(amount),
            currency=extraction.currency,
            confidence=confidence,
        )
        return [extraction]

    def extract_amount(self, text: str) -> Decimal | None:
        """Best amount in [1, MAX_AMOUNT], commas treated as thousands separators.

        Amounts written with a currency marker or cents win over bare numbers,
        which otherwise tend to be years or reference digits.
        """
        fallback = None
        try:
            for match in AMOUNT_PATTERN.finditer(text, timeout=REGEX_TIMEOUT):
                raw = match.group("value")
                try:
                    value = Decimal(raw.replace(",", ""))
                except InvalidOperation:
                    continue
                if not Decimal("1") <= value <= MAX_AMOUNT:
                    continue
                if match.group("prefix") or match.group("suffix") or "." in raw:
                    return value
                if fallback is None:
                    fallback = value
        except TimeoutError:
            logger.warning("Regex timeout extracting amount")
        return fallback

    def extract_currency(self, text: str) -> str:
        try:
            match = CURRENCY_PATTERN.search(text, timeout=REGEX_TIMEOUT)
        except TimeoutError:
            match = None
        if not match:
            return self.default_currency
        token = match.group(1).upper()
        if token.startswith("D"):
            return "USD"
        if token.startswith("PESO"):
            return "MXN"
        return token

    def extract_reference(self, text: str) -> str | None:
        try:
            match = REFERENCE_PATTERN.search(text, timeout=REGEX_TIMEOUT)
        except TimeoutError:
            return None
        return match.group(1).upper() if match else None

    def extract_date(self, text: str) -> date | None:
        """First parseable date between five years ago and one year ahead."""
        today = self._today()
        earliest = today - timedelta(days=5 * 365)
        latest = today + timedelta(days=365)

        for candidate in self._date_candidates(text):
            if earliest <= candidate <= latest:
                return candidate
        return None

    def _date_candidates(self, text: str):
        try:
            for m in ISO_DATE_PATTERN.finditer(text, timeout=REGEX_TIMEOUT):
                parsed = _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
                if parsed:
                    yield parsed
            for m in DMY_DATE_PATTERN.finditer(text, timeout=REGEX_TIMEOUT):
                parsed = _safe_date(int(m.group(3)), int(m.group(2)), int(m.group(1)))
                if parsed:
                    yield parsed
            for m in MONTH_DATE_PATTERN.finditer(text, timeout=REGEX_TIMEOUT):
                month = MONTHS.get(m.group(1)[:3].lower())
                parsed = _safe_date(int(m.group(3)), month, int(m.group(2))) if month else None
                if parsed:
                    yield parsed
        except TimeoutError:
            logger.warning("Regex timeout extracting date")


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None
