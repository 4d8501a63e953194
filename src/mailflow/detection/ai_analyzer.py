"""Claude-based financial document analysis using forced tool use.

The analyzer sends one document (PDF or image) to Claude and forces a call
to the `record_financial_documents` tool, which guarantees structured
output: zero or more payments/expenses with exact decimal amounts.

Error handling strategy:
- Transient errors (429, 5xx, network): handled by the Anthropic SDK (max_retries)
- Anything that still fails, including any other SDK error, surfaces as
  AnalysisError; the caller records it on the circuit breaker and does not retry

Usage:
    from mailflow.detection.ai_analyzer import FinancialAnalyzer

    analyzer = FinancialAnalyzer(
        anthropic.AsyncAnthropic(max_retries=3), model=config.models.financial_detection
    )
    extractions = await analyzer.analyze(pdf_bytes, "application/pdf")
"""

from __future__ import annotations

import base64
import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Literal

import anthropic

from mailflow.core.errors import AnalysisError
from mailflow.core.logging import get_logger

logger = get_logger(__name__)

PDF_MIME_TYPES = frozenset({"application/pdf"})
IMAGE_MIME_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"})

MAX_AMOUNT = Decimal("10000000")

SYSTEM_PROMPT = (
    "You review documents received by a logistics company (freight forwarding and "
    "customs brokerage). Identify proofs of payment (transfer receipts, SPEI "
    "confirmations, deposit slips) and expenses (supplier invoices, facturas, "
    "receipts, carrier and customs charges). Record every financial document you "
    "find with its exact amount as printed. Record nothing if the document is not "
    "financial. Confidence is 0-100 and must reflect how certain you are that the "
    "amount, currency and type are correct."
)

RECORD_FINANCIAL_DOCUMENTS_TOOL: dict[str, Any] = {
    "name": "record_financial_documents",
    "description": "Record the payments and expenses found in the document",
    "input_schema": {
        "type": "object",
        "properties": {
            "documents": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "kind": {"type": "string", "enum": ["payment", "expense"]},
                        "amount": {
                            "type": "string",
                            "description": "Total amount as a plain decimal string, e.g. '1250.50'",
                        },
                        "currency": {
                            "type": "string",
                            "description": "ISO 4217 code (MXN, USD, EUR)",
                        },
                        "date": {
                            "type": "string",
                            "description": "Document date as YYYY-MM-DD, if printed",
                        },
                        "description": {"type": "string"},
                        "reference": {
                            "type": "string",
                            "description": "Folio, SPEI tracking key or invoice number",
                        },
                        "payment_method": {
                            "type": "string",
                            "enum": ["transfer", "cash", "check", "card", "other"],
                        },
                        "category": {
                            "type": "string",
                            "enum": ["travel", "supplies", "services", "customs", "freight", "other"],
                        },
                        "confidence": {"type": "integer", "minimum": 0, "maximum": 100},
                    },
                    "required": ["kind", "amount", "currency", "confidence"],
                },
            }
        },
        "required": ["documents"],
    },
}


@dataclass(frozen=True, slots=True)
class FinancialExtraction:
    """One payment or expense found in a document.

    Attributes:
        kind: 'payment' or 'expense'
        amount: Exact decimal amount
        currency: ISO 4217 code, upper case
        date: Document date if known
        confidence: 0-100
        method: 'ai' or 'heuristic'
    """

    kind: Literal["payment", "expense"]
    amount: Decimal
    currency: str
    date: date | None = None
    description: str | None = None
    reference: str | None = None
    payment_method: str | None = None
    category: str | None = None
    confidence: int = 0
    method: Literal["ai", "heuristic"] = "ai"


def is_analyzable(mime_type: str) -> bool:
    mime_type = (mime_type or "").lower()
    return mime_type in PDF_MIME_TYPES or mime_type in IMAGE_MIME_TYPES


def _content_block(document: bytes, mime_type: str) -> dict[str, Any]:
    data = base64.standard_b64encode(document).decode("ascii")
    mime_type = mime_type.lower()
    if mime_type in PDF_MIME_TYPES:
        return {
            "type": "document",
            "source": {"type": "base64", "media_type": "application/pdf", "data": data},
        }
    if mime_type == "image/jpg":
        mime_type = "image/jpeg"
    return {"type": "image", "source": {"type": "base64", "media_type": mime_type, "data": data}}


def _parse_date(value: Any) -> date | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def parse_extraction(item: dict[str, Any]) -> FinancialExtraction | None:
    """Build an extraction from one tool-call entry; None if it is unusable."""
    kind = item.get("kind")
    if kind not in ("payment", "expense"):
        return None
    try:
        amount = Decimal(str(item.get("amount", "")).replace(",", "").strip())
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0 or amount > MAX_AMOUNT:
        return None
    currency = str(item.get("currency") or "").strip().upper()
    if len(currency) != 3 or not currency.isalpha():
        return None
    try:
        confidence = max(0, min(100, int(item.get("confidence", 0))))
    except (TypeError, ValueError):
        confidence = 0

    return FinancialExtraction(
        kind=kind,
        amount=amount,
        currency=currency,
        date=_parse_date(item.get("date")),
        description=(item.get("description") or None),
        reference=(item.get("reference") or None),
        payment_method=item.get("payment_method") if kind == "payment" else None,
        category=item.get("category") if kind == "expense" else None,
        confidence=confidence,
        method="ai",
    )


class FinancialAnalyzer:
    """Extracts payments/expenses from documents with Claude.

    Callers gate every call with the shared CircuitBreaker; this class only
    reports failures by raising AnalysisError.
    """

    def __init__(
        self, anthropic_client: anthropic.AsyncAnthropic, model: str, max_tokens: int = 2048
    ):
        self._client = anthropic_client
        self.model = model
        self.max_tokens = max_tokens

    async def analyze(
        self, document: bytes, mime_type: str, content_hash: str | None = None
    ) -> list[FinancialExtraction]:
        """Analyze one document.

        Raises:
            AnalysisError: On unsupported input, API failure or a response
                without the forced tool call
        """
        if not is_analyzable(mime_type):
            raise AnalysisError(f"Unsupported document type: {mime_type}", content_hash=content_hash)

        messages = [
            {
                "role": "user",
                "content": [
                    _content_block(document, mime_type),
                    {"type": "text", "text": "Record the financial documents in this file."},
                ],
            }
        ]

        start_time = time.monotonic()
        try:
            # SDK handles transient retries (429, 5xx, connection errors)
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=SYSTEM_PROMPT,
                messages=messages,
                tools=[RECORD_FINANCIAL_DOCUMENTS_TOOL],
                tool_choice={"type": "tool", "name": "record_financial_documents"},
            )
        except anthropic.RateLimitError as e:
            logger.error("financial_analysis_rate_limited", error=str(e))
            raise AnalysisError(
                f"Rate limited after SDK retries: {e}", content_hash=content_hash
            ) from e
        except anthropic.APIConnectionError as e:
            logger.error("financial_analysis_connection_error", error=str(e))
            raise AnalysisError(
                f"API connection error after SDK retries: {e}", content_hash=content_hash
            ) from e
        except anthropic.APIStatusError as e:
            logger.error("financial_analysis_api_error", status_code=e.status_code, error=str(e))
            raise AnalysisError(
                f"API status error {e.status_code}: {e.message}", content_hash=content_hash
            ) from e
        except anthropic.APIError as e:
            logger.error("financial_analysis_failed", error=str(e), error_type=type(e).__name__)
            raise AnalysisError(f"API error: {e}", content_hash=content_hash) from e

        duration_ms = int((time.monotonic() - start_time) * 1000)
        tool_input = _extract_tool_call(response)
        if tool_input is None or not isinstance(tool_input.get("documents"), list):
            logger.warning("financial_analysis_no_tool_call", duration_ms=duration_ms)
            raise AnalysisError(
                "No record_financial_documents tool call in response "
                "(unexpected with forced tool_choice)",
                content_hash=content_hash,
            )

        extractions = []
        for item in tool_input["documents"]:
            extraction = parse_extraction(item) if isinstance(item, dict) else None
            if extraction is None:
                logger.warning("financial_extraction_discarded", item=str(item)[:200])
                continue
            extractions.append(extraction)

        logger.info(
            "financial_analysis_complete",
            content_hash=content_hash[:12] if content_hash else None,
            documents=len(extractions),
            duration_ms=duration_ms,
            input_tokens=getattr(response.usage, "input_tokens", None),
            output_tokens=getattr(response.usage, "output_tokens", None),
        )
        return extractions


def _extract_tool_call(response: anthropic.types.Message) -> dict[str, Any] | None:
    for block in response.content:
        if block.type == "tool_use" and block.name == "record_financial_documents":
            return block.input
    return None
