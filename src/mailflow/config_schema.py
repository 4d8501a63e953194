"""Pydantic configuration schema for the mail pipeline.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from mailflow.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class DatabaseConfig(BaseModel):
    """SQLite database location."""

    path: str = Field(default="data/mailflow.db", description="Path to the SQLite database")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class OAuthConfig(BaseModel):
    """OAuth application used to refresh per-account mailbox tokens."""

    client_id: str = Field(default="", description="Application (client) ID")
    tenant_id: str = Field(
        default="common",
        description="Directory (tenant) ID or 'common' for multi-tenant apps",
    )
    client_secret_env: str = Field(
        default="MAILFLOW_OAUTH_CLIENT_SECRET",
        description="Environment variable holding the client secret",
    )
    scopes: list[str] = Field(
        default=["Mail.Read", "User.Read"],
        description="Permission scopes requested on refresh",
    )
    refresh_margin_seconds: int = Field(
        default=300,
        ge=0,
        le=3600,
        description="Refresh tokens this many seconds before they expire",
    )


class SyncConfig(BaseModel):
    """Mailbox synchronization settings."""

    provider_base_url: str = Field(
        default="https://graph.microsoft.com/v1.0",
        description="Base URL of the mail provider API",
    )
    interval_minutes: int = Field(
        default=10,
        ge=1,
        le=1440,
        description="How often the scheduler syncs all enabled accounts",
    )
    page_size: int = Field(
        default=500,
        ge=1,
        le=500,
        description="Messages requested per provider page",
    )
    default_range_months: int = Field(
        default=3,
        ge=1,
        le=120,
        description="Lookback range for accounts without their own setting",
    )
    max_page_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries for a failed page fetch before the account goes to error",
    )
    retry_delays: list[float] = Field(
        default=[1.0, 2.0, 4.0],
        description="Backoff delays (seconds) between page fetch retries",
    )
    page_delay_seconds: float = Field(
        default=0.1,
        ge=0.0,
        le=10.0,
        description="Pause between consecutive provider pages",
    )
    stuck_after_minutes: int = Field(
        default=30,
        ge=5,
        description="Accounts 'syncing' for longer than this are reset by the scheduler",
    )
    request_timeout_seconds: float = Field(default=30.0, gt=0, le=300)

    @field_validator("retry_delays")
    @classmethod
    def validate_retry_delays(cls, v: list[float]) -> list[float]:
        """Require at least one non-negative delay."""
        if not v:
            raise ValueError("retry_delays must contain at least one value")
        if any(d < 0 for d in v):
            raise ValueError("retry_delays cannot contain negative values")
        return v


class StorageConfig(BaseModel):
    """Content-addressed blob storage settings."""

    root: str = Field(default="data/blobs", description="Filesystem root for the blob backend")
    key_prefix: str = Field(default="blobs", description="Key prefix inside the backend")
    max_attachment_bytes: int = Field(
        default=25 * 1024 * 1024,
        ge=1024,
        description="Attachments larger than this are recorded but not stored",
    )

    @field_validator("root")
    @classmethod
    def validate_root(cls, v: str) -> str:
        """Ensure storage root doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Storage root cannot be empty")
        if ".." in v:
            raise ValueError("Storage root cannot contain '..' (path traversal)")
        return v


DEFAULT_IMPORTANT_DOMAINS = [
    # Banks
    "bbva.mx",
    "bbva.com",
    "banorte.com",
    "santander.com.mx",
    "banamex.com",
    "citibanamex.com",
    "hsbc.com.mx",
    "scotiabank.com.mx",
    "bancoppel.com",
    "inbursa.com",
    "chase.com",
    "bankofamerica.com",
    "wellsfargo.com",
    # Payment processors
    "stripe.com",
    "paypal.com",
    "mercadopago.com",
    "conekta.com",
    # Government
    "sat.gob.mx",
    "gob.mx",
    # Carriers
    "fedex.com",
    "dhl.com",
    "ups.com",
    "estafeta.com",
    "maersk.com",
    # Core cloud providers
    "amazonaws.com",
    "google.com",
    "microsoft.com",
    "azure.com",
    "twilio.com",
    "sendgrid.net",
    "mailgun.net",
]

DEFAULT_IMPORTANT_KEYWORDS = [
    "invoice",
    "factura",
    "cfdi",
    "statement",
    "estado de cuenta",
    "receipt",
    "recibo",
    "payment",
    "pago",
    "transfer",
    "transferencia",
    "spei",
    "contract",
    "contrato",
    "legal notice",
    "aviso legal",
    "tracking",
    "rastreo",
    "order confirmation",
    "confirmation",
    "security alert",
    "alerta de seguridad",
    "quote",
    "cotizacion",
    "cotización",
    "bill of lading",
    "booking",
]

DEFAULT_SPAM_KEYWORDS = [
    "exclusive offer",
    "oferta exclusiva",
    "buy now",
    "compra ahora",
    "last chance",
    "ultima oportunidad",
    "última oportunidad",
    "free",
    "gratis",
    "gift",
    "regalo",
    "newsletter",
    "unsubscribe",
    "promotion",
    "promocion",
    "promoción",
    "sale",
    "clearance",
    "liquidacion",
    "liquidación",
    "discount",
    "descuento",
    "% off",
    "limited time",
    "tiempo limitado",
]

DEFAULT_SPAM_SENDER_PATTERNS = [
    "noreply@",
    "no-reply@",
    "donotreply@",
    "marketing@",
    "newsletter@",
    "promo@",
    "offers@",
    "deals@",
]

DEFAULT_SPAM_DOMAINS = [
    "mailchimp.com",
    "mcsv.net",
    "constantcontact.com",
    "campaign-archive.com",
    "unroll.me",
]

DEFAULT_NEWSLETTER_PATTERNS = [
    r"\bnewsletter\b",
    r"weekly.*digest",
    r"daily.*update",
]


class SpamPolicyConfig(BaseModel):
    """Allow/deny lists driving the spam classifier.

    Lists can be given inline or loaded from a separate YAML file
    (`lists_path`) so the policy can be edited without touching the main
    config. Values from the file replace the inline/default lists key by key.
    """

    enabled: bool = Field(default=True, description="Disable to keep every message")
    lists_path: str | None = Field(
        default=None,
        description="Optional YAML file with allow/deny lists",
    )
    important_domains: list[str] = Field(default_factory=lambda: list(DEFAULT_IMPORTANT_DOMAINS))
    important_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_IMPORTANT_KEYWORDS))
    spam_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_SPAM_KEYWORDS))
    spam_sender_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SPAM_SENDER_PATTERNS)
    )
    spam_domains: list[str] = Field(default_factory=lambda: list(DEFAULT_SPAM_DOMAINS))
    newsletter_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_NEWSLETTER_PATTERNS)
    )
    min_spam_keyword_hits: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Spam subject keywords needed before a message is dropped",
    )
    honor_provider_spam_label: bool = Field(
        default=True,
        description="Treat the provider's own SPAM/junk flag as a spam signal",
    )

    @model_validator(mode="after")
    def load_external_lists(self) -> "SpamPolicyConfig":
        """Merge lists from `lists_path` when configured."""
        if not self.lists_path:
            return self
        path = Path(self.lists_path)
        if not path.exists():
            raise ValueError(f"spam_policy.lists_path not found: {path}")
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"spam_policy.lists_path must contain a YAML mapping: {path}")
        for key in (
            "important_domains",
            "important_keywords",
            "spam_keywords",
            "spam_sender_patterns",
            "spam_domains",
            "newsletter_patterns",
        ):
            if key in data:
                values = data[key]
                if not isinstance(values, list) or not all(isinstance(x, str) for x in values):
                    raise ValueError(f"'{key}' in {path} must be a list of strings")
                setattr(self, key, values)
        return self


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker thresholds for the AI service."""

    failure_threshold: int = Field(default=3, ge=1, le=100)
    success_threshold: int = Field(default=2, ge=1, le=100)
    timeout_minutes: float = Field(
        default=15.0,
        gt=0,
        le=24 * 60,
        description="Minutes the circuit stays open after the last failure",
    )


class DetectionConfig(BaseModel):
    """Financial suggestion detection settings."""

    duplicate_window_days: int = Field(
        default=3,
        ge=0,
        le=90,
        description="Suggestions dated within +/- this many days are duplicate candidates",
    )
    amount_tolerance_pct: float = Field(
        default=0.0,
        ge=0.0,
        le=50.0,
        description="Relative amount difference (percent) still considered equal; 0 = exact",
    )
    max_document_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1024,
        description="Documents larger than this are not sent to the AI service",
    )
    max_text_chars: int = Field(
        default=5000,
        ge=500,
        le=100_000,
        description="Body text passed to analyzers is truncated to this length",
    )
    default_currency: str = Field(default="MXN", min_length=3, max_length=3)


class ModelsConfig(BaseModel):
    """Claude model selection per task type."""

    financial_detection: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for financial document extraction",
    )


class AppConfig(BaseModel):
    """Root configuration model."""

    schema_version: int = Field(default=CURRENT_SCHEMA_VERSION, ge=1)
    timezone: str = Field(default="America/Mexico_City")
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    spam_policy: SpamPolicyConfig = Field(default_factory=SpamPolicyConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
