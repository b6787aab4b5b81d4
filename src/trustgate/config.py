"""Runtime configuration for TrustGate.

Values come from ``TRUSTGATE_*`` environment variables with defaults
suitable for local development. Provider credentials are per tenant and
live in the record store (:class:`~trustgate.models.TenantIntegration`);
only deployment-wide settings are here.
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

DEFAULT_TRUSTGATE_DIR = Path.home() / ".trustgate"

_TRUE = {"1", "true", "yes", "on"}


class GateConfig(BaseModel):
    """Deployment settings.

    Attributes:
        data_dir: Root directory of the record store.
        app_base_url: Public URL of the signing UI (continuity links).
        signing_ttl_seconds: Window after verification during which signing
            must happen.
        continuity_token_ttl_hours: Validity of manual-review continuity tokens.
        webhook_max_drift_seconds: Accepted clock drift on signed webhooks.
        require_webhook_secret: Reject webhooks when the tenant has no
            webhook secret instead of accepting them unverified.
        didit_base_url: Identity-verification provider API root.
        email_api_url: Transactional email endpoint.
        email_api_key: Email provider key; email is skipped when unset.
        email_from: Sender address.
        http_timeout_seconds: Timeout for every outbound call.
    """

    data_dir: Path = DEFAULT_TRUSTGATE_DIR
    app_base_url: str = "http://localhost:5173"
    signing_ttl_seconds: int = 600
    continuity_token_ttl_hours: int = 48
    webhook_max_drift_seconds: int = 300
    require_webhook_secret: bool = False
    didit_base_url: str = "https://verification.didit.me"
    email_api_url: str = "https://api.resend.com/emails"
    email_api_key: Optional[str] = None
    email_from: str = "noreply@resend.dev"
    http_timeout_seconds: float = 15.0

    @property
    def signing_ttl(self) -> timedelta:
        return timedelta(seconds=self.signing_ttl_seconds)

    @property
    def continuity_token_ttl(self) -> timedelta:
        return timedelta(hours=self.continuity_token_ttl_hours)

    @property
    def webhook_max_drift(self) -> timedelta:
        return timedelta(seconds=self.webhook_max_drift_seconds)

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "GateConfig":
        """Build a config from ``TRUSTGATE_*`` variables.

        Args:
            environ: Mapping to read instead of ``os.environ``.

        Returns:
            A GateConfig with every variable that is set applied.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for name, field in cls.model_fields.items():
            raw = env.get(f"TRUSTGATE_{name.upper()}")
            if raw is None or raw == "":
                continue
            if field.annotation is bool:
                values[name] = raw.strip().lower() in _TRUE
            else:
                values[name] = raw
        return cls.model_validate(values)
