"""TrustGate engine: the store, providers and state machines wired together.

One engine serves every entry point (HTTP API, CLI). Components share
the same store and clock so a test can drive the whole flow with a
temporary directory and a frozen time.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from .config import GateConfig
from .continuity import ContinuityTokenManager
from .device import DeviceSessionBinder
from .errors import ValidationError
from .models import IntegrationType, utcnow
from .notifications import Notifier
from .providers import DiditClient, EmailClient
from .signing import SigningService
from .store import RecordStore
from .verification import VerificationMachine
from .webhooks import WebhookIngestor

logger = logging.getLogger("trustgate.engine")


class TrustGateEngine:
    """Signing orchestration for one deployment.

    Args:
        config: Deployment settings.
        store: Record store (defaults to one under ``config.data_dir``).
        email: Email client (defaults to one built from ``config``).
        didit_factory: Builds the identity provider client for a tenant.
        clock: Returns the current time.
    """

    def __init__(
        self,
        config: Optional[GateConfig] = None,
        store: Optional[RecordStore] = None,
        email: Optional[EmailClient] = None,
        didit_factory: Optional[Callable[[Optional[str]], DiditClient]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or GateConfig()
        self.store = store or RecordStore(self.config.data_dir)
        self.email = email or EmailClient(
            self.config.email_api_key,
            sender=self.config.email_from,
            api_url=self.config.email_api_url,
            timeout=self.config.http_timeout_seconds,
        )
        self.clock = clock
        self.notifier = Notifier(self.store, self.email, self.config)
        self.tokens = ContinuityTokenManager(self.store, self.config.continuity_token_ttl)
        self.binder = DeviceSessionBinder(self.store, self.config.signing_ttl)
        self.machine = VerificationMachine(self.store, self.notifier, self.tokens, self.config)
        self.signing = SigningService(self.store, self.notifier, self.binder)
        self.webhooks = WebhookIngestor(
            self.store, self.machine, self.signing, self.config, clock=clock
        )
        self._didit_factory = didit_factory or self._tenant_didit_client

    def now(self) -> datetime:
        return self.clock()

    def didit_client(self, tenant_id: Optional[str]) -> DiditClient:
        """Identity provider client for ``tenant_id``.

        Raises:
            ValidationError: If the tenant has no usable configuration.
        """
        return self._didit_factory(tenant_id)

    def _tenant_didit_client(self, tenant_id: Optional[str]) -> DiditClient:
        integration = self.store.find_integration(IntegrationType.DIDIT, tenant_id)
        if integration is None:
            logger.warning("Didit not configured for tenant %s", tenant_id)
            raise ValidationError("didit_not_configured", "Didit not configured")

        api_key = integration.config.get("api_key")
        workflow_id = integration.config.get("workflow_id")
        if not api_key or not workflow_id:
            raise ValidationError("missing_credentials", "Missing api_key or workflow_id")

        return DiditClient(
            api_key,
            workflow_id,
            base_url=integration.config.get("base_url") or self.config.didit_base_url,
            timeout=self.config.http_timeout_seconds,
        )
