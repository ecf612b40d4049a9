"""
Out-of-band delivery of verification token secrets.

A secret issued through the HTTP API never goes back to the requester: proving
control of a mailbox only works if the secret travels through that mailbox.
The route hands the IssuedToken to a delivery callable instead:

  delivery(issued, tenant_id) -> bool    True when the relay accepted the message

WebhookDelivery POSTs the verification link to TOKEN_DELIVERY_WEBHOOK_URL (the
mail/notification relay resolves principal_id to an address). With no URL
configured nothing is sent and the token can only be used by in-process callers
of TokenService.issue.
"""

from typing import Optional

import httpx
import structlog

from attendx.services.access.tokens import IssuedToken, build_verification_url
from attendx.services.shared.settings import (
    TOKEN_DELIVERY_TIMEOUT_SECONDS,
    TOKEN_DELIVERY_WEBHOOK_URL,
    VERIFICATION_BASE_URL,
)

logger = structlog.get_logger()


class WebhookDelivery:

    def __init__(
        self,
        url: str = TOKEN_DELIVERY_WEBHOOK_URL,
        timeout: float = TOKEN_DELIVERY_TIMEOUT_SECONDS,
        base_url: str = VERIFICATION_BASE_URL,
    ):
        self._url = url
        self._timeout = timeout
        self._base_url = base_url

    def __call__(self, issued: IssuedToken, tenant_id: Optional[str] = None) -> bool:
        if not self._url:
            logger.warning("token_delivery_not_configured", token_id=issued.token_id, purpose=issued.purpose.value)
            return False

        payload = {
            "principal_id":     issued.principal_id,
            "tenant_id":        tenant_id,
            "purpose":          issued.purpose.value,
            "token_id":         issued.token_id,
            "expires_at":       issued.expires_at.isoformat(),
            "verification_url": build_verification_url(issued.token_secret, issued.purpose, base_url=self._base_url),
        }
        try:
            r = httpx.post(self._url, json=payload, timeout=self._timeout)
            r.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("token_delivery_failed", token_id=issued.token_id, purpose=issued.purpose.value, error=str(exc))
            return False

        logger.info("token_delivered", token_id=issued.token_id, purpose=issued.purpose.value, principal_id=issued.principal_id)
        return True
