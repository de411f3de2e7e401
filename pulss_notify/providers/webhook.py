"""Outbound webhook provider: POSTs the notification as JSON to a tenant URL."""

import hashlib
import hmac
import json
from typing import Any, Mapping

from pulss_notify.domain.models import RenderedContent

from .base import HTTPProvider, ProviderResult
from .exceptions import PermanentProviderError

SIGNATURE_HEADER = "X-Pulss-Signature"


class WebhookProvider(HTTPProvider):
    """Credentials: ``url`` (used unless the recipient address is itself a URL)
    and optional ``secret`` for an HMAC-SHA256 body signature."""

    name = "webhook"

    def send(
        self, payload: RenderedContent, recipient: str, credentials: Mapping[str, Any]
    ) -> ProviderResult:
        url = recipient if recipient and recipient.startswith(("http://", "https://")) else credentials.get("url")
        if not url:
            raise PermanentProviderError("Webhook has no target URL", provider=self.name)

        body = json.dumps(
            {"subject": payload.subject, "body": payload.body, "data": payload.data or {}},
            sort_keys=True,
            default=str,
        )
        headers = {"Content-Type": "application/json"}
        if credentials.get("secret"):
            headers[SIGNATURE_HEADER] = sign_body(body, credentials["secret"])

        response = self._post(url, form_data=body.encode("utf-8"), headers=headers)
        return ProviderResult(
            provider_message_id=response.headers.get("X-Request-Id"),
            response=f"HTTP {response.status_code}",
        )


def sign_body(body: str, secret: str) -> str:
    """Hex HMAC-SHA256 of the request body, for receivers to verify origin."""
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"sha256={digest}"
