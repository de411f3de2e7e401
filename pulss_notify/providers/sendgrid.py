"""SendGrid email provider (v3 mail send API)."""

from typing import Any, Mapping

from pulss_notify.domain.models import RenderedContent

from .base import HTTPProvider, ProviderResult
from .smtp import html_to_text, normalize_email

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class SendGridEmailProvider(HTTPProvider):
    """Credentials: ``api_key``, ``from_address``, optional ``from_name``."""

    name = "sendgrid"

    def send(
        self, payload: RenderedContent, recipient: str, credentials: Mapping[str, Any]
    ) -> ProviderResult:
        self._require(credentials, "api_key", "from_address")
        to_address = normalize_email(recipient)

        sender = {"email": credentials["from_address"]}
        if credentials.get("from_name"):
            sender["name"] = credentials["from_name"]

        content = [{"type": "text/plain", "value": html_to_text(payload.body) if payload.is_html else payload.body}]
        if payload.is_html:
            content.append({"type": "text/html", "value": payload.body})

        response = self._post(
            SENDGRID_SEND_URL,
            json_data={
                "personalizations": [{"to": [{"email": to_address}]}],
                "from": sender,
                "subject": payload.subject,
                "content": content,
            },
            headers={"Authorization": f"Bearer {credentials['api_key']}"},
        )
        return ProviderResult(
            provider_message_id=response.headers.get("X-Message-Id"),
            response=f"HTTP {response.status_code}",
        )
