"""Twilio SMS provider (Messages REST API)."""

from typing import Any, Mapping

from pulss_notify.domain.models import RenderedContent

from .base import HTTPProvider, ProviderResult
from .exceptions import PermanentProviderError

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"


class TwilioSMSProvider(HTTPProvider):
    """Credentials: ``account_sid``, ``auth_token``, ``from_number``."""

    name = "twilio"

    def send(
        self, payload: RenderedContent, recipient: str, credentials: Mapping[str, Any]
    ) -> ProviderResult:
        self._require(credentials, "account_sid", "auth_token", "from_number")
        if not recipient or not recipient.strip():
            raise PermanentProviderError("SMS recipient has no phone number", provider=self.name)

        account_sid = credentials["account_sid"]
        response = self._post(
            TWILIO_MESSAGES_URL.format(account_sid=account_sid),
            form_data={
                "From": credentials["from_number"],
                "To": recipient.strip(),
                "Body": payload.body,
            },
            auth=(account_sid, credentials["auth_token"]),
        )
        body = self._accepted_body(response)
        return ProviderResult(
            provider_message_id=body.get("sid"),
            response=body.get("status") or f"HTTP {response.status_code}",
        )
