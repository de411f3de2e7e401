"""Firebase Cloud Messaging push provider (HTTP send endpoint)."""

from typing import Any, Mapping

from pulss_notify.domain.models import RenderedContent

from .base import HTTPProvider, ProviderResult
from .exceptions import PermanentProviderError, TransientProviderError

FCM_SEND_URL = "https://fcm.googleapis.com/fcm/send"

# Per-message errors reported inside an HTTP 200 body.
_TRANSIENT_FCM_ERRORS = {"Unavailable", "InternalServerError", "DeviceMessageRateExceeded"}


class FCMPushProvider(HTTPProvider):
    """Credentials: ``server_key``. The recipient is the device registration token."""

    name = "fcm"

    def send(
        self, payload: RenderedContent, recipient: str, credentials: Mapping[str, Any]
    ) -> ProviderResult:
        self._require(credentials, "server_key")
        if not recipient:
            raise PermanentProviderError("Push recipient has no device token", provider=self.name)

        message = {
            "to": recipient,
            "notification": {"title": payload.subject, "body": payload.body},
        }
        if payload.data:
            message["data"] = {key: str(value) for key, value in payload.data.items()}

        response = self._post(
            FCM_SEND_URL,
            json_data=message,
            headers={"Authorization": f"key={credentials['server_key']}"},
        )
        body = self._accepted_body(response)
        results = body.get("results") or [{}]
        result = results[0] if isinstance(results, list) and isinstance(results[0], dict) else {}

        error = result.get("error")
        if error:
            error_cls = TransientProviderError if error in _TRANSIENT_FCM_ERRORS else PermanentProviderError
            raise error_cls(f"FCM rejected message: {error}", provider=self.name)

        return ProviderResult(provider_message_id=result.get("message_id"), response="accepted")
