"""Base class and shared HTTP handling for notification providers."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import requests

from pulss_notify.domain.models import RenderedContent
from pulss_notify.logging import get_logger

from .exceptions import PermanentProviderError, ProviderCredentialsError, TransientProviderError

logger = get_logger(__name__, component="provider")

DEFAULT_TIMEOUT_SECONDS = 10
USER_AGENT = "PulssNotify/1.0"


@dataclass
class ProviderResult:
    """What a vendor returned for an accepted message.

    Attributes:
        provider_message_id: Vendor id for the message, used to match engagement reports
        response: Short human-readable summary of the vendor response
    """

    provider_message_id: Optional[str] = None
    response: Optional[str] = None


class NotificationProvider(ABC):
    """Sends one rendered message to one recipient through one vendor.

    Providers are stateless apart from their HTTP session; credentials are
    passed on every call so a configuration change applies to the next send.
    """

    name: str = ""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.timeout = timeout

    @abstractmethod
    def send(
        self, payload: RenderedContent, recipient: str, credentials: Mapping[str, Any]
    ) -> ProviderResult:
        """Deliver the payload.

        Raises:
            TransientProviderError: The vendor may accept a later retry
            PermanentProviderError: Retrying cannot succeed
        """

    def _require(self, credentials: Mapping[str, Any], *keys: str) -> None:
        missing = [key for key in keys if not credentials.get(key)]
        if missing:
            raise ProviderCredentialsError(
                f"{self.name} provider is missing credentials: {', '.join(missing)}",
                provider=self.name,
            )


class HTTPProvider(NotificationProvider):
    """Provider talking to a vendor's HTTP API through requests."""

    def __init__(
        self, timeout: int = DEFAULT_TIMEOUT_SECONDS, session: Optional[requests.Session] = None
    ) -> None:
        super().__init__(timeout=timeout)
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": USER_AGENT})

    def _post(
        self,
        url: str,
        json_data: Optional[Dict[str, Any]] = None,
        form_data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[tuple] = None,
    ) -> requests.Response:
        """POST to the vendor and classify failures.

        5xx, 429, timeouts and connection errors are transient; every other
        status of 400 or above is permanent, with 401 and 403
        reported as rejected credentials.

        Raises:
            TransientProviderError, PermanentProviderError
        """
        try:
            logger.debug(
                f"HTTP POST to {self.name}",
                extra={"event": "provider.request", "provider": self.name, "timeout": self.timeout},
            )
            response = self._session.post(
                url,
                json=json_data,
                data=form_data,
                headers=headers,
                auth=auth,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise TransientProviderError(
                f"{self.name} request timed out after {self.timeout} seconds", provider=self.name
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise TransientProviderError(
                f"{self.name} connection failed: {e}", provider=self.name
            ) from e
        except requests.exceptions.RequestException as e:
            raise PermanentProviderError(
                f"{self.name} request could not be sent: {e}", provider=self.name
            ) from e

        status = response.status_code
        if status < 400:
            return response

        detail = _response_excerpt(response)
        message = f"{self.name} returned HTTP {status}: {detail}"
        if status >= 500 or status == 429:
            logger.warning(
                message,
                extra={"event": "provider.retryable_error", "provider": self.name, "status_code": status},
            )
            raise TransientProviderError(message, provider=self.name, status_code=status)

        logger.log(
            logging.ERROR,
            message,
            extra={"event": "provider.rejected", "provider": self.name, "status_code": status},
        )
        error_cls = ProviderCredentialsError if status in (401, 403) else PermanentProviderError
        raise error_cls(message, provider=self.name, status_code=status)

    def _accepted_body(self, response: requests.Response) -> Dict[str, Any]:
        """JSON body of an accepted response, or {} when the vendor sent none.

        The message is already accepted at this point, so an unreadable body
        must not turn into an error that would cause a resend.
        """
        try:
            body = response.json()
        except (ValueError, requests.exceptions.JSONDecodeError):
            logger.warning(
                f"{self.name} accepted the message but returned a non-JSON body",
                extra={
                    "event": "provider.response.unparsed",
                    "provider": self.name,
                    "status_code": response.status_code,
                },
            )
            return {}
        return body if isinstance(body, dict) else {}


def _response_excerpt(response: requests.Response, limit: int = 200) -> str:
    text = (response.text or response.reason or "").strip()
    return text[:limit]
