"""SMTP email provider built on smtplib."""

import html
import re
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Callable, Mapping, Optional

from email_validator import EmailNotValidError, validate_email

from pulss_notify.domain.models import RenderedContent
from pulss_notify.logging import get_logger

from .base import DEFAULT_TIMEOUT_SECONDS, NotificationProvider, ProviderResult
from .exceptions import PermanentProviderError, ProviderCredentialsError, TransientProviderError

logger = get_logger(__name__, component="provider")


class SMTPEmailProvider(NotificationProvider):
    """Sends email through an SMTP relay.

    Credentials: ``host``, ``port`` (465 means implicit TLS), ``username``,
    ``password``, ``from_address`` and optionally ``use_tls`` (STARTTLS,
    default true).
    """

    name = "smtp"

    def __init__(
        self,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
        smtp_factory: Optional[Callable] = None,
        smtp_ssl_factory: Optional[Callable] = None,
    ):
        super().__init__(timeout=timeout)
        self.smtp_factory = smtp_factory or smtplib.SMTP
        self.smtp_ssl_factory = smtp_ssl_factory or smtplib.SMTP_SSL

    def send(
        self, payload: RenderedContent, recipient: str, credentials: Mapping[str, Any]
    ) -> ProviderResult:
        self._require(credentials, "host", "from_address")
        to_address = normalize_email(recipient)
        message = build_email_message(payload, credentials["from_address"], to_address)

        host = credentials["host"]
        port = int(credentials.get("port", 587))
        smtp = None
        try:
            if port == 465:
                smtp = self.smtp_ssl_factory(
                    host, port, timeout=self.timeout, context=ssl.create_default_context()
                )
            else:
                smtp = self.smtp_factory(host, port, timeout=self.timeout)
                if credentials.get("use_tls", True):
                    smtp.starttls(context=ssl.create_default_context())

            if credentials.get("username") and credentials.get("password"):
                smtp.login(credentials["username"], credentials["password"])

            smtp.send_message(message)
        except smtplib.SMTPRecipientsRefused as e:
            raise PermanentProviderError(
                f"SMTP server refused recipient {to_address}", provider=self.name
            ) from e
        except smtplib.SMTPAuthenticationError as e:
            raise ProviderCredentialsError(
                f"SMTP authentication failed: {e.smtp_code}", provider=self.name, status_code=e.smtp_code
            ) from e
        except smtplib.SMTPSenderRefused as e:
            raise PermanentProviderError(f"SMTP server refused sender: {e}", provider=self.name) from e
        except smtplib.SMTPResponseException as e:
            # 4xx replies are temporary by definition in RFC 5321.
            error_cls = TransientProviderError if 400 <= e.smtp_code < 500 else PermanentProviderError
            raise error_cls(
                f"SMTP error {e.smtp_code}: {e.smtp_error!r}", provider=self.name, status_code=e.smtp_code
            ) from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransientProviderError(f"SMTP connection error: {e}", provider=self.name) from e
        finally:
            if smtp is not None:
                try:
                    smtp.quit()
                except (smtplib.SMTPException, OSError) as e:
                    logger.warning(f"Error closing SMTP connection: {e}")

        logger.debug(
            "Email handed to SMTP relay",
            extra={"event": "provider.smtp.sent", "provider": self.name},
        )
        return ProviderResult(provider_message_id=message["Message-ID"], response="accepted by relay")


def normalize_email(address: str) -> str:
    """Validate one address, raising PermanentProviderError when it is unusable."""
    try:
        return validate_email(address or "", check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise PermanentProviderError(f"Invalid recipient email address {address!r}: {e}") from e


def build_email_message(payload: RenderedContent, from_address: str, to_address: str) -> EmailMessage:
    """Build a message with a plain-text part and, for HTML bodies, an HTML alternative."""
    message = EmailMessage()
    message["Subject"] = payload.subject
    message["From"] = from_address
    message["To"] = to_address
    message["Message-ID"] = make_msgid(domain=from_address.rsplit("@", 1)[-1])

    if payload.is_html:
        message.set_content(html_to_text(payload.body))
        message.add_alternative(payload.body, subtype="html")
    else:
        message.set_content(payload.body)
    return message


def html_to_text(html_text: str) -> str:
    """Plain-text rendition of an HTML body for the text/plain part."""
    if not html_text:
        return ""
    text = re.sub(r"<br\s*/?>", "\n", html_text, flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
