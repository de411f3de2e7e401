"""In-app provider: the stored job is the notification feed entry."""

from typing import Any, Mapping

from pulss_notify.domain.models import RenderedContent
from pulss_notify.persistence import new_id

from .base import NotificationProvider, ProviderResult


class InAppProvider(NotificationProvider):
    """Needs no credentials and makes no external call.

    Marking the job delivered is what makes it visible in the recipient's
    notification list.
    """

    name = "in_app"

    def send(
        self, payload: RenderedContent, recipient: str, credentials: Mapping[str, Any]
    ) -> ProviderResult:
        return ProviderResult(provider_message_id=new_id(), response="stored")
