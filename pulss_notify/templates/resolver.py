"""Lookup of the template that applies to a tenant's send."""

from sqlalchemy.orm import Session

from pulss_notify.domain.exceptions import TemplateMissing
from pulss_notify.domain.models import Channel, NotificationTemplate
from pulss_notify.logging import get_logger
from pulss_notify.persistence.repositories import TemplateRepository

logger = get_logger(__name__, component="renderer")


class TemplateResolver:
    """Tenant template first, platform default second.

    Inactive tenant templates are skipped so a tenant can switch back to the
    platform text without deleting their own.
    """

    def resolve(
        self, session: Session, tenant_id: str, type_code: str, channel: Channel
    ) -> NotificationTemplate:
        """Return the template to render.

        Raises:
            TemplateMissing: If neither the tenant nor the platform has an active template
        """
        channel_value = Channel(channel).value
        repo = TemplateRepository(session)

        template = repo.get(tenant_id, type_code, channel_value)
        if template is not None:
            return template

        template = repo.get(None, type_code, channel_value)
        if template is not None:
            logger.debug(
                f"Using platform default template for {type_code}/{channel_value}",
                extra={"event": "template.resolved.platform_default", "type_code": type_code},
            )
            return template

        raise TemplateMissing(tenant_id, type_code, channel_value)
