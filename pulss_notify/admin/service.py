"""Tenant and platform administration: templates, providers, switches, alerts."""

from datetime import date, datetime
from typing import Any, Callable, ContextManager, Dict, List, Optional

from sqlalchemy.orm import Session

from pulss_notify.analytics.reports import (
    AnalyticsReport,
    export_report,
    get_analytics,
    get_platform_analytics,
)
from pulss_notify.config.models import AppConfig
from pulss_notify.domain.exceptions import UnknownNotificationType
from pulss_notify.domain.models import (
    AdminAlert,
    Channel,
    NotificationTemplate,
    NotificationType,
    ProviderConfig,
    RecipientPreference,
    TenantToggle,
)
from pulss_notify.logging import get_logger
from pulss_notify.persistence import get_session
from pulss_notify.persistence.exceptions import RecordNotFoundError
from pulss_notify.persistence.repositories import (
    AdminAlertRepository,
    NotificationTypeRepository,
    PreferenceRepository,
    ProviderConfigRepository,
    TemplateRepository,
    TenantToggleRepository,
)
from pulss_notify.providers.factory import get_provider_class
from pulss_notify.templates.defaults import load_defaults
from pulss_notify.templates.renderer import TemplateRenderer
from pulss_notify.utils.timestamps import utc_now

logger = get_logger(__name__, component="admin")

MASK = "********"


def mask_credentials(credentials: Dict[str, Any]) -> Dict[str, Any]:
    """Credentials with every value replaced, keeping the keys visible."""
    return {key: MASK for key in credentials}


class AdminService:
    """Configuration operations behind the tenant admin and superadmin screens.

    ``tenant_id`` None addresses the platform scope for templates and
    provider configurations. Everything else is per tenant.
    """

    def __init__(
        self,
        app_config: AppConfig,
        renderer: Optional[TemplateRenderer] = None,
        clock: Callable[[], datetime] = utc_now,
        session_factory: Callable[[], ContextManager[Session]] = get_session,
    ):
        self.app_config = app_config
        self.renderer = renderer or TemplateRenderer(app_config.rendering)
        self.clock = clock
        self.session_factory = session_factory

    # Templates

    def upsert_template(self, template: NotificationTemplate) -> NotificationTemplate:
        """Create or replace a template.

        Raises:
            UnknownNotificationType: If the type code is not in the catalog
            TemplateRenderError: If subject or body do not compile
        """
        self.renderer.validate(template)
        with self.session_factory() as session:
            self._require_type(session, template.type_code)
            saved = TemplateRepository(session).upsert(template, self.clock())
        logger.info(
            f"Template {saved.type_code}/{saved.channel.value} saved",
            extra={"event": "admin.template.saved", "tenant_id": saved.tenant_id, "type_code": saved.type_code},
        )
        return saved

    def delete_template(self, tenant_id: Optional[str], type_code: str, channel: Channel | str) -> None:
        """Raises RecordNotFoundError if no such template exists."""
        with self.session_factory() as session:
            if not TemplateRepository(session).delete(tenant_id, type_code, channel):
                raise RecordNotFoundError(f"No template {type_code}/{Channel(channel).value} for tenant {tenant_id}")
        logger.info(
            f"Template {type_code}/{Channel(channel).value} deleted",
            extra={"event": "admin.template.deleted", "tenant_id": tenant_id, "type_code": type_code},
        )

    def list_templates(self, tenant_id: Optional[str], include_platform: bool = False) -> List[NotificationTemplate]:
        with self.session_factory() as session:
            return TemplateRepository(session).list(tenant_id, include_platform=include_platform)

    # Provider configuration

    def upsert_provider_config(self, config: ProviderConfig) -> ProviderConfig:
        """Save the provider a tenant (or the platform) uses for a channel.

        Raises:
            UnknownProviderError: If the provider name is not registered
        """
        get_provider_class(config.provider)
        with self.session_factory() as session:
            saved = ProviderConfigRepository(session).upsert(config, self.clock())
        logger.info(
            f"Provider {saved.provider} configured for {saved.channel.value}",
            extra={
                "event": "admin.provider.saved",
                "tenant_id": saved.tenant_id,
                "channel": saved.channel.value,
                "provider": saved.provider,
            },
        )
        return saved.model_copy(update={"credentials": mask_credentials(saved.credentials)})

    def delete_provider_config(self, tenant_id: Optional[str], channel: Channel | str) -> None:
        """Raises RecordNotFoundError if nothing was configured."""
        with self.session_factory() as session:
            if not ProviderConfigRepository(session).delete(tenant_id, channel):
                raise RecordNotFoundError(f"No provider configured for {Channel(channel).value} (tenant {tenant_id})")
        logger.info(
            f"Provider configuration for {Channel(channel).value} removed",
            extra={"event": "admin.provider.deleted", "tenant_id": tenant_id, "channel": Channel(channel).value},
        )

    def list_provider_configs(self, tenant_id: Optional[str]) -> List[ProviderConfig]:
        """Provider configurations with credential values masked."""
        with self.session_factory() as session:
            configs = ProviderConfigRepository(session).list(tenant_id)
        return [c.model_copy(update={"credentials": mask_credentials(c.credentials)}) for c in configs]

    # Tenant switches and recipient preferences

    def set_tenant_toggle(self, tenant_id: str, scope: str, key: str, enabled: bool) -> TenantToggle:
        """Switch a channel (scope "channel") or type code (scope "type") on or off."""
        if scope == "channel":
            key = Channel(key.strip().lower()).value
        with self.session_factory() as session:
            if scope == "type":
                self._require_type(session, key)
            toggle = TenantToggleRepository(session).set(tenant_id, scope, key, enabled, self.clock())
        logger.info(
            f"Tenant {scope} {toggle.key} {'enabled' if enabled else 'disabled'}",
            extra={"event": "admin.toggle.saved", "tenant_id": tenant_id, "scope": scope, "key": toggle.key},
        )
        return toggle

    def list_tenant_toggles(self, tenant_id: str) -> List[TenantToggle]:
        with self.session_factory() as session:
            return TenantToggleRepository(session).list(tenant_id)

    def upsert_preference(self, preference: RecipientPreference) -> RecipientPreference:
        with self.session_factory() as session:
            return PreferenceRepository(session).upsert(preference, self.clock())

    def get_preference(self, tenant_id: str, recipient_id: str) -> RecipientPreference:
        """Saved preferences, or the defaults for a recipient who never saved any."""
        with self.session_factory() as session:
            preference = PreferenceRepository(session).get(tenant_id, recipient_id)
        return preference or RecipientPreference.defaults(tenant_id, recipient_id)

    # Catalog

    def upsert_notification_type(self, notification_type: NotificationType) -> NotificationType:
        with self.session_factory() as session:
            return NotificationTypeRepository(session).upsert(notification_type)

    def list_notification_types(self) -> List[NotificationType]:
        with self.session_factory() as session:
            return NotificationTypeRepository(session).list_all()

    def seed_platform_defaults(self) -> Dict[str, int]:
        """Load the bundled catalog and platform templates.

        Safe to run repeatedly: existing rows are updated in place.

        Returns:
            Counts of seeded types and templates
        """
        types, templates = load_defaults(self.app_config.critical_types)
        now = self.clock()
        with self.session_factory() as session:
            type_repo = NotificationTypeRepository(session)
            for notification_type in types:
                type_repo.upsert(notification_type)
            template_repo = TemplateRepository(session)
            for template in templates:
                self.renderer.validate(template)
                template_repo.upsert(template, now)

        counts = {"types": len(types), "templates": len(templates)}
        logger.info(
            f"Seeded {counts['types']} notification types and {counts['templates']} platform templates",
            extra={"event": "admin.defaults.seeded", **counts},
        )
        return counts

    # Alerts

    def list_admin_alerts(self, tenant_id: str, include_acknowledged: bool = False) -> List[AdminAlert]:
        with self.session_factory() as session:
            return AdminAlertRepository(session).list(tenant_id, include_acknowledged=include_acknowledged)

    def acknowledge_alert(self, tenant_id: str, alert_id: str) -> None:
        """Raises RecordNotFoundError if the tenant has no such alert."""
        with self.session_factory() as session:
            if not AdminAlertRepository(session).acknowledge(tenant_id, alert_id):
                raise RecordNotFoundError(f"No alert {alert_id} for tenant {tenant_id}")

    # Analytics

    def get_analytics(
        self,
        tenant_id: str,
        start: date,
        end: date,
        channel: Optional[Channel | str] = None,
        type_code: Optional[str] = None,
    ) -> AnalyticsReport:
        if start > end:
            raise ValueError("start must not be after end")
        with self.session_factory() as session:
            return get_analytics(
                session,
                tenant_id,
                start,
                end,
                channel=Channel(channel).value if channel else None,
                type_code=type_code,
            )

    def export_analytics(self, tenant_id: str, start: date, end: date, fmt: str = "csv") -> str:
        """Tenant analytics as CSV or JSON text with the fixed export columns."""
        return export_report(self.get_analytics(tenant_id, start, end), fmt)

    def get_platform_analytics(self, start: date, end: date) -> AnalyticsReport:
        if start > end:
            raise ValueError("start must not be after end")
        with self.session_factory() as session:
            return get_platform_analytics(session, start, end)

    def _require_type(self, session: Session, type_code: str) -> None:
        if NotificationTypeRepository(session).get(type_code) is None:
            raise UnknownNotificationType(type_code)
