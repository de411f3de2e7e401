"""Preference filter deciding whether, and when, a notification may be sent."""

from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from pulss_notify.config.models import AppConfig
from pulss_notify.domain.models import (
    Channel,
    DenyReason,
    NotificationType,
    PreferenceDecision,
    RecipientPreference,
)
from pulss_notify.logging import get_logger
from pulss_notify.persistence.exceptions import PersistenceError
from pulss_notify.persistence.repositories import (
    NotificationTypeRepository,
    PreferenceRepository,
    TenantToggleRepository,
)

logger = get_logger(__name__, component="preferences")


class PreferenceFilter:
    """Applies tenant switches and recipient preferences to a prospective send.

    Checks run in this order and the first failing one decides:

    1. tenant channel toggle
    2. tenant type toggle
    3. recipient channel opt-out
    4. recipient type opt-out (ignored for types that cannot be opted out of)
    5. quiet hours (defers rather than denies; critical types bypass it)

    When any lookup fails the filter fails closed: non-critical sends are
    denied with ``preference_lookup_failed`` and critical sends go through.
    """

    def __init__(self, app_config: AppConfig):
        self.critical_types = set(app_config.critical_types)

    def is_critical(self, type_code: str, notification_type: Optional[NotificationType] = None) -> bool:
        if notification_type is not None and notification_type.critical:
            return True
        return type_code in self.critical_types

    def check(
        self,
        session: Session,
        tenant_id: str,
        recipient_id: str,
        channel: Channel,
        type_code: str,
        now: datetime,
        notification_type: Optional[NotificationType] = None,
    ) -> PreferenceDecision:
        channel = Channel(channel)
        try:
            if notification_type is None:
                notification_type = NotificationTypeRepository(session).get(type_code)
            toggles = TenantToggleRepository(session)
            channel_on = toggles.is_enabled(tenant_id, "channel", channel.value)
            type_on = toggles.is_enabled(tenant_id, "type", type_code)
            preference = PreferenceRepository(session).get(tenant_id, recipient_id)
        except PersistenceError as e:
            critical = self.is_critical(type_code, notification_type)
            logger.error(
                f"Preference lookup failed, {'allowing critical' if critical else 'denying'} send: {e}",
                extra={
                    "event": "preference.lookup_failed",
                    "tenant_id": tenant_id,
                    "type_code": type_code,
                    "critical": critical,
                },
            )
            if critical:
                return PreferenceDecision.allow()
            return PreferenceDecision.deny(DenyReason.PREFERENCE_LOOKUP_FAILED)

        preference = preference or RecipientPreference.defaults(tenant_id, recipient_id)
        critical = self.is_critical(type_code, notification_type)
        can_opt_out = notification_type.can_opt_out if notification_type else True

        reason = None
        if not channel_on:
            reason = DenyReason.TENANT_CHANNEL_DISABLED
        elif not type_on:
            reason = DenyReason.TENANT_TYPE_DISABLED
        elif not preference.channel_enabled(channel):
            reason = DenyReason.CHANNEL_OPTED_OUT
        elif can_opt_out and type_code in preference.disabled_types:
            reason = DenyReason.TYPE_OPTED_OUT

        if reason is not None:
            logger.info(
                f"Send denied: {reason.value}",
                extra={
                    "event": "preference.denied",
                    "tenant_id": tenant_id,
                    "recipient_id": recipient_id,
                    "channel": channel.value,
                    "type_code": type_code,
                    "reason": reason.value,
                },
            )
            return PreferenceDecision.deny(reason)

        if not critical:
            defer_until = quiet_hours_end(preference, now)
            if defer_until is not None:
                logger.info(
                    "Send deferred until quiet hours end",
                    extra={
                        "event": "preference.deferred",
                        "tenant_id": tenant_id,
                        "recipient_id": recipient_id,
                        "defer_until": defer_until.isoformat(),
                    },
                )
                return PreferenceDecision.allow(defer_until=defer_until)

        return PreferenceDecision.allow()


def quiet_hours_end(preference: RecipientPreference, now: datetime) -> Optional[datetime]:
    """If now falls inside the recipient's quiet hours, return when they end (UTC).

    The window is read in the recipient's timezone and may wrap midnight,
    e.g. 22:00-07:00.
    """
    quiet = preference.quiet_hours
    if quiet is None:
        return None

    zone = ZoneInfo(preference.timezone)
    local_now = now.astimezone(zone)
    if not quiet.contains(local_now.time()):
        return None

    end = datetime.combine(local_now.date(), quiet.end, tzinfo=zone)
    if end <= local_now:
        end = datetime.combine(local_now.date() + timedelta(days=1), quiet.end, tzinfo=zone)
    return end.astimezone(timezone.utc)
