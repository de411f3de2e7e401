"""Admin alerts raised when a job fails for a reason a tenant admin must fix."""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from pulss_notify.domain.models import AdminAlert
from pulss_notify.logging import get_logger
from pulss_notify.persistence.repositories import AdminAlertRepository

logger = get_logger(__name__, component="queue")

DELIVERY_FAILED = "delivery_failed"


def raise_admin_alert(
    session: Session,
    tenant_id: str,
    kind: str,
    message: str,
    now: datetime,
    job_id: Optional[str] = None,
) -> AdminAlert:
    alert = AdminAlertRepository(session).create(
        AdminAlert(tenant_id=tenant_id, job_id=job_id, kind=kind, message=message, created_at=now)
    )
    logger.warning(
        f"Admin alert raised: {message}",
        extra={"event": "admin_alert.raised", "tenant_id": tenant_id, "job_id": job_id, "kind": kind},
    )
    return alert
