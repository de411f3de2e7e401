"""Persistence layer for notification state.

Public API:
    - init_database(database_url) / get_session() / close_database() / get_engine()
    - Repositories: NotificationTypeRepository, TemplateRepository, JobRepository,
      PreferenceRepository, ProviderConfigRepository, TenantToggleRepository,
      DeliveryEventRepository, AnalyticsRepository, AdminAlertRepository
    - Exceptions: PersistenceError and its subclasses

Example usage:
    >>> from pulss_notify.persistence import init_database, get_session, JobRepository
    >>> init_database("sqlite:///./data/pulss_notify.db")
    >>> with get_session() as session:
    ...     job = JobRepository(session).get("2f1c...")
"""

from .database import close_database, get_engine, get_session, init_database
from .exceptions import (
    DatabaseConnectionError,
    DataIntegrityError,
    PersistenceError,
    RecordNotFoundError,
)
from .repositories import (
    AdminAlertRepository,
    AnalyticsRepository,
    DeliveryEventRepository,
    JobRepository,
    NotificationTypeRepository,
    PreferenceRepository,
    ProviderConfigRepository,
    TemplateRepository,
    TenantToggleRepository,
    new_id,
)

__all__ = [
    "init_database",
    "get_session",
    "close_database",
    "get_engine",
    "new_id",
    "AdminAlertRepository",
    "AnalyticsRepository",
    "DeliveryEventRepository",
    "JobRepository",
    "NotificationTypeRepository",
    "PreferenceRepository",
    "ProviderConfigRepository",
    "TemplateRepository",
    "TenantToggleRepository",
    "PersistenceError",
    "DatabaseConnectionError",
    "RecordNotFoundError",
    "DataIntegrityError",
]
