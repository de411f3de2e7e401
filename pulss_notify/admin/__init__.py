"""Administration of templates, providers, tenant switches and alerts."""

from .service import AdminService, mask_credentials

__all__ = ["AdminService", "mask_credentials"]
