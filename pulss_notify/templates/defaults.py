"""Platform defaults shipped with the package (catalog and templates)."""

from importlib import resources
from typing import Any, Dict, Iterable, List, Tuple

import yaml

from pulss_notify.domain.models import NotificationTemplate, NotificationType

DEFAULTS_RESOURCE = "defaults.yaml"


def load_defaults(critical_types: Iterable[str] = ()) -> Tuple[List[NotificationType], List[NotificationTemplate]]:
    """Read the bundled catalog and platform templates.

    Args:
        critical_types: Type codes to mark critical in the catalog

    Returns:
        Tuple of (notification types, platform default templates)
    """
    raw = _read_resource()
    critical = {code.strip().lower() for code in critical_types}

    types = []
    for entry in raw.get("notification_types") or []:
        entry = dict(entry)
        entry["critical"] = entry.get("critical", False) or entry["type_code"] in critical
        types.append(NotificationType.model_validate(entry))

    templates = [
        NotificationTemplate.model_validate({**entry, "tenant_id": None})
        for entry in raw.get("templates") or []
    ]
    return types, templates


def _read_resource() -> Dict[str, Any]:
    text = resources.files("pulss_notify.templates").joinpath(DEFAULTS_RESOURCE).read_text(encoding="utf-8")
    return yaml.safe_load(text) or {}
