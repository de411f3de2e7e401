"""Recipient preference and tenant toggle filtering."""

from .filter import PreferenceFilter, quiet_hours_end

__all__ = ["PreferenceFilter", "quiet_hours_end"]
