"""Test helper utilities for pulss-notify tests."""

from .providers import FakeClock, ScriptedProvider, scripted_factory

__all__ = ["FakeClock", "ScriptedProvider", "scripted_factory"]
