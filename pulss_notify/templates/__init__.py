"""Template resolution and rendering."""

from .defaults import load_defaults
from .renderer import TemplateRenderer, VerbatimUndefined
from .resolver import TemplateResolver

__all__ = ["TemplateRenderer", "TemplateResolver", "VerbatimUndefined", "load_defaults"]
