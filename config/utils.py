"""Helpers for reading configuration sections with per-instance overrides."""
from __future__ import annotations

from typing import Any, Dict, Optional


def get_config_section(source: Any, section: str) -> Dict:
    """Return a section from a Config, a SectionProxy mapping or a plain dict as a dict."""
    if source is None:
        return {}

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, {})
        to_dict = getattr(candidate, 'to_dict', None)
        if callable(to_dict):
            return dict(to_dict())
        if isinstance(candidate, dict):
            return dict(candidate)

    return {}


def merged_settings(source: Any, section: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Section values with ``overrides`` applied on top; ``None`` overrides are ignored."""
    settings = get_config_section(source, section)
    for key, value in (overrides or {}).items():
        if value is not None:
            settings[key] = value
    return settings
