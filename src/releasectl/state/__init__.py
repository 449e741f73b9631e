"""State management helpers for releasectl."""
from __future__ import annotations

from .registry import StateRegistry, StateRegistryError
from .sites import SiteRegistry, SiteSpec, validate_domain

__all__ = ["SiteRegistry", "SiteSpec", "StateRegistry", "StateRegistryError", "validate_domain"]
