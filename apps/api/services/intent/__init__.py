from __future__ import annotations

from .catalog import ServiceCatalog
from .models import Action, ParsedIntent, SlotOverrides
from .parser import IntentParser
from .slots import SlotCheck, apply_overrides, validate

__all__ = [
    "Action",
    "IntentParser",
    "ParsedIntent",
    "ServiceCatalog",
    "SlotCheck",
    "SlotOverrides",
    "apply_overrides",
    "validate",
]
