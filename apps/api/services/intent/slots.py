from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, List, Mapping, Tuple

from .catalog import ServiceCatalog
from .models import (
    CANONICAL_ENVIRONMENTS,
    REPLICAS_MAX,
    REPLICAS_MIN,
    Action,
    ParsedIntent,
    SlotOverrides,
)
from .rules import normalize_environment

REQUIRED_SLOTS: Mapping[Action, Tuple[str, ...]] = {
    Action.DEPLOY: ("service", "environment"),
    Action.SCALE: ("service", "replicas"),
    Action.LOGS: ("service",),
    Action.ROLLBACK: ("service",),
    Action.STATUS: ("service",),
    Action.RESTART: ("service",),
}

SUPPORTED_COMMANDS: Tuple[str, ...] = (
    "deploy <service> to <environment>",
    "logs <service> [last <number>]",
    "show logs for <service> [last <number>]",
    "scale <service> to <number> [replicas]",
    "rollback <service>",
    "status of <service>",
    "restart <service> [in <environment>]",
)


@dataclass(frozen=True)
class SlotCheck:
    ok: bool
    missing: Tuple[str, ...] = ()


def _slot_present(intent: ParsedIntent, slot: str) -> bool:
    if slot == "replicas":
        r = intent.replicas
        return isinstance(r, int) and REPLICAS_MIN <= r <= REPLICAS_MAX
    return bool(getattr(intent, slot))


def validate(intent: ParsedIntent) -> SlotCheck:
    if intent.is_unknown:
        return SlotCheck(ok=False, missing=("action",))

    missing = tuple(
        slot for slot in REQUIRED_SLOTS[intent.action] if not _slot_present(intent, slot)
    )
    return SlotCheck(ok=not missing, missing=missing)


def apply_overrides(intent: ParsedIntent, overrides: SlotOverrides | None) -> ParsedIntent:
    """Explicit override > classifier/rule result > nothing."""
    if overrides is None or overrides.is_empty:
        return intent

    changes: Dict[str, object] = {}
    if overrides.service is not None and overrides.service.strip():
        changes["service"] = overrides.service.strip()
    if overrides.environment is not None:
        env = normalize_environment(overrides.environment)
        if env:
            changes["environment"] = env
    if overrides.replicas is not None:
        changes["replicas"] = overrides.replicas
    if not changes:
        return intent
    return replace(intent, **changes)


def slot_choices(missing: Tuple[str, ...], catalog: ServiceCatalog) -> Dict[str, List[str]]:
    choices: Dict[str, List[str]] = {}
    if "service" in missing:
        choices["service"] = list(catalog.services)
    if "environment" in missing:
        choices["environment"] = list(CANONICAL_ENVIRONMENTS)
    return choices
