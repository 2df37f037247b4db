from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional

import yaml

LOGGER = logging.getLogger(__name__)

DEFAULT_SERVICES: tuple[str, ...] = (
    "api",
    "backend",
    "server",
    "web",
    "webapp",
    "frontend",
    "db",
    "database",
    "worker",
    "auth",
    "user",
)


class ServiceCatalog:
    """
    Known-service lexicon.

    Used by the rule parser to recognize bare service names and offered to
    clients as choices when a command is missing its service.

    Optional YAML file (SERVICE_CATALOG_PATH):

      services:
        - api-service
        - frontend
    """

    def __init__(self, services: Iterable[str] | None = None) -> None:
        cleaned: List[str] = []
        seen: set[str] = set()
        for raw in services if services is not None else DEFAULT_SERVICES:
            name = str(raw or "").strip().lower()
            if name and name not in seen:
                cleaned.append(name)
                seen.add(name)
        self._services = tuple(cleaned)
        self._lookup: FrozenSet[str] = frozenset(cleaned)

    @property
    def services(self) -> tuple[str, ...]:
        return self._services

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._lookup

    @classmethod
    def from_file(cls, path: Optional[str]) -> "ServiceCatalog":
        raw = (path or "").strip()
        if not raw:
            return cls()

        p = Path(raw)
        if not p.is_file():
            LOGGER.warning("service catalog %s not found; using defaults", raw)
            return cls()

        try:
            data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            LOGGER.warning("service catalog %s unreadable (%s); using defaults", raw, exc)
            return cls()

        services = data.get("services") if isinstance(data, dict) else None
        if not isinstance(services, list) or not services:
            LOGGER.warning("service catalog %s has no services list; using defaults", raw)
            return cls()
        return cls(str(s) for s in services if isinstance(s, (str, int)))

    @classmethod
    def from_env(cls) -> "ServiceCatalog":
        return cls.from_file(os.getenv("SERVICE_CATALOG_PATH"))
