from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class Action(str, Enum):
    DEPLOY = "deploy"
    ROLLBACK = "rollback"
    SCALE = "scale"
    RESTART = "restart"
    LOGS = "logs"
    STATUS = "status"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Any) -> "Action":
        try:
            return cls(str(raw or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


# Everything a command can ask for; UNKNOWN is not a candidate label.
KNOWN_ACTIONS: Tuple[Action, ...] = (
    Action.DEPLOY,
    Action.ROLLBACK,
    Action.SCALE,
    Action.RESTART,
    Action.LOGS,
    Action.STATUS,
)

CANONICAL_ENVIRONMENTS: Tuple[str, ...] = (
    "production",
    "staging",
    "development",
    "test",
    "qa",
    "uat",
)

REPLICAS_MIN = 0
REPLICAS_MAX = 100

SOURCE_REGEX = "regex"
SOURCE_REGEX_FALLBACK = "regex-fallback"
SOURCE_REGEX_ERROR_FALLBACK = "regex-error-fallback"


def classifier_source(model: str) -> str:
    return f"hf:{model}"


@dataclass(frozen=True)
class ParsedIntent:
    action: Action
    service: Optional[str] = None
    environment: Optional[str] = None
    replicas: Optional[int] = None
    confidence: float = 0.5
    source: str = SOURCE_REGEX
    parameters: Mapping[str, Any] = field(default_factory=dict)
    ranked: Tuple[Tuple[str, float], ...] = ()
    error: Optional[str] = None

    @property
    def is_unknown(self) -> bool:
        return self.action is Action.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "action": self.action.value,
            "service": self.service,
            "environment": self.environment,
            "replicas": self.replicas,
            "confidence": self.confidence,
            "source": self.source,
        }
        if self.parameters:
            data["parameters"] = dict(self.parameters)
        if self.ranked:
            data["ranked_actions"] = [
                {"action": action, "score": score} for action, score in self.ranked
            ]
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ParsedIntent":
        replicas = data.get("replicas")
        ranked_raw = data.get("ranked_actions") or []
        ranked = tuple(
            (str(item.get("action")), float(item.get("score") or 0.0))
            for item in ranked_raw
            if isinstance(item, Mapping)
        )
        return cls(
            action=Action.parse(data.get("action")),
            service=data.get("service") or None,
            environment=data.get("environment") or None,
            replicas=int(replicas) if isinstance(replicas, (int, float)) else None,
            confidence=float(data.get("confidence") or 0.0),
            source=str(data.get("source") or SOURCE_REGEX),
            parameters=dict(data.get("parameters") or {}),
            ranked=ranked,
            error=data.get("error"),
        )


@dataclass(frozen=True)
class SlotOverrides:
    """Typed patch applied on top of a parsed intent before validation."""

    service: Optional[str] = None
    environment: Optional[str] = None
    replicas: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.service is None and self.environment is None and self.replicas is None
