from __future__ import annotations

import re
from typing import Dict, List, Optional, Tuple

from .catalog import ServiceCatalog
from .models import (
    REPLICAS_MAX,
    REPLICAS_MIN,
    SOURCE_REGEX,
    Action,
    ParsedIntent,
)

RULE_CONFIDENCE = 0.5
TAIL_MIN = 1
TAIL_MAX = 5000


def _word(body: str) -> re.Pattern[str]:
    # Word boundaries that treat '-' and '.' as part of a name, so
    # "log-service" never reads as the keyword "log".
    return re.compile(rf"(?<![\w.-])(?:{body})(?![\w.-])", re.IGNORECASE)


ENVIRONMENT_ALIASES: Dict[str, str] = {
    "prod": "production",
    "production": "production",
    "stage": "staging",
    "staging": "staging",
    "dev": "development",
    "develop": "development",
    "development": "development",
    "test": "test",
    "testing": "test",
    "qa": "qa",
    "uat": "uat",
}

_ENV_RE = re.compile(
    r"(?<![\w.-])(" + "|".join(sorted(ENVIRONMENT_ALIASES, key=len, reverse=True)) + r")(?![\w.-])",
    re.IGNORECASE,
)

# Highest precedence first.
ACTION_RULES: Tuple[Tuple[Action, re.Pattern[str]], ...] = (
    (Action.ROLLBACK, _word(r"roll\s*-?\s*back|revert(?:ed|ing)?")),
    (Action.SCALE, _word(r"spin\s*up|bring\s*up|scal(?:e|ed|ing)|replicas?|autoscal\w*")),
    (Action.RESTART, _word(r"restart\w*|reboot\w*|bounce")),
    (Action.LOGS, _word(r"logs?")),
    (Action.STATUS, _word(r"status|health\w*|ping")),
    (Action.DEPLOY, _word(r"deploy\w*|release|ship")),
)

_REPLICA_RULES: Tuple[re.Pattern[str], ...] = (
    re.compile(r"(?:\bto\b|=)\s*(\d+)\s*(?:replicas?|pods?)\b", re.IGNORECASE),
    re.compile(r"\bscale\b.*?(?<![\w.-])(\d+)(?![\w.-])", re.IGNORECASE),
    re.compile(r"\b(?:spin\s*up|bring\s*up|scale\s*up)\s*(\d+)\b", re.IGNORECASE),
)

_TAIL_RE = re.compile(r"\blast\s+(\d+)(?:\s*lines?)?\b", re.IGNORECASE)
_SERVICE_PHRASE_RE = re.compile(
    r"(?<![\w.-])([a-z0-9][a-z0-9._-]*)\s+(?:service|svc)\b", re.IGNORECASE
)
_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9._-]*", re.IGNORECASE)

_ACTION_WORDS = {
    "deploy",
    "deploys",
    "deploying",
    "deployment",
    "release",
    "ship",
    "rollback",
    "roll",
    "revert",
    "scale",
    "scaled",
    "scaling",
    "autoscale",
    "restart",
    "restarts",
    "reboot",
    "bounce",
    "log",
    "logs",
    "status",
    "health",
    "ping",
}

STOPWORDS = {
    "a",
    "all",
    "an",
    "and",
    "are",
    "at",
    "back",
    "be",
    "bring",
    "by",
    "can",
    "check",
    "cluster",
    "could",
    "count",
    "current",
    "display",
    "do",
    "does",
    "down",
    "env",
    "environment",
    "everything",
    "for",
    "from",
    "get",
    "give",
    "how",
    "i",
    "in",
    "instance",
    "instances",
    "into",
    "is",
    "it",
    "its",
    "last",
    "latest",
    "let",
    "lets",
    "line",
    "lines",
    "me",
    "my",
    "new",
    "now",
    "number",
    "of",
    "on",
    "onto",
    "or",
    "our",
    "please",
    "pod",
    "pods",
    "previous",
    "replica",
    "replicas",
    "see",
    "service",
    "services",
    "set",
    "show",
    "spin",
    "svc",
    "system",
    "tail",
    "that",
    "the",
    "this",
    "to",
    "up",
    "version",
    "view",
    "we",
    "what",
    "whats",
    "with",
    "would",
    "you",
}


def normalize_environment(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    key = raw.strip().lower()
    if not key:
        return None
    return ENVIRONMENT_ALIASES.get(key, key)


def extract_environment(text: str) -> Optional[str]:
    match = _ENV_RE.search(text)
    if not match:
        return None
    return ENVIRONMENT_ALIASES[match.group(1).lower()]


def _tokens(text: str) -> List[str]:
    return [t.rstrip("._-") for t in _TOKEN_RE.findall(text.lower())]


def _is_name_candidate(token: str) -> bool:
    if not token or token in STOPWORDS or token in _ACTION_WORDS:
        return False
    if token in ENVIRONMENT_ALIASES:
        return False
    return any(ch.isalpha() for ch in token)


def extract_service(text: str, catalog: ServiceCatalog) -> Optional[str]:
    for match in _SERVICE_PHRASE_RE.finditer(text):
        name = match.group(1).lower().rstrip("._-")
        if _is_name_candidate(name):
            return name

    tokens = _tokens(text)
    for token in tokens:
        if token in catalog:
            return token

    for token in tokens:
        if _is_name_candidate(token):
            return token
    return None


def extract_replicas(text: str) -> Optional[int]:
    for pattern in _REPLICA_RULES:
        match = pattern.search(text)
        if match:
            value = int(match.group(1))
            if REPLICAS_MIN <= value <= REPLICAS_MAX:
                return value
            return None
    return None


def extract_tail(text: str) -> Optional[int]:
    match = _TAIL_RE.search(text)
    if not match:
        return None
    value = int(match.group(1))
    if TAIL_MIN <= value <= TAIL_MAX:
        return value
    return None


def classify_action(text: str) -> Action:
    for action, pattern in ACTION_RULES:
        if pattern.search(text):
            return action
    return Action.UNKNOWN


def parse_rules(command: str, catalog: ServiceCatalog | None = None) -> ParsedIntent:
    """
    Rule-based interpretation of a free-text command.

    Always returns an intent; anything it cannot make sense of becomes
    Action.UNKNOWN with the fixed rule confidence.
    """
    text = (command or "").strip()
    if not text:
        return ParsedIntent(
            action=Action.UNKNOWN, confidence=RULE_CONFIDENCE, source=SOURCE_REGEX
        )

    action = classify_action(text)
    parameters: Dict[str, int] = {}
    if action is Action.LOGS:
        tail = extract_tail(text)
        if tail is not None:
            parameters["tail"] = tail

    return ParsedIntent(
        action=action,
        service=extract_service(text, catalog or ServiceCatalog()),
        environment=extract_environment(text),
        replicas=extract_replicas(text),
        confidence=RULE_CONFIDENCE,
        source=SOURCE_REGEX,
        parameters=parameters,
    )
