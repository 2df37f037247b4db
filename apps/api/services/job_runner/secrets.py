from __future__ import annotations

import re
from typing import Iterable, List

MASK = "********"

_INLINE_VALUE_PATTERNS = [
    re.compile(r"(?i)((?:authorization\s*:\s*)(?:bearer|token)\s+)([^\s\"']+)"),
    re.compile(r"(?i)((?:token|api_key|apikey|access_token)\s*[:=]\s*)([^\s&\"']+)"),
]

# Provider token shapes: GitHub classic/fine-grained/app tokens, Hugging Face.
_PROVIDER_TOKENS = re.compile(
    r"\b(?:gh[pousr]_[A-Za-z0-9]{20,}|github_pat_[A-Za-z0-9_]{20,}|hf_[A-Za-z0-9]{20,})\b"
)


def dedupe(items: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for item in items:
        if not item or item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


def mask_secrets(text: str, secrets: Iterable[str]) -> str:
    """
    Redact credentials from text that is about to be stored or sent to a client.

    Known secret values are replaced first, then inline "token=..." style
    values and anything shaped like a provider token.
    """
    if not text:
        return text

    redacted = text
    for secret in sorted({s for s in secrets if s}, key=len, reverse=True):
        if secret in redacted:
            redacted = redacted.replace(secret, MASK)

    for pattern in _INLINE_VALUE_PATTERNS:
        redacted = pattern.sub(lambda m: f"{m.group(1)}{MASK}", redacted)

    return _PROVIDER_TOKENS.sub(MASK, redacted)
