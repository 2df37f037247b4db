from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from .models import KNOWN_ACTIONS, Action

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "cross-encoder/nli-deberta-v3-base"
DEFAULT_API_URL = "https://api-inference.huggingface.co/models"
HYPOTHESIS_TEMPLATE = "The user wants to {}."

ACTION_HYPOTHESES: Tuple[Tuple[Action, str], ...] = (
    (Action.DEPLOY, "The user wants to deploy a service."),
    (Action.ROLLBACK, "The user wants to roll back a deployment."),
    (Action.SCALE, "The user wants to scale the number of replicas."),
    (Action.RESTART, "The user wants to restart a service or pod."),
    (Action.LOGS, "The user wants to view logs."),
    (Action.STATUS, "The user wants to check the status or health of services."),
)

Ranked = List[Tuple[Action, float]]


class ClassifierError(RuntimeError):
    pass


@dataclass(frozen=True)
class ClassifierConfig:
    model: str = DEFAULT_MODEL
    api_url: str = DEFAULT_API_URL
    api_key: Optional[str] = None
    strategy: str = "auto"
    allow_anonymous: bool = False
    timeout_seconds: float = 15.0

    @property
    def resolved_strategy(self) -> str:
        raw = (self.strategy or "auto").strip().lower()
        if raw in {"nli", "zero-shot"}:
            return raw
        return "nli" if self.model.startswith("cross-encoder/") else "zero-shot"

    @property
    def available(self) -> bool:
        return bool(self.api_key) or self.allow_anonymous


class HuggingFaceClassifier:
    """
    Action classifier backed by the Hugging Face inference API.

    Strategies:
      - zero-shot: one request with all candidate labels
      - nli:       one entailment request per action hypothesis (run concurrently)

    A key rejected with 401/403 is retried once without credentials.
    """

    def __init__(
        self,
        config: ClassifierConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._owns_client = client is None

    @property
    def model(self) -> str:
        return self._config.model

    @property
    def available(self) -> bool:
        return self._config.available

    @property
    def secrets(self) -> List[str]:
        return [self._config.api_key] if self._config.api_key else []

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def classify(
        self, text: str, candidates: Sequence[Action] = KNOWN_ACTIONS
    ) -> Ranked:
        if self._config.resolved_strategy == "nli":
            ranked = await self._classify_nli(text, candidates)
        else:
            ranked = await self._classify_zero_shot(text, candidates)
        ranked.sort(key=lambda item: item[1], reverse=True)
        return ranked

    async def _classify_zero_shot(
        self, text: str, candidates: Sequence[Action]
    ) -> Ranked:
        payload = {
            "inputs": text,
            "parameters": {
                "candidate_labels": [a.value for a in candidates],
                "hypothesis_template": HYPOTHESIS_TEMPLATE,
            },
        }
        data = await self._post(payload)
        if isinstance(data, list) and data and isinstance(data[0], dict):
            data = data[0]
        if not isinstance(data, dict):
            raise ClassifierError("unexpected zero-shot response shape")

        labels = data.get("labels") or []
        scores = data.get("scores") or []
        if len(labels) != len(scores):
            raise ClassifierError("zero-shot labels/scores length mismatch")

        ranked: Ranked = []
        for label, score in zip(labels, scores):
            action = Action.parse(label)
            if action is Action.UNKNOWN:
                continue
            ranked.append((action, float(score)))
        return ranked

    async def _classify_nli(self, text: str, candidates: Sequence[Action]) -> Ranked:
        wanted = set(candidates)
        pairs = [(a, h) for a, h in ACTION_HYPOTHESES if a in wanted]
        scores = await asyncio.gather(
            *(self._entailment(text, hypothesis) for _, hypothesis in pairs)
        )
        return [(action, score) for (action, _), score in zip(pairs, scores)]

    async def _entailment(self, premise: str, hypothesis: str) -> float:
        data = await self._post({"inputs": f"{premise} </s></s> {hypothesis}"})
        labels: Any
        if isinstance(data, list) and data and isinstance(data[0], list):
            labels = data[0]
        elif isinstance(data, list):
            labels = data
        else:
            labels = []

        for item in labels:
            if not isinstance(item, dict):
                continue
            if "entail" in str(item.get("label", "")).lower():
                return float(item.get("score") or 0.0)
        return 0.0

    async def _post(self, payload: Dict[str, Any]) -> Any:
        url = f"{self._config.api_url.rstrip('/')}/{self._config.model}"
        params = {"wait_for_model": "true"}

        res = await self._client.post(
            url, json=payload, params=params, headers=self._headers(self._config.api_key)
        )
        if res.status_code in {401, 403} and self._config.api_key:
            LOGGER.info("classifier key rejected (%s); retrying anonymously", res.status_code)
            res = await self._client.post(
                url, json=payload, params=params, headers=self._headers(None)
            )

        if res.status_code >= 400:
            raise ClassifierError(f"HF {res.status_code}: {res.text[:300]}")
        try:
            return res.json()
        except ValueError as exc:
            raise ClassifierError(f"HF returned invalid JSON: {exc}") from exc

    @staticmethod
    def _headers(api_key: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers
