from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from services.job_runner.secrets import mask_secrets

from .catalog import ServiceCatalog
from .classifier import HuggingFaceClassifier
from .models import (
    SOURCE_REGEX_ERROR_FALLBACK,
    SOURCE_REGEX_FALLBACK,
    ParsedIntent,
    classifier_source,
)
from .rules import parse_rules

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.7


class IntentParser:
    """
    Two-tier command interpreter.

    The rule pass always runs and supplies service/environment/replicas.
    When enabled, the classifier may override the action if its top score
    clears the confidence threshold. Classifier failures never escape:
    the rule result comes back tagged "regex-error-fallback".
    """

    def __init__(
        self,
        *,
        catalog: ServiceCatalog | None = None,
        classifier: Optional[HuggingFaceClassifier] = None,
        default_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> None:
        self._catalog = catalog or ServiceCatalog()
        self._classifier = classifier
        self._default_threshold = default_threshold

    @property
    def catalog(self) -> ServiceCatalog:
        return self._catalog

    @property
    def classifier_available(self) -> bool:
        return self._classifier is not None and self._classifier.available

    def parse_rules(self, command: str) -> ParsedIntent:
        return parse_rules(command, self._catalog)

    async def parse(
        self,
        command: str,
        *,
        use_classifier: bool = True,
        confidence_threshold: Optional[float] = None,
    ) -> ParsedIntent:
        coarse = self.parse_rules(command)
        classifier = self._classifier
        if not use_classifier or not command.strip():
            return coarse
        if classifier is None or not classifier.available:
            return coarse

        threshold = (
            self._default_threshold
            if confidence_threshold is None
            else confidence_threshold
        )

        try:
            ranked = await classifier.classify(command)
        except Exception as exc:
            message = mask_secrets(str(exc) or type(exc).__name__, classifier.secrets)
            LOGGER.warning("classifier failed, using rule result: %s", message)
            return replace(coarse, source=SOURCE_REGEX_ERROR_FALLBACK, error=message)

        if not ranked:
            LOGGER.warning("classifier returned no scores, using rule result")
            return replace(
                coarse,
                source=SOURCE_REGEX_ERROR_FALLBACK,
                error="classifier returned no scores",
            )

        top_action, top_score = ranked[0]
        confidence = round(top_score, 3)
        ranked_view = tuple((a.value, round(s, 3)) for a, s in ranked[:3])

        if top_score >= threshold:
            return replace(
                coarse,
                action=top_action,
                confidence=confidence,
                source=classifier_source(classifier.model),
                ranked=ranked_view,
            )

        LOGGER.debug(
            "classifier top %s=%.3f below threshold %.2f; keeping %s",
            top_action.value,
            top_score,
            threshold,
            coarse.action.value,
        )
        return replace(
            coarse,
            confidence=confidence,
            source=SOURCE_REGEX_FALLBACK,
            ranked=ranked_view,
        )

    async def aclose(self) -> None:
        if self._classifier is not None:
            await self._classifier.aclose()
