import json
import unittest

import httpx

from services.intent.classifier import ClassifierConfig, HuggingFaceClassifier
from services.intent.models import Action
from services.intent.parser import IntentParser


def _zero_shot_handler(labels, scores):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"labels": labels, "scores": scores})

    return handler


def _classifier(handler, **config) -> HuggingFaceClassifier:
    cfg = ClassifierConfig(
        model=config.pop("model", "facebook/bart-large-mnli"),
        api_url="https://hf.test/models",
        api_key=config.pop("api_key", "hf_secretsecretsecretsecret"),
        **config,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HuggingFaceClassifier(cfg, client=client)


class TestIntentParser(unittest.IsolatedAsyncioTestCase):
    async def test_rules_only_when_classifier_disabled(self) -> None:
        parser = IntentParser()
        intent = await parser.parse("deploy api to prod", use_classifier=True)

        self.assertEqual(intent.action, Action.DEPLOY)
        self.assertEqual(intent.source, "regex")
        self.assertFalse(parser.classifier_available)

    async def test_classifier_accepted_above_threshold(self) -> None:
        classifier = _classifier(
            _zero_shot_handler(["restart", "deploy", "status"], [0.91, 0.05, 0.04])
        )
        parser = IntentParser(classifier=classifier)

        intent = await parser.parse("bounce the api please in staging")

        self.assertEqual(intent.action, Action.RESTART)
        self.assertEqual(intent.source, "hf:facebook/bart-large-mnli")
        self.assertEqual(intent.confidence, 0.91)
        self.assertEqual(intent.service, "api")
        self.assertEqual(intent.environment, "staging")
        self.assertEqual(intent.ranked[0], ("restart", 0.91))
        await parser.aclose()

    async def test_low_confidence_keeps_rule_action(self) -> None:
        classifier = _classifier(
            _zero_shot_handler(["status", "deploy"], [0.55, 0.45])
        )
        parser = IntentParser(classifier=classifier, default_threshold=0.7)

        intent = await parser.parse("deploy api to prod")

        self.assertEqual(intent.action, Action.DEPLOY)
        self.assertEqual(intent.source, "regex-fallback")
        self.assertEqual(intent.confidence, 0.55)

    async def test_request_threshold_overrides_default(self) -> None:
        classifier = _classifier(
            _zero_shot_handler(["status", "deploy"], [0.55, 0.45])
        )
        parser = IntentParser(classifier=classifier, default_threshold=0.7)

        intent = await parser.parse("deploy api to prod", confidence_threshold=0.5)

        self.assertEqual(intent.action, Action.STATUS)

    async def test_transport_error_falls_back_to_rules(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("boom", request=request)

        parser = IntentParser(classifier=_classifier(handler))
        intent = await parser.parse("scale web to 3 replicas")

        self.assertEqual(intent.action, Action.SCALE)
        self.assertEqual(intent.replicas, 3)
        self.assertEqual(intent.source, "regex-error-fallback")
        self.assertTrue(intent.error)

    async def test_http_error_is_masked(self) -> None:
        key = "hf_secretsecretsecretsecret"

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text=f"internal error for key {key}")

        parser = IntentParser(classifier=_classifier(handler, api_key=key))
        intent = await parser.parse("restart api")

        self.assertEqual(intent.source, "regex-error-fallback")
        self.assertNotIn(key, intent.error)

    async def test_rejected_key_retries_anonymously(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("authorization"))
            if request.headers.get("authorization"):
                return httpx.Response(401, json={"error": "bad token"})
            return httpx.Response(
                200, json={"labels": ["logs"], "scores": [0.88]}
            )

        parser = IntentParser(classifier=_classifier(handler))
        intent = await parser.parse("show me what api printed")

        self.assertEqual(intent.action, Action.LOGS)
        self.assertEqual(len(seen), 2)
        self.assertIsNotNone(seen[0])
        self.assertIsNone(seen[1])

    async def test_nli_strategy_scores_each_hypothesis(self) -> None:
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            text = json.loads(request.content)["inputs"]
            bodies.append(text)
            score = 0.95 if "roll back" in text else 0.1
            return httpx.Response(
                200,
                json=[[
                    {"label": "ENTAILMENT", "score": score},
                    {"label": "CONTRADICTION", "score": 1 - score},
                ]],
            )

        classifier = _classifier(handler, model="cross-encoder/nli-deberta-v3-base")
        parser = IntentParser(classifier=classifier)

        intent = await parser.parse("undo the last release of api")

        self.assertEqual(len(bodies), 6)
        self.assertTrue(all(" </s></s> " in b for b in bodies))
        self.assertEqual(intent.action, Action.ROLLBACK)
        self.assertEqual(intent.source, "hf:cross-encoder/nli-deberta-v3-base")

    async def test_classifier_skipped_per_request(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("classifier must not be called")

        parser = IntentParser(classifier=_classifier(handler))
        intent = await parser.parse("deploy api to prod", use_classifier=False)

        self.assertEqual(intent.source, "regex")

    async def test_keyless_classifier_is_not_called(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("classifier must not be called")

        parser = IntentParser(classifier=_classifier(handler, api_key=None))
        intent = await parser.parse("restart api")

        self.assertFalse(parser.classifier_available)
        self.assertEqual(intent.action, Action.RESTART)
        self.assertEqual(intent.source, "regex")
