from __future__ import annotations

import logging
import random
from functools import lru_cache
from typing import Optional

from services.executors import Executor, select_executor
from services.intent import IntentParser, ServiceCatalog
from services.intent.classifier import ClassifierConfig, HuggingFaceClassifier
from services.job_store import FileJobStore

from .clock import Clock, SystemClock
from .config import HubSettings
from .events import EventHub
from .orchestrator import JobOrchestrator
from .poller import PollPolicy, StatusPoller
from .protocol import SessionManager

LOGGER = logging.getLogger(__name__)


def poll_policy(settings: HubSettings) -> PollPolicy:
    return PollPolicy(
        initial_delay=settings.poll_initial_delay,
        interval=settings.poll_interval,
        jitter=settings.poll_jitter,
        max_attempts=max(1, settings.poll_max_attempts),
        backoff_cap=settings.poll_backoff_cap,
        request_timeout=settings.status_timeout_seconds,
    )


def build_parser(settings: HubSettings) -> IntentParser:
    catalog = ServiceCatalog.from_file(settings.service_catalog_path)
    config = ClassifierConfig(
        model=settings.hf_model,
        api_url=settings.hf_api_url,
        api_key=settings.hf_api_key,
        strategy=settings.hf_strategy,
        allow_anonymous=settings.hf_allow_anonymous,
        timeout_seconds=settings.hf_timeout_seconds,
    )
    classifier: Optional[HuggingFaceClassifier] = None
    if config.available:
        classifier = HuggingFaceClassifier(config)
        LOGGER.info("classifier: %s (%s)", config.model, config.resolved_strategy)
    else:
        LOGGER.info("classifier disabled (no HF_API_KEY); using rules only")
    return IntentParser(
        catalog=catalog,
        classifier=classifier,
        default_threshold=settings.confidence_threshold,
    )


def build_orchestrator(
    settings: HubSettings,
    *,
    clock: Clock | None = None,
    rng: random.Random | None = None,
    executor: Executor | None = None,
    parser: IntentParser | None = None,
) -> JobOrchestrator:
    clock = clock or SystemClock()
    rng = rng or random.Random()
    return JobOrchestrator(
        FileJobStore(settings.state_dir, default_max_retries=settings.job_max_retries),
        parser or build_parser(settings),
        executor or select_executor(settings, clock=clock, rng=rng),
        events=EventHub(),
        poller=StatusPoller(poll_policy(settings), clock=clock, rng=rng),
        submit_timeout=settings.submit_timeout_seconds,
        nlu_enabled=settings.nlu_enabled,
        confidence_threshold=settings.confidence_threshold,
        secrets=settings.secrets,
    )


@lru_cache(maxsize=1)
def get_orchestrator() -> JobOrchestrator:
    """
    Lazy singleton to avoid side effects on import time (e.g. network clients).
    """
    return build_orchestrator(HubSettings.from_env())


@lru_cache(maxsize=1)
def get_sessions() -> SessionManager:
    idle = HubSettings.from_env().session_idle_seconds
    # SESSION_IDLE_SECONDS <= 0 keeps sessions until they are deleted.
    return SessionManager(get_orchestrator(), idle_timeout=idle if idle > 0 else None)


def reset_runtime() -> None:
    get_sessions.cache_clear()
    get_orchestrator.cache_clear()
