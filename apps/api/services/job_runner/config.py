from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

LOGGER = logging.getLogger(__name__)


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("%s=%r is not an integer; using %s", name, raw, default)
        return default


def env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("%s=%r is not a number; using %s", name, raw, default)
        return default


def _first_env(*names: str) -> Optional[str]:
    for name in names:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return None


@dataclass(frozen=True)
class HubSettings:
    state_dir: Path
    executor_backend: str
    remote_execution_enabled: bool

    github_token: Optional[str]
    github_owner: str
    github_repo: str
    github_workflow: str
    github_ref: str
    github_api_url: str
    run_name_template: str

    hf_api_key: Optional[str]
    hf_model: str
    hf_api_url: str
    hf_strategy: str
    hf_allow_anonymous: bool
    hf_timeout_seconds: float

    nlu_enabled: bool
    confidence_threshold: float
    service_catalog_path: Optional[str]
    job_max_retries: int

    poll_initial_delay: float
    poll_interval: float
    poll_jitter: float
    poll_max_attempts: int
    poll_backoff_cap: float
    submit_timeout_seconds: float
    status_timeout_seconds: float
    session_idle_seconds: float = 3600.0

    @property
    def remote_credentials_present(self) -> bool:
        return bool(self.github_token and self.github_owner and self.github_repo)

    @property
    def secrets(self) -> List[str]:
        return [s for s in (self.github_token, self.hf_api_key) if s]

    @classmethod
    def from_env(cls) -> "HubSettings":
        return cls(
            state_dir=Path(env_str("STATE_DIR", "/state") or "/state"),
            executor_backend=env_str("EXECUTOR_BACKEND", "auto").lower() or "auto",
            remote_execution_enabled=env_bool("REMOTE_EXECUTION_ENABLED", False),
            github_token=_first_env("GITHUB_TOKEN", "GH_TOKEN", "GITHUB_API_KEY"),
            github_owner=env_str("GH_REPO_OWNER"),
            github_repo=env_str("GH_REPO_NAME"),
            github_workflow=env_str("GH_WORKFLOW_FILE", "ops.yml"),
            github_ref=env_str("GH_DEFAULT_REF", "main"),
            github_api_url=env_str("GITHUB_API_URL", "https://api.github.com"),
            run_name_template=env_str("GH_RUN_NAME_TEMPLATE", "DCH {job_id} - {action}"),
            hf_api_key=_first_env("HF_API_KEY"),
            hf_model=env_str("HF_MODEL", "cross-encoder/nli-deberta-v3-base"),
            hf_api_url=env_str(
                "HF_API_URL", "https://api-inference.huggingface.co/models"
            ),
            hf_strategy=env_str("HF_STRATEGY", "auto").lower(),
            hf_allow_anonymous=env_bool("HF_ALLOW_ANONYMOUS", False),
            hf_timeout_seconds=env_float("HF_TIMEOUT_SECONDS", 15.0),
            nlu_enabled=env_bool("NLU_ENABLED", True),
            confidence_threshold=env_float("NLU_CONFIDENCE_THRESHOLD", 0.7),
            service_catalog_path=_first_env("SERVICE_CATALOG_PATH"),
            job_max_retries=env_int("JOB_MAX_RETRIES", 3),
            poll_initial_delay=env_float("POLL_INITIAL_DELAY", 2.0),
            poll_interval=env_float("POLL_INTERVAL", 4.0),
            poll_jitter=env_float("POLL_JITTER", 1.0),
            poll_max_attempts=env_int("POLL_MAX_ATTEMPTS", 60),
            poll_backoff_cap=env_float("POLL_BACKOFF_CAP", 30.0),
            submit_timeout_seconds=env_float("SUBMIT_TIMEOUT_SECONDS", 30.0),
            status_timeout_seconds=env_float("STATUS_TIMEOUT_SECONDS", 15.0),
            session_idle_seconds=env_float("SESSION_IDLE_SECONDS", 3600.0),
        )
