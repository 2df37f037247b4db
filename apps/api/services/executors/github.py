from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx

from services.job_runner.secrets import mask_secrets

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class GitHubActionsError(RuntimeError):
    pass


class RunNotFoundError(GitHubActionsError):
    pass


class GitHubActionsClient:
    """
    Minimal GitHub Actions REST client.

    Only what job execution needs: dispatch a workflow, find the run a
    dispatch created (by run name), and read a run's status.
    """

    def __init__(
        self,
        *,
        token: str,
        owner: str,
        repo: str,
        api_url: str = "https://api.github.com",
        submit_timeout: float = 30.0,
        read_timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._token = token
        self._owner = owner
        self._repo = repo
        self._submit_timeout = submit_timeout
        self._read_timeout = read_timeout
        self._client = client or httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )
        self._owns_client = client is None

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self._owner}/{self._repo}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def dispatch(self, workflow: str, inputs: Mapping[str, str], ref: str) -> None:
        await self._request(
            "POST",
            f"{self._repo_path}/actions/workflows/{workflow}/dispatches",
            json={"ref": ref, "inputs": dict(inputs)},
            timeout=self._submit_timeout,
        )

    async def list_runs(self, workflow: str, *, per_page: int = 30) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET",
            f"{self._repo_path}/actions/workflows/{workflow}/runs",
            params={"event": "workflow_dispatch", "per_page": per_page},
            timeout=self._read_timeout,
        )
        runs = data.get("workflow_runs") if isinstance(data, dict) else None
        return [r for r in (runs or []) if isinstance(r, dict)]

    async def find_run_by_name(
        self,
        workflow: str,
        name: str,
        *,
        max_attempts: int = 12,
        delay: float = 1.5,
        sleep: Sleep,
    ) -> Dict[str, Any]:
        for attempt in range(1, max_attempts + 1):
            for run in await self.list_runs(workflow):
                if run.get("name") == name:
                    return run
            if attempt < max_attempts:
                await sleep(delay)
        raise RunNotFoundError(
            f"run {name!r} not found after {max_attempts} attempt(s)"
        )

    async def get_run(self, run_id: str | int) -> Dict[str, Any]:
        data = await self._request(
            "GET",
            f"{self._repo_path}/actions/runs/{run_id}",
            timeout=self._read_timeout,
        )
        if not isinstance(data, dict):
            raise GitHubActionsError("unexpected run payload")
        return data

    async def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float,
        json: Any = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        try:
            res = await self._client.request(
                method, path, json=json, params=params, timeout=timeout
            )
        except httpx.HTTPError as exc:
            raise GitHubActionsError(
                mask_secrets(f"{method} {path} failed: {exc}", [self._token])
            ) from exc

        if res.status_code >= 400:
            detail = mask_secrets(res.text[:300], [self._token])
            raise GitHubActionsError(f"GitHub {res.status_code} on {method} {path}: {detail}")
        if res.status_code == 204 or not res.content:
            return None
        try:
            return res.json()
        except ValueError as exc:
            raise GitHubActionsError(f"GitHub returned invalid JSON for {path}") from exc
