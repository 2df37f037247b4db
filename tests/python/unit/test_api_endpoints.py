import os
import unittest
from tempfile import TemporaryDirectory
from unittest.mock import patch

from fastapi.testclient import TestClient

from main import create_app
from services.job_runner.runtime import get_orchestrator, reset_runtime
from services.job_store import JobStoreError

class TestApiEndpoints(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)

        env = patch.dict(
            os.environ,
            {
                "STATE_DIR": self._tmp.name,
                "EXECUTOR_BACKEND": "simulated",
                "NLU_ENABLED": "false",
                "CORS_ALLOW_ORIGINS": "",
            },
        )
        env.start()
        self.addCleanup(env.stop)

        reset_runtime()
        self.addCleanup(reset_runtime)

        self.client = TestClient(create_app())
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def _submit(self, command: str, **extra):
        body = {"command": command, "user_id": "u1"}
        body.update(extra)
        return self.client.post("/api/commands", json=body)

    def test_health(self) -> None:
        res = self.client.get("/health")

        self.assertEqual(res.status_code, 200)
        self.assertEqual(
            res.json(), {"status": "ok", "executor": "simulated", "store": "ok"}
        )

    def test_create_command(self) -> None:
        res = self._submit("deploy frontend to staging")

        self.assertEqual(res.status_code, 201)
        body = res.json()
        self.assertEqual(body["status"], "queued")
        self.assertEqual(body["parsed_intent"]["action"], "deploy")
        self.assertEqual(body["parsed_intent"]["service"], "frontend")
        self.assertEqual(body["parsed_intent"]["environment"], "staging")
        self.assertTrue(body["job_id"])
        self.assertTrue(body["created_at"])

        job = self.client.get(f"/api/jobs/{body['job_id']}").json()
        self.assertEqual(job["original_command"], "deploy frontend to staging")
        self.assertIn(job["status"], {"queued", "running"})

    def test_missing_slot(self) -> None:
        res = self._submit("rollback")

        self.assertEqual(res.status_code, 422)
        body = res.json()
        self.assertEqual(body["code"], "MISSING_SLOT")
        self.assertEqual(body["missing"], ["service"])
        self.assertEqual(body["parsed_intent"]["action"], "rollback")
        self.assertIn("api", body["choices"]["service"])

    def test_slot_overrides_use_camel_case(self) -> None:
        res = self._submit("deploy api", slotOverrides={"environment": "prod"})

        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.json()["parsed_intent"]["environment"], "production")

    def test_unknown_action(self) -> None:
        res = self._submit("make me a sandwich")

        self.assertEqual(res.status_code, 400)
        body = res.json()
        self.assertEqual(body["code"], "UNKNOWN_ACTION")
        self.assertTrue(body["supported"])
        self.assertEqual(self.client.get("/api/jobs", params={"user_id": "u1"}).json()["jobs"], [])

    def test_request_validation(self) -> None:
        self.assertEqual(self._submit("").status_code, 422)
        self.assertEqual(
            self.client.post("/api/commands", json={"command": "deploy api"}).status_code,
            422,
        )
        res = self._submit("scale web", slotOverrides={"replicas": 1000})
        self.assertEqual(res.status_code, 422)
        self.assertNotIn("code", res.json())

    def test_busy_session(self) -> None:
        sid = self.client.post("/api/sessions", json={"user_id": "u1"}).json()["session_id"]

        first = self._submit("deploy api to prod", session_id=sid)
        second = self._submit("restart api", session_id=sid)

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["code"], "BUSY")
        self.assertEqual(second.json()["active_job_id"], first.json()["job_id"])

    def test_unknown_session_on_command(self) -> None:
        self.assertEqual(self._submit("restart api", session_id="nope").status_code, 404)

    def test_store_failure_is_500(self) -> None:
        store = get_orchestrator().store
        with patch.object(store, "create_job", side_effect=JobStoreError("disk full")):
            res = self._submit("restart api")

        self.assertEqual(res.status_code, 500)
        self.assertEqual(res.json()["code"], "JOB_STORE_ERROR")

    def test_get_missing_job(self) -> None:
        self.assertEqual(self.client.get("/api/jobs/nope").status_code, 404)

    def test_list_jobs(self) -> None:
        self._submit("deploy api to prod")
        self._submit("restart web")
        self.client.post("/api/commands", json={"command": "restart db", "user_id": "u2"})

        jobs = self.client.get("/api/jobs", params={"user_id": "u1"}).json()["jobs"]
        self.assertEqual(len(jobs), 2)
        self.assertTrue(all(j["user_id"] == "u1" for j in jobs))

        limited = self.client.get("/api/jobs", params={"user_id": "u1", "limit": 1}).json()
        self.assertEqual(len(limited["jobs"]), 1)

        self.assertEqual(
            self.client.get("/api/jobs", params={"user_id": "u1", "status": "bogus"}).status_code,
            422,
        )

    def test_supported_commands(self) -> None:
        body = self.client.get("/api/commands/supported").json()

        self.assertIn("deploy <service> to <environment>", body["commands"])
        self.assertEqual(
            body["actions"], ["deploy", "rollback", "scale", "restart", "logs", "status"]
        )

    def test_session_messages(self) -> None:
        sid = self.client.post("/api/sessions", json={"user_id": "u1"}).json()["session_id"]

        res = self.client.post(
            f"/api/sessions/{sid}/messages",
            json={"type": "sendCommand", "text": "deploy api", "enableNLU": False},
        )
        self.assertEqual(res.status_code, 202)
        self.assertEqual(res.json()["outcome"], "missing_slot")

        res = self.client.post(
            f"/api/sessions/{sid}/messages",
            json={
                "type": "sendCommand",
                "text": "deploy api",
                "slotOverrides": {"environment": "staging"},
            },
        )
        self.assertEqual(res.json()["outcome"], "created")
        job_id = res.json()["job_id"]

        res = self.client.post(
            f"/api/sessions/{sid}/messages", json={"type": "refreshJob", "jobId": job_id}
        )
        self.assertEqual(res.status_code, 202)

        res = self.client.post(
            f"/api/sessions/{sid}/messages", json={"type": "retryJob", "jobId": job_id}
        )
        self.assertEqual(res.json()["outcome"], "error")

        res = self.client.post(f"/api/sessions/{sid}/messages", json={"type": "dance"})
        self.assertEqual(res.status_code, 422)

        self.assertEqual(self.client.delete(f"/api/sessions/{sid}").status_code, 204)
        self.assertEqual(self.client.delete(f"/api/sessions/{sid}").status_code, 404)
        self.assertEqual(
            self.client.post(
                f"/api/sessions/{sid}/messages", json={"type": "refreshJob", "jobId": job_id}
            ).status_code,
            404,
        )

    def test_events_for_unknown_session(self) -> None:
        self.assertEqual(self.client.get("/api/sessions/nope/events").status_code, 404)
