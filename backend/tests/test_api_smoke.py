import os
import shutil
import tempfile
import threading
import time
import unittest
from uuid import uuid4

from fastapi.testclient import TestClient

os.environ["REMOTE_LLM_ENABLED"] = "false"
os.environ["ENABLE_HTTP_LOGGING"] = "false"

import api.main as main
from api.main import app, settings
from fakes import prose, story_llm


TERMINAL = {"completed", "failed", "stopped"}


class ChapterforgeApiSmokeTest(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.data_dir = tempfile.mkdtemp(prefix="chapterforge-api-")
        cls.original_data_dir = settings.data_dir
        settings.data_dir = cls.data_dir
        cls.client_context = TestClient(app)
        cls.client = cls.client_context.__enter__()

    @classmethod
    def tearDownClass(cls):
        cls.client_context.__exit__(None, None, None)
        settings.data_dir = cls.original_data_dir
        shutil.rmtree(cls.data_dir, ignore_errors=True)

    def setUp(self):
        self.llm = story_llm()
        app.state.manager.llm_client = self.llm

    def _create_project(self, **overrides):
        payload = {
            "title": f"Ashes of the Sect {uuid4().hex[:6]}",
            "genre": "xianxia",
            "protagonist_name": "Kaelan Voss",
            "target_chapter_length": 600,
        }
        payload.update(overrides)
        res = self.client.post("/api/projects", json=payload)
        self.assertEqual(res.status_code, 200)
        return res.json()

    def _wait_for(self, job_id, statuses=TERMINAL, timeout=10.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            job = self.client.get(f"/api/jobs/{job_id}").json()
            if job["status"] in statuses:
                return job
            time.sleep(0.05)
        self.fail(f"job {job_id} did not reach {statuses}")

    def test_project_crud(self):
        project = self._create_project()
        self.assertEqual(project["status"], "active")
        self.assertEqual(project["current_chapter"], 0)
        self.assertEqual(project["target_chapter_length"], 600)

        res = self.client.get(f"/api/projects/{project['id']}")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["title"], project["title"])

        missing = self.client.get("/api/projects/nope")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["error_code"], "not_found")

        invalid = self.client.post("/api/projects", json={"title": ""})
        self.assertEqual(invalid.status_code, 422)

    def test_job_generates_chapter(self):
        project = self._create_project()

        res = self.client.post("/api/jobs", json={"project_id": project["id"]})
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(body["status"], "pending")

        job = self._wait_for(body["job_id"])
        self.assertEqual(job["status"], "completed")
        self.assertEqual(job["progress"], 100)
        self.assertIsNone(job["error_message"])

        chapters = self.client.get(f"/api/projects/{project['id']}/chapters").json()
        self.assertEqual(chapters["current_chapter"], 1)
        self.assertEqual([c["chapter_number"] for c in chapters["chapters"]], [1])
        self.assertEqual(chapters["chapters"][0]["title"], "Storm over Greywater")

    def test_second_job_conflicts_and_stop(self):
        entered = threading.Event()
        release = threading.Event()
        text = prose(160)

        def gated_scene(request):
            entered.set()
            release.wait(5)
            return text

        app.state.manager.llm_client = story_llm(write_scene=gated_scene)
        project = self._create_project()
        try:
            first = self.client.post("/api/jobs", json={"project_id": project["id"]}).json()
            self.assertTrue(entered.wait(5))

            second = self.client.post("/api/jobs", json={"project_id": project["id"]})
            self.assertEqual(second.status_code, 409)
            self.assertEqual(second.json()["error_code"], "conflict")

            stopped = self.client.post(f"/api/jobs/{first['job_id']}/stop")
            self.assertEqual(stopped.status_code, 200)
            self.assertEqual(stopped.json()["status"], "stopped")
        finally:
            release.set()

        job = self._wait_for(first["job_id"])
        self.assertEqual(job["status"], "stopped")
        again = self.client.post(f"/api/jobs/{first['job_id']}/stop")
        self.assertEqual(again.json()["status"], "stopped")
        chapters = self.client.get(f"/api/projects/{project['id']}/chapters").json()
        self.assertEqual(chapters["chapters"], [])

    def test_unknown_job_is_404(self):
        res = self.client.get("/api/jobs/does-not-exist")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["error_code"], "not_found")

    def test_paused_project_rejects_jobs(self):
        project = self._create_project()
        res = self.client.post(f"/api/projects/{project['id']}/status", json={"status": "paused"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["status"], "paused")

        start = self.client.post("/api/jobs", json={"project_id": project["id"]})
        self.assertEqual(start.status_code, 400)
        self.assertEqual(start.json()["error_code"], "validation_error")

        completed = self.client.post(f"/api/projects/{project['id']}/status", json={"status": "completed"})
        self.assertEqual(completed.status_code, 400)

    def test_scheduler_tick(self):
        project = self._create_project()
        res = self.client.post("/api/scheduler/tick")
        self.assertEqual(res.status_code, 200)
        started = {item["project_id"]: item["job_id"] for item in res.json()["started"]}
        self.assertIn(project["id"], started)
        for job_id in started.values():
            self._wait_for(job_id)

    def test_runtime_and_health(self):
        runtime = self.client.get("/api/runtime/llm")
        self.assertEqual(runtime.status_code, 200)
        body = runtime.json()
        self.assertIn(body["effective_provider"], ("openai", "deepseek", "gemini"))
        self.assertNotIn("provider_key", body)

        health = self.client.get("/api/health")
        self.assertEqual(health.status_code, 200)
        self.assertEqual(health.json()["status"], "healthy")

    def test_bearer_token_required_when_configured(self):
        settings.api_token = "s3cret"
        try:
            denied = self.client.post("/api/jobs", json={"project_id": "p"})
            self.assertEqual(denied.status_code, 401)
            self.assertEqual(denied.json()["error_code"], "authorization_error")

            wrong = self.client.get("/api/jobs/x", headers={"Authorization": "Bearer nope"})
            self.assertEqual(wrong.status_code, 401)

            allowed = self.client.post(
                "/api/jobs",
                json={"project_id": "missing"},
                headers={"Authorization": "Bearer s3cret"},
            )
            self.assertEqual(allowed.status_code, 400)

            # project endpoints stay open
            self.assertEqual(self.client.get("/api/health").status_code, 200)
        finally:
            settings.api_token = None


if __name__ == "__main__":
    unittest.main()
