from __future__ import annotations

import json
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

import auraquest.db as db
import auraquest.main as main
from auraquest import config
from auraquest.engine import CACHE_PREFIX


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.old_db = db.DB_PATH
        db.DB_PATH = Path(self.tmp.name) / "test.sqlite3"
        db.init_db()
        self.patchers = [
            patch.object(config, "GEMINI_API_KEY", ""),
            patch.object(config, "REMOTE_URL", ""),
            patch.object(config, "USER_ID", ""),
        ]
        for p in self.patchers:
            p.start()

    def tearDown(self) -> None:
        for p in self.patchers:
            p.stop()
        db.DB_PATH = self.old_db
        self.tmp.cleanup()

    def client(self) -> TestClient:
        return TestClient(main.app)


class DashboardTests(ApiTestCase):
    def test_homepage_renders(self) -> None:
        with self.client() as client:
            response = client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertIn("Shadow Hunter", response.text)

    def test_homepage_handles_invalid_cached_json(self) -> None:
        conn = db.get_conn()
        conn.execute(
            "INSERT OR REPLACE INTO kv_cache (key, value_json, updated_at) VALUES (?, ?, ?)",
            (CACHE_PREFIX + "habits", "{not valid json", db.utc_now_iso()),
        )
        conn.commit()
        conn.close()

        with self.client() as client:
            response = client.get("/")
        self.assertEqual(response.status_code, 200)

    def test_form_add_and_complete(self) -> None:
        with self.client() as client:
            response = client.post("/habits/add", data={"title": "Read 20 pages", "category": "Academics"}, follow_redirects=False)
            self.assertEqual(response.status_code, 303)
            habit = client.get("/api/state").json()["habits"][0]
            client.post(f"/habits/{habit['id']}/done", follow_redirects=False)
            state = client.get("/api/state").json()
        self.assertTrue(state["habits"][0]["completed"])
        self.assertEqual(state["character"]["xp"], 25)
        self.assertEqual(state["streak_count"], 1)


class HabitApiTests(ApiTestCase):
    def test_complete_flow_and_errors(self) -> None:
        with self.client() as client:
            created = client.post("/api/habits", json={"title": "Code", "category": "Tech", "xp_reward": 40})
            self.assertEqual(created.status_code, 201)
            habit_id = created.json()["id"]

            first = client.post(f"/api/habits/{habit_id}/complete")
            second = client.post(f"/api/habits/{habit_id}/complete")
            missing = client.post("/api/habits/nope/complete")

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["streak"], 1)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(missing.status_code, 404)

    def test_invalid_bodies(self) -> None:
        with self.client() as client:
            blank = client.post("/api/habits", json={"title": "  "})
            malformed = client.post("/api/habits", json={"category": "Tech"})
        self.assertEqual(blank.status_code, 400)
        self.assertEqual(malformed.status_code, 422)

    def test_roles_suggestions_and_templates(self) -> None:
        with self.client() as client:
            client.post("/api/roles", json={"roles": ["student"]})
            ids = {t["id"] for t in client.get("/api/suggestions").json()}
            accepted = client.post("/api/templates/study-session")
            again = client.post("/api/templates/study-session")
            after = {t["id"] for t in client.get("/api/suggestions").json()}

        self.assertEqual(ids, {"study-session", "assignment-complete", "revision-notes"})
        self.assertEqual(accepted.status_code, 201)
        self.assertEqual(accepted.json()["template_id"], "study-session")
        self.assertEqual(again.status_code, 409)
        self.assertNotIn("study-session", after)

    def test_subtasks_session_and_follow_ups(self) -> None:
        with self.client() as client:
            habit_id = client.post("/api/habits", json={"title": "Leg day", "category": "Fitness"}).json()["id"]
            habit = client.post(f"/api/habits/{habit_id}/subtasks/generate").json()
            self.assertEqual([s["title"] for s in habit["subtasks"]], ["Warm up", "Main workout", "Cool down"])

            client.post("/api/sessions", json={"quest_id": habit_id, "pomodoro_count": 4})
            blocked = client.post("/api/sessions/complete").json()
            self.assertIsNone(blocked["habit"])

            client.post("/api/sessions", json={"quest_id": habit_id, "pomodoro_count": 4})
            results = [client.post(f"/api/sessions/subtasks/{s['id']}").json() for s in habit["subtasks"]]
            self.assertEqual([r["completed"] for r in results], [False, False, True])

            asked = client.post(f"/api/habits/{habit_id}/follow-ups", json={"query": "How long to rest?"})
            listed = client.get(f"/api/habits/{habit_id}/follow-ups").json()

        self.assertEqual(asked.status_code, 201)
        self.assertEqual(len(listed), 1)
        self.assertEqual(listed[0]["query"], "How long to rest?")
        today = results[-1]["state"]["daily_activities"][-1]
        self.assertEqual(today["pomodoros_completed"], 8)
        self.assertEqual(today["quests_completed"], 1)

    def test_generate_quests_uses_fallback_when_adapter_disabled(self) -> None:
        with self.client() as client:
            response = client.post("/api/quests/generate", json={"roles": ["developer"]})
            detailed = client.post("/api/quests/generate?detailed=true", json={})
        self.assertEqual(response.status_code, 201)
        self.assertEqual([h["title"] for h in response.json()], ["Shadow Code Training", "Skill Mastery Quest", "Weekly Reflection Ritual"])
        self.assertEqual(response.json()[2]["frequency"], "weekly")
        self.assertEqual(len(detailed.json()), 2)


class DayRolloverApiTests(ApiTestCase):
    def test_requests_after_midnight_roll_the_day_forward(self) -> None:
        with self.client() as client:
            habit_id = client.post("/api/habits", json={"title": "Stretch"}).json()["id"]
            self.assertEqual(client.post(f"/api/habits/{habit_id}/complete").status_code, 200)
            main.app.state.engine.clock = lambda: datetime.now() + timedelta(days=1)

            state = client.get("/api/state").json()
            cached = db.cache_get(CACHE_PREFIX + "habits")
            again = client.post(f"/api/habits/{habit_id}/complete")

        self.assertFalse(state["habits"][0]["completed"])
        self.assertEqual(state["streak_count"], 2)
        self.assertFalse(cached[0]["completed"])
        self.assertEqual(again.status_code, 200)
        self.assertEqual(again.json()["streak"], 2)


class OnboardingApiTests(ApiTestCase):
    def test_onboarding_completes_after_five_replies(self) -> None:
        with self.client() as client:
            self.assertEqual(client.post("/api/onboarding/reply", json={"text": "hi"}).status_code, 409)
            start = client.post("/api/onboarding/start").json()
            replies = [client.post("/api/onboarding/reply", json={"text": t}).json() for t in ("a", "b", "c", "d", "e")]
            state = client.get("/api/state").json()

        self.assertFalse(start["is_complete"])
        self.assertEqual([r["is_complete"] for r in replies], [False, False, False, False, True])
        self.assertIn("quests", replies[-1])
        self.assertEqual(state["user_roles"]["roles"], ["Personal Development"])


class ViewsAndSaveDataTests(ApiTestCase):
    def test_activity_skills_and_lore(self) -> None:
        with self.client() as client:
            activity = client.get("/api/activity?days=7").json()
            skills = client.get("/api/skills").json()
            lore = client.get("/api/lore").json()
        self.assertEqual(len(activity), 7)
        self.assertEqual(activity[-1]["level"], 1)
        self.assertEqual(len(skills), 5)
        self.assertTrue(lore["lore"])

    def test_export_then_import(self) -> None:
        with self.client() as client:
            client.post("/api/habits", json={"title": "Portable"})
            exported = client.get("/export").json()
            client.delete(f"/api/habits/{exported['habits'][0]['id']}")
            self.assertEqual(client.get("/api/state").json()["habits"], [])

            response = client.post("/import", data={"payload": json.dumps(exported)}, follow_redirects=False)
            bad = client.post("/import", data={"payload": "{nope"}, follow_redirects=False)
            state = client.get("/api/state").json()

        self.assertEqual(response.status_code, 303)
        self.assertEqual(bad.status_code, 400)
        self.assertEqual([h["title"] for h in state["habits"]], ["Portable"])
        self.assertGreater(state["generation"], exported["generation"])


if __name__ == "__main__":
    unittest.main()
