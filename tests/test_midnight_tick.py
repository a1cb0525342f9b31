from __future__ import annotations

import asyncio
import tempfile
import unittest
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import auraquest.db as db
from auraquest.engine import CACHE_PREFIX, ProgressionEngine
from auraquest.jobs import midnight_tick


class MidnightTickTests(unittest.TestCase):
    @patch("auraquest.jobs.midnight_tick.run_midnight_tick")
    def test_main_logs_summary(self, run_midnight_tick) -> None:
        run_midnight_tick.return_value = {"today": "2026-02-21", "reset": ["a", "b"], "unlocked": [], "streak": 3}

        with self.assertLogs("auraquest.jobs.midnight_tick", level="INFO") as logs:
            midnight_tick.main()

        run_midnight_tick.assert_called_once_with()
        self.assertIn("Quests reset: 2", logs.output[0])

    def test_tick_resets_yesterdays_daily_quests(self) -> None:
        clock = {"now": datetime(2026, 2, 20, 18, 0)}
        engine = ProgressionEngine(clock=lambda: clock["now"])
        habit = engine.add_habit({"title": "Pushups", "category": "Fitness"})
        engine.complete_habit(habit.id)
        clock["now"] = datetime(2026, 2, 21, 0, 5)

        result = midnight_tick.run_midnight_tick(engine)

        self.assertEqual(result["today"], "2026-02-21")
        self.assertEqual(result["reset"], [habit.id])
        self.assertEqual(result["streak"], 0)
        self.assertFalse(habit.completed)

    def test_seconds_until_midnight(self) -> None:
        self.assertEqual(midnight_tick.seconds_until_midnight(datetime(2026, 2, 20, 23, 0)), 3600)
        self.assertEqual(midnight_tick.seconds_until_midnight(datetime(2026, 2, 20, 23, 59, 59, 900000)), 1.0)


class NightlyLoopTests(unittest.IsolatedAsyncioTestCase):
    async def test_loop_ticks_the_live_engine(self) -> None:
        clock = {"now": datetime(2026, 2, 20, 23, 0)}
        engine = ProgressionEngine(clock=lambda: clock["now"])
        habit = engine.add_habit({"title": "Pushups"})
        engine.complete_habit(habit.id)
        delays = []

        async def sleep(seconds: float) -> None:
            delays.append(seconds)
            if len(delays) > 1:
                raise asyncio.CancelledError
            clock["now"] = datetime(2026, 2, 21, 0, 0, 1)

        with self.assertLogs("auraquest.jobs.midnight_tick", level="INFO") as logs:
            with self.assertRaises(asyncio.CancelledError):
                await midnight_tick.run_nightly(engine, sleep=sleep)

        self.assertEqual(delays[0], 3600)
        self.assertFalse(habit.completed)
        self.assertIn("Quests reset: 1", logs.output[0])


class MidnightTickCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.old_db = db.DB_PATH
        db.DB_PATH = Path(self.tmp.name) / "test.sqlite3"
        db.init_db()

    def tearDown(self) -> None:
        db.DB_PATH = self.old_db
        self.tmp.cleanup()

    def test_tick_runs_against_local_cache(self) -> None:
        engine = ProgressionEngine(cache=db.LocalCache(), clock=lambda: datetime(2000, 1, 1, 12, 0))
        engine.add_habit({"title": "Old habit"})
        engine.complete_habit(engine.habits[0].id)

        result = midnight_tick.run_midnight_tick()

        self.assertEqual(result["reset"], [engine.habits[0].id])
        self.assertEqual(db.cache_get("meta:last_rollover"), result["today"])

    def test_server_and_job_share_the_cache_across_midnight(self) -> None:
        clock = {"now": datetime(2026, 1, 1, 21, 0)}
        server = ProgressionEngine(cache=db.LocalCache(), clock=lambda: clock["now"])
        server.ensure_today()
        habit = server.add_habit({"title": "Stretch"})
        server.complete_habit(habit.id)

        clock["now"] = datetime(2026, 1, 2, 0, 5)
        job = ProgressionEngine(cache=db.LocalCache(), clock=lambda: clock["now"])
        job.load_from_cache()
        self.assertEqual(midnight_tick.run_midnight_tick(job)["reset"], [habit.id])
        self.assertFalse(db.cache_get(CACHE_PREFIX + "habits")[0]["completed"])

        server.ensure_today()
        self.assertFalse(db.cache_get(CACHE_PREFIX + "habits")[0]["completed"])
        self.assertEqual(server.get_streak_count(), 2)

        self.assertIsNotNone(server.complete_habit(habit.id))
        cached = db.cache_get(CACHE_PREFIX + "habits")[0]
        self.assertTrue(cached["completed"])
        self.assertEqual(cached["streak"], 2)


if __name__ == "__main__":
    unittest.main()
