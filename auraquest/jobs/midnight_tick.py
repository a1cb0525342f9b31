from __future__ import annotations

import asyncio
import logging
from datetime import datetime, time, timedelta

from auraquest import config
from auraquest.db import LocalCache, init_db
from auraquest.engine import ProgressionEngine

logger = logging.getLogger(__name__)


def run_midnight_tick(engine: ProgressionEngine | None = None) -> dict:
    if engine is None:
        init_db()
        engine = ProgressionEngine(cache=LocalCache(), pack_key=config.QUEST_PACK)
        engine.load_from_cache()
    reset = engine.roll_over_day()
    unlocked = engine.check_achievements()
    return {
        "today": engine.today_key(),
        "reset": reset,
        "unlocked": unlocked,
        "streak": engine.get_streak_count(),
    }


def seconds_until_midnight(now: datetime) -> float:
    midnight = datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=now.tzinfo)
    return max((midnight - now).total_seconds(), 1.0)


def log_summary(result: dict) -> None:
    logger.info(
        "Prepared %s. Quests reset: %s. Login streak: %s.",
        result["today"],
        len(result["reset"]),
        result["streak"],
    )


async def run_nightly(engine: ProgressionEngine, sleep=asyncio.sleep) -> None:
    """Tick the live engine at every local midnight until cancelled."""
    while True:
        await sleep(seconds_until_midnight(engine.now()))
        log_summary(run_midnight_tick(engine))


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    log_summary(run_midnight_tick())


if __name__ == "__main__":
    main()
