from __future__ import annotations

import hashlib
import json
import random
from functools import lru_cache
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent / "quest_packs"
DEFAULT_PACK = "default"


def _load_json(path: Path, fallback):
    if not path.exists():
        return fallback
    return json.loads(path.read_text(encoding="utf-8-sig"))


def stable_seed(*parts: str) -> int:
    raw = "::".join(parts).encode("utf-8")
    return int(hashlib.sha256(raw).hexdigest()[:16], 16)


@lru_cache(maxsize=None)
def load_quest_pack(pack_key: str = DEFAULT_PACK) -> dict:
    """Parsed once per key. Callers treat the returned pack as read-only."""
    key = pack_key or DEFAULT_PACK
    pack_file = BASE_DIR / f"{key}.json"
    if not pack_file.exists():
        pack_file = BASE_DIR / f"{DEFAULT_PACK}.json"
    pack = _load_json(pack_file, {})
    return {
        "templates": pack.get("templates", []),
        "achievements": pack.get("achievements", []),
        "lore": pack.get("lore", []),
        "fallback_quests": pack.get("fallback_quests", []),
        "fallback_detailed_quests": pack.get("fallback_detailed_quests", []),
        "fallback_subtasks": pack.get("fallback_subtasks", {}),
        "onboarding_questions": pack.get("onboarding_questions", []),
        "follow_up_fallback": pack.get("follow_up_fallback", {}),
    }


def lore_line(pack: dict, seed: int, fallback: str) -> str:
    lines = pack.get("lore") or []
    if not lines:
        return fallback
    rng = random.Random(seed)
    return rng.choice(lines)
