from __future__ import annotations

import math
import re

from auraquest.content import DEFAULT_PACK, load_quest_pack

POMODORO_MINUTES = 25
DEFAULT_DURATION_MINUTES = 30

FITNESS_TYPES = ("Gym", "Calisthenics", "Home Workout", "Yoga")

ROLE_KEYWORDS = {
    "developer": ("tech", "code", "coding", "program", "developer", "software", "web"),
    "student": ("academic", "study", "student", "school", "exam", "learn", "university"),
    "entrepreneur": ("business", "entrepreneur", "startup", "market", "sales", "career"),
    "influencer": ("content", "influenc", "social media", "youtube", "creator", "writing"),
    "fitness": ("fitness", "health", "workout", "gym", "exercise", "yoga", "run", "sport"),
}


def get_templates(pack_key: str = DEFAULT_PACK) -> list[dict]:
    return list(load_quest_pack(pack_key)["templates"])


def get_template(template_id: str, pack_key: str = DEFAULT_PACK) -> dict | None:
    for template in get_templates(pack_key):
        if template["id"] == template_id:
            return template
    return None


def get_quests_for_roles(
    roles,
    fitness_types=(),
    level: int = 1,
    max_streak: int = 0,
    pack_key: str = DEFAULT_PACK,
) -> list[dict]:
    roles = set(roles or ())
    fitness_types = set(fitness_types or ())
    out = []
    for template in get_templates(pack_key):
        if not roles.intersection(template.get("roles") or ()):
            continue
        required_types = template.get("fitness_types") or ()
        if required_types and not fitness_types.intersection(required_types):
            continue
        unlock = template.get("unlock_requirement")
        if unlock and (level < unlock.get("level", 0) or max_streak < unlock.get("streak", 0)):
            continue
        out.append(template)
    return out


def scale_quest_difficulty(template: dict, streak: int) -> dict:
    if streak < 3:
        return template
    scaled = dict(template)
    scaled["xp_reward"] = template["xp_reward"] + (streak // 3) * 10
    if streak >= 7:
        scaled["title"] = f"Elite {template['title']}"
        scaled["difficulty"] = "elite"
    else:
        scaled["title"] = f"Advanced {template['title']}"
        scaled["difficulty"] = "intermediate"
    return scaled


def pomodoros_for_duration(duration: str | None) -> int:
    if not duration or not isinstance(duration, str):
        minutes = DEFAULT_DURATION_MINUTES
    else:
        minutes = 0
        hours = re.search(r"(\d+)\s*(?:hours?|hrs?)", duration, re.IGNORECASE)
        mins = re.search(r"(\d+)\s*(?:minutes?|mins?)", duration, re.IGNORECASE)
        if hours:
            minutes += int(hours.group(1)) * 60
        if mins:
            minutes += int(mins.group(1))
        minutes = minutes or DEFAULT_DURATION_MINUTES
    return max(1, math.ceil(minutes / POMODORO_MINUTES))


def roles_for_interests(interests) -> list[str]:
    """Map free-text onboarding interests onto catalog role ids.

    Interests that match no known role are kept as-is so an AI-driven profile
    still round-trips into UserRoles.
    """
    roles: list[str] = []
    for interest in interests or ():
        text = str(interest).strip()
        if not text:
            continue
        lowered = text.lower()
        matched = [role for role, words in ROLE_KEYWORDS.items() if any(w in lowered for w in words)]
        for role in matched or [text]:
            if role not in roles:
                roles.append(role)
    return roles


def fitness_types_for(preferences) -> list[str]:
    found = []
    for pref in preferences or ():
        lowered = str(pref).lower()
        for kind in FITNESS_TYPES:
            if kind.lower() in lowered and kind not in found:
                found.append(kind)
    return found
