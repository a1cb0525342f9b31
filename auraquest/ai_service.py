from __future__ import annotations

import asyncio
import http.client
import json
import logging
import urllib.error
import urllib.request
from typing import Any, Optional

from auraquest import config
from auraquest.content import DEFAULT_PACK, load_quest_pack
from auraquest.models import (
    AIQuest,
    AISubtask,
    FollowUpAnswer,
    OnboardingTurn,
    QuestRequest,
    UserProfile,
    parse_model,
)

logger = logging.getLogger(__name__)

MAX_ONBOARDING_TURNS = 5

REQUEST_ERRORS = (
    urllib.error.URLError,
    http.client.HTTPException,
    asyncio.TimeoutError,
    TimeoutError,
    OSError,
    ValueError,
    KeyError,
    IndexError,
    TypeError,
)


class GeminiClient:
    """Thin generateContent client. Every call is bounded in attempts and time."""

    backoff_s = 1.0

    def __init__(
        self,
        api_key: str = "",
        api_url: str = "",
        timeout_s: float = 20.0,
        max_attempts: int = 3,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.timeout_s = timeout_s
        self.max_attempts = max(1, max_attempts)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.api_url)

    def _request(self, prompt: str) -> str:
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.7, "maxOutputTokens": 2048},
        }
        req = urllib.request.Request(
            f"{self.api_url}?key={self.api_key}",
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
        return payload["candidates"][0]["content"]["parts"][0]["text"]

    async def generate(self, prompt: str) -> Optional[str]:
        if not self.enabled:
            return None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.wait_for(asyncio.to_thread(self._request, prompt), timeout=self.timeout_s)
            except REQUEST_ERRORS as exc:
                if attempt >= self.max_attempts:
                    logger.warning("Generative request failed after %s attempts: %s", attempt, exc)
                    return None
                await asyncio.sleep(self.backoff_s * attempt)
        return None


def default_client() -> GeminiClient:
    return GeminiClient(
        api_key=config.GEMINI_API_KEY,
        api_url=config.GEMINI_API_URL,
        timeout_s=config.AI_TIMEOUT_S,
        max_attempts=config.AI_MAX_ATTEMPTS,
    )


def extract_json(text: Optional[str]) -> Any:
    """Return the first JSON object, or array of objects, embedded in free-form model output."""
    if not text:
        return None
    decoder = json.JSONDecoder()
    for index, char in enumerate(text):
        if char not in "[{":
            continue
        try:
            value, _ = decoder.raw_decode(text, index)
        except ValueError:
            continue
        if isinstance(value, dict) or (value and isinstance(value, list) and all(isinstance(v, dict) for v in value)):
            return value
    return None


def _validate_list(model, data: Any, key: str) -> list:
    if isinstance(data, dict):
        data = data.get(key)
    if not isinstance(data, list):
        return []
    items = []
    for entry in data:
        result = parse_model(model, entry)
        if result.ok:
            items.append(result.value)
        else:
            logger.debug("Dropping invalid %s: %s", model.__name__, result.error)
    return items


def _pack(pack_key: str) -> dict:
    return load_quest_pack(pack_key)


def fallback_quests(pack_key: str = DEFAULT_PACK, detailed: bool = False) -> list[AIQuest]:
    key = "fallback_detailed_quests" if detailed else "fallback_quests"
    return [AIQuest.model_validate(q) for q in _pack(pack_key)[key]]


def fallback_subtasks(category: str, pack_key: str = DEFAULT_PACK) -> list[AISubtask]:
    table = _pack(pack_key)["fallback_subtasks"]
    rows = table.get(category) or table.get("Personal") or []
    return [AISubtask.model_validate(row) for row in rows]


def _quest_prompt(request: QuestRequest, with_subtasks: bool) -> str:
    lines = [
        "You design productivity quests for a gamified habit tracker with a dark fantasy theme.",
        f"Roles: {', '.join(request.roles) or 'general'}.",
        f"Goals: {', '.join(request.goals) or 'build better habits'}.",
        f"Skill level: {request.skill_level}. Time available: {request.time_commitment}.",
    ]
    if request.fitness_types:
        lines.append(f"Fitness preferences: {', '.join(request.fitness_types)}.")
    lines.append(
        "Return only a JSON array of 3 quests. Each quest has title, duration, difficulty "
        "(Easy|Moderate|Hard), frequency (Daily|Weekly|Once), category "
        "(Tech|Academics|Business|Content|Fitness|Personal), xp_reward and subtasks "
        "(title, description, estimated_pomodoros)."
    )
    if with_subtasks:
        lines.append("Give every quest 3 to 5 concrete subtasks and a total_estimated_pomodoros.")
    return "\n".join(lines)


async def generate_quests(request: QuestRequest, client: GeminiClient | None = None, pack_key: str = DEFAULT_PACK) -> list[AIQuest]:
    client = client or default_client()
    quests = _validate_list(AIQuest, extract_json(await client.generate(_quest_prompt(request, False))), "quests")
    if quests:
        return quests
    logger.warning("Using fallback quests")
    return fallback_quests(pack_key)


async def generate_quests_with_subtasks(
    request: QuestRequest, client: GeminiClient | None = None, pack_key: str = DEFAULT_PACK
) -> list[AIQuest]:
    client = client or default_client()
    quests = _validate_list(AIQuest, extract_json(await client.generate(_quest_prompt(request, True))), "quests")
    quests = [q for q in quests if q.subtasks]
    if quests:
        return quests
    logger.warning("Using fallback quests with subtasks")
    return fallback_quests(pack_key, detailed=True)


async def generate_subtasks(
    title: str,
    category: str,
    description: str = "",
    client: GeminiClient | None = None,
    pack_key: str = DEFAULT_PACK,
) -> list[AISubtask]:
    client = client or default_client()
    prompt = (
        f"Break the quest '{title}' ({category}) into 3 to 5 ordered subtasks. {description}\n"
        "Return only a JSON array of objects with title, description and estimated_pomodoros."
    )
    subtasks = _validate_list(AISubtask, extract_json(await client.generate(prompt)), "subtasks")
    if subtasks:
        return subtasks
    logger.warning("Using fallback subtasks for %s", category)
    return fallback_subtasks(category, pack_key)


def synthesize_profile(collected: dict) -> UserProfile:
    defaults = UserProfile()
    data = {}
    for field in UserProfile.model_fields:
        value = collected.get(field)
        if value in (None, "", []):
            continue
        default = getattr(defaults, field)
        if isinstance(default, list) and isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        elif isinstance(default, str) and isinstance(value, list):
            value = ", ".join(str(v) for v in value)
        data[field] = value
    result = parse_model(UserProfile, data)
    return result.value if result.ok else defaults


def _onboarding_prompt(history: list[dict], turn_index: int, collected: dict) -> str:
    transcript = "\n".join(f"{m.get('role', 'user')}: {m.get('content', '')}" for m in history)
    return (
        "You are onboarding a new player of a gamified habit tracker. Ask one short question at a time "
        "to learn their interests, goals, routine, quest_style, time_commitment, fitness_preferences "
        "and skill_level.\n"
        f"Question {turn_index + 1} of {MAX_ONBOARDING_TURNS}. Known so far: {json.dumps(collected)}\n"
        f"Conversation:\n{transcript}\n"
        "Return only a JSON object with message, extracted_data, is_complete and, when complete, final_profile."
    )


async def generate_onboarding_turn(
    history: list[dict],
    turn_index: int,
    collected_data: dict,
    client: GeminiClient | None = None,
    pack_key: str = DEFAULT_PACK,
) -> OnboardingTurn:
    """Produce the next onboarding message.

    ``turn_index`` counts the user replies received so far. At the cap the
    conversation is closed without asking the adapter.
    """
    if turn_index >= MAX_ONBOARDING_TURNS:
        return OnboardingTurn(
            message="Your profile is ready, hunter. Your first quests await.",
            extracted_data={},
            is_complete=True,
            final_profile=synthesize_profile(collected_data),
        )
    client = client or default_client()
    result = parse_model(OnboardingTurn, extract_json(await client.generate(_onboarding_prompt(history, turn_index, collected_data))))
    if result.ok:
        turn = result.value
        if turn.is_complete and turn.final_profile is None:
            turn.final_profile = synthesize_profile({**collected_data, **turn.extracted_data})
        return turn
    questions = _pack(pack_key)["onboarding_questions"] or ["Tell me about your goals."]
    return OnboardingTurn(message=questions[min(turn_index, len(questions) - 1)])


def fallback_follow_up(pack_key: str = DEFAULT_PACK) -> FollowUpAnswer:
    return FollowUpAnswer.model_validate(
        _pack(pack_key)["follow_up_fallback"] or {"response": "Please try rephrasing your question."}
    )


async def generate_follow_up(
    query: str, context: dict, client: GeminiClient | None = None, pack_key: str = DEFAULT_PACK
) -> FollowUpAnswer:
    client = client or default_client()
    prompt = (
        f"A player working on the quest '{context.get('quest_title', '')}'"
        f" (subtask: {context.get('subtask_title') or 'none'}) asks: {query}\n"
        "Return only a JSON object with response and resources (a list of strings)."
    )
    result = parse_model(FollowUpAnswer, extract_json(await client.generate(prompt)))
    if result.ok:
        return result.value
    return fallback_follow_up(pack_key)


async def generate_profile_summary(profile: UserProfile, client: GeminiClient | None = None) -> str:
    client = client or default_client()
    prompt = (
        "Write one motivating sentence describing this player in a dark fantasy tone. "
        f"Profile: {profile.model_dump_json()}"
    )
    text = await client.generate(prompt)
    if text and text.strip():
        return text.strip()
    return (
        f"A {profile.skill_level.lower()} hunter focused on {', '.join(profile.interests)}, "
        f"committing {profile.time_commitment}."
    )
