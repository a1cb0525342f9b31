from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any, Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

CATEGORIES = ("Tech", "Academics", "Business", "Content", "Fitness", "Personal")
STAT_NAMES = ("intelligence", "strength", "dexterity", "charisma", "wisdom")
AGGREGATE_FIELDS = ("character", "habits", "achievements", "user_roles", "daily_activities")

Frequency = Literal["daily", "weekly", "milestone"]
Difficulty = Literal["basic", "intermediate", "elite"]


def new_id() -> str:
    return uuid.uuid4().hex


class Stats(BaseModel):
    intelligence: int = Field(10, ge=0)
    strength: int = Field(10, ge=0)
    dexterity: int = Field(12, ge=0)
    charisma: int = Field(8, ge=0)
    wisdom: int = Field(10, ge=0)


def next_threshold(xp_to_next: int) -> int:
    return max(xp_to_next + 1, xp_to_next * 6 // 5)


class Character(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = "Shadow Hunter"
    level: int = Field(1, ge=1)
    xp: int = Field(0, ge=0)
    xp_to_next: int = Field(100, ge=1)
    character_class: str = Field("Assassin", alias="class")
    stats: Stats = Field(default_factory=Stats)

    @model_validator(mode="after")
    def carry_overflow_xp(self) -> "Character":
        # xp stays below xp_to_next; overflow becomes levels with the usual growth
        while self.xp >= self.xp_to_next:
            self.xp -= self.xp_to_next
            self.level += 1
            self.xp_to_next = next_threshold(self.xp_to_next)
        return self


class Subtask(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    estimated_pomodoros: int = Field(1, ge=1)
    is_completed: bool = False
    resources: list[str] = Field(default_factory=list)
    follow_up_queries: list[str] = Field(default_factory=list)


class FollowUp(BaseModel):
    quest_id: str
    subtask_id: Optional[str] = None
    query: str
    response: str = ""
    resources: list[str] = Field(default_factory=list)
    timestamp: str = ""


class Habit(BaseModel):
    """A quest instance. Catalog, custom and generated quests share this shape."""

    id: str = Field(default_factory=new_id)
    title: str
    category: str = "Personal"
    xp_reward: int = Field(25, ge=0)
    streak: int = Field(0, ge=0)
    completed: bool = False
    frequency: Frequency = "daily"
    difficulty: Difficulty = "basic"
    description: str = ""
    tier: int = 1
    is_custom: bool = True
    template_id: Optional[str] = None
    last_completed: Optional[str] = None
    subtasks: list[Subtask] = Field(default_factory=list)
    current_subtask_index: int = 0
    total_estimated_pomodoros: Optional[int] = None
    duration: Optional[str] = None
    follow_ups: list[FollowUp] = Field(default_factory=list)

    def has_incomplete_subtasks(self) -> bool:
        return any(not st.is_completed for st in self.subtasks)


class Achievement(BaseModel):
    id: str
    title: str
    description: str = ""
    unlocked: bool = False
    icon: str = ""
    category: str = ""
    rarity: str = "Common"


class DailyActivity(BaseModel):
    date: str
    quests_completed: int = Field(0, ge=0)
    pomodoros_completed: int = Field(0, ge=0)
    xp_earned: int = Field(0, ge=0)
    has_login: bool = False


class UserRoles(BaseModel):
    roles: list[str] = Field(default_factory=list)
    fitness_types: list[str] = Field(default_factory=list)


class QuestSession(BaseModel):
    quest_id: str
    pomodoro_count: int = Field(1, ge=1)
    started_at: str = ""


class UserProfile(BaseModel):
    interests: list[str] = Field(default_factory=lambda: ["Personal Development"])
    goals: str = "Improve productivity and build better habits"
    routine: str = "Flexible schedule"
    quest_style: str = "Gamified"
    time_commitment: str = "1-2 hours daily"
    fitness_preferences: list[str] = Field(default_factory=list)
    skill_level: str = "Intermediate"


class UserIdentity(BaseModel):
    uid: str
    display_name: str = ""
    email: str = ""


class Aggregate(BaseModel):
    character: Character = Field(default_factory=Character)
    habits: list[Habit] = Field(default_factory=list)
    achievements: list[Achievement] = Field(default_factory=list)
    user_roles: Optional[UserRoles] = None
    daily_activities: list[DailyActivity] = Field(default_factory=list)
    generation: int = Field(0, ge=0)


class QuestRequest(BaseModel):
    roles: list[str] = Field(default_factory=list)
    goals: list[str] = Field(default_factory=list)
    skill_level: str = "Intermediate"
    time_commitment: str = "1-2 hours daily"
    fitness_types: list[str] = Field(default_factory=list)


class AISubtask(BaseModel):
    title: str = "Subtask"
    description: str = "Complete this part of the quest"
    estimated_pomodoros: int = Field(1, ge=1)


class AIQuest(BaseModel):
    title: str = "Generated Quest"
    duration: str = "30 minutes"
    subtasks: list[AISubtask] = Field(default_factory=list)
    difficulty: str = "Moderate"
    frequency: str = "Daily"
    category: str = "Personal"
    xp_reward: int = Field(35, ge=0)
    total_estimated_pomodoros: Optional[int] = None


class OnboardingTurn(BaseModel):
    message: str
    extracted_data: dict = Field(default_factory=dict)
    is_complete: bool = False
    final_profile: Optional[UserProfile] = None


class FollowUpAnswer(BaseModel):
    response: str
    resources: list[str] = Field(default_factory=list)


T = TypeVar("T")


@dataclass
class ParseResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_model(model: type[BaseModel], raw: Any) -> ParseResult:
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            return ParseResult(error=f"invalid json: {exc}")
    if raw is None:
        return ParseResult(error="empty payload")
    try:
        return ParseResult(value=model.model_validate(raw))
    except ValidationError as exc:
        return ParseResult(error=str(exc))


def parse_aggregate(raw: Any) -> ParseResult[Aggregate]:
    return parse_model(Aggregate, raw)


def dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json", by_alias=True)


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))
