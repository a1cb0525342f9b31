from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional

from auraquest import catalog
from auraquest.content import DEFAULT_PACK, load_quest_pack, lore_line, stable_seed
from auraquest.models import (
    AGGREGATE_FIELDS,
    CATEGORIES,
    STAT_NAMES,
    Achievement,
    Aggregate,
    AIQuest,
    Character,
    DailyActivity,
    FollowUp,
    Habit,
    QuestSession,
    Subtask,
    UserProfile,
    UserRoles,
    dump,
    new_id,
    next_threshold,
    parse_model,
)

logger = logging.getLogger(__name__)

SUBTASK_XP = 10
POMODORO_XP = 50

CATEGORY_STATS = {
    "Academics": "intelligence",
    "Tech": "intelligence",
    "Business": "charisma",
    "Content": "charisma",
    "Fitness": "strength",
    "Personal": "wisdom",
}

GENERATED_DIFFICULTY = {"easy": ("basic", 1), "moderate": ("intermediate", 2), "hard": ("elite", 3)}
GENERATED_FREQUENCY = {"daily": "daily", "weekly": "weekly"}

CACHE_PREFIX = "aggregate:"
ROLLOVER_KEY = "meta:last_rollover"
GENERATION_KEY = "meta:generation"

Listener = Callable[[frozenset], None]


def stat_for_category(category: str) -> str:
    return CATEGORY_STATS.get(category, "wisdom")


class ProgressionEngine:
    """Owns the canonical in-memory game state.

    Every mutation goes through a method on this class. Changed field names are
    collected while a batch is open and flushed once: the local cache gets the
    changed fields, the generation stamp advances and listeners are notified.
    """

    def __init__(self, cache=None, clock: Callable[[], datetime] | None = None, pack_key: str = DEFAULT_PACK) -> None:
        self.cache = cache
        self.pack_key = pack_key
        self.clock = clock or datetime.now
        self.character = Character()
        self.habits: list[Habit] = []
        self.achievements: list[Achievement] = self._default_achievements()
        self.user_roles: Optional[UserRoles] = None
        self.daily_activities: list[DailyActivity] = []
        self.active_session: Optional[QuestSession] = None
        self.generation = 0
        self.last_rollover: Optional[str] = None
        self._listeners: list[Listener] = []
        self._depth = 0
        self._pending: set[str] = set()

    # -- plumbing -----------------------------------------------------------

    def _default_achievements(self) -> list[Achievement]:
        pack = load_quest_pack(self.pack_key)
        return [Achievement.model_validate({**a, "unlocked": False}) for a in pack["achievements"]]

    def now(self) -> datetime:
        return self.clock()

    def today(self) -> date:
        return self.now().date()

    def today_key(self) -> str:
        return self.today().isoformat()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @contextmanager
    def batch(self):
        self._depth += 1
        try:
            yield self
        finally:
            self._depth -= 1
            if self._depth == 0 and self._pending:
                self._flush()

    def _touch(self, *fields: str) -> None:
        self._pending.update(fields)

    def _flush(self) -> None:
        changed = frozenset(self._pending)
        self._pending.clear()
        if changed & set(AGGREGATE_FIELDS):
            self.generation += 1
        self._persist(changed)
        for listener in list(self._listeners):
            listener(changed)

    def _persist(self, fields: Iterable[str]) -> None:
        if self.cache is None:
            return
        for field in fields:
            if field in AGGREGATE_FIELDS:
                self.cache.set(CACHE_PREFIX + field, self._dump_field(field))
        self.cache.set(GENERATION_KEY, self.generation)

    def _dump_field(self, field: str):
        value = getattr(self, field)
        if value is None:
            return None
        if isinstance(value, list):
            return [dump(item) for item in value]
        return dump(value)

    def _log(self, kind: str, text: str, meta: dict | None = None) -> None:
        logger.info(text)
        if self.cache is not None and hasattr(self.cache, "log_event"):
            self.cache.log_event(self.today_key(), kind, text, meta)

    def load_from_cache(self) -> None:
        if self.cache is None:
            return
        singles = {"character": Character, "user_roles": UserRoles}
        lists = {"habits": Habit, "achievements": Achievement, "daily_activities": DailyActivity}
        for field, model in singles.items():
            raw = self.cache.get(CACHE_PREFIX + field)
            if raw is None:
                continue
            result = parse_model(model, raw)
            if result.ok:
                setattr(self, field, result.value)
            else:
                logger.warning("Discarding cached %s: %s", field, result.error)
        for field, model in lists.items():
            raw = self.cache.get(CACHE_PREFIX + field)
            if not isinstance(raw, list):
                continue
            items = []
            for entry in raw:
                result = parse_model(model, entry)
                if result.ok:
                    items.append(result.value)
                else:
                    logger.warning("Discarding cached %s entry: %s", field, result.error)
            setattr(self, field, items)
        self._merge_achievement_catalog()
        generation = self.cache.get(GENERATION_KEY, 0)
        self.generation = generation if isinstance(generation, int) and generation >= 0 else 0
        self.last_rollover = self.cache.get(ROLLOVER_KEY)

    def _merge_achievement_catalog(self) -> None:
        known = {a.id for a in self.achievements}
        for achievement in self._default_achievements():
            if achievement.id not in known:
                self.achievements.append(achievement)

    def snapshot(self) -> Aggregate:
        return Aggregate(
            character=self.character.model_copy(deep=True),
            habits=[h.model_copy(deep=True) for h in self.habits],
            achievements=[a.model_copy(deep=True) for a in self.achievements],
            user_roles=self.user_roles.model_copy(deep=True) if self.user_roles else None,
            daily_activities=[d.model_copy(deep=True) for d in self.daily_activities],
            generation=self.generation,
        )

    def _replace(self, aggregate: Aggregate) -> bool:
        unlocked = {a.id for a in self.achievements if a.unlocked}
        incoming = {a.id for a in aggregate.achievements if a.unlocked}
        achievements = [a.model_copy(deep=True) for a in aggregate.achievements] or self._default_achievements()
        for achievement in achievements:
            if achievement.id in unlocked:
                achievement.unlocked = True
        self.character = aggregate.character.model_copy(deep=True)
        self.habits = [h.model_copy(deep=True) for h in aggregate.habits]
        self.achievements = achievements
        self._merge_achievement_catalog()
        self.user_roles = aggregate.user_roles.model_copy(deep=True) if aggregate.user_roles else None
        self.daily_activities = [d.model_copy(deep=True) for d in aggregate.daily_activities]
        if self.active_session and self.find_habit(self.active_session.quest_id) is None:
            self.active_session = None
        return any(a.unlocked and a.id not in incoming for a in self.achievements)

    def apply_remote(self, aggregate: Aggregate) -> bool:
        """Replace local fields with a pulled snapshot (last write wins).

        Achievement unlocks stay monotonic: anything unlocked locally remains
        unlocked even if the snapshot disagrees. The generation is adopted
        from the snapshot, or moved one past it when local unlocks were merged
        in. Returns True in that case.
        """
        merged = self._replace(aggregate)
        self.generation = aggregate.generation + 1 if merged else aggregate.generation
        self._pending.update(AGGREGATE_FIELDS)
        changed = frozenset(self._pending)
        self._pending.clear()
        self._persist(changed)
        for listener in list(self._listeners):
            listener(changed)
        return merged

    def restore(self, aggregate: Aggregate) -> None:
        """Load an exported save as a local change."""
        with self.batch():
            self._replace(aggregate)
            self.generation = max(self.generation, aggregate.generation)
            self._touch(*AGGREGATE_FIELDS)

    # -- habits -------------------------------------------------------------

    def find_habit(self, habit_id: str) -> Optional[Habit]:
        for habit in self.habits:
            if habit.id == habit_id:
                return habit
        return None

    def add_habit(self, data: dict, is_custom: bool = True) -> Optional[Habit]:
        title = str(data.get("title") or "").strip()
        if not title:
            return None
        payload = {k: v for k, v in data.items() if k not in ("id", "streak", "completed", "last_completed")}
        payload.update(title=title, id=new_id(), streak=0, completed=False, is_custom=is_custom)
        result = parse_model(Habit, payload)
        if not result.ok:
            logger.warning("Rejected habit %r: %s", title, result.error)
            return None
        habit = result.value
        with self.batch():
            self.habits.append(habit)
            self._touch("habits")
        return habit

    def instantiated_template_ids(self) -> set[str]:
        ids = {h.id for h in self.habits}
        ids.update(h.template_id for h in self.habits if h.template_id)
        return ids

    def add_habit_from_template(self, template_id: str) -> Optional[Habit]:
        template = catalog.get_template(template_id, self.pack_key)
        if template is None or template_id in self.instantiated_template_ids():
            return None
        data = {k: template[k] for k in ("title", "category", "xp_reward", "frequency", "difficulty", "description", "tier") if k in template}
        data["template_id"] = template_id
        return self.add_habit(data, is_custom=False)

    def add_generated_quests(self, quests: Iterable[AIQuest]) -> list[Habit]:
        added = []
        with self.batch():
            for quest in quests:
                difficulty, tier = GENERATED_DIFFICULTY.get(quest.difficulty.lower(), ("intermediate", 2))
                subtasks = [
                    {"title": st.title, "description": st.description, "estimated_pomodoros": st.estimated_pomodoros}
                    for st in quest.subtasks
                ]
                total = quest.total_estimated_pomodoros or sum(st["estimated_pomodoros"] for st in subtasks) or None
                steps = " • ".join(st["title"] for st in subtasks)
                habit = self.add_habit(
                    {
                        "title": quest.title,
                        "category": quest.category if quest.category in CATEGORIES else "Personal",
                        "xp_reward": quest.xp_reward,
                        "frequency": GENERATED_FREQUENCY.get(quest.frequency.lower(), "milestone"),
                        "difficulty": difficulty,
                        "tier": tier,
                        "description": f"{quest.duration} - {steps}" if steps else quest.duration,
                        "duration": quest.duration,
                        "subtasks": subtasks,
                        "total_estimated_pomodoros": total,
                    }
                )
                if habit is not None:
                    added.append(habit)
        return added

    def remove_habit(self, habit_id: str) -> bool:
        habit = self.find_habit(habit_id)
        if habit is None:
            return False
        with self.batch():
            self.habits.remove(habit)
            self._touch("habits")
            if self.active_session and self.active_session.quest_id == habit_id:
                self.active_session = None
                self._touch("session")
        return True

    def complete_habit(self, habit_id: str) -> Optional[Habit]:
        habit = self.find_habit(habit_id)
        if habit is None or habit.completed or habit.has_incomplete_subtasks():
            return None
        with self.batch():
            habit.streak += 1
            self.gain_xp(habit.xp_reward, stat_for_category(habit.category))
            self._merge_activity(quests=1, xp=habit.xp_reward)
            habit.completed = True
            habit.last_completed = self.now().isoformat()
            self._touch("habits")
            self.check_achievements()
            self._log("quest", f"Completed {habit.title} (+{habit.xp_reward} XP, streak {habit.streak}).", {"habit_id": habit.id})
        return habit

    def complete_subtask(self, habit_id: str, subtask_id: str) -> bool:
        """Mark one subtask done. Returns True once no incomplete subtask remains.

        The parent habit is never completed here.
        """
        habit = self.find_habit(habit_id)
        if habit is None:
            return False
        subtask = next((st for st in habit.subtasks if st.id == subtask_id), None)
        if subtask is None or subtask.is_completed:
            return False
        with self.batch():
            subtask.is_completed = True
            next_index = next((i for i, st in enumerate(habit.subtasks) if not st.is_completed), -1)
            habit.current_subtask_index = next_index if next_index != -1 else len(habit.subtasks) - 1
            self._touch("habits")
            self.gain_xp(SUBTASK_XP, stat_for_category(habit.category))
        return next_index == -1

    def add_subtasks(self, habit_id: str, subtasks: Iterable[dict]) -> Optional[Habit]:
        habit = self.find_habit(habit_id)
        if habit is None:
            return None
        with self.batch():
            for data in subtasks:
                habit.subtasks.append(Subtask.model_validate({**data, "id": new_id(), "is_completed": False}))
            habit.total_estimated_pomodoros = sum(st.estimated_pomodoros for st in habit.subtasks) or None
            self._touch("habits")
        return habit

    def add_follow_up(self, habit_id: str, follow_up: FollowUp) -> Optional[FollowUp]:
        habit = self.find_habit(habit_id)
        if habit is None:
            return None
        with self.batch():
            if not follow_up.timestamp:
                follow_up.timestamp = self.now().isoformat()
            habit.follow_ups.append(follow_up)
            self._touch("habits")
        return follow_up

    def get_follow_ups(self, habit_id: str) -> list[FollowUp]:
        habit = self.find_habit(habit_id)
        return list(habit.follow_ups) if habit else []

    # -- character ----------------------------------------------------------

    def gain_xp(self, amount: int, stat_type: str | None = None) -> int:
        amount = max(0, int(amount))
        levels = 0
        with self.batch():
            c = self.character
            c.xp += amount
            while c.xp >= c.xp_to_next:
                c.xp -= c.xp_to_next
                c.level += 1
                c.xp_to_next = next_threshold(c.xp_to_next)
                if stat_type in STAT_NAMES:
                    setattr(c.stats, stat_type, getattr(c.stats, stat_type) + 1)
                levels += 1
            self._touch("character")
            if levels:
                self._log("level_up", f"Level up to {c.level}.", {"levels": levels, "stat": stat_type})
                self.check_achievements()
        return levels

    def record_pomodoro(self) -> None:
        with self.batch():
            self.gain_xp(POMODORO_XP, "wisdom")
            self._merge_activity(pomodoros=1)
            self.check_achievements()

    # -- sessions -----------------------------------------------------------

    def start_quest_session(self, quest_id: str, pomodoro_count: int) -> Optional[QuestSession]:
        if self.find_habit(quest_id) is None:
            return None
        with self.batch():
            self.active_session = QuestSession(
                quest_id=quest_id,
                pomodoro_count=max(1, int(pomodoro_count)),
                started_at=self.now().isoformat(),
            )
            self._touch("session")
        return self.active_session

    def advance_quest_session(self, subtask_id: str) -> Optional[Habit]:
        """Complete a subtask of the active quest; the last one closes the session."""
        session = self.active_session
        if session is None:
            return None
        with self.batch():
            finished = self.complete_subtask(session.quest_id, subtask_id)
            if finished:
                return self.complete_quest_session()
        return None

    def complete_quest_session(self) -> Optional[Habit]:
        session = self.active_session
        if session is None:
            return None
        with self.batch():
            self.active_session = None
            self._touch("session")
            self._merge_activity(pomodoros=session.pomodoro_count)
            habit = self.complete_habit(session.quest_id)
            self.check_achievements()
        return habit

    # -- activity -----------------------------------------------------------

    def get_daily_activity(self, for_date: str) -> DailyActivity:
        for entry in self.daily_activities:
            if entry.date == for_date:
                return entry
        return DailyActivity(date=for_date)

    def _merge_activity(self, quests: int = 0, pomodoros: int = 0, xp: int = 0, login: bool = True) -> DailyActivity:
        key = self.today_key()
        entry = next((a for a in self.daily_activities if a.date == key), None)
        if entry is None:
            entry = DailyActivity(date=key)
            self.daily_activities.append(entry)
        entry.quests_completed += quests
        entry.pomodoros_completed += pomodoros
        entry.xp_earned += xp
        entry.has_login = entry.has_login or login
        self._touch("daily_activities")
        return entry

    def ensure_today(self) -> list[str]:
        """Roll the day over if the date changed and stamp today's login.

        Idempotent per date, so it can run before every request.
        """
        with self.batch():
            reset = self.roll_over_day()
            self.record_login()
        return reset

    def record_login(self) -> DailyActivity:
        existing = self.get_daily_activity(self.today_key())
        if existing.has_login:
            return existing
        with self.batch():
            return self._merge_activity()

    def get_streak_count(self) -> int:
        logins = {a.date for a in self.daily_activities if a.has_login}
        day = self.today()
        streak = 0
        while day.isoformat() in logins:
            streak += 1
            day -= timedelta(days=1)
        return streak

    def activity_level(self, for_date: str) -> int:
        activity = self.get_daily_activity(for_date)
        if not activity.has_login:
            return 0
        if activity.quests_completed == 0:
            return 1
        if activity.quests_completed <= 2:
            return 2
        if activity.quests_completed <= 3:
            return 3
        return 4

    def roll_over_day(self) -> list[str]:
        """Reset completed-today flags whose period has ended.

        Daily habits reset on a new calendar day, weekly habits on a new ISO
        week, milestone habits never. Streaks are kept.
        """
        today = self.today()
        if self.last_rollover == today.isoformat():
            return []
        reset = []
        for habit in self.habits:
            if not habit.completed or not habit.last_completed:
                continue
            try:
                done = datetime.fromisoformat(habit.last_completed).date()
            except ValueError:
                continue
            if habit.frequency == "daily":
                expired = done < today
            elif habit.frequency == "weekly":
                expired = done.isocalendar()[:2] < today.isocalendar()[:2]
            else:
                expired = False
            if expired:
                habit.completed = False
                for subtask in habit.subtasks:
                    subtask.is_completed = False
                habit.current_subtask_index = 0
                reset.append(habit.id)
        self.last_rollover = today.isoformat()
        if self.cache is not None:
            self.cache.set(ROLLOVER_KEY, self.last_rollover)
        if reset:
            with self.batch():
                self._touch("habits")
            self._log("rollover", f"Reset {len(reset)} quest(s) for {today.isoformat()}.")
        return reset

    # -- achievements -------------------------------------------------------

    def max_streak(self) -> int:
        return max((h.streak for h in self.habits), default=0)

    def _category_completions(self, category: str) -> int:
        return sum(h.streak for h in self.habits if h.category == category)

    def _achievement_rules(self) -> dict[str, bool]:
        total_quests = sum(a.quests_completed for a in self.daily_activities)
        return {
            "1": total_quests > 0 or any(h.streak > 0 for h in self.habits),
            "2": self.max_streak() >= 7,
            "3": sum(a.pomodoros_completed for a in self.daily_activities) >= 10,
            "4": self.character.level >= 10,
            "5": self._category_completions("Academics") >= 50,
            "6": self._category_completions("Tech") >= 30,
        }

    def check_achievements(self) -> list[str]:
        rules = self._achievement_rules()
        unlocked = []
        for achievement in self.achievements:
            if not achievement.unlocked and rules.get(achievement.id):
                achievement.unlocked = True
                unlocked.append(achievement.id)
        if unlocked:
            with self.batch():
                self._touch("achievements")
                for achievement_id in unlocked:
                    title = next(a.title for a in self.achievements if a.id == achievement_id)
                    self._log("achievement", f"Achievement unlocked: {title}", {"id": achievement_id})
        return unlocked

    # -- roles & suggestions ------------------------------------------------

    def set_user_roles(self, roles: Iterable[str], fitness_types: Iterable[str] = ()) -> UserRoles:
        with self.batch():
            self.user_roles = UserRoles(roles=list(dict.fromkeys(roles)), fitness_types=list(dict.fromkeys(fitness_types)))
            self._touch("user_roles")
        return self.user_roles

    def complete_onboarding(self, profile: UserProfile) -> list[Habit]:
        """Set roles from the profile's interests and bulk-add their catalog quests."""
        roles = catalog.roles_for_interests(profile.interests)
        fitness_types = catalog.fitness_types_for([*profile.fitness_preferences, *profile.interests])
        if fitness_types and "fitness" not in roles:
            roles.append("fitness")
        added = []
        with self.batch():
            self.set_user_roles(roles, fitness_types)
            eligible = catalog.get_quests_for_roles(
                roles, fitness_types, self.character.level, self.max_streak(), self.pack_key
            )
            for template in eligible:
                habit = self.add_habit_from_template(template["id"])
                if habit is not None:
                    added.append(habit)
        self._log("onboarding", f"Onboarding complete: {len(added)} quest(s) for {', '.join(roles) or 'no roles'}.")
        return added

    def get_suggested_quests(self) -> list[dict]:
        if self.user_roles is None:
            return []
        streak = self.max_streak()
        eligible = catalog.get_quests_for_roles(
            self.user_roles.roles,
            self.user_roles.fitness_types,
            self.character.level,
            streak,
            self.pack_key,
        )
        taken = self.instantiated_template_ids()
        return [catalog.scale_quest_difficulty(t, streak) for t in eligible if t["id"] not in taken]

    # -- derived views ------------------------------------------------------

    def get_skill_tree(self) -> list[dict]:
        level = self.character.level
        stats = self.character.stats
        streak = self.max_streak()
        total = sum(h.streak for h in self.habits)
        skills = [
            ("shadow-focus", "Shadow Focus", "focus", 3, 3, min(streak // 5, 3)),
            ("streak-guardian", "Streak Guardian", "discipline", 5, 1, 1 if streak >= 10 else 0),
            ("xp-multiplier", "Elite Hunter", "mastery", 8, 1, 1 if total >= 50 else 0),
            ("quick-learner", "Quick Learner", "focus", 4, 2, min(stats.intelligence // 15, 2)),
            ("iron-will", "Iron Will", "discipline", 6, 3, min(stats.wisdom // 12, 3)),
        ]
        return [
            {
                "id": skill_id,
                "name": name,
                "category": category,
                "unlock_level": unlock_level,
                "unlocked": level >= unlock_level,
                "max_rank": max_rank,
                "current_rank": rank,
            }
            for skill_id, name, category, unlock_level, max_rank, rank in skills
        ]

    def daily_lore(self, for_date: str | None = None) -> str:
        key = for_date or self.today_key()
        return lore_line(load_quest_pack(self.pack_key), stable_seed("lore", key), "Every quest completed strengthens your shadow.")

    def state(self) -> dict:
        snap = dump(self.snapshot())
        snap["active_session"] = dump(self.active_session) if self.active_session else None
        snap["streak_count"] = self.get_streak_count()
        return snap
