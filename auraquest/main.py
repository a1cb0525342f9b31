from __future__ import annotations

import asyncio
import json
from contextlib import suppress
from datetime import timedelta
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field

from auraquest import ai_service, config
from auraquest.db import LocalCache, get_recent_events, init_db
from auraquest.engine import ProgressionEngine
from auraquest.jobs.midnight_tick import run_nightly
from auraquest.models import Difficulty, FollowUp, Frequency, QuestRequest, UserIdentity, dump, parse_aggregate
from auraquest.onboarding import OnboardingSession
from auraquest.remote import build_remote_store
from auraquest.sync import SyncCoordinator

APP_DIR = Path(__file__).resolve().parent

app = FastAPI(title="AuraQuest")
templates = Jinja2Templates(directory=APP_DIR / "templates")


class HabitIn(BaseModel):
    title: str
    category: str = "Personal"
    xp_reward: int = Field(25, ge=0)
    frequency: Frequency = "daily"
    difficulty: Difficulty = "basic"
    description: str = ""


class RolesIn(BaseModel):
    roles: list[str] = Field(default_factory=list)
    fitness_types: list[str] = Field(default_factory=list)


class SessionIn(BaseModel):
    quest_id: str
    pomodoro_count: int = Field(1, ge=1)


class FollowUpIn(BaseModel):
    query: str
    subtask_id: Optional[str] = None


class ReplyIn(BaseModel):
    text: str


def configured_identity() -> UserIdentity | None:
    if not config.USER_ID:
        return None
    return UserIdentity(uid=config.USER_ID, display_name=config.USER_NAME, email=config.USER_EMAIL)


@app.on_event("startup")
async def startup() -> None:
    init_db()
    engine = ProgressionEngine(cache=LocalCache(), pack_key=config.QUEST_PACK)
    engine.load_from_cache()
    engine.ensure_today()
    app.state.engine = engine
    app.state.sync = SyncCoordinator(engine, build_remote_store())
    app.state.onboarding = None
    await app.state.sync.start(configured_identity())
    app.state.nightly = asyncio.create_task(run_nightly(engine))


@app.on_event("shutdown")
async def shutdown() -> None:
    app.state.nightly.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.nightly
    await app.state.sync.close()


def get_engine() -> ProgressionEngine:
    return app.state.engine


@app.middleware("http")
async def roll_day_forward(request: Request, call_next):
    engine = getattr(request.app.state, "engine", None)
    if engine is not None:
        engine.ensure_today()
    return await call_next(request)


def get_sync() -> SyncCoordinator:
    return app.state.sync


def require_habit(habit_id: str):
    habit = get_engine().find_habit(habit_id)
    if habit is None:
        raise HTTPException(status_code=404, detail="Unknown habit")
    return habit


def heatmap(engine: ProgressionEngine, days: int) -> list[dict]:
    today = engine.today()
    out = []
    for offset in range(days - 1, -1, -1):
        key = (today - timedelta(days=offset)).isoformat()
        out.append({**dump(engine.get_daily_activity(key)), "level": engine.activity_level(key)})
    return out


def dashboard_context() -> dict:
    engine = get_engine()
    return {
        "state": engine.state(),
        "character": engine.character,
        "habits": engine.habits,
        "achievements": engine.achievements,
        "suggestions": engine.get_suggested_quests(),
        "skills": engine.get_skill_tree(),
        "heatmap": heatmap(engine, 28),
        "lore": engine.daily_lore(),
        "streak": engine.get_streak_count(),
        "session": engine.active_session,
        "events": get_recent_events(8),
        "today": engine.today_key(),
    }


@app.get("/", response_class=HTMLResponse)
def home(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "dashboard.html", dashboard_context())


@app.post("/habits/add")
async def form_add_habit(
    title: str = Form(...),
    category: str = Form("Personal"),
    xp_reward: int = Form(25),
    frequency: str = Form("daily"),
) -> RedirectResponse:
    get_engine().add_habit({"title": title, "category": category, "xp_reward": max(0, xp_reward), "frequency": frequency})
    return RedirectResponse(url="/", status_code=303)


@app.post("/habits/{habit_id}/done")
async def form_complete_habit(habit_id: str) -> RedirectResponse:
    get_engine().complete_habit(habit_id)
    return RedirectResponse(url="/", status_code=303)


@app.post("/templates/{template_id}/accept")
async def form_accept_template(template_id: str) -> RedirectResponse:
    get_engine().add_habit_from_template(template_id)
    return RedirectResponse(url="/", status_code=303)


@app.post("/pomodoro/done")
async def form_pomodoro() -> RedirectResponse:
    get_engine().record_pomodoro()
    return RedirectResponse(url="/", status_code=303)


@app.get("/api/state", response_class=JSONResponse)
def api_state() -> JSONResponse:
    return JSONResponse(get_engine().state())


@app.post("/api/habits", response_class=JSONResponse)
async def api_add_habit(body: HabitIn) -> JSONResponse:
    habit = get_engine().add_habit(body.model_dump())
    if habit is None:
        raise HTTPException(status_code=400, detail="Habit needs a non-blank title")
    return JSONResponse(dump(habit), status_code=201)


@app.post("/api/templates/{template_id}", response_class=JSONResponse)
async def api_add_template(template_id: str) -> JSONResponse:
    habit = get_engine().add_habit_from_template(template_id)
    if habit is None:
        raise HTTPException(status_code=409, detail="Unknown or already accepted template")
    return JSONResponse(dump(habit), status_code=201)


@app.delete("/api/habits/{habit_id}", response_class=JSONResponse)
async def api_remove_habit(habit_id: str) -> JSONResponse:
    require_habit(habit_id)
    get_engine().remove_habit(habit_id)
    return JSONResponse({"removed": habit_id})


@app.post("/api/habits/{habit_id}/complete", response_class=JSONResponse)
async def api_complete_habit(habit_id: str) -> JSONResponse:
    require_habit(habit_id)
    habit = get_engine().complete_habit(habit_id)
    if habit is None:
        raise HTTPException(status_code=409, detail="Habit already completed or has open subtasks")
    return JSONResponse(dump(habit))


@app.post("/api/habits/{habit_id}/subtasks/{subtask_id}/complete", response_class=JSONResponse)
async def api_complete_subtask(habit_id: str, subtask_id: str) -> JSONResponse:
    require_habit(habit_id)
    all_done = get_engine().complete_subtask(habit_id, subtask_id)
    return JSONResponse({"all_done": all_done, "habit": dump(require_habit(habit_id))})


@app.post("/api/habits/{habit_id}/subtasks/generate", response_class=JSONResponse)
async def api_generate_subtasks(habit_id: str) -> JSONResponse:
    habit = require_habit(habit_id)
    subtasks = await ai_service.generate_subtasks(habit.title, habit.category, habit.description, pack_key=config.QUEST_PACK)
    updated = get_engine().add_subtasks(habit_id, [st.model_dump() for st in subtasks])
    if updated is None:
        raise HTTPException(status_code=404, detail="Unknown habit")
    return JSONResponse(dump(updated))


@app.get("/api/habits/{habit_id}/follow-ups", response_class=JSONResponse)
def api_follow_ups(habit_id: str) -> JSONResponse:
    require_habit(habit_id)
    return JSONResponse([dump(f) for f in get_engine().get_follow_ups(habit_id)])


@app.post("/api/habits/{habit_id}/follow-ups", response_class=JSONResponse)
async def api_ask_follow_up(habit_id: str, body: FollowUpIn) -> JSONResponse:
    habit = require_habit(habit_id)
    subtask = next((st for st in habit.subtasks if st.id == body.subtask_id), None)
    answer = await ai_service.generate_follow_up(
        body.query,
        {"quest_title": habit.title, "subtask_title": subtask.title if subtask else None},
        pack_key=config.QUEST_PACK,
    )
    follow_up = get_engine().add_follow_up(
        habit_id,
        FollowUp(quest_id=habit_id, subtask_id=body.subtask_id, query=body.query, response=answer.response, resources=answer.resources),
    )
    return JSONResponse(dump(follow_up), status_code=201)


@app.post("/api/sessions", response_class=JSONResponse)
async def api_start_session(body: SessionIn) -> JSONResponse:
    require_habit(body.quest_id)
    session = get_engine().start_quest_session(body.quest_id, body.pomodoro_count)
    return JSONResponse(dump(session), status_code=201)


@app.post("/api/sessions/subtasks/{subtask_id}", response_class=JSONResponse)
async def api_advance_session(subtask_id: str) -> JSONResponse:
    engine = get_engine()
    session = engine.active_session
    if session is None:
        raise HTTPException(status_code=409, detail="No active session")
    habit = engine.advance_quest_session(subtask_id)
    if habit is not None:
        await get_sync().save_quest_session(session)
    return JSONResponse({"completed": habit is not None, "state": engine.state()})


@app.post("/api/sessions/complete", response_class=JSONResponse)
async def api_complete_session() -> JSONResponse:
    engine = get_engine()
    session = engine.active_session
    if session is None:
        raise HTTPException(status_code=409, detail="No active session")
    habit = engine.complete_quest_session()
    await get_sync().save_quest_session(session, completed=habit is not None)
    return JSONResponse({"habit": dump(habit) if habit else None, "state": engine.state()})


@app.post("/api/pomodoro", response_class=JSONResponse)
async def api_pomodoro() -> JSONResponse:
    engine = get_engine()
    engine.record_pomodoro()
    return JSONResponse(dump(engine.get_daily_activity(engine.today_key())))


@app.get("/api/suggestions", response_class=JSONResponse)
def api_suggestions() -> JSONResponse:
    return JSONResponse(get_engine().get_suggested_quests())


@app.post("/api/roles", response_class=JSONResponse)
async def api_roles(body: RolesIn) -> JSONResponse:
    roles = get_engine().set_user_roles(body.roles, body.fitness_types)
    return JSONResponse(dump(roles))


@app.post("/api/quests/generate", response_class=JSONResponse)
async def api_generate_quests(body: QuestRequest, detailed: bool = False) -> JSONResponse:
    if detailed:
        quests = await ai_service.generate_quests_with_subtasks(body, pack_key=config.QUEST_PACK)
    else:
        quests = await ai_service.generate_quests(body, pack_key=config.QUEST_PACK)
    sync = get_sync()
    with sync.bulk_operation():
        habits = get_engine().add_generated_quests(quests)
    await sync.save_generated_quests(quests)
    return JSONResponse([dump(h) for h in habits], status_code=201)


@app.post("/api/onboarding/start", response_class=JSONResponse)
async def api_onboarding_start() -> JSONResponse:
    session = OnboardingSession(pack_key=config.QUEST_PACK)
    app.state.onboarding = session
    turn = await session.start()
    return JSONResponse(dump(turn))


@app.post("/api/onboarding/reply", response_class=JSONResponse)
async def api_onboarding_reply(body: ReplyIn) -> JSONResponse:
    session: OnboardingSession | None = app.state.onboarding
    if session is None:
        raise HTTPException(status_code=409, detail="Onboarding not started")
    was_complete = session.is_complete
    turn = await session.reply(body.text)
    payload = dump(turn)
    if session.is_complete and not was_complete:
        sync = get_sync()
        with sync.bulk_operation():
            habits = get_engine().complete_onboarding(session.profile)
        await sync.save_profile(session.profile)
        payload["quests"] = [dump(h) for h in habits]
    return JSONResponse(payload)


@app.get("/api/activity", response_class=JSONResponse)
def api_activity(days: int = 28) -> JSONResponse:
    return JSONResponse(heatmap(get_engine(), max(1, min(days, 366))))


@app.get("/api/skills", response_class=JSONResponse)
def api_skills() -> JSONResponse:
    return JSONResponse(get_engine().get_skill_tree())


@app.get("/api/lore", response_class=JSONResponse)
def api_lore() -> JSONResponse:
    engine = get_engine()
    return JSONResponse({"date": engine.today_key(), "lore": engine.daily_lore()})


@app.get("/export")
def export_save() -> JSONResponse:
    return JSONResponse(dump(get_engine().snapshot()))


@app.post("/import")
async def import_save(payload: str = Form(...)) -> RedirectResponse:
    try:
        raw = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Save data is not valid JSON")
    result = parse_aggregate(raw)
    if not result.ok:
        raise HTTPException(status_code=400, detail="Save data does not match the expected shape")
    with get_sync().bulk_operation():
        get_engine().restore(result.value)
    return RedirectResponse(url="/", status_code=303)
