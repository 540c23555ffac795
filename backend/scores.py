"""
Study Engine - Score Calculator
Adherence, productivity, focus and overall scores over the trailing week.
"""

import asyncio
from datetime import date, timedelta
from typing import List, Optional

from config import get_engine_config
from database import store as default_store
from models import BehaviorScores, Break, PlanTask, ScoreLabels, Session, TaskStatus, Trend
from profiler import window_start

SCORE_WINDOW_DAYS = 7

WEIGHTS = {"adherence": 0.4, "productivity": 0.35, "focus": 0.25}

DEFAULT_FOCUS = 75


def score_label(score: int) -> str:
    if score >= 90:
        return "Excellent"
    if score >= 75:
        return "Good"
    if score >= 60:
        return "Fair"
    if score >= 40:
        return "Needs Work"
    return "Low"


def score_trend(overall: int) -> Trend:
    if overall >= 75:
        return Trend.IMPROVING
    if overall <= 45:
        return Trend.DECLINING
    return Trend.STABLE


def compute_scores(
    tasks: List[PlanTask],
    sessions: List[Session],
    breaks: List[Break],
    target_hours: float = 4.0,
    window_days: int = SCORE_WINDOW_DAYS,
) -> BehaviorScores:
    """Pure scoring over one window of tasks, sessions and breaks."""
    if tasks:
        done = sum(1 for t in tasks if t.status == TaskStatus.COMPLETED)
        adherence = round(done / len(tasks) * 100)
    else:
        # No plan in range: approximate adherence by how many days had any study
        days = {s.started_at.date() for s in sessions}
        adherence = round(len(days) / window_days * 100)
    adherence = min(100, adherence)

    study_seconds = sum(s.duration_seconds for s in sessions)
    avg_daily = study_seconds / window_days
    productivity = min(100, round(avg_daily / (target_hours * 3600) * 100))

    break_seconds = sum(b.duration_seconds for b in breaks)
    total_time = study_seconds + break_seconds
    focus = min(100, round(study_seconds / total_time * 100)) if total_time > 0 else DEFAULT_FOCUS

    overall = round(
        adherence * WEIGHTS["adherence"]
        + productivity * WEIGHTS["productivity"]
        + focus * WEIGHTS["focus"]
    )

    return BehaviorScores(
        adherence=adherence,
        productivity=productivity,
        focus=focus,
        overall=overall,
        trend=score_trend(overall),
        labels=ScoreLabels(
            adherence=score_label(adherence),
            productivity=score_label(productivity),
            focus=score_label(focus),
            overall=score_label(overall),
        ),
    )


class ScoreCalculator:
    def __init__(self, store=None, config=None):
        self.store = store or default_store
        self.config = config or get_engine_config()

    async def calculate(self, user_id: str, today: Optional[date] = None) -> BehaviorScores:
        today = today or date.today()
        since = window_start(today, SCORE_WINDOW_DAYS)

        tasks, sessions, breaks = await asyncio.gather(
            self.store.get_tasks_in_range(user_id, today - timedelta(days=SCORE_WINDOW_DAYS), today),
            self.store.get_completed_sessions(user_id, since),
            self.store.get_breaks(user_id, since),
        )
        return compute_scores(tasks, sessions, breaks, self.config.productivity_target_hours)


async def calculate_scores(user_id: str, today: Optional[date] = None, store=None) -> BehaviorScores:
    return await ScoreCalculator(store).calculate(user_id, today)
