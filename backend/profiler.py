"""
Study Engine - Behavior Profiler
Aggregates session and break history into a behavior profile, and plan-task
history into completion insights.
"""

import asyncio
from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from database import store as default_store
from logger import get_logger
from models import (
    BehaviorData, BehaviorInsight, BehaviorProfile, Break, BreakType, PlanTask,
    Session, SleepLog, Subject, SubjectBehavior, TaskStatus,
)
from narrative import NarrativeEnhancer, safe_generate, valid_text

logger = get_logger(__name__)

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

GOOD_SLEEP_MINUTES = 420
POOR_SLEEP_MINUTES = 360


def window_start(today: date, days: int) -> datetime:
    """Midnight at the start of a trailing window of `days` days."""
    return datetime.combine(today - timedelta(days=days), time.min)


def calc_streaks(days: Iterable[date], today: date) -> Tuple[int, int]:
    """
    Longest and current run of consecutive study days.
    The current run only counts if the latest day is today or yesterday.
    """
    ordered = sorted(set(days))
    if not ordered:
        return 0, 0

    longest = run = 1
    for prev, cur in zip(ordered, ordered[1:]):
        run = run + 1 if (cur - prev).days == 1 else 1
        longest = max(longest, run)

    current = run if (today - ordered[-1]).days <= 1 else 0
    return longest, current


def empty_profile(window_days: int) -> BehaviorProfile:
    return BehaviorProfile(window_days=window_days)


def build_profile(
    sessions: List[Session],
    breaks: List[Break],
    subjects: List[Subject],
    window_days: int,
    today: date,
) -> BehaviorProfile:
    """Pure aggregation over already-fetched history."""
    if not sessions:
        return empty_profile(window_days)

    names = {s.id: s.name for s in subjects}
    total = sum(s.duration_seconds for s in sessions)

    study_days = {s.started_at.date() for s in sessions}
    consistency = min(100, round(len(study_days) / window_days * 100))
    longest, current = calc_streaks(study_days, today)

    # max() returns the first maximum, so ties go to the lowest hour
    hour_seconds = [0] * 24
    for s in sessions:
        hour_seconds[s.started_at.hour] += s.duration_seconds
    peak_hour = hour_seconds.index(max(hour_seconds))

    per_subject: Dict[str, Dict] = {}
    for s in sessions:
        key = s.subject_id or ""
        day = s.started_at.date()
        entry = per_subject.setdefault(key, {"seconds": 0, "count": 0, "last": day})
        entry["seconds"] += s.duration_seconds
        entry["count"] += 1
        entry["last"] = max(entry["last"], day)

    breakdown = [
        SubjectBehavior(
            subject_id=subject_id,
            subject_name=names.get(subject_id, "Unknown"),
            total_seconds=v["seconds"],
            percentage=round(v["seconds"] / total * 100) if total > 0 else 0,
            session_count=v["count"],
            avg_session_seconds=round(v["seconds"] / v["count"]),
            last_studied=v["last"],
        )
        for subject_id, v in per_subject.items()
    ]
    breakdown.sort(key=lambda b: b.total_seconds, reverse=True)

    weekday_totals = [0] * 7
    weekday_counts = [0] * 7
    for s in sessions:
        idx = s.started_at.weekday()
        weekday_totals[idx] += s.duration_seconds
        weekday_counts[idx] += 1
    weekday_seconds = [
        round(t / c) if c else 0 for t, c in zip(weekday_totals, weekday_counts)
    ]

    total_break = sum(b.duration_seconds for b in breaks)
    if breaks:
        common_break = Counter(b.break_type for b in breaks).most_common(1)[0][0]
    else:
        common_break = BreakType.REST

    return BehaviorProfile(
        window_days=window_days,
        total_study_seconds=total,
        avg_daily_seconds=round(total / window_days),
        avg_session_seconds=round(total / len(sessions)),
        peak_hour=peak_hour,
        consistency_score=consistency,
        current_streak=current,
        longest_streak=longest,
        subject_breakdown=breakdown,
        weekday_seconds=weekday_seconds,
        avg_breaks_per_session=round(len(breaks) / len(sessions), 1),
        avg_break_seconds=round(total_break / len(breaks)) if breaks else 0,
        common_break_type=common_break,
        unique_study_days=len(study_days),
        has_data=True,
    )


# ============================================
# COMPLETION INSIGHTS
# ============================================

def _completion_rate(tasks: List[PlanTask]) -> float:
    if not tasks:
        return 0.0
    return sum(1 for t in tasks if t.status == TaskStatus.COMPLETED) / len(tasks)


def completion_streak(tasks: List[PlanTask], today: date, horizon: int = 30) -> int:
    """Consecutive days, counting back from today, with at least one completed task.
    Today may still be open without breaking the streak."""
    completed_days = {t.scheduled_date for t in tasks if t.status == TaskStatus.COMPLETED}
    streak = 0
    for i in range(horizon):
        if today - timedelta(days=i) in completed_days:
            streak += 1
        elif i > 0:
            break
    return streak


def best_and_worst_day(tasks: List[PlanTask]) -> Tuple[Optional[int], Optional[int], float, float]:
    """Weekday indexes with the highest and lowest completion rate (days with ≥2 tasks)."""
    by_day: Dict[int, List[PlanTask]] = defaultdict(list)
    for t in tasks:
        by_day[t.scheduled_date.weekday()].append(t)

    best = worst = None
    best_rate, worst_rate = -1.0, 2.0
    for day in range(7):
        day_tasks = by_day.get(day, [])
        if len(day_tasks) < 2:
            continue
        rate = _completion_rate(day_tasks)
        if rate > best_rate:
            best, best_rate = day, rate
        if rate < worst_rate:
            worst, worst_rate = day, rate
    return best, worst, best_rate, worst_rate


def sleep_correlation(tasks: List[PlanTask], sleep_logs: List[SleepLog]) -> Optional[str]:
    """Completion-rate gap between well-rested (≥7h) and short-sleep (<6h) days."""
    if len(sleep_logs) < 5:
        return None

    good_days = {l.log_date for l in sleep_logs if (l.sleep_duration_minutes or 0) >= GOOD_SLEEP_MINUTES}
    poor_days = {l.log_date for l in sleep_logs if (l.sleep_duration_minutes or 0) < POOR_SLEEP_MINUTES}

    good_rate = _completion_rate([t for t in tasks if t.scheduled_date in good_days])
    poor_rate = _completion_rate([t for t in tasks if t.scheduled_date in poor_days])
    diff = round((good_rate - poor_rate) * 100)
    if diff >= 10:
        return f"Your output is {diff}% higher after 7+ hours of sleep"
    return None


# ============================================
# PROFILER
# ============================================

class BehaviorProfiler:
    """Reads history from the activity store and derives behavior profiles."""

    def __init__(self, store=None):
        self.store = store or default_store

    async def analyze(
        self, user_id: str, window_days: int = 30, today: Optional[date] = None
    ) -> BehaviorProfile:
        """Behavior profile over the trailing window. Never raises for empty history."""
        today = today or date.today()
        window_days = max(1, window_days)
        since = window_start(today, window_days)

        sessions, breaks, subjects = await asyncio.gather(
            self.store.get_completed_sessions(user_id, since),
            self.store.get_breaks(user_id, since),
            self.store.get_subjects(user_id, active_only=False),
        )

        profile = build_profile(sessions, breaks, subjects, window_days, today)
        if not profile.has_data:
            logger.debug(f"No completed sessions for {user_id} in the last {window_days} days")
        return profile

    async def behavior_insights(
        self,
        user_id: str,
        enhancer: Optional[NarrativeEnhancer] = None,
        today: Optional[date] = None,
    ) -> BehaviorData:
        """30-day completion patterns: rate, best/worst weekday, streak, sleep impact."""
        today = today or date.today()
        start = today - timedelta(days=30)

        tasks, sleep_logs = await asyncio.gather(
            self.store.get_tasks_in_range(user_id, start, today),
            self.store.get_sleep_logs(user_id, since=start),
        )

        if len(tasks) < 3:
            return BehaviorData(
                insights=[BehaviorInsight(label="Data", value="Need more data", positive=False)],
                narrative="Start logging your daily tasks so patterns can be analyzed.",
                has_enough_data=False,
            )

        rate = round(_completion_rate(tasks) * 100)
        best, worst, best_rate, worst_rate = best_and_worst_day(tasks)
        streak = completion_streak(tasks, today)
        sleep_line = sleep_correlation(tasks, sleep_logs)

        best_name = DAY_NAMES[best] if best is not None else None
        worst_name = DAY_NAMES[worst] if worst is not None else None

        insights = [
            BehaviorInsight(label="Completion Rate", value=f"{rate}%", positive=rate >= 70),
            BehaviorInsight(label="Day Streak", value=f"{streak} days", positive=streak >= 2),
        ]
        if best_name:
            insights.insert(1, BehaviorInsight(label="Best Day", value=best_name, positive=True))
        if worst_name:
            insights.insert(2, BehaviorInsight(label="Weakest Day", value=worst_name, positive=False))
        if sleep_line:
            insights.append(BehaviorInsight(label="Sleep Impact", value=sleep_line, positive=True))

        narrative = f"Your completion rate is {rate}%."
        if best_name:
            narrative += f" Schedule your hardest topics on {best_name}, your strongest day."

        lines = [f"30-day completion rate: {rate}%"]
        if best_name:
            lines.append(f"Best study day: {best_name} ({round(best_rate * 100)}% completion)")
        if worst_name:
            lines.append(f"Worst study day: {worst_name} ({round(worst_rate * 100)}% completion)")
        lines.append(f"Current streak: {streak} consecutive days")
        if sleep_line:
            lines.append(f"Sleep insight: {sleep_line}")
        lines.append("\nGive 2 sentences of specific, actionable advice based on this data.")

        raw = await safe_generate(
            enhancer,
            [
                {"role": "system", "content": (
                    "You are a behavioral study coach for university students. "
                    "Return plain English text only, 2 sentences max. No JSON. No markdown."
                )},
                {"role": "user", "content": "\n".join(lines)},
            ],
            max_tokens=150,
            temperature=0.6,
            purpose="behavior insights",
        )
        narrative = valid_text(400)(raw) or narrative

        return BehaviorData(
            completion_rate=rate,
            best_day=best_name,
            worst_day=worst_name,
            completion_streak=streak,
            sleep_correlation=sleep_line,
            insights=insights,
            narrative=narrative,
            has_enough_data=True,
        )


# ============================================
# MODULE-LEVEL HELPERS
# ============================================

async def analyze_behavior(user_id: str, window_days: int = 30, today: Optional[date] = None,
                           store=None) -> BehaviorProfile:
    return await BehaviorProfiler(store).analyze(user_id, window_days, today)


async def get_behavior_insights(user_id: str, enhancer: Optional[NarrativeEnhancer] = None,
                                today: Optional[date] = None, store=None) -> BehaviorData:
    return await BehaviorProfiler(store).behavior_insights(user_id, enhancer, today)
