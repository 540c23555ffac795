"""
Study Engine - Plan Review
Plan-vs-actual comparison for a day, overdue backlog cleanup, smart alerts,
and the exam plan status view.
"""

import asyncio
import math
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from database import store as default_store
from goals import days_until, require_active_plan
from logger import get_logger
from models import (
    AlertLevel, DayPlanSummary, Goal, PlanComparison, PlanStatusReport, PlanTask, Session, SmartAlert,
    StudyPlan, Subject, TaskStatus,
)
from narrative import NarrativeEnhancer, safe_generate, valid_text

logger = get_logger(__name__)

SURPLUS_RATIO = 1.2
ADJUST_SPREAD_DAYS = 3
MAX_ALERTS = 5
ALERT_WINDOW_DAYS = 14
ALERT_TEXT = valid_text(400)


# ============================================
# PLAN VS ACTUAL
# ============================================

def compare_day(
    day: date,
    tasks: List[PlanTask],
    sessions: List[Session],
    subjects: List[Subject],
) -> PlanComparison:
    names = {s.id: s.name for s in subjects}

    planned = sum(t.duration_minutes for t in tasks)
    actual = round(sum(s.duration_seconds for s in sessions) / 60)

    if planned > 0:
        adherence = min(100, round(actual / planned * 100))
    else:
        adherence = 100 if actual > 0 else 0

    studied = {names[s.subject_id] for s in sessions if s.subject_id in names}
    missed = []
    for t in tasks:
        if t.subject_name and t.subject_name not in studied and t.subject_name not in missed:
            missed.append(t.subject_name)

    return PlanComparison(
        date=day,
        planned_minutes=planned,
        actual_minutes=actual,
        adherence_score=adherence,
        completed_tasks=sum(1 for t in tasks if t.status == TaskStatus.COMPLETED),
        total_tasks=len(tasks),
        missed_subjects=missed,
        surplus=actual > planned * SURPLUS_RATIO,
    )


# ============================================
# SMART ALERTS
# ============================================

def _rate(tasks: List[PlanTask]) -> float:
    if not tasks:
        return 0.0
    return sum(1 for t in tasks if t.status == TaskStatus.COMPLETED) / len(tasks)


def build_alerts(
    overdue_count: int,
    days_left: Optional[int],
    recent_tasks: List[PlanTask],
    today: date,
) -> List[SmartAlert]:
    alerts = []

    if overdue_count > 0:
        plural = "s" if overdue_count != 1 else ""
        alerts.append(SmartAlert(
            alert_id="overdue",
            level=AlertLevel.DANGER if overdue_count >= 5 else AlertLevel.WARNING,
            title="Overdue tasks",
            message=f"You have {overdue_count} overdue task{plural} not yet completed",
            action="adjust_plan",
        ))

    if days_left is not None and 0 <= days_left <= 3:
        alerts.append(SmartAlert(
            alert_id="exam-critical",
            level=AlertLevel.DANGER,
            title="Exam imminent",
            message=f"Exam in {days_left} days only. Focus!",
        ))
    elif days_left is not None and 0 <= days_left <= 7:
        alerts.append(SmartAlert(
            alert_id="exam-soon",
            level=AlertLevel.WARNING,
            title="Exam approaching",
            message=f"Exam in {days_left} days. Make sure you review.",
        ))

    last_done: Dict[str, date] = {}
    for t in recent_tasks:
        if t.status != TaskStatus.COMPLETED:
            continue
        name = t.subject_name or ""
        if name not in last_done or t.scheduled_date > last_done[name]:
            last_done[name] = t.scheduled_date
    for name, last in last_done.items():
        days = (today - last).days
        if days >= 7:
            alerts.append(SmartAlert(
                alert_id=f"stale-{name}",
                level=AlertLevel.DANGER if days >= 10 else AlertLevel.WARNING,
                title=f"{name} is slipping",
                message=f"Haven't studied {name} in {days} days. Forgetting has started!",
            ))

    week_ago = today - timedelta(days=7)
    this_week = [t for t in recent_tasks if week_ago <= t.scheduled_date <= today]
    last_week = [t for t in recent_tasks if today - timedelta(days=14) <= t.scheduled_date < week_ago]
    this_rate, last_rate = _rate(this_week), _rate(last_week)
    if last_rate > 0 and this_rate < last_rate - 0.25 and len(this_week) >= 3:
        alerts.append(SmartAlert(
            alert_id="declining",
            level=AlertLevel.WARNING,
            title="Completion dropping",
            message="Your completion rate dropped this week. Get back to your previous pace.",
        ))

    return alerts[:MAX_ALERTS]


# ============================================
# EXAM PLAN STATUS
# ============================================

def day_label(day: date, today: date) -> str:
    if day == today:
        return "Today"
    if day == today + timedelta(days=1):
        return "Tomorrow"
    return f"{day:%a} {day.month}/{day.day}"


def summarize_plan_days(tasks: List[PlanTask], exam_date: Optional[date], today: date) -> List[DayPlanSummary]:
    """One entry per scheduled day, plus the exam day when no task falls on it."""
    days: Dict[date, DayPlanSummary] = {}
    for t in tasks:
        entry = days.get(t.scheduled_date)
        if entry is None:
            entry = days[t.scheduled_date] = DayPlanSummary(
                date=t.scheduled_date,
                label=day_label(t.scheduled_date, today),
                is_exam_day=t.scheduled_date == exam_date,
                is_past=t.scheduled_date < today,
            )
        entry.task_count += 1
        entry.total_minutes += t.duration_minutes
        if t.status == TaskStatus.COMPLETED:
            entry.completed_count += 1

    if exam_date is not None and exam_date not in days:
        days[exam_date] = DayPlanSummary(date=exam_date, label="Exam Day", is_exam_day=True)
    return sorted(days.values(), key=lambda d: d.date)


def plan_alert(completion_pct: int, overdue: int, days_left: Optional[int]) -> str:
    if overdue > 0:
        plural = "s" if overdue != 1 else ""
        left = f" and only {days_left} days left" if days_left is not None else ""
        return f"You have {overdue} overdue task{plural}{left}! Move them to today and start immediately."
    if completion_pct >= 80:
        left = f" and the exam is in {days_left} days" if days_left is not None else ""
        return f"Excellent! {completion_pct}% done{left}. Keep up the same pace."
    left = f" with {days_left} days remaining" if days_left is not None else ""
    return f"{completion_pct}% of the plan is done{left}. You need to push harder today!"


def build_plan_status(plan: StudyPlan, goal: Optional[Goal], tasks: List[PlanTask], today: date) -> PlanStatusReport:
    exam_date = goal.target_date if goal else None
    days_left = max(0, (exam_date - today).days) if exam_date else None

    completed = sum(1 for t in tasks if t.status == TaskStatus.COMPLETED)
    overdue = sum(1 for t in tasks if t.status == TaskStatus.PENDING and t.scheduled_date < today)
    pct = round(completed / len(tasks) * 100) if tasks else 0

    return PlanStatusReport(
        plan_id=plan.id,
        goal_id=goal.id if goal else None,
        exam_date=exam_date,
        days_left=days_left,
        total_tasks=len(tasks),
        completed_tasks=completed,
        overdue_tasks=overdue,
        completion_pct=pct,
        today_tasks=[t for t in tasks if t.scheduled_date == today],
        day_plans=summarize_plan_days(tasks, exam_date, today),
        alert=plan_alert(pct, overdue, days_left),
    )


# ============================================
# PLAN REVIEWER
# ============================================

class PlanReviewer:
    def __init__(self, store=None):
        self.store = store or default_store

    async def compare_plan_vs_actual(self, user_id: str, day: Optional[date] = None) -> PlanComparison:
        """Planned task minutes against completed session minutes for one date."""
        day = day or date.today()
        start = datetime.combine(day, time.min)

        tasks, sessions, subjects = await asyncio.gather(
            self.store.get_tasks_for_date(user_id, day),
            self.store.get_completed_sessions(user_id, start, start + timedelta(days=1)),
            self.store.get_subjects(user_id, active_only=False),
        )
        return compare_day(day, tasks, sessions, subjects)

    async def adjust_plan(self, user_id: str, today: Optional[date] = None) -> int:
        """
        Move overdue pending tasks forward, starting tomorrow, ceil(n/3) per day
        in their original date order. Returns how many tasks moved.
        """
        today = today or date.today()
        overdue = await self.store.get_overdue_tasks(user_id, today)
        if not overdue:
            return 0

        per_day = max(1, math.ceil(len(overdue) / ADJUST_SPREAD_DAYS))
        for i, task in enumerate(overdue):
            new_day = today + timedelta(days=1 + i // per_day)
            await self.store.update_task(user_id, task.id, scheduled_date=new_day)

        logger.info(f"Rescheduled {len(overdue)} overdue task(s) for {user_id} at {per_day}/day")
        return len(overdue)

    async def smart_alerts(self, user_id: str, today: Optional[date] = None) -> List[SmartAlert]:
        """At most five alerts: overdue backlog, exam proximity, stale subjects, weekly decline."""
        today = today or date.today()
        goal, recent, overdue = await asyncio.gather(
            self.store.get_active_goal(user_id),
            self.store.get_tasks_in_range(user_id, today - timedelta(days=ALERT_WINDOW_DAYS), today),
            self.store.count_overdue_tasks(user_id, today),
        )
        return build_alerts(overdue, days_until(goal, today), recent, today)

    async def plan_status(
        self,
        user_id: str,
        enhancer: Optional[NarrativeEnhancer] = None,
        today: Optional[date] = None,
    ) -> PlanStatusReport:
        """Progress of the active plan toward the exam; the alert text may be rewritten."""
        today = today or date.today()
        plan, goal = await asyncio.gather(
            require_active_plan(user_id, self.store),
            self.store.get_active_goal(user_id),
        )
        tasks = await self.store.get_plan_tasks(user_id, plan.id)
        status = build_plan_status(plan, goal, tasks, today)

        if status.days_left is not None:
            timing = f"The student has {status.days_left} days until the exam."
        else:
            timing = "The student has no exam date set."
        raw = await safe_generate(
            enhancer,
            [
                {"role": "system", "content": "You are an academic coach. Write plain English, no markdown, two sentences only."},
                {"role": "user", "content": (
                    f"{timing}\n"
                    f"Completed {status.completion_pct}% of the plan. {status.overdue_tasks} overdue tasks.\n"
                    "Write: (1) a quick assessment of the situation. (2) a clear tip or warning."
                )},
            ],
            max_tokens=100,
            temperature=0.5,
            purpose="plan status",
        )
        alert = ALERT_TEXT(raw)
        if alert:
            status.alert = alert
        return status


# ============================================
# MODULE-LEVEL HELPERS
# ============================================

async def compare_plan_vs_actual(user_id: str, day: Optional[date] = None, store=None) -> PlanComparison:
    return await PlanReviewer(store).compare_plan_vs_actual(user_id, day)


async def adjust_plan(user_id: str, today: Optional[date] = None, store=None) -> int:
    return await PlanReviewer(store).adjust_plan(user_id, today)


async def get_smart_alerts(user_id: str, today: Optional[date] = None, store=None) -> List[SmartAlert]:
    return await PlanReviewer(store).smart_alerts(user_id, today)


async def get_plan_status(user_id: str, enhancer: Optional[NarrativeEnhancer] = None,
                          today: Optional[date] = None, store=None) -> PlanStatusReport:
    return await PlanReviewer(store).plan_status(user_id, enhancer, today)
