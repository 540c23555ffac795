"""Shared test fixtures for the study engine tests.

This module provides:
- An in-memory FakeStore implementing the ActivityStore methods the engine uses
- Scripted narrative enhancers (canned replies, failures)
- Seed helpers for subjects, sessions, tasks, plans and goals

Usage:
    async def test_something(store, user_id):
        subject = store.add_subject(user_id, "Math")
        ...
"""

import os

os.environ.setdefault("STUDY_ENGINE_LOG_TO_FILE", "0")
os.environ.setdefault("AI_ENABLED", "false")

from datetime import date, datetime, time, timedelta
from typing import List, Optional

import pytest

from models import (
    Break, BreakType, Goal, GoalCreate, Insight, InsightCreate, PlanStatus, PlanTask,
    PlanTaskCreate, PlanType, PracticeAttempt, Session, SessionStatus, SleepLog,
    StudyPlan, StudyPlanCreate, Subject, TaskStatus,
)
from narrative import NarrativeEnhancer


TODAY = date(2025, 3, 10)  # a Monday


# ─────────────────────────────────────────────────────────────────────────────
# In-memory activity store
# ─────────────────────────────────────────────────────────────────────────────


class FakeStore:
    """Dict-backed stand-in for database.ActivityStore."""

    def __init__(self):
        self.subjects: List[Subject] = []
        self.sessions: List[Session] = []
        self.breaks: List[Break] = []
        self.tasks: List[PlanTask] = []
        self.plans: List[StudyPlan] = []
        self.goals: List[Goal] = []
        self.attempts: List[PracticeAttempt] = []
        self.sleep_logs: List[SleepLog] = []
        self.insights: List[Insight] = []
        self.writes = 0
        self._next = 0
        self._clock = datetime(2025, 1, 1)

    def _id(self, prefix: str) -> str:
        self._next += 1
        return f"{prefix}-{self._next}"

    def _created(self) -> datetime:
        # strictly increasing so "most recent" ordering is deterministic
        self._clock += timedelta(seconds=1)
        return self._clock

    # ----- seed helpers (not counted as writes) -----

    def add_subject(self, user_id: str, name: str, is_active: bool = True) -> Subject:
        subject = Subject(id=self._id("subj"), user_id=user_id, name=name,
                          is_active=is_active, created_at=self._created())
        self.subjects.append(subject)
        return subject

    def add_session(self, user_id: str, subject_id: Optional[str], started_at: datetime,
                    seconds: int) -> Session:
        session = Session(
            id=self._id("sess"), user_id=user_id, subject_id=subject_id,
            started_at=started_at, ended_at=started_at + timedelta(seconds=seconds),
            duration_seconds=seconds, status=SessionStatus.COMPLETED,
        )
        self.sessions.append(session)
        return session

    def add_break(self, user_id: str, session_id: str, started_at: datetime, seconds: int,
                  break_type: BreakType = BreakType.REST) -> Break:
        brk = Break(id=self._id("brk"), user_id=user_id, session_id=session_id,
                    break_type=break_type, started_at=started_at, duration_seconds=seconds)
        self.breaks.append(brk)
        return brk

    def add_plan(self, user_id: str, start: date = TODAY, end: Optional[date] = None,
                 status: PlanStatus = PlanStatus.ACTIVE, plan_type: PlanType = PlanType.CUSTOM) -> StudyPlan:
        plan = StudyPlan(id=self._id("plan"), user_id=user_id, title="Plan", plan_type=plan_type,
                         start_date=start, end_date=end or start + timedelta(days=30),
                         status=status, created_at=self._created())
        self.plans.append(plan)
        return plan

    def add_task(self, user_id: str, day: date, subject_name: Optional[str] = "Math",
                 status: TaskStatus = TaskStatus.PENDING, plan_id: str = "plan-x",
                 duration_minutes: int = 60, subject_id: Optional[str] = None,
                 start_time: Optional[str] = None, order_index: int = 0) -> PlanTask:
        task = PlanTask(
            id=self._id("task"), plan_id=plan_id, user_id=user_id, title=f"{subject_name} task",
            subject_id=subject_id, subject_name=subject_name, scheduled_date=day,
            scheduled_start_time=start_time, duration_minutes=duration_minutes,
            status=status, order_index=order_index,
        )
        self.tasks.append(task)
        return task

    def add_goal(self, user_id: str, target_date: Optional[date], title: str = "Finals") -> Goal:
        goal = Goal(id=self._id("goal"), user_id=user_id, title=title, target_date=target_date,
                    is_active=True, created_at=self._created())
        self.goals.append(goal)
        return goal

    def add_attempt(self, user_id: str, subject: str, grade: Optional[float],
                    created_at: datetime) -> PracticeAttempt:
        attempt = PracticeAttempt(id=self._id("att"), user_id=user_id, subject=subject,
                                  average_grade=grade, created_at=created_at)
        self.attempts.append(attempt)
        return attempt

    def add_sleep(self, user_id: str, day: date, minutes: int,
                  wake: Optional[datetime] = None) -> SleepLog:
        log = SleepLog(id=self._id("sleep"), user_id=user_id, log_date=day,
                       wake_time=wake, sleep_duration_minutes=minutes)
        self.sleep_logs.append(log)
        return log

    def tasks_for(self, user_id: str) -> List[PlanTask]:
        return [t for t in self.tasks if t.user_id == user_id]

    # ----- subjects -----

    async def get_subjects(self, user_id, active_only=True):
        return [s for s in self.subjects if s.user_id == user_id and (s.is_active or not active_only)]

    async def find_subject_by_name(self, user_id, name):
        needle = name.lower()
        for s in self.subjects:
            if s.user_id == user_id and needle in s.name.lower():
                return s
        return None

    async def create_subject(self, user_id, name, color):
        self.writes += 1
        subject = Subject(id=self._id("subj"), user_id=user_id, name=name, color=color,
                          created_at=self._created())
        self.subjects.append(subject)
        return subject

    # ----- sessions & breaks -----

    async def get_completed_sessions(self, user_id, since, until=None):
        return [
            s for s in self.sessions
            if s.user_id == user_id and s.status == SessionStatus.COMPLETED
            and s.started_at >= since and (until is None or s.started_at < until)
        ]

    async def create_session(self, user_id, subject_id, started_at):
        self.writes += 1
        session = Session(id=self._id("sess"), user_id=user_id, subject_id=subject_id,
                          started_at=started_at, status=SessionStatus.ACTIVE)
        self.sessions.append(session)
        return session

    async def complete_session(self, user_id, session_id, ended_at, duration_seconds):
        self.writes += 1
        for i, s in enumerate(self.sessions):
            if s.id == session_id and s.user_id == user_id:
                self.sessions[i] = s.model_copy(update={
                    "ended_at": ended_at, "duration_seconds": duration_seconds,
                    "status": SessionStatus.COMPLETED,
                })
                return self.sessions[i]
        return None

    async def get_breaks(self, user_id, since):
        return [b for b in self.breaks if b.user_id == user_id and b.started_at >= since]

    async def create_break(self, user_id, session_id, break_type, started_at):
        self.writes += 1
        brk = Break(id=self._id("brk"), user_id=user_id, session_id=session_id,
                    break_type=break_type, started_at=started_at)
        self.breaks.append(brk)
        return brk

    async def finish_break(self, user_id, break_id, ended_at, duration_seconds):
        self.writes += 1
        for i, b in enumerate(self.breaks):
            if b.id == break_id and b.user_id == user_id:
                self.breaks[i] = b.model_copy(update={"ended_at": ended_at, "duration_seconds": duration_seconds})
                return self.breaks[i]
        return None

    # ----- tasks -----

    def _sorted(self, tasks):
        return sorted(tasks, key=lambda t: (t.scheduled_date, t.order_index))

    async def get_tasks_in_range(self, user_id, start, end):
        return self._sorted(t for t in self.tasks_for(user_id) if start <= t.scheduled_date <= end)

    async def get_tasks_for_date(self, user_id, day):
        return await self.get_tasks_in_range(user_id, day, day)

    async def get_all_tasks(self, user_id):
        return self._sorted(self.tasks_for(user_id))

    async def get_plan_tasks(self, user_id, plan_id):
        return self._sorted(t for t in self.tasks_for(user_id) if t.plan_id == plan_id)

    async def get_open_tasks_from(self, user_id, start):
        return self._sorted(
            t for t in self.tasks_for(user_id)
            if t.scheduled_date >= start and t.status != TaskStatus.COMPLETED
        )

    async def get_overdue_tasks(self, user_id, today):
        return self._sorted(
            t for t in self.tasks_for(user_id)
            if t.status == TaskStatus.PENDING and t.scheduled_date < today
        )

    async def count_overdue_tasks(self, user_id, today):
        return len(await self.get_overdue_tasks(user_id, today))

    async def count_completed_tasks(self, user_id):
        return sum(1 for t in self.tasks_for(user_id) if t.status == TaskStatus.COMPLETED)

    async def get_task(self, user_id, task_id):
        for t in self.tasks:
            if t.id == task_id and t.user_id == user_id:
                return t
        return None

    async def insert_tasks(self, tasks: List[PlanTaskCreate]):
        self.writes += 1
        inserted = [PlanTask(id=self._id("task"), **t.model_dump()) for t in tasks]
        self.tasks.extend(inserted)
        return inserted

    async def update_task(self, user_id, task_id, **updates):
        self.writes += 1
        for i, t in enumerate(self.tasks):
            if t.id == task_id and t.user_id == user_id:
                self.tasks[i] = t.model_copy(update=updates)
                return self.tasks[i]
        return None

    async def delete_task(self, user_id, task_id):
        self.writes += 1
        before = len(self.tasks)
        self.tasks = [t for t in self.tasks if not (t.id == task_id and t.user_id == user_id)]
        return len(self.tasks) < before

    async def delete_pending_tasks_from(self, user_id, plan_id, start):
        self.writes += 1
        before = len(self.tasks)
        self.tasks = [
            t for t in self.tasks
            if not (t.user_id == user_id and t.plan_id == plan_id
                    and t.status == TaskStatus.PENDING and t.scheduled_date >= start)
        ]
        return before - len(self.tasks)

    # ----- plans -----

    async def get_active_plan(self, user_id):
        active = [p for p in self.plans if p.user_id == user_id and p.status == PlanStatus.ACTIVE]
        return max(active, key=lambda p: p.created_at) if active else None

    async def get_plans_starting(self, user_id, start, plan_type=None):
        return [
            p for p in self.plans
            if p.user_id == user_id and p.start_date == start
            and (plan_type is None or p.plan_type == plan_type)
        ]

    async def create_plan(self, plan: StudyPlanCreate):
        self.writes += 1
        created = StudyPlan(id=self._id("plan"), created_at=self._created(), **plan.model_dump())
        self.plans.append(created)
        return created

    async def delete_plan(self, user_id, plan_id):
        self.writes += 1
        before = len(self.plans)
        self.plans = [p for p in self.plans if not (p.id == plan_id and p.user_id == user_id)]
        self.tasks = [t for t in self.tasks if t.plan_id != plan_id]
        return len(self.plans) < before

    # ----- goals -----

    async def get_active_goal(self, user_id):
        active = [g for g in self.goals if g.user_id == user_id and g.is_active]
        return max(active, key=lambda g: g.created_at) if active else None

    async def deactivate_goals(self, user_id):
        self.writes += 1
        count = 0
        for i, g in enumerate(self.goals):
            if g.user_id == user_id and g.is_active:
                self.goals[i] = g.model_copy(update={"is_active": False})
                count += 1
        return count

    async def create_goal(self, goal: GoalCreate):
        self.writes += 1
        created = Goal(id=self._id("goal"), created_at=self._created(), **goal.model_dump())
        self.goals.append(created)
        return created

    # ----- signals -----

    async def get_practice_attempts(self, user_id, since):
        return [a for a in self.attempts if a.user_id == user_id and a.created_at >= since]

    async def get_sleep_logs(self, user_id, since=None, limit=30):
        logs = [l for l in self.sleep_logs if l.user_id == user_id and (since is None or l.log_date >= since)]
        logs.sort(key=lambda l: l.log_date, reverse=True)
        return logs[:limit]

    # ----- insights -----

    async def replace_insights(self, user_id, insights: List[InsightCreate]):
        self.writes += 1
        self.insights = [i for i in self.insights if i.user_id != user_id]
        saved = [Insight(id=self._id("ins"), created_at=self._created(), **i.model_dump()) for i in insights]
        self.insights.extend(saved)
        return saved

    async def get_insights(self, user_id, now):
        live = [
            i for i in self.insights
            if i.user_id == user_id and (i.expires_at is None or i.expires_at > now)
        ]
        return sorted(live, key=lambda i: -i.priority)


# ─────────────────────────────────────────────────────────────────────────────
# Scripted enhancers
# ─────────────────────────────────────────────────────────────────────────────


class ScriptedEnhancer(NarrativeEnhancer):
    """Returns canned replies in order (the last one repeats); exceptions are raised."""

    def __init__(self, *replies):
        self.replies = list(replies) or [""]
        self.calls = []

    async def generate(self, messages, max_tokens=None, temperature=None):
        self.calls.append(messages)
        reply = self.replies[min(len(self.calls) - 1, len(self.replies) - 1)]
        if isinstance(reply, BaseException):
            raise reply
        return reply


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def user_id() -> str:
    return "user-1"


@pytest.fixture
def today() -> date:
    return TODAY


def at(day: date, hour: int, minute: int = 0) -> datetime:
    """Naive timestamp on a given day."""
    return datetime.combine(day, time(hour, minute))
