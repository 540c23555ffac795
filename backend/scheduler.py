"""
Study Engine - Task Distributor
Turns requested study sessions into dated, timed plan tasks under a per-day
load cap, interleaving subjects round-robin.

Use cases:
- bulk-add N sessions of one subject
- build a full plan from a free-text exam description
- generate tomorrow's tasks from the behavior profile and weak areas
- generate a multi-day plan for a goal
"""

import asyncio
import math
from collections import Counter, deque
from datetime import date, datetime, timedelta
from typing import Optional, List, Dict, Tuple, Iterable

from pydantic import BaseModel, Field, ValidationError, field_validator

from config import get_engine_config, EngineConfig
from database import store as default_store
from errors import DescriptionParseError, NoActiveSubjectsError
from goals import activate_goal, create_plan, require_active_plan, reuse_or_create_plan
from logger import get_logger
from models import (
    GeneratedPlan, GeneratedTask, PlanBuildResult, PlanTask, PlanTaskCreate, PlanType,
    Severity, SleepLog, Subject, TaskStatus, WeakArea,
)
from narrative import NarrativeEnhancer, extract_json_object, safe_generate
from profiler import BehaviorProfiler
from weak_areas import WeakAreaDetector

logger = get_logger(__name__)


# ============================================
# CONSTANTS
# ============================================

PALETTE = [
    "#6366f1", "#10b981", "#f59e0b", "#3b82f6", "#ef4444",
    "#8b5cf6", "#ec4899", "#14b8a6", "#f97316", "#84cc16",
]

MINUTES_PER_DAY = 24 * 60
NEXT_DAY_WEAK_MINUTES = 90
NEXT_DAY_NORMAL_MINUTES = 60
NEXT_DAY_PRIORITY_SLOTS = 2
MAX_PLAN_DAYS = 90
MAX_SUBJECTS_PER_DAY = 3

PRIORITY_HIGH = 3
PRIORITY_NORMAL = 2


# ============================================
# UTILITY FUNCTIONS
# ============================================

def _to_int32(n: int) -> int:
    n &= 0xFFFFFFFF
    return n - 0x100000000 if n & 0x80000000 else n


def subject_color(name: str) -> str:
    """Deterministic palette color for a subject name (31-multiplier string hash)."""
    h = 0
    for ch in name:
        # (h << 5) wraps to 32 bits; the subtraction and addition do not
        h = ord(ch) + (_to_int32(_to_int32(h) << 5) - h)
    return PALETTE[abs(h) % len(PALETTE)]


def format_clock(minutes: int) -> Optional[str]:
    """Minutes since midnight as HH:MM, or None once the day has run out."""
    if minutes < 0 or minutes >= MINUTES_PER_DAY:
        return None
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def parse_clock(value: Optional[str], default_hour: int = 9) -> int:
    """HH:MM to minutes since midnight."""
    if not value:
        return default_hour * 60
    hours, minutes = value.split(":")[:2]
    return int(hours) * 60 + int(minutes)


def load_by_day(tasks: Iterable[PlanTask]) -> Counter:
    """Per-day count of tasks that still occupy a slot (everything not completed)."""
    return Counter(t.scheduled_date for t in tasks if t.status != TaskStatus.COMPLETED)


# ============================================
# DISTRIBUTION CORE
# ============================================

class SessionRequest(BaseModel):
    """Sessions wanted for one subject."""
    name: str
    sessions: int = Field(ge=0)
    duration_minutes: int = Field(default=60, ge=5, le=480)
    is_weak: bool = False
    title_prefix: Optional[str] = None
    subject_id: Optional[str] = None


class QueueEntry(BaseModel):
    request: SessionRequest
    number: int
    is_review: bool = False
    duration_minutes: int


class Capacity(BaseModel):
    available_days: int
    tasks_per_day: int


def compute_capacity(
    total_sessions: int,
    deadline: date,
    today: date,
    config: Optional[EngineConfig] = None,
) -> Capacity:
    """
    Load cap from the deadline.
    available_days keeps a safety buffer before the deadline and never drops
    below the configured minimum; tasks_per_day stays within 1..max.
    """
    cfg = config or get_engine_config()
    available = max(cfg.min_available_days, (deadline - today).days - cfg.safety_buffer_days)
    per_day = math.ceil(total_sessions / available) if total_sessions > 0 else 1
    return Capacity(
        available_days=available,
        tasks_per_day=max(1, min(cfg.max_tasks_per_day, per_day)),
    )


def build_queues(
    requests: List[SessionRequest],
    include_reviews: bool = True,
    config: Optional[EngineConfig] = None,
) -> List[List[QueueEntry]]:
    """One FIFO per subject; weak subjects get boosted sessions plus review entries."""
    cfg = config or get_engine_config()
    queues = []
    for req in requests:
        normal_minutes = req.duration_minutes + (cfg.weak_duration_boost if req.is_weak else 0)
        queue = [
            QueueEntry(request=req, number=i, duration_minutes=normal_minutes)
            for i in range(1, req.sessions + 1)
        ]
        if include_reviews and req.is_weak and req.sessions > 0:
            review_minutes = max(1, round(req.duration_minutes * cfg.review_ratio))
            queue.extend(
                QueueEntry(request=req, number=i, is_review=True, duration_minutes=review_minutes)
                for i in range(1, max(1, req.sessions // 3) + 1)
            )
        queues.append(queue)
    return queues


def interleave(queues: List[List[QueueEntry]]) -> List[QueueEntry]:
    """Round-robin: one entry from each non-empty queue per pass, in subject order."""
    pending = [deque(q) for q in queues]
    ordered = []
    while any(pending):
        for q in pending:
            if q:
                ordered.append(q.popleft())
    return ordered


def assign_dates(
    entries: List[QueueEntry],
    start: date,
    tasks_per_day: int,
    existing_load: Optional[Dict[date, int]] = None,
) -> List[Tuple[QueueEntry, date, int]]:
    """
    Walk a day cursor forward from start, placing each entry on the first day
    whose load is below tasks_per_day. The cursor never moves back.

    Returns (entry, day, slot) where slot is the entry's position on that day
    counting pre-existing tasks.
    """
    load = Counter(existing_load or {})
    cursor = start
    placed = []
    for entry in entries:
        while load[cursor] >= tasks_per_day:
            cursor += timedelta(days=1)
        placed.append((entry, cursor, load[cursor]))
        load[cursor] += 1
    return placed


def assign_times(
    placed: List[Tuple[QueueEntry, date, int]],
    start_hour: int,
    gap_minutes: int,
) -> List[Optional[str]]:
    """Per-day running clock: each task takes its duration plus the gap."""
    clocks: Dict[date, int] = {}
    times = []
    for entry, day, _ in placed:
        clock = clocks.get(day, start_hour * 60)
        times.append(format_clock(clock))
        clocks[day] = clock + entry.duration_minutes + gap_minutes
    return times


def distribute(
    requests: List[SessionRequest],
    start: date,
    tasks_per_day: int,
    existing_load: Optional[Dict[date, int]] = None,
    start_hour: Optional[int] = None,
    gap_minutes: Optional[int] = None,
    include_reviews: bool = True,
    config: Optional[EngineConfig] = None,
) -> List[GeneratedTask]:
    """Queue, interleave, date and time a batch of session requests. Pure."""
    cfg = config or get_engine_config()
    gap = cfg.plan_gap_minutes if gap_minutes is None else gap_minutes

    ordered = interleave(build_queues(requests, include_reviews, cfg))
    placed = assign_dates(ordered, start, tasks_per_day, existing_load)
    times = assign_times(placed, start_hour, gap) if start_hour is not None else [None] * len(placed)

    tasks = []
    for (entry, day, slot), start_time in zip(placed, times):
        req = entry.request
        prefix = req.title_prefix or req.name
        if entry.is_review:
            title = f"{prefix}: Review {entry.number}"
            description = f"Review session for {req.name}."
        else:
            title = f"{prefix}: Session {entry.number}"
            description = f"Study session {entry.number} of {req.sessions} for {req.name}."
        tasks.append(GeneratedTask(
            title=title,
            subject_id=req.subject_id,
            subject_name=req.name,
            scheduled_date=day,
            scheduled_start_time=start_time,
            duration_minutes=entry.duration_minutes,
            priority=PRIORITY_HIGH if req.is_weak else PRIORITY_NORMAL,
            order_index=slot,
            description=description,
            is_review=entry.is_review,
        ))
    return tasks


# ============================================
# PLAN DESCRIPTION PARSING
# ============================================

class DescribedSubject(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    sessions: int = Field(ge=1, le=200)
    duration_minutes: int = Field(default=60, ge=15, le=240)
    is_weak: bool = False
    title_prefix: Optional[str] = None

    @field_validator("name", "title_prefix")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


class PlanDescription(BaseModel):
    reply: str = ""
    exam_date: Optional[date] = None
    plan_title: str = "Study Plan"
    subjects: List[DescribedSubject]


def parse_plan_description(raw: str, today: date) -> PlanDescription:
    """
    Validate the generator's structured reading of a plan description.
    Bad subject entries are dropped; a missing or past exam date becomes None.
    Raises DescriptionParseError when nothing usable remains.
    """
    data = extract_json_object(raw)
    if data is None:
        raise DescriptionParseError("Could not read a structured plan from the description")

    subjects = []
    raw_subjects = data.get("subjects")
    for item in raw_subjects if isinstance(raw_subjects, list) else []:
        try:
            subjects.append(DescribedSubject.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Skipping invalid subject in plan description: {e.error_count()} error(s)")
    if not subjects:
        raise DescriptionParseError("The description did not name any subjects with session counts")

    exam_date = None
    if isinstance(data.get("exam_date"), str):
        try:
            exam_date = date.fromisoformat(data["exam_date"].strip())
        except ValueError:
            logger.warning(f"Ignoring unreadable exam date {data['exam_date']!r}")
    if exam_date is not None and exam_date <= today:
        exam_date = None

    title = data.get("plan_title")
    reply = data.get("reply")
    return PlanDescription(
        reply=reply.strip() if isinstance(reply, str) else "",
        exam_date=exam_date,
        plan_title=title.strip()[:120] if isinstance(title, str) and title.strip() else "Study Plan",
        subjects=subjects,
    )


def average_wake_hour(sleep_logs: List[SleepLog], latest: int = 22) -> Optional[int]:
    """One hour after the average wake time, capped at `latest`."""
    wakes = [l.wake_time for l in sleep_logs if l.wake_time is not None]
    if not wakes:
        return None
    total_minutes = sum(w.hour * 60 + w.minute for w in wakes)
    return min(latest, total_minutes // len(wakes) // 60 + 1)


# ============================================
# TASK DISTRIBUTOR
# ============================================

class TaskDistributor:
    """Runs the scheduling use cases against the activity store."""

    def __init__(self, store=None, config: Optional[EngineConfig] = None):
        self.store = store or default_store
        self.config = config or get_engine_config()
        self.profiler = BehaviorProfiler(self.store)
        self.detector = WeakAreaDetector(self.store, self.profiler)

    # ----- store helpers -----

    async def resolve_subject(self, user_id: str, name: str) -> Subject:
        """Case-insensitive substring match; otherwise create with a palette color."""
        name = name.strip()
        found = await self.store.find_subject_by_name(user_id, name)
        if found is not None:
            return found
        subject = await self.store.create_subject(user_id, name, subject_color(name))
        logger.info(f"Created subject '{name}' for {user_id}")
        return subject

    async def existing_load(self, user_id: str, start: date) -> Counter:
        return load_by_day(await self.store.get_open_tasks_from(user_id, start))

    async def insert_generated(
        self, user_id: str, plan_id: str, tasks: List[GeneratedTask]
    ) -> List[PlanTask]:
        """Write computed tasks in batches."""
        rows = [
            PlanTaskCreate(
                plan_id=plan_id,
                user_id=user_id,
                title=t.title,
                description=t.description,
                subject_id=t.subject_id,
                subject_name=t.subject_name,
                scheduled_date=t.scheduled_date,
                scheduled_start_time=t.scheduled_start_time,
                duration_minutes=t.duration_minutes,
                priority=t.priority,
                order_index=t.order_index,
            )
            for t in tasks
        ]
        size = self.config.insert_batch_size
        inserted = []
        for i in range(0, len(rows), size):
            inserted.extend(await self.store.insert_tasks(rows[i:i + size]))
        return inserted

    async def _start_hour(self, user_id: str, today: date) -> int:
        profile = await self.profiler.analyze(user_id, 14, today)
        return profile.peak_hour if profile.has_data else self.config.default_start_hour

    # ----- (a) bulk add -----

    async def bulk_add_sessions(
        self,
        user_id: str,
        subject_name: str,
        count: int,
        duration_minutes: Optional[int] = None,
        tasks_per_day: Optional[int] = None,
        start_date: Optional[date] = None,
        title_prefix: Optional[str] = None,
        start_hour: Optional[int] = None,
        today: Optional[date] = None,
    ) -> List[PlanTask]:
        """
        Add `count` sessions of one subject to the active plan.

        A caller-supplied tasks_per_day is clamped to 1..max; without one the
        cap is derived from the active goal's deadline (or the default deadline).
        """
        today = today or date.today()
        count = max(1, count)
        start = start_date or today + timedelta(days=1)

        plan, goal = await asyncio.gather(
            require_active_plan(user_id, self.store),
            self.store.get_active_goal(user_id),
        )

        if tasks_per_day is not None:
            per_day = max(1, min(self.config.max_tasks_per_day, tasks_per_day))
        else:
            deadline = goal.target_date if goal and goal.target_date else None
            deadline = deadline or today + timedelta(days=self.config.default_deadline_days)
            per_day = compute_capacity(count, deadline, today, self.config).tasks_per_day

        subject = await self.resolve_subject(user_id, subject_name)
        load = await self.existing_load(user_id, start)

        request = SessionRequest(
            name=subject.name,
            subject_id=subject.id,
            sessions=count,
            duration_minutes=duration_minutes or self.config.default_session_minutes,
            title_prefix=title_prefix,
        )
        generated = distribute(
            [request], start, per_day, load,
            start_hour=start_hour, include_reviews=False, config=self.config,
        )
        inserted = await self.insert_generated(user_id, plan.id, generated)
        logger.info(f"Bulk-added {len(inserted)} '{subject.name}' task(s) for {user_id} at {per_day}/day")
        return inserted

    # ----- (b) plan from description -----

    async def build_plan_from_description(
        self,
        user_id: str,
        description: str,
        enhancer: Optional[NarrativeEnhancer],
        today: Optional[date] = None,
        start_hour: Optional[int] = None,
    ) -> PlanBuildResult:
        """
        Parse an exam description into subjects and session counts, then
        schedule them from tomorrow up to the exam.

        Every task row is computed before the first write. A description that
        cannot be parsed raises DescriptionParseError and writes nothing.
        """
        today = today or date.today()
        tomorrow = today + timedelta(days=1)

        subjects, goal = await asyncio.gather(
            self.store.get_subjects(user_id, active_only=True),
            self.store.get_active_goal(user_id),
        )

        raw = await safe_generate(
            enhancer,
            [
                {"role": "system", "content": self._plan_prompt(today, subjects, goal)},
                {"role": "user", "content": description},
            ],
            max_tokens=700,
            temperature=0.3,
            purpose="plan description",
        )
        parsed = parse_plan_description(raw, today)

        exam_date = parsed.exam_date or today + timedelta(days=self.config.default_deadline_days)
        total_sessions = sum(s.sessions for s in parsed.subjects)
        capacity = compute_capacity(total_sessions, exam_date, today, self.config)

        # Reads: active plan, current load, existing subject matches
        active_plan = await self.store.get_active_plan(user_id)
        open_tasks = await self.store.get_open_tasks_from(user_id, tomorrow)
        if active_plan is not None:
            # these are about to be cleared from the reused plan
            open_tasks = [
                t for t in open_tasks
                if not (t.plan_id == active_plan.id and t.status == TaskStatus.PENDING)
            ]
        matches = await asyncio.gather(*(
            self.store.find_subject_by_name(user_id, s.name) for s in parsed.subjects
        ))
        hour = start_hour if start_hour is not None else await self._start_hour(user_id, today)

        requests = [
            SessionRequest(
                name=match.name if match else s.name,
                subject_id=match.id if match else None,
                sessions=s.sessions,
                duration_minutes=s.duration_minutes,
                is_weak=s.is_weak,
                title_prefix=s.title_prefix,
            )
            for s, match in zip(parsed.subjects, matches)
        ]
        generated = distribute(
            requests, tomorrow, capacity.tasks_per_day, load_by_day(open_tasks),
            start_hour=hour, config=self.config,
        )
        last_day = max((t.scheduled_date for t in generated), default=exam_date)

        # Writes
        new_goal = await activate_goal(
            user_id,
            title=parsed.plan_title,
            target_date=exam_date,
            hours_per_day=capacity.tasks_per_day * 1.5,
            subjects=[r.name for r in requests],
            description=description,
            store=self.store,
        )
        plan = await reuse_or_create_plan(
            user_id,
            title=parsed.plan_title,
            start_date=today,
            end_date=max(exam_date, last_day),
            clear_from=today,
            goal_id=new_goal.id,
            metadata={
                "tasks_per_day": capacity.tasks_per_day,
                "available_days": capacity.available_days,
                "source": "description",
            },
            existing=active_plan,
            store=self.store,
        )

        created_ids: Dict[str, str] = {}
        for req in requests:
            if req.subject_id is None and req.name.lower() not in created_ids:
                subject = await self.store.create_subject(user_id, req.name, subject_color(req.name))
                created_ids[req.name.lower()] = subject.id
                logger.info(f"Created subject '{req.name}' for {user_id}")
        for task in generated:
            if task.subject_id is None and task.subject_name:
                task.subject_id = created_ids.get(task.subject_name.lower())

        inserted = await self.insert_generated(user_id, plan.id, generated)
        logger.info(
            f"Built plan {plan.id} for {user_id}: {len(inserted)} task(s), "
            f"{capacity.tasks_per_day}/day over {capacity.available_days} day(s)"
        )

        reply = parsed.reply or (
            f"Your plan is ready: {len(inserted)} sessions scheduled up to {exam_date.isoformat()}."
        )
        return PlanBuildResult(
            plan=plan,
            goal=new_goal,
            tasks=inserted,
            exam_date=exam_date,
            tasks_per_day=capacity.tasks_per_day,
            available_days=capacity.available_days,
            reply=reply,
        )

    def _plan_prompt(self, today: date, subjects: List[Subject], goal) -> str:
        subject_list = ", ".join(s.name for s in subjects) or "none"
        goal_line = f"{goal.title} ({goal.target_date})" if goal else "none"
        in_days = {n: (today + timedelta(days=n)).isoformat() for n in (14, 21, 30)}
        return f"""You are an expert study planner. Read the student's description and output a structured plan.

TODAY: {today.isoformat()}
EXISTING SUBJECTS: {subject_list}
CURRENT GOAL: {goal_line}

RELATIVE DATES:
- "after 2 weeks" = {in_days[14]}
- "after 3 weeks" = {in_days[21]}
- "after a month" = {in_days[30]}

Respond ONLY with compact JSON:
{{
  "reply": "<2-sentence motivational reply in the student's language>",
  "exam_date": "YYYY-MM-DD",
  "plan_title": "<short plan name>",
  "subjects": [
    {{"name": "<subject>", "sessions": <number>, "duration_minutes": <45-120>,
      "is_weak": <true if the student called it weak>, "title_prefix": "<short label>"}}
  ]
}}

RULES:
- List every subject and session count mentioned
- Give the plain session length; do not add extra time for weak subjects
- If no exam date is given, leave exam_date empty"""

    # ----- (c) next-day plan -----

    async def generate_next_day_plan(
        self, user_id: str, today: Optional[date] = None
    ) -> GeneratedPlan:
        """
        Tomorrow's blocks from the 14-day profile and current weak areas.
        Replaces an earlier daily plan for tomorrow; other plans are left alone.
        """
        today = today or date.today()
        tomorrow = today + timedelta(days=1)
        cfg = self.config

        profile, weak, subjects, sleep_logs, existing = await asyncio.gather(
            self.profiler.analyze(user_id, 14, today),
            self.detector.detect(user_id, today),
            self.store.get_subjects(user_id, active_only=True),
            self.store.get_sleep_logs(user_id, limit=14),
            self.store.get_plans_starting(user_id, tomorrow, PlanType.DAILY),
        )
        if not subjects:
            raise NoActiveSubjectsError()

        wake_hour = average_wake_hour(sleep_logs, cfg.latest_start_hour)
        if wake_hour is not None:
            start_hour = wake_hour
        else:
            start_hour = profile.peak_hour if profile.has_data else cfg.default_start_hour

        target_hours = max(2, min(8, round(profile.avg_daily_seconds / 3600) or 4))
        block_count = min(len(subjects), max(2, math.floor(target_hours / 1.25)))

        tasks = plan_next_day(
            subjects, weak, tomorrow, start_hour, block_count,
            gap_minutes=cfg.next_day_gap_minutes, latest_hour=cfg.latest_start_hour,
        )

        plan = await create_plan(
            user_id,
            title=f"Daily Plan {tomorrow.isoformat()}",
            start_date=tomorrow,
            end_date=tomorrow,
            plan_type=PlanType.DAILY,
            metadata={"peak_hour": profile.peak_hour, "target_hours": target_hours, "start_hour": start_hour},
            store=self.store,
        )
        for old in existing:
            await self.store.delete_plan(user_id, old.id)
            logger.info(f"Replaced daily plan {old.id} starting {tomorrow}")

        inserted = await self.insert_generated(user_id, plan.id, tasks)
        return GeneratedPlan(plan=plan, tasks=inserted)

    # ----- multi-day plan for a goal -----

    async def generate_study_plan(
        self,
        user_id: str,
        title: str,
        deadline: date,
        hours_per_day: float,
        subject_ids: List[str],
        goal_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> GeneratedPlan:
        """
        Daily tasks from tomorrow to the deadline (at most 90 days), rotating
        through the chosen subjects up to three per day.
        """
        today = today or date.today()
        days = max(1, (deadline - today).days)

        all_subjects, profile, weak = await asyncio.gather(
            self.store.get_subjects(user_id, active_only=False),
            self.profiler.analyze(user_id, 14, today),
            self.detector.detect(user_id, today),
        )
        by_id = {s.id: s for s in all_subjects}
        subjects = [by_id[sid] for sid in subject_ids if sid in by_id]
        if not subjects:
            raise NoActiveSubjectsError("None of the selected subjects exist.")

        start_hour = profile.peak_hour if profile.has_data else self.config.default_start_hour
        tasks = plan_rotation(
            subjects, weak, today, min(days, MAX_PLAN_DAYS), hours_per_day,
            start_hour, self.config.plan_gap_minutes,
        )

        plan = await create_plan(
            user_id,
            title=title,
            start_date=today + timedelta(days=1),
            end_date=deadline,
            plan_type=PlanType.CUSTOM,
            goal_id=goal_id,
            metadata={"hours_per_day": hours_per_day, "subject_ids": subject_ids, "total_days": days},
            store=self.store,
        )
        inserted = await self.insert_generated(user_id, plan.id, tasks)
        logger.info(f"Generated {len(inserted)} task(s) over {min(days, MAX_PLAN_DAYS)} day(s) for {user_id}")
        return GeneratedPlan(plan=plan, tasks=inserted)


# ============================================
# PURE DAY PLANNERS
# ============================================

def plan_next_day(
    subjects: List[Subject],
    weak: List[WeakArea],
    day: date,
    start_hour: int,
    block_count: int,
    gap_minutes: int = 15,
    latest_hour: int = 22,
) -> List[GeneratedTask]:
    """High-severity weak subjects first (up to two), then the rest in order."""
    by_id = {s.id: s for s in subjects}
    weak_ids = {w.subject_id for w in weak}

    ordered: List[Tuple[Subject, int]] = []
    seen = set()
    for w in weak:
        if len(ordered) >= NEXT_DAY_PRIORITY_SLOTS:
            break
        if w.severity == Severity.HIGH and w.subject_id in by_id and w.subject_id not in seen:
            ordered.append((by_id[w.subject_id], PRIORITY_HIGH))
            seen.add(w.subject_id)
    for s in subjects:
        if s.id not in seen:
            ordered.append((s, PRIORITY_NORMAL))
            seen.add(s.id)

    tasks = []
    clock = start_hour * 60
    for i, (subject, priority) in enumerate(ordered[:block_count]):
        is_weak = subject.id in weak_ids
        minutes = NEXT_DAY_WEAK_MINUTES if is_weak else NEXT_DAY_NORMAL_MINUTES
        tasks.append(GeneratedTask(
            title=f"Study Session: {subject.name}",
            subject_id=subject.id,
            subject_name=subject.name,
            scheduled_date=day,
            scheduled_start_time=format_clock(clock),
            duration_minutes=minutes,
            priority=priority,
            order_index=i,
            description=(
                f"Priority session: {subject.name} needs focused attention this week."
                if is_weak else f"Regular study session for {subject.name}."
            ),
        ))
        clock += minutes + gap_minutes
        if clock // 60 >= latest_hour:
            break
    return tasks


def plan_rotation(
    subjects: List[Subject],
    weak: List[WeakArea],
    today: date,
    days: int,
    hours_per_day: float,
    start_hour: int,
    gap_minutes: int = 10,
) -> List[GeneratedTask]:
    """Each day takes the next (up to) three subjects in a cycle and splits the daily hours."""
    high_weak = {w.subject_id for w in weak if w.severity == Severity.HIGH}
    per_day = min(MAX_SUBJECTS_PER_DAY, len(subjects))
    minutes = max(1, round(hours_per_day * 60 / per_day))

    tasks = []
    order = 0
    for day_number in range(1, days + 1):
        day = today + timedelta(days=day_number)
        offset = (day_number - 1) * per_day
        clock = start_hour * 60
        for j in range(per_day):
            subject = subjects[(offset + j) % len(subjects)]
            tasks.append(GeneratedTask(
                title=f"Study: {subject.name}",
                subject_id=subject.id,
                subject_name=subject.name,
                scheduled_date=day,
                scheduled_start_time=format_clock(clock),
                duration_minutes=minutes,
                priority=PRIORITY_HIGH if subject.id in high_weak else PRIORITY_NORMAL,
                order_index=order,
                description=f"Scheduled study session for {subject.name}.",
            ))
            order += 1
            clock += minutes + gap_minutes
    return tasks


# ============================================
# MODULE-LEVEL HELPERS
# ============================================

async def build_plan_from_description(
    user_id: str,
    description: str,
    enhancer: Optional[NarrativeEnhancer] = None,
    today: Optional[date] = None,
    store=None,
) -> PlanBuildResult:
    if enhancer is None:
        from ai_client import get_enhancer
        enhancer = get_enhancer()
    return await TaskDistributor(store).build_plan_from_description(user_id, description, enhancer, today)


async def generate_next_day_plan(user_id: str, today: Optional[date] = None, store=None) -> GeneratedPlan:
    return await TaskDistributor(store).generate_next_day_plan(user_id, today)
