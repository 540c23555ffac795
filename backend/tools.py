"""
Study Engine - Chat Actions
Plan mutations requested through chat. The generator proposes actions as
JSON; each one is validated on its own against a tagged union and then
dispatched to its handler.
"""

import asyncio
from datetime import date, datetime, timedelta
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from config import get_engine_config
from database import store as default_store
from errors import ActionValidationError, EngineError
from goals import days_until, require_active_plan
from logger import get_logger
from models import PlanTask, PlanTaskCreate, TaskStatus
from narrative import NarrativeEnhancer, extract_json_object, safe_generate, valid_text
from scheduler import TaskDistributor, format_clock, parse_clock

logger = get_logger(__name__)

CLOCK_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"
SPLIT_GAP_MINUTES = 10
CONTEXT_DAYS = 14
MAX_CONTEXT_TASKS = 60
MAX_HISTORY = 10


# ============================================
# ACTION SCHEMAS
# ============================================

class _Action(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class AddTask(_Action):
    type: Literal["add_task"]
    subject_name: str = Field(default="Study", min_length=1)
    title: str = Field(default="Study Session", min_length=1)
    scheduled_date: Optional[date] = Field(default=None, alias="date")
    duration_minutes: int = Field(default=60, ge=5, le=480)
    start_time: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)


class AddTasks(_Action):
    type: Literal["add_tasks"]
    subject_name: str = Field(min_length=1)
    count: int = Field(ge=1, le=200)
    title_prefix: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, ge=5, le=480)
    tasks_per_day: Optional[int] = None
    start_date: Optional[date] = None


class RescheduleTask(_Action):
    type: Literal["reschedule_task"]
    task_id: str = Field(min_length=1)
    new_date: date
    new_start_time: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)


class UpdateTask(_Action):
    type: Literal["update_task"]
    task_id: str = Field(min_length=1)
    title: Optional[str] = Field(default=None, min_length=1)
    duration_minutes: Optional[int] = Field(default=None, ge=5, le=480)
    start_time: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)

    @model_validator(mode="after")
    def has_changes(self):
        if self.title is None and self.duration_minutes is None and self.start_time is None:
            raise ValueError("update_task needs at least one of title, duration_minutes, start_time")
        return self


class DeleteTask(_Action):
    type: Literal["delete_task"]
    task_id: str = Field(min_length=1)


class SplitPart(_Action):
    title: str = Field(min_length=1)
    duration_minutes: int = Field(ge=5, le=480)


class SplitTask(_Action):
    type: Literal["split_task"]
    task_id: str = Field(min_length=1)
    parts: List[SplitPart] = Field(min_length=1)


class CompleteTask(_Action):
    type: Literal["complete_task"]
    task_id: str = Field(min_length=1)


ChatAction = Annotated[
    Union[AddTask, AddTasks, RescheduleTask, UpdateTask, DeleteTask, SplitTask, CompleteTask],
    Field(discriminator="type"),
]

ACTION_ADAPTER = TypeAdapter(ChatAction)


def parse_action(raw: Any) -> ChatAction:
    """Validate one proposed action. Raises ActionValidationError."""
    if not isinstance(raw, dict):
        raise ActionValidationError(f"Action must be an object, got {type(raw).__name__}")
    try:
        return ACTION_ADAPTER.validate_python(raw)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ())) or "action"
        raise ActionValidationError(f"Invalid {raw.get('type', 'action')}: {where}: {first['msg']}", raw)


class ChatResult(BaseModel):
    reply: str
    actions_executed: int = 0
    executed: List[str] = Field(default_factory=list)
    rejected: List[str] = Field(default_factory=list)


# ============================================
# ACTION HANDLERS
# ============================================

class ActionExecutor:
    """Applies validated chat actions to the user's plan."""

    def __init__(self, store=None, today: Optional[date] = None):
        self.store = store or default_store
        self.today = today or date.today()
        self.distributor = TaskDistributor(self.store)
        self.handlers = {
            "add_task": self.add_task,
            "add_tasks": self.add_tasks,
            "reschedule_task": self.reschedule_task,
            "update_task": self.update_task,
            "delete_task": self.delete_task,
            "split_task": self.split_task,
            "complete_task": self.complete_task,
        }

    async def execute(self, user_id: str, action: ChatAction) -> str:
        """Run one action and describe what changed."""
        return await self.handlers[action.type](user_id, action)

    async def _require_task(self, user_id: str, task_id: str) -> PlanTask:
        task = await self.store.get_task(user_id, task_id)
        if task is None:
            raise ActionValidationError(f"Task {task_id} not found")
        return task

    async def add_task(self, user_id: str, action: AddTask) -> str:
        plan = await require_active_plan(user_id, self.store)
        subject = await self.distributor.resolve_subject(user_id, action.subject_name)
        day = action.scheduled_date or self.today + timedelta(days=1)
        existing = await self.store.get_tasks_for_date(user_id, day)

        await self.store.insert_tasks([PlanTaskCreate(
            plan_id=plan.id,
            user_id=user_id,
            subject_id=subject.id,
            subject_name=subject.name,
            title=action.title,
            scheduled_date=day,
            scheduled_start_time=action.start_time,
            duration_minutes=action.duration_minutes,
            order_index=len(existing),
        )])
        return f"Added '{action.title}' on {day.isoformat()}"

    async def add_tasks(self, user_id: str, action: AddTasks) -> str:
        inserted = await self.distributor.bulk_add_sessions(
            user_id,
            action.subject_name,
            action.count,
            duration_minutes=action.duration_minutes,
            tasks_per_day=action.tasks_per_day,
            start_date=action.start_date,
            title_prefix=action.title_prefix,
            today=self.today,
        )
        if not inserted:
            return f"Added 0 {action.subject_name} sessions"
        first, last = inserted[0].scheduled_date, inserted[-1].scheduled_date
        return f"Added {len(inserted)} {inserted[0].subject_name} sessions from {first.isoformat()} to {last.isoformat()}"

    async def reschedule_task(self, user_id: str, action: RescheduleTask) -> str:
        updates = {"scheduled_date": action.new_date}
        if action.new_start_time:
            updates["scheduled_start_time"] = action.new_start_time
        task = await self.store.update_task(user_id, action.task_id, **updates)
        if task is None:
            raise ActionValidationError(f"Task {action.task_id} not found")
        return f"Moved '{task.title}' to {action.new_date.isoformat()}"

    async def update_task(self, user_id: str, action: UpdateTask) -> str:
        updates = {}
        if action.title is not None:
            updates["title"] = action.title
        if action.duration_minutes is not None:
            updates["duration_minutes"] = action.duration_minutes
        if action.start_time is not None:
            updates["scheduled_start_time"] = action.start_time
        task = await self.store.update_task(user_id, action.task_id, **updates)
        if task is None:
            raise ActionValidationError(f"Task {action.task_id} not found")
        return f"Updated '{task.title}'"

    async def delete_task(self, user_id: str, action: DeleteTask) -> str:
        if not await self.store.delete_task(user_id, action.task_id):
            raise ActionValidationError(f"Task {action.task_id} not found")
        return f"Deleted task {action.task_id}"

    async def split_task(self, user_id: str, action: SplitTask) -> str:
        """Replace a task with its parts, back to back from the original start time."""
        original = await self._require_task(user_id, action.task_id)
        clock = parse_clock(original.scheduled_start_time)

        parts = []
        for i, part in enumerate(action.parts):
            parts.append(PlanTaskCreate(
                plan_id=original.plan_id,
                user_id=user_id,
                subject_id=original.subject_id,
                subject_name=original.subject_name,
                title=part.title,
                description=original.description,
                scheduled_date=original.scheduled_date,
                scheduled_start_time=format_clock(clock),
                duration_minutes=part.duration_minutes,
                priority=original.priority,
                order_index=original.order_index + i,
            ))
            clock += part.duration_minutes + SPLIT_GAP_MINUTES

        await self.store.delete_task(user_id, original.id)
        await self.store.insert_tasks(parts)
        return f"Split '{original.title}' into {len(parts)} parts"

    async def complete_task(self, user_id: str, action: CompleteTask) -> str:
        task = await self.store.update_task(
            user_id, action.task_id, status=TaskStatus.COMPLETED, completed_at=datetime.now()
        )
        if task is None:
            raise ActionValidationError(f"Task {action.task_id} not found")
        return f"Completed '{task.title}'"


# ============================================
# CHAT PROCESSING
# ============================================

HELP_BULK = (
    "To bulk-add sessions to your plan, tell me:\n"
    "- Subject name\n- Exact count\n- Duration per session (minutes)\n- How many per day\n\n"
    'Example: "I have 16 Mechanics sessions, 60 min each, 2 per day"'
)
HELP_ADD = (
    "To add a task tell me:\n- Subject\n- Title\n- Date\n- Duration\n\n"
    'Example: "Add a math session tomorrow 60 min"'
)
HELP_MOVE = "Tell me which task and when.\nExample: \"Move today's math to tomorrow at 10am\""
HELP_SPLIT = (
    "Tell me which task, how many parts, and the name of each.\n"
    'Example: "Split physics into 3: intro 30min, practice 45, review 15"'
)


def help_reply(message: str, upcoming: List[PlanTask]) -> str:
    """Deterministic reply used when the generator gives nothing usable."""
    low = message.lower()
    if "session" in low and any(ch.isdigit() for ch in low):
        return HELP_BULK
    if "add" in low:
        return HELP_ADD
    if any(word in low for word in ("reschedule", "move", "shift")):
        return HELP_MOVE
    if "split" in low:
        return HELP_SPLIT

    reply = (
        "I'm here to help.\n\nI can:\n- Add one or many sessions at once\n- Reschedule tasks\n"
        "- Split tasks into parts\n- Delete, update or complete tasks\n\nJust tell me what you need!"
    )
    if upcoming:
        lines = [f"{t.scheduled_date.isoformat()} {t.title}"[:90] for t in upcoming[:5]]
        reply += "\n\nUpcoming tasks:\n" + "\n".join(lines)
    return reply


def build_chat_prompt(
    today: date,
    upcoming: List[PlanTask],
    future: List[PlanTask],
    subject_names: List[str],
    goal,
    completed: int,
) -> str:
    left = days_until(goal, today)
    goal_line = f"{goal.title} | Exam: {goal.target_date} | {left} days remaining" if goal else "No active goal"

    per_subject: Dict[str, int] = {}
    per_day: Dict[date, int] = {}
    for t in future:
        name = t.subject_name or "Other"
        per_subject[name] = per_subject.get(name, 0) + 1
        per_day[t.scheduled_date] = per_day.get(t.scheduled_date, 0) + 1

    subject_summary = " | ".join(f"{s}: {n}" for s, n in per_subject.items()) or "none"
    load_line = "  ".join(f"{d.isoformat()}:{n}" for d, n in sorted(per_day.items())[:45]) or "plan is empty"
    task_lines = "\n".join(
        f"[{t.id}] {t.scheduled_date.isoformat()} {t.scheduled_start_time or '--:--'} | "
        f"{t.subject_name or ''}: {t.title} ({t.duration_minutes}min)"
        for t in upcoming
    ) or "(no tasks yet)"
    tomorrow = (today + timedelta(days=1)).isoformat()
    max_per_day = get_engine_config().max_tasks_per_day

    return f"""You are a smart study planner inside a student productivity app.
Respond in the same language the student uses. Be concise, warm and helpful.

STUDENT CONTEXT
Today: {today.isoformat()}
Goal: {goal_line}
Subjects: {', '.join(subject_names) or 'none yet'}
Tasks by subject (remaining): {subject_summary}
Total remaining: {len(future)} | Completed: {completed}
Daily load (date:count): {load_line}

UPCOMING TASKS, next {CONTEXT_DAYS} days (reference by ID only)
{task_lines}

RESPONSE FORMAT
Respond ONLY with compact JSON, no markdown fences:
{{"reply":"<message to student>","actions":[...]}}

AVAILABLE ACTIONS
{{"type":"add_task","subject_name":"Math","title":"Lesson 1","date":"YYYY-MM-DD","duration_minutes":60,"start_time":"09:00"}}
{{"type":"add_tasks","subject_name":"Mechanics","title_prefix":"Mechanics","count":16,"duration_minutes":60,"tasks_per_day":2,"start_date":"{tomorrow}"}}
{{"type":"reschedule_task","task_id":"ID","new_date":"YYYY-MM-DD","new_start_time":"10:00"}}
{{"type":"update_task","task_id":"ID","title":"New title","duration_minutes":90,"start_time":"11:00"}}
{{"type":"delete_task","task_id":"ID"}}
{{"type":"split_task","task_id":"ID","parts":[{{"title":"Part 1","duration_minutes":30}}]}}
{{"type":"complete_task","task_id":"ID"}}

RULES
- Use add_tasks whenever the student mentions several sessions at once
- tasks_per_day is between 1 and {max_per_day}
- Only use task IDs listed above
- If nothing needs to change, return an empty actions list"""


async def process_chat_message(
    user_id: str,
    message: str,
    history: Optional[List[Dict[str, str]]] = None,
    enhancer: Optional[NarrativeEnhancer] = None,
    store=None,
    today: Optional[date] = None,
) -> ChatResult:
    """
    Turn a chat message into plan changes.

    Actions are validated and executed one at a time; a rejected action
    does not stop the others.
    """
    store = store or default_store
    today = today or date.today()

    future, subjects, goal, completed = await asyncio.gather(
        store.get_open_tasks_from(user_id, today),
        store.get_subjects(user_id, active_only=True),
        store.get_active_goal(user_id),
        store.count_completed_tasks(user_id),
    )
    horizon = today + timedelta(days=CONTEXT_DAYS)
    upcoming = [t for t in future if t.scheduled_date <= horizon][:MAX_CONTEXT_TASKS]

    messages = [{"role": "system", "content": build_chat_prompt(
        today, upcoming, future, [s.name for s in subjects], goal, completed
    )}]
    for turn in (history or [])[-MAX_HISTORY:]:
        if turn.get("role") in ("user", "assistant") and isinstance(turn.get("content"), str):
            messages.append({"role": turn["role"], "content": turn["content"]})
    messages.append({"role": "user", "content": message})

    raw = await safe_generate(enhancer, messages, max_tokens=800, temperature=0.4, purpose="chat")
    parsed = extract_json_object(raw)
    if parsed is None:
        return ChatResult(reply=help_reply(message, upcoming))

    reply = valid_text(2000)(parsed.get("reply"))
    raw_actions = parsed.get("actions")
    raw_actions = raw_actions if isinstance(raw_actions, list) else []

    executor = ActionExecutor(store, today)
    result = ChatResult(reply=reply or "")
    for raw_action in raw_actions:
        try:
            action = parse_action(raw_action)
            result.executed.append(await executor.execute(user_id, action))
        except EngineError as e:
            logger.warning(f"Rejected chat action for {user_id}: {e}")
            result.rejected.append(str(e))

    result.actions_executed = len(result.executed)
    if not result.reply:
        result.reply = "\n".join(result.executed) if result.executed else help_reply(message, upcoming)
    logger.info(f"Chat for {user_id}: {result.actions_executed} executed, {len(result.rejected)} rejected")
    return result
