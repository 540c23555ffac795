"""
Study Engine - Activity Store
Async PostgreSQL with asyncpg. Every query is scoped to one user.
"""

import json
import uuid
from datetime import date, datetime
from typing import Any, Optional, List, Iterable

import asyncpg

from config import get_database_config
from logger import get_logger
from models import (
    Subject, Session, Break, PlanTask, PlanTaskCreate, StudyPlan, StudyPlanCreate,
    Goal, GoalCreate, PracticeAttempt, SleepLog, Insight, InsightCreate,
    TaskStatus, BreakType, PlanType,
)

logger = get_logger(__name__)


class Database:
    """Async database connection manager."""

    def __init__(self):
        self._pool = None

    async def connect(self):
        """Create connection pool."""
        config = get_database_config()
        self._pool = await asyncpg.create_pool(
            config.url, min_size=config.pool_min_size, max_size=config.pool_max_size
        )
        logger.info("Database connected")

    async def disconnect(self):
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            logger.info("Database disconnected")

    async def fetch(self, query: str, *args) -> List[dict]:
        """Fetch multiple rows."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
            return [_normalize(row) for row in rows]

    async def fetch_one(self, query: str, *args) -> Optional[dict]:
        """Fetch single row."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
            return _normalize(row) if row else None

    async def fetch_value(self, query: str, *args) -> Any:
        """Fetch the first column of the first row."""
        async with self._pool.acquire() as conn:
            return await conn.fetchval(query, *args)

    async def execute(self, query: str, *args) -> str:
        """Execute query (INSERT, UPDATE, DELETE)."""
        async with self._pool.acquire() as conn:
            return await conn.execute(query, *args)

    async def execute_returning(self, query: str, *args) -> Optional[dict]:
        """Execute and return the affected row."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
            return _normalize(row) if row else None

    async def executemany_returning(self, query: str, rows: Iterable[tuple]) -> List[dict]:
        """Run one statement per argument tuple inside a single connection."""
        results = []
        async with self._pool.acquire() as conn:
            for args in rows:
                row = await conn.fetchrow(query, *args)
                if row:
                    results.append(_normalize(row))
        return results


def _normalize(row) -> dict:
    """Turn an asyncpg record into plain model input (UUIDs as text, JSONB decoded)."""
    data = dict(row)
    for key, value in data.items():
        if isinstance(value, uuid.UUID):
            data[key] = str(value)
        elif key == "metadata" and isinstance(value, str):
            data[key] = json.loads(value)
    return data


def _rows_affected(status: str) -> int:
    # asyncpg returns e.g. "DELETE 3" / "UPDATE 1"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


# Global database instance
db = Database()


TASK_COLUMNS = (
    "plan_id, user_id, subject_id, subject_name, title, description, scheduled_date, "
    "scheduled_start_time, duration_minutes, status, priority, order_index"
)

TASK_UPDATABLE = {
    "title", "description", "scheduled_date", "scheduled_start_time", "duration_minutes",
    "status", "priority", "order_index", "completed_at", "subject_id", "subject_name",
}


class ActivityStore:
    """
    Per-user access to subjects, sessions, breaks, plans, tasks, goals,
    practice attempts, sleep logs and insights.
    """

    def __init__(self, database: Database = None):
        self.db = database or db

    # ============================================
    # SUBJECTS
    # ============================================

    async def get_subjects(self, user_id: str, active_only: bool = True) -> List[Subject]:
        if active_only:
            rows = await self.db.fetch(
                "SELECT * FROM subjects WHERE user_id = $1 AND is_active = true ORDER BY created_at",
                user_id
            )
        else:
            rows = await self.db.fetch(
                "SELECT * FROM subjects WHERE user_id = $1 ORDER BY created_at", user_id
            )
        return [Subject(**r) for r in rows]

    async def find_subject_by_name(self, user_id: str, name: str) -> Optional[Subject]:
        """Case-insensitive substring match, oldest subject first."""
        row = await self.db.fetch_one(
            """SELECT * FROM subjects
               WHERE user_id = $1 AND name ILIKE '%' || $2 || '%'
               ORDER BY created_at LIMIT 1""",
            user_id, name
        )
        return Subject(**row) if row else None

    async def create_subject(self, user_id: str, name: str, color: str) -> Subject:
        row = await self.db.execute_returning(
            """INSERT INTO subjects (user_id, name, color)
               VALUES ($1, $2, $3) RETURNING *""",
            user_id, name, color
        )
        return Subject(**row)

    # ============================================
    # SESSIONS & BREAKS
    # ============================================

    async def get_completed_sessions(
        self, user_id: str, since: datetime, until: Optional[datetime] = None
    ) -> List[Session]:
        if until is None:
            rows = await self.db.fetch(
                """SELECT * FROM sessions
                   WHERE user_id = $1 AND status = 'completed' AND started_at >= $2
                   ORDER BY started_at""",
                user_id, since
            )
        else:
            rows = await self.db.fetch(
                """SELECT * FROM sessions
                   WHERE user_id = $1 AND status = 'completed'
                     AND started_at >= $2 AND started_at < $3
                   ORDER BY started_at""",
                user_id, since, until
            )
        return [Session(**r) for r in rows]

    async def create_session(self, user_id: str, subject_id: str, started_at: datetime) -> Session:
        row = await self.db.execute_returning(
            """INSERT INTO sessions (user_id, subject_id, started_at, status)
               VALUES ($1, $2, $3, 'active') RETURNING *""",
            user_id, subject_id, started_at
        )
        return Session(**row)

    async def complete_session(
        self, user_id: str, session_id: str, ended_at: datetime, duration_seconds: int
    ) -> Session:
        row = await self.db.execute_returning(
            """UPDATE sessions SET ended_at = $1, duration_seconds = $2, status = 'completed'
               WHERE id = $3 AND user_id = $4 RETURNING *""",
            ended_at, duration_seconds, session_id, user_id
        )
        return Session(**row)

    async def get_breaks(self, user_id: str, since: datetime) -> List[Break]:
        rows = await self.db.fetch(
            "SELECT * FROM breaks WHERE user_id = $1 AND started_at >= $2 ORDER BY started_at",
            user_id, since
        )
        return [Break(**r) for r in rows]

    async def create_break(
        self, user_id: str, session_id: str, break_type: BreakType, started_at: datetime
    ) -> Break:
        row = await self.db.execute_returning(
            """INSERT INTO breaks (user_id, session_id, break_type, started_at)
               VALUES ($1, $2, $3, $4) RETURNING *""",
            user_id, session_id, break_type.value, started_at
        )
        return Break(**row)

    async def finish_break(
        self, user_id: str, break_id: str, ended_at: datetime, duration_seconds: int
    ) -> Break:
        row = await self.db.execute_returning(
            """UPDATE breaks SET ended_at = $1, duration_seconds = $2
               WHERE id = $3 AND user_id = $4 RETURNING *""",
            ended_at, duration_seconds, break_id, user_id
        )
        return Break(**row)

    # ============================================
    # PLAN TASKS
    # ============================================

    async def get_tasks_in_range(self, user_id: str, start: date, end: date) -> List[PlanTask]:
        """Tasks scheduled between start and end, both inclusive."""
        rows = await self.db.fetch(
            """SELECT * FROM study_plan_tasks
               WHERE user_id = $1 AND scheduled_date BETWEEN $2 AND $3
               ORDER BY scheduled_date, scheduled_start_time NULLS LAST, order_index""",
            user_id, start, end
        )
        return [PlanTask(**r) for r in rows]

    async def get_tasks_for_date(self, user_id: str, day: date) -> List[PlanTask]:
        return await self.get_tasks_in_range(user_id, day, day)

    async def get_all_tasks(self, user_id: str) -> List[PlanTask]:
        rows = await self.db.fetch(
            "SELECT * FROM study_plan_tasks WHERE user_id = $1 ORDER BY scheduled_date, order_index",
            user_id
        )
        return [PlanTask(**r) for r in rows]

    async def get_plan_tasks(self, user_id: str, plan_id: str) -> List[PlanTask]:
        rows = await self.db.fetch(
            """SELECT * FROM study_plan_tasks WHERE user_id = $1 AND plan_id = $2
               ORDER BY scheduled_date, order_index""",
            user_id, plan_id
        )
        return [PlanTask(**r) for r in rows]

    async def get_open_tasks_from(self, user_id: str, start: date) -> List[PlanTask]:
        """Non-completed tasks scheduled on or after start."""
        rows = await self.db.fetch(
            """SELECT * FROM study_plan_tasks
               WHERE user_id = $1 AND scheduled_date >= $2 AND status <> 'completed'
               ORDER BY scheduled_date, order_index""",
            user_id, start
        )
        return [PlanTask(**r) for r in rows]

    async def get_overdue_tasks(self, user_id: str, today: date) -> List[PlanTask]:
        rows = await self.db.fetch(
            """SELECT * FROM study_plan_tasks
               WHERE user_id = $1 AND status = 'pending' AND scheduled_date < $2
               ORDER BY scheduled_date, order_index""",
            user_id, today
        )
        return [PlanTask(**r) for r in rows]

    async def count_overdue_tasks(self, user_id: str, today: date) -> int:
        count = await self.db.fetch_value(
            """SELECT COUNT(*) FROM study_plan_tasks
               WHERE user_id = $1 AND status = 'pending' AND scheduled_date < $2""",
            user_id, today
        )
        return int(count or 0)

    async def count_completed_tasks(self, user_id: str) -> int:
        count = await self.db.fetch_value(
            "SELECT COUNT(*) FROM study_plan_tasks WHERE user_id = $1 AND status = 'completed'",
            user_id
        )
        return int(count or 0)

    async def get_task(self, user_id: str, task_id: str) -> Optional[PlanTask]:
        row = await self.db.fetch_one(
            "SELECT * FROM study_plan_tasks WHERE id = $1 AND user_id = $2", task_id, user_id
        )
        return PlanTask(**row) if row else None

    async def insert_tasks(self, tasks: List[PlanTaskCreate]) -> List[PlanTask]:
        if not tasks:
            return []
        query = (
            f"INSERT INTO study_plan_tasks ({TASK_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12) RETURNING *"
        )
        rows = await self.db.executemany_returning(query, [
            (
                t.plan_id, t.user_id, t.subject_id, t.subject_name, t.title, t.description,
                t.scheduled_date, t.scheduled_start_time, t.duration_minutes,
                t.status.value, t.priority, t.order_index,
            )
            for t in tasks
        ])
        return [PlanTask(**r) for r in rows]

    async def update_task(self, user_id: str, task_id: str, **updates) -> Optional[PlanTask]:
        set_parts = []
        values = []
        for i, (k, v) in enumerate(updates.items(), 1):
            if k not in TASK_UPDATABLE:
                raise ValueError(f"Column {k} cannot be updated")
            set_parts.append(f"{k} = ${i}")
            values.append(v.value if isinstance(v, TaskStatus) else v)
        values.extend([task_id, user_id])
        set_clause = ", ".join(set_parts)
        row = await self.db.execute_returning(
            f"UPDATE study_plan_tasks SET {set_clause} "
            f"WHERE id = ${len(values) - 1} AND user_id = ${len(values)} RETURNING *",
            *values
        )
        return PlanTask(**row) if row else None

    async def delete_task(self, user_id: str, task_id: str) -> bool:
        result = await self.db.execute(
            "DELETE FROM study_plan_tasks WHERE id = $1 AND user_id = $2", task_id, user_id
        )
        return _rows_affected(result) > 0

    async def delete_pending_tasks_from(self, user_id: str, plan_id: str, start: date) -> int:
        result = await self.db.execute(
            """DELETE FROM study_plan_tasks
               WHERE user_id = $1 AND plan_id = $2 AND status = 'pending' AND scheduled_date >= $3""",
            user_id, plan_id, start
        )
        return _rows_affected(result)

    # ============================================
    # STUDY PLANS
    # ============================================

    async def get_active_plan(self, user_id: str) -> Optional[StudyPlan]:
        row = await self.db.fetch_one(
            """SELECT * FROM study_plans WHERE user_id = $1 AND status = 'active'
               ORDER BY created_at DESC LIMIT 1""",
            user_id
        )
        return StudyPlan(**row) if row else None

    async def get_plans_starting(
        self, user_id: str, start: date, plan_type: Optional[PlanType] = None
    ) -> List[StudyPlan]:
        if plan_type is None:
            rows = await self.db.fetch(
                "SELECT * FROM study_plans WHERE user_id = $1 AND start_date = $2", user_id, start
            )
        else:
            rows = await self.db.fetch(
                """SELECT * FROM study_plans
                   WHERE user_id = $1 AND start_date = $2 AND plan_type = $3""",
                user_id, start, plan_type.value
            )
        return [StudyPlan(**r) for r in rows]

    async def create_plan(self, plan: StudyPlanCreate) -> Optional[StudyPlan]:
        row = await self.db.execute_returning(
            """INSERT INTO study_plans
                   (user_id, goal_id, title, plan_type, start_date, end_date, status, ai_generated, metadata)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9) RETURNING *""",
            plan.user_id, plan.goal_id, plan.title, plan.plan_type.value, plan.start_date,
            plan.end_date, plan.status.value, plan.ai_generated, json.dumps(plan.metadata)
        )
        return StudyPlan(**row) if row else None

    async def delete_plan(self, user_id: str, plan_id: str) -> bool:
        # Tasks go with the plan (ON DELETE CASCADE)
        result = await self.db.execute(
            "DELETE FROM study_plans WHERE id = $1 AND user_id = $2", plan_id, user_id
        )
        return _rows_affected(result) > 0

    # ============================================
    # GOALS
    # ============================================

    async def get_active_goal(self, user_id: str) -> Optional[Goal]:
        row = await self.db.fetch_one(
            """SELECT * FROM user_goals WHERE user_id = $1 AND is_active = true
               ORDER BY created_at DESC LIMIT 1""",
            user_id
        )
        return Goal(**row) if row else None

    async def deactivate_goals(self, user_id: str) -> int:
        result = await self.db.execute(
            "UPDATE user_goals SET is_active = false WHERE user_id = $1 AND is_active = true",
            user_id
        )
        return _rows_affected(result)

    async def create_goal(self, goal: GoalCreate) -> Goal:
        row = await self.db.execute_returning(
            """INSERT INTO user_goals
                   (user_id, title, description, target_date, hours_per_day, subjects, is_active)
               VALUES ($1, $2, $3, $4, $5, $6, $7) RETURNING *""",
            goal.user_id, goal.title, goal.description, goal.target_date,
            goal.hours_per_day, goal.subjects, goal.is_active
        )
        return Goal(**row)

    # ============================================
    # PRACTICE & SLEEP
    # ============================================

    async def get_practice_attempts(self, user_id: str, since: datetime) -> List[PracticeAttempt]:
        rows = await self.db.fetch(
            """SELECT * FROM practice_attempts
               WHERE user_id = $1 AND created_at >= $2 ORDER BY created_at""",
            user_id, since
        )
        return [PracticeAttempt(**r) for r in rows]

    async def get_sleep_logs(
        self, user_id: str, since: Optional[date] = None, limit: int = 30
    ) -> List[SleepLog]:
        """Most recent first."""
        if since is None:
            rows = await self.db.fetch(
                "SELECT * FROM sleep_logs WHERE user_id = $1 ORDER BY log_date DESC LIMIT $2",
                user_id, limit
            )
        else:
            rows = await self.db.fetch(
                """SELECT * FROM sleep_logs WHERE user_id = $1 AND log_date >= $2
                   ORDER BY log_date DESC LIMIT $3""",
                user_id, since, limit
            )
        return [SleepLog(**r) for r in rows]

    # ============================================
    # INSIGHTS
    # ============================================

    async def replace_insights(self, user_id: str, insights: List[InsightCreate]) -> List[Insight]:
        await self.db.execute("DELETE FROM ai_insights WHERE user_id = $1", user_id)
        if not insights:
            return []
        rows = await self.db.executemany_returning(
            """INSERT INTO ai_insights
                   (user_id, insight_type, title, content, priority, metadata, expires_at)
               VALUES ($1, $2, $3, $4, $5, $6, $7) RETURNING *""",
            [
                (i.user_id, i.insight_type.value, i.title, i.content, i.priority,
                 json.dumps(i.metadata), i.expires_at)
                for i in insights
            ]
        )
        return [Insight(**r) for r in rows]

    async def get_insights(self, user_id: str, now: datetime) -> List[Insight]:
        rows = await self.db.fetch(
            """SELECT * FROM ai_insights
               WHERE user_id = $1 AND (expires_at IS NULL OR expires_at > $2)
               ORDER BY priority DESC, created_at DESC""",
            user_id, now
        )
        return [Insight(**r) for r in rows]


# ============================================
# DATABASE INITIALIZATION
# ============================================

SCHEMA = [
    """CREATE TABLE IF NOT EXISTS subjects (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        name VARCHAR(120) NOT NULL,
        color VARCHAR(16) NOT NULL DEFAULT '#6366f1',
        icon VARCHAR(50) NOT NULL DEFAULT 'book',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP DEFAULT NOW()
    )""",
    """CREATE TABLE IF NOT EXISTS sessions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        subject_id UUID REFERENCES subjects(id) ON DELETE SET NULL,
        started_at TIMESTAMP NOT NULL,
        ended_at TIMESTAMP,
        duration_seconds INTEGER NOT NULL DEFAULT 0,
        status VARCHAR(20) NOT NULL DEFAULT 'active'
    )""",
    """CREATE TABLE IF NOT EXISTS breaks (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        session_id UUID NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        break_type VARCHAR(20) NOT NULL DEFAULT 'rest',
        started_at TIMESTAMP NOT NULL,
        ended_at TIMESTAMP,
        duration_seconds INTEGER NOT NULL DEFAULT 0
    )""",
    """CREATE TABLE IF NOT EXISTS user_goals (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        title VARCHAR(200) NOT NULL,
        description TEXT,
        target_date DATE,
        hours_per_day REAL NOT NULL DEFAULT 4,
        subjects TEXT[] NOT NULL DEFAULT '{}',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP DEFAULT NOW()
    )""",
    """CREATE TABLE IF NOT EXISTS study_plans (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        goal_id UUID REFERENCES user_goals(id) ON DELETE SET NULL,
        title VARCHAR(200) NOT NULL,
        plan_type VARCHAR(20) NOT NULL DEFAULT 'custom',
        start_date DATE NOT NULL,
        end_date DATE NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'active',
        ai_generated BOOLEAN NOT NULL DEFAULT FALSE,
        metadata JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMP DEFAULT NOW()
    )""",
    """CREATE TABLE IF NOT EXISTS study_plan_tasks (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        plan_id UUID NOT NULL REFERENCES study_plans(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        subject_id UUID REFERENCES subjects(id) ON DELETE SET NULL,
        subject_name VARCHAR(120),
        title VARCHAR(200) NOT NULL,
        description TEXT,
        scheduled_date DATE NOT NULL,
        scheduled_start_time VARCHAR(5),
        duration_minutes INTEGER NOT NULL DEFAULT 60,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        priority SMALLINT NOT NULL DEFAULT 2,
        order_index INTEGER NOT NULL DEFAULT 0,
        completed_at TIMESTAMP
    )""",
    """CREATE TABLE IF NOT EXISTS practice_attempts (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        subject VARCHAR(120),
        average_grade REAL,
        target_seconds INTEGER NOT NULL DEFAULT 0,
        actual_seconds INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT NOW()
    )""",
    """CREATE TABLE IF NOT EXISTS sleep_logs (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        log_date DATE NOT NULL,
        wake_time TIMESTAMP,
        sleep_time TIMESTAMP,
        sleep_duration_minutes INTEGER
    )""",
    """CREATE TABLE IF NOT EXISTS ai_insights (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        insight_type VARCHAR(20) NOT NULL,
        title VARCHAR(200) NOT NULL,
        content TEXT NOT NULL,
        priority INTEGER NOT NULL DEFAULT 0,
        metadata JSONB NOT NULL DEFAULT '{}',
        is_read BOOLEAN NOT NULL DEFAULT FALSE,
        expires_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT NOW()
    )""",
    "CREATE INDEX IF NOT EXISTS idx_tasks_user_date ON study_plan_tasks(user_id, scheduled_date)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_user_started ON sessions(user_id, started_at)",
]


async def ensure_tables(database: Database = None) -> None:
    """Create the engine's tables if they don't exist."""
    database = database or db
    for statement in SCHEMA:
        await database.execute(statement)
    logger.info("Database schema ready")


# Global store instance
store = ActivityStore()

