"""
Study Engine - Pydantic Models (v2 syntax)
Stored records, their create payloads, and the derived analytics results.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field


# ============================================
# ENUMS
# ============================================

class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class BreakType(str, Enum):
    PRAYER = "prayer"
    MEAL = "meal"
    REST = "rest"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class PlanType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"
    AI_GENERATED = "ai_generated"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    ARCHIVED = "archived"


class InsightType(str, Enum):
    RECOMMENDATION = "recommendation"
    WARNING = "warning"
    ACHIEVEMENT = "achievement"
    PATTERN = "pattern"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_RANK = {Severity.HIGH: 0, Severity.MEDIUM: 1, Severity.LOW: 2}


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class PeriodType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class SubjectStatus(str, Enum):
    DONE = "done"
    ON_TRACK = "on_track"
    BEHIND = "behind"
    DANGER = "danger"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertLevel(str, Enum):
    DANGER = "danger"
    WARNING = "warning"
    INFO = "info"


# ============================================
# SUBJECT MODELS
# ============================================

class SubjectBase(BaseModel):
    name: str
    color: str = "#6366f1"
    icon: str = "book"
    is_active: bool = True


class SubjectCreate(SubjectBase):
    user_id: str


class Subject(SubjectBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    created_at: Optional[datetime] = None


# ============================================
# SESSION & BREAK MODELS
# ============================================

class Session(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    subject_id: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_seconds: int = 0
    status: SessionStatus = SessionStatus.COMPLETED


class Break(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    session_id: str
    break_type: BreakType = BreakType.REST
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_seconds: int = 0


# ============================================
# PLAN & TASK MODELS
# ============================================

class PlanTaskBase(BaseModel):
    title: str
    description: Optional[str] = None
    subject_id: Optional[str] = None
    subject_name: Optional[str] = None
    scheduled_date: date
    scheduled_start_time: Optional[str] = None
    duration_minutes: int = 60
    status: TaskStatus = TaskStatus.PENDING
    priority: int = Field(default=2, ge=1, le=3)
    order_index: int = 0


class PlanTaskCreate(PlanTaskBase):
    plan_id: str
    user_id: str


class PlanTask(PlanTaskBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    plan_id: str
    user_id: str
    completed_at: Optional[datetime] = None


class StudyPlanBase(BaseModel):
    title: str
    plan_type: PlanType = PlanType.CUSTOM
    start_date: date
    end_date: date
    status: PlanStatus = PlanStatus.ACTIVE
    ai_generated: bool = False
    goal_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StudyPlanCreate(StudyPlanBase):
    user_id: str


class StudyPlan(StudyPlanBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    created_at: Optional[datetime] = None


# ============================================
# GOAL MODELS
# ============================================

class GoalBase(BaseModel):
    title: str
    description: Optional[str] = None
    target_date: Optional[date] = None
    hours_per_day: float = 4.0
    subjects: List[str] = Field(default_factory=list)
    is_active: bool = True


class GoalCreate(GoalBase):
    user_id: str


class Goal(GoalBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    created_at: Optional[datetime] = None


# ============================================
# SIGNAL MODELS (read-only)
# ============================================

class PracticeAttempt(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    subject: Optional[str] = None
    average_grade: Optional[float] = None
    target_seconds: int = 0
    actual_seconds: int = 0
    created_at: datetime


class SleepLog(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    log_date: date
    wake_time: Optional[datetime] = None
    sleep_time: Optional[datetime] = None
    sleep_duration_minutes: Optional[int] = None


# ============================================
# INSIGHT MODELS
# ============================================

class InsightCreate(BaseModel):
    user_id: str
    insight_type: InsightType
    title: str
    content: str
    priority: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None


class Insight(InsightCreate):
    model_config = ConfigDict(from_attributes=True)

    id: str
    is_read: bool = False
    created_at: Optional[datetime] = None


# ============================================
# DERIVED: BEHAVIOR PROFILE
# ============================================

class SubjectBehavior(BaseModel):
    subject_id: str
    subject_name: str
    total_seconds: int
    percentage: int
    session_count: int
    avg_session_seconds: int
    last_studied: Optional[date] = None


class BehaviorProfile(BaseModel):
    window_days: int
    total_study_seconds: int = 0
    avg_daily_seconds: int = 0
    avg_session_seconds: int = 0
    peak_hour: int = 9
    consistency_score: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    subject_breakdown: List[SubjectBehavior] = Field(default_factory=list)
    weekday_seconds: List[int] = Field(default_factory=lambda: [0] * 7)
    avg_breaks_per_session: float = 0.0
    avg_break_seconds: int = 0
    common_break_type: BreakType = BreakType.REST
    unique_study_days: int = 0
    has_data: bool = False


# ============================================
# DERIVED: SCORES & WEAK AREAS
# ============================================

class ScoreLabels(BaseModel):
    adherence: str
    productivity: str
    focus: str
    overall: str


class BehaviorScores(BaseModel):
    adherence: int
    productivity: int
    focus: int
    overall: int
    trend: Trend
    labels: ScoreLabels


class WeakArea(BaseModel):
    subject_id: str
    subject_name: str
    reason: str
    severity: Severity
    recommendation: str


# ============================================
# DERIVED: SCHEDULING
# ============================================

class GeneratedTask(BaseModel):
    """A task computed by the distributor before it is written."""
    title: str
    subject_id: Optional[str] = None
    subject_name: Optional[str] = None
    scheduled_date: date
    scheduled_start_time: Optional[str] = None
    duration_minutes: int
    priority: int = 2
    order_index: int = 0
    description: Optional[str] = None
    is_review: bool = False


class GeneratedPlan(BaseModel):
    plan: StudyPlan
    tasks: List[PlanTask] = Field(default_factory=list)


class PlanBuildResult(GeneratedPlan):
    goal: Goal
    exam_date: date
    tasks_per_day: int
    available_days: int
    reply: str


class PlanComparison(BaseModel):
    date: date
    planned_minutes: int
    actual_minutes: int
    adherence_score: int
    completed_tasks: int
    total_tasks: int
    missed_subjects: List[str] = Field(default_factory=list)
    surplus: bool = False


# ============================================
# DERIVED: READINESS
# ============================================

class SubjectReadiness(BaseModel):
    subject_name: str
    completed: int
    total: int
    coverage_pct: int
    status: SubjectStatus
    last_studied: Optional[date] = None
    days_since: Optional[int] = None


class ReadinessReport(BaseModel):
    overall_pct: int
    days_left: Optional[int] = None
    exam_date: Optional[date] = None
    completion_probability: int
    risk_level: RiskLevel
    subjects: List[SubjectReadiness] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    risk_factors: List[str] = Field(default_factory=list)
    summary: str = ""
    indeterminate: bool = False


# ============================================
# DERIVED: INSIGHTS, ALERTS & FEEDBACK
# ============================================

class BehaviorInsight(BaseModel):
    label: str
    value: str
    positive: bool


class BehaviorData(BaseModel):
    completion_rate: int = 0
    best_day: Optional[str] = None
    worst_day: Optional[str] = None
    completion_streak: int = 0
    sleep_correlation: Optional[str] = None
    insights: List[BehaviorInsight] = Field(default_factory=list)
    narrative: str = ""
    has_enough_data: bool = False


class SmartAlert(BaseModel):
    alert_id: str
    level: AlertLevel
    title: str
    message: str
    action: Optional[str] = None


class Feedback(BaseModel):
    summary: str
    tips: List[str]
    encouragement: str


# ============================================
# DERIVED: PROGRESS SUMMARIES & PLAN STATUS
# ============================================

class DayProgress(BaseModel):
    date: date
    completed: int
    total: int
    skipped: int = 0


class PeriodSummary(BaseModel):
    period: PeriodType
    start_date: date
    end_date: date
    total_tasks: int = 0
    completed_tasks: int = 0
    pending_tasks: int = 0
    skipped_tasks: int = 0
    completion_rate: int = 0
    study_minutes: int = 0
    subject_minutes: Dict[str, int] = Field(default_factory=dict)
    weak_subjects: List[str] = Field(default_factory=list)
    days: List[DayProgress] = Field(default_factory=list)
    top_subject: Optional[str] = None
    previous_day_rate: Optional[int] = None
    days_left: Optional[int] = None
    content: str
    has_data: bool = False


class DayPlanSummary(BaseModel):
    date: date
    label: str
    task_count: int = 0
    completed_count: int = 0
    total_minutes: int = 0
    is_exam_day: bool = False
    is_past: bool = False


class PlanStatusReport(BaseModel):
    plan_id: str
    goal_id: Optional[str] = None
    exam_date: Optional[date] = None
    days_left: Optional[int] = None
    total_tasks: int
    completed_tasks: int
    overdue_tasks: int
    completion_pct: int
    today_tasks: List[PlanTask] = Field(default_factory=list)
    day_plans: List[DayPlanSummary] = Field(default_factory=list)
    alert: str
