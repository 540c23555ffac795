"""
Study Engine - Goals & Active Plan
At most one active goal and one active study plan per user, by convention.
"""

from datetime import date
from typing import Optional, List, Dict, Any

from database import store as default_store
from errors import NoActivePlanError, PlanCreationError
from logger import get_logger
from models import Goal, GoalCreate, PlanStatus, PlanType, StudyPlan, StudyPlanCreate

logger = get_logger(__name__)


# ============================================
# GOAL OPERATIONS
# ============================================

async def get_active_goal(user_id: str, store=None) -> Optional[Goal]:
    """Most recently created active goal."""
    store = store or default_store
    return await store.get_active_goal(user_id)


async def activate_goal(
    user_id: str,
    title: str,
    target_date: Optional[date],
    hours_per_day: float = 4.0,
    subjects: Optional[List[str]] = None,
    description: Optional[str] = None,
    store=None,
) -> Goal:
    """Deactivate every existing goal, then create the new active one."""
    store = store or default_store
    deactivated = await store.deactivate_goals(user_id)
    if deactivated:
        logger.info(f"Deactivated {deactivated} goal(s) for {user_id}")

    return await store.create_goal(GoalCreate(
        user_id=user_id,
        title=title,
        description=description,
        target_date=target_date,
        hours_per_day=hours_per_day,
        subjects=subjects or [],
        is_active=True,
    ))


def days_until(goal: Optional[Goal], today: date) -> Optional[int]:
    """Calendar days from today to the goal's deadline, or None without one."""
    if goal is None or goal.target_date is None:
        return None
    return (goal.target_date - today).days


# ============================================
# PLAN OPERATIONS
# ============================================

async def require_active_plan(user_id: str, store=None) -> StudyPlan:
    store = store or default_store
    plan = await store.get_active_plan(user_id)
    if plan is None:
        raise NoActivePlanError(user_id)
    return plan


async def create_plan(
    user_id: str,
    title: str,
    start_date: date,
    end_date: date,
    plan_type: PlanType = PlanType.AI_GENERATED,
    goal_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    ai_generated: bool = True,
    store=None,
) -> StudyPlan:
    store = store or default_store
    plan = await store.create_plan(StudyPlanCreate(
        user_id=user_id,
        title=title,
        plan_type=plan_type,
        start_date=start_date,
        end_date=max(start_date, end_date),
        status=PlanStatus.ACTIVE,
        ai_generated=ai_generated,
        goal_id=goal_id,
        metadata=metadata or {},
    ))
    if plan is None:
        raise PlanCreationError(f"Failed to create plan '{title}' for user {user_id}")
    logger.info(f"Created {plan_type.value} plan {plan.id} for {user_id}: {start_date} to {plan.end_date}")
    return plan


async def reuse_or_create_plan(
    user_id: str,
    title: str,
    start_date: date,
    end_date: date,
    clear_from: date,
    goal_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    existing: Optional[StudyPlan] = None,
    store=None,
) -> StudyPlan:
    """
    Keep the active plan if there is one and clear its pending tasks from
    `clear_from` onward; otherwise create a fresh ai-generated plan.
    """
    store = store or default_store
    if existing is None:
        existing = await store.get_active_plan(user_id)

    if existing is not None:
        removed = await store.delete_pending_tasks_from(user_id, existing.id, clear_from)
        logger.info(f"Reusing plan {existing.id} for {user_id}, cleared {removed} pending task(s)")
        return existing

    return await create_plan(
        user_id, title, start_date, end_date,
        plan_type=PlanType.AI_GENERATED, goal_id=goal_id, metadata=metadata, store=store,
    )
