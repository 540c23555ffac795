"""
Study Engine - Readiness Estimator
Per-subject coverage of the plan, time left to the exam, and a completion
probability with a risk tier. A generated narrative may refine the summary,
probability, risk tier and risk factors one field at a time.
"""

import asyncio
from datetime import date
from typing import Dict, List, Optional

from database import store as default_store
from goals import days_until
from logger import get_logger
from models import Goal, PlanTask, ReadinessReport, RiskLevel, SubjectReadiness, SubjectStatus, TaskStatus
from narrative import (
    NarrativeEnhancer, extract_json_object, overlay_fields, safe_generate,
    valid_choice, valid_percentage, valid_text, valid_text_list,
)

logger = get_logger(__name__)

UNNAMED_SUBJECT = "Other"
MAX_RISK_FACTORS = 3

ON_TRACK_SUMMARY = "You are on the right track! Keep up this pace and you will be ready for the exam."
BEHIND_SUMMARY = "You need to push harder. Focus on weaker subjects and increase daily study hours."
NO_TASKS_SUMMARY = "No plan tasks yet. Build a study plan so readiness can be measured."


# ============================================
# PURE CALCULATIONS
# ============================================

def coverage_pct(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    return max(0, min(100, round(completed / total * 100)))


def subject_status(pct: int, days_left: Optional[int]) -> SubjectStatus:
    if pct >= 100:
        return SubjectStatus.DONE
    if pct < 30 or (days_left is not None and days_left <= 7 and pct < 70):
        return SubjectStatus.DANGER
    if pct < 55:
        return SubjectStatus.BEHIND
    return SubjectStatus.ON_TRACK


def risk_tier(probability: int) -> RiskLevel:
    if probability >= 70:
        return RiskLevel.LOW
    if probability >= 45:
        return RiskLevel.MEDIUM
    if probability >= 25:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def fallback_probability(overall: int, days_left: Optional[int], warning_count: int) -> int:
    raw = overall * 0.6
    if days_left is not None and days_left > 14:
        raw += 15
    if warning_count == 0:
        raw += 10
    return max(0, min(100, round(raw)))


def subject_coverage(tasks: List[PlanTask], days_left: Optional[int], today: date) -> List[SubjectReadiness]:
    """Group tasks by subject name, keeping first-seen order."""
    grouped: Dict[str, Dict] = {}
    for t in tasks:
        entry = grouped.setdefault(t.subject_name or UNNAMED_SUBJECT, {"completed": 0, "total": 0, "last": None})
        entry["total"] += 1
        if t.status == TaskStatus.COMPLETED:
            entry["completed"] += 1
            if entry["last"] is None or t.scheduled_date > entry["last"]:
                entry["last"] = t.scheduled_date

    subjects = []
    for name, data in grouped.items():
        pct = coverage_pct(data["completed"], data["total"])
        last = data["last"]
        subjects.append(SubjectReadiness(
            subject_name=name,
            completed=data["completed"],
            total=data["total"],
            coverage_pct=pct,
            status=subject_status(pct, days_left),
            last_studied=last,
            days_since=(today - last).days if last else None,
        ))
    return subjects


def readiness_warnings(subjects: List[SubjectReadiness], overall: int, days_left: Optional[int]) -> List[str]:
    warnings = [
        f"{s.subject_name}: coverage {s.coverage_pct}% is in the danger zone"
        for s in subjects if s.status == SubjectStatus.DANGER
    ]
    warnings.extend(
        f"Haven't studied {s.subject_name} in {s.days_since} days"
        for s in subjects
        if s.days_since is not None and s.days_since >= 7 and s.coverage_pct < 100
    )
    if days_left is not None and days_left <= 7 and overall < 80:
        warnings.append(f"Exam in {days_left} days and coverage is only {overall}%")
    return warnings


def readiness_recommendations(subjects: List[SubjectReadiness], days_left: Optional[int]) -> List[str]:
    recs = []
    behind = [s.subject_name for s in subjects if s.status in (SubjectStatus.BEHIND, SubjectStatus.DANGER)]
    if behind:
        recs.append(f"Focus on: {', '.join(behind)}")
    if days_left is not None and days_left < 14:
        recs.append("Add review sessions instead of new material")
    stale = [
        s.subject_name for s in subjects
        if s.days_since is not None and s.days_since >= 5 and s.coverage_pct < 100
    ]
    if stale:
        recs.append(f"Schedule a review for: {', '.join(stale)}")
    return recs


def build_report(tasks: List[PlanTask], goal: Optional[Goal], today: date) -> ReadinessReport:
    """Deterministic readiness report. Never raises for an empty plan."""
    days_left = days_until(goal, today)
    exam_date = goal.target_date if goal else None

    if not tasks:
        probability = fallback_probability(0, days_left, 0)
        return ReadinessReport(
            overall_pct=0,
            days_left=days_left,
            exam_date=exam_date,
            completion_probability=probability,
            risk_level=risk_tier(probability),
            summary=NO_TASKS_SUMMARY,
            indeterminate=True,
        )

    subjects = subject_coverage(tasks, days_left, today)
    completed = sum(s.completed for s in subjects)
    total = sum(s.total for s in subjects)
    overall = coverage_pct(completed, total)

    warnings = readiness_warnings(subjects, overall, days_left)
    probability = fallback_probability(overall, days_left, len(warnings))

    return ReadinessReport(
        overall_pct=overall,
        days_left=days_left,
        exam_date=exam_date,
        completion_probability=probability,
        risk_level=risk_tier(probability),
        subjects=subjects,
        warnings=warnings,
        recommendations=readiness_recommendations(subjects, days_left),
        risk_factors=warnings[:MAX_RISK_FACTORS],
        summary=ON_TRACK_SUMMARY if overall >= 70 else BEHIND_SUMMARY,
    )


# ============================================
# NARRATIVE OVERRIDE
# ============================================

OVERRIDE_RULES = {
    "summary": ("summary", valid_text(600)),
    "completion_probability": ("completionProbability", valid_percentage),
    "risk_level": ("riskLevel", valid_choice(RiskLevel)),
    "risk_factors": ("riskFactors", valid_text_list(MAX_RISK_FACTORS)),
}

SYSTEM_PROMPT = """You are an academic risk assessment engine for university students.
Analyze the student's progress data, predict exam readiness and return structured JSON.
Return ONLY valid JSON. No markdown. No explanation outside JSON.

OUTPUT SCHEMA:
{
  "summary": "<2 sentences, honest and motivating>",
  "completionProbability": <integer 0-100>,
  "riskLevel": "<low|medium|high|critical>",
  "riskFactors": ["<risk factor>", "<risk factor>"]
}

RULES:
- low = 70-100, medium = 45-69, high = 25-44, critical = 0-24
- riskFactors: max 3 items, specific and actionable"""


def _context_block(report: ReadinessReport) -> str:
    lines = []
    for s in report.subjects:
        line = f"{s.subject_name}: {s.completed}/{s.total} ({s.coverage_pct}%) {s.status.value}"
        if s.days_since is not None and s.days_since >= 5:
            line += f", last studied {s.days_since}d ago"
        lines.append(line)
    return (
        f"Exam: {report.exam_date or 'unknown'}, days left: {report.days_left if report.days_left is not None else '?'}\n"
        f"Overall coverage: {report.overall_pct}%\n"
        f"Subjects:\n" + "\n".join(lines) + "\n"
        f"Warnings: {' | '.join(report.warnings) or 'none'}"
    )


async def enhance_report(report: ReadinessReport, enhancer: Optional[NarrativeEnhancer]) -> ReadinessReport:
    """Overlay validated generated fields onto the computed report."""
    if report.indeterminate:
        return report

    raw = await safe_generate(
        enhancer,
        [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": _context_block(report)},
        ],
        max_tokens=250,
        temperature=0.2,
        purpose="readiness",
    )
    fallback = {field: getattr(report, field) for field in OVERRIDE_RULES}
    merged = overlay_fields(fallback, extract_json_object(raw), OVERRIDE_RULES)
    return report.model_copy(update=merged)


# ============================================
# ESTIMATOR
# ============================================

class ReadinessEstimator:
    def __init__(self, store=None):
        self.store = store or default_store

    async def estimate(
        self,
        user_id: str,
        enhancer: Optional[NarrativeEnhancer] = None,
        today: Optional[date] = None,
    ) -> ReadinessReport:
        today = today or date.today()
        goal, tasks = await asyncio.gather(
            self.store.get_active_goal(user_id),
            self.store.get_all_tasks(user_id),
        )
        report = build_report(tasks, goal, today)
        logger.debug(
            f"Readiness for {user_id}: {report.overall_pct}% coverage, "
            f"{report.completion_probability}% probability ({report.risk_level.value})"
        )
        return await enhance_report(report, enhancer)


async def get_readiness_report(
    user_id: str,
    enhancer: Optional[NarrativeEnhancer] = None,
    today: Optional[date] = None,
    store=None,
) -> ReadinessReport:
    return await ReadinessEstimator(store).estimate(user_id, enhancer, today)
