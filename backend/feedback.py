"""
Study Engine - Coaching Feedback
Weekly coaching feedback with heuristic fallbacks, and the persisted insight
batch built from scores, weak areas and the behavior profile. Also the daily,
weekly and monthly progress summaries.
"""

import asyncio
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Tuple

from config import get_engine_config
from database import store as default_store
from goals import days_until
from logger import get_logger
from models import (
    BehaviorProfile, BehaviorScores, DayProgress, Feedback, Insight, InsightCreate, InsightType, PeriodSummary,
    PeriodType, PlanTask, Session, Severity, Subject, TaskStatus, WeakArea,
)
from narrative import (
    NarrativeEnhancer, extract_json_object, overlay_fields, safe_generate, valid_text, valid_text_list,
)
from profiler import BehaviorProfiler
from scores import ScoreCalculator
from weak_areas import WeakAreaDetector

logger = get_logger(__name__)

INSIGHT_TTL_DAYS = 7
MAX_WEAK_INSIGHTS = 3


# ============================================
# HEURISTICS
# ============================================

def heuristic_summary(scores: BehaviorScores) -> str:
    if scores.overall >= 80:
        return "Excellent week! Your consistency and focus are paying off, and you're on track to meet your goals."
    if scores.overall >= 60:
        return "Solid progress this week. Your study habits are developing well with some room to push higher."
    if scores.overall >= 40:
        return "You've made a start, but there's significant room for improvement. Focus on building a regular daily routine."
    return "This week was challenging for staying on track. Reset and build better habits with small consistent sessions every day."


def heuristic_tips(scores: BehaviorScores, weak: List[WeakArea]) -> List[str]:
    tips = []
    if scores.adherence < 70:
        tips.append("Set specific study times and use phone reminders to stay on schedule.")
    if scores.focus < 70:
        tips.append("Try 45-minute focus blocks. Focused bursts beat long unfocused sessions.")
    if scores.productivity < 70:
        tips.append("Aim for at least 3 quality hours daily and protect that time like an appointment.")
    if weak:
        tips.append(f"Prioritise {weak[0].subject_name} this week: {weak[0].reason.lower()}.")
    if len(tips) < 3:
        tips.append("Review yesterday's material for 10 minutes before starting new content.")
    if len(tips) < 3:
        tips.append("After each session, write down 3 things you learned. Active recall beats re-reading.")
    return tips[:3]


def heuristic_encouragement(scores: BehaviorScores) -> str:
    if scores.overall >= 80:
        return "You're doing brilliantly. Keep this momentum going!"
    if scores.overall >= 60:
        return "Every session counts. Stay consistent and the results will come!"
    return "One focused session today is better than none. Start small and build!"


FEEDBACK_RULES = {
    "summary": ("summary", valid_text(600)),
    "tips": ("tips", valid_text_list(3, min_items=1)),
    "encouragement": ("encouragement", valid_text(300)),
}


def peak_window(peak_hour: int) -> str:
    return f"{peak_hour}:00-{(peak_hour + 2) % 24}:00"


def build_insights(
    user_id: str,
    feedback: Feedback,
    scores: BehaviorScores,
    weak: List[WeakArea],
    profile: BehaviorProfile,
    expires_at: datetime,
) -> List[InsightCreate]:
    """The insight batch that replaces whatever the user had before."""
    rows = [InsightCreate(
        user_id=user_id,
        insight_type=InsightType.RECOMMENDATION,
        title="Weekly Performance Summary",
        content=feedback.summary + "\n\n" + "\n".join(f"{i}. {tip}" for i, tip in enumerate(feedback.tips, 1)),
        priority=3,
        metadata={
            "tips": feedback.tips,
            "encouragement": feedback.encouragement,
            "scores": scores.model_dump(mode="json"),
        },
        expires_at=expires_at,
    )]

    for w in weak[:MAX_WEAK_INSIGHTS]:
        high = w.severity == Severity.HIGH
        rows.append(InsightCreate(
            user_id=user_id,
            insight_type=InsightType.WARNING if high else InsightType.RECOMMENDATION,
            title=f"{w.subject_name} Needs Attention",
            content=f"{w.reason}. {w.recommendation}",
            priority=3 if high else 2,
            metadata={"subject_id": w.subject_id, "severity": w.severity.value},
            expires_at=expires_at,
        ))

    if profile.current_streak >= 3:
        rows.append(InsightCreate(
            user_id=user_id,
            insight_type=InsightType.ACHIEVEMENT,
            title=f"{profile.current_streak}-Day Streak!",
            content=(
                f"You've studied consistently for {profile.current_streak} days in a row. "
                "Keep the momentum going!"
            ),
            priority=2,
            metadata={"streak": profile.current_streak},
            expires_at=expires_at,
        ))

    if scores.adherence >= 80:
        rows.append(InsightCreate(
            user_id=user_id,
            insight_type=InsightType.ACHIEVEMENT,
            title="High Plan Adherence",
            content=f"Your plan adherence is {scores.adherence}%. You're following through on your commitments.",
            priority=2,
            metadata={"score": scores.adherence},
            expires_at=expires_at,
        ))
    elif scores.adherence < 50:
        rows.append(InsightCreate(
            user_id=user_id,
            insight_type=InsightType.WARNING,
            title="Low Plan Adherence",
            content=(
                f"You're completing {scores.adherence}% of planned tasks. Set more realistic daily targets: "
                "finishing 2 tasks beats planning 6 and skipping most."
            ),
            priority=3,
            metadata={"score": scores.adherence},
            expires_at=expires_at,
        ))

    rows.append(InsightCreate(
        user_id=user_id,
        insight_type=InsightType.PATTERN,
        title="Your Peak Study Window",
        content=(
            f"Your data shows you are most productive around {peak_window(profile.peak_hour)}. "
            "Schedule your hardest subjects during this window."
        ),
        priority=1,
        metadata={"peak_hour": profile.peak_hour},
        expires_at=expires_at,
    ))
    return rows


# ============================================
# PERIOD SUMMARIES
# ============================================

PERIOD_TEXT = valid_text(700)

NO_DATA_MESSAGES = {
    PeriodType.DAILY: (
        "No tasks or study sessions recorded today. Add today's tasks and start a study "
        "session so your progress can be tracked."
    ),
    PeriodType.WEEKLY: "No data for this week yet. Log your tasks and study sessions for a weekly analysis.",
    PeriodType.MONTHLY: "Need more data to analyse the month. Study and log your daily tasks for a monthly report.",
}

PERIOD_MAX_TOKENS = {PeriodType.DAILY: 200, PeriodType.WEEKLY: 220, PeriodType.MONTHLY: 250}

MIN_MONTHLY_TASKS = 5


def format_minutes(minutes: int) -> str:
    hours, mins = divmod(minutes, 60)
    if hours and mins:
        return f"{hours}h {mins}m"
    if hours:
        return f"{hours}h"
    return f"{mins}m"


def period_window(period: PeriodType, today: date, week_start: int = 5) -> Tuple[date, date]:
    if period == PeriodType.DAILY:
        return today, today
    if period == PeriodType.WEEKLY:
        return today - timedelta(days=(today.weekday() - week_start) % 7), today
    return today.replace(day=1), today


def minutes_by_subject(sessions: List[Session], subjects: List[Subject]) -> Dict[str, int]:
    """Study minutes per subject name, each session rounded on its own."""
    names = {s.id: s.name for s in subjects}
    totals: Dict[str, int] = {}
    for s in sessions:
        name = names.get(s.subject_id, "Other")
        totals[name] = totals.get(name, 0) + round(s.duration_seconds / 60)
    return totals


def _completion(tasks: List[PlanTask]) -> int:
    if not tasks:
        return 0
    return round(sum(1 for t in tasks if t.status == TaskStatus.COMPLETED) / len(tasks) * 100)


def weak_task_subjects(tasks: List[PlanTask]) -> List[str]:
    """Subjects with fewer than half of their tasks completed, as 'Name (done/total)'."""
    counts: Dict[str, List[int]] = {}
    for t in tasks:
        entry = counts.setdefault(t.subject_name or "General", [0, 0])
        entry[1] += 1
        if t.status == TaskStatus.COMPLETED:
            entry[0] += 1
    return [f"{name} ({done}/{total})" for name, (done, total) in counts.items() if done / total < 0.5]


def daily_progress(tasks: List[PlanTask]) -> List[DayProgress]:
    days: Dict[date, DayProgress] = {}
    for t in tasks:
        entry = days.setdefault(t.scheduled_date, DayProgress(date=t.scheduled_date, completed=0, total=0))
        entry.total += 1
        if t.status == TaskStatus.COMPLETED:
            entry.completed += 1
        elif t.status == TaskStatus.SKIPPED:
            entry.skipped += 1
    return sorted(days.values(), key=lambda d: d.date)


def top_subject(tasks: List[PlanTask], subject_minutes: Dict[str, int]) -> Optional[str]:
    """Most-studied subject among planned and studied ones; planned ones win ties."""
    names = []
    for t in tasks:
        name = t.subject_name or "General"
        if name not in names:
            names.append(name)
    names.extend(n for n in subject_minutes if n not in names)
    if not names:
        return None
    return max(names, key=lambda n: subject_minutes.get(n, 0))


def period_fallback(summary: PeriodSummary, pending_titles: List[str]) -> str:
    studied = format_minutes(summary.study_minutes)
    rate, done, total = summary.completion_rate, summary.completed_tasks, summary.total_tasks

    if summary.period == PeriodType.DAILY:
        if summary.pending_tasks == 0:
            extra = f" and studied for {studied}" if summary.study_minutes > 0 else ""
            return f"You finished all your tasks today{extra}! Great day."
        plural = "s" if done != 1 else ""
        text = f"You finished {done} task{plural} with {summary.pending_tasks} still pending ({pending_titles[0]})."
        if summary.study_minutes > 0:
            text += f" Studied for {studied} so far."
        return text

    if summary.period == PeriodType.WEEKLY:
        weak = summary.weak_subjects[0] if summary.weak_subjects else None
        if rate >= 70:
            tail = f" Focus next week on: {weak}." if weak else " Keep up the same pace."
            return f"Strong week! You completed {rate}% ({done}/{total} tasks) and studied for {studied}.{tail}"
        tail = f" {weak} needs more attention next week." if weak else " Try to start tasks earlier each day."
        return f"You completed {rate}% this week ({done}/{total}) and studied for {studied}.{tail}"

    top = summary.top_subject
    if rate >= 70:
        tail = f" Most studied subject: {top}." if top else ""
        return (f"Excellent month! You completed {rate}% of tasks and studied for {studied} this month."
                f"{tail} Keep up the same pace.")
    tail = f" You focused most on {top}." if top else ""
    return (f"This month you completed {rate}% and studied for {studied}.{tail} "
            "Next month try to be more consistent with daily tasks.")


def summarize_period(
    period: PeriodType,
    start: date,
    end: date,
    tasks: List[PlanTask],
    subject_minutes: Dict[str, int],
    previous_day: Optional[List[PlanTask]] = None,
    days_left: Optional[int] = None,
) -> PeriodSummary:
    """The computed summary, with its deterministic message."""
    study = sum(subject_minutes.values())
    if period == PeriodType.MONTHLY:
        has_data = len(tasks) >= MIN_MONTHLY_TASKS or bool(subject_minutes)
    else:
        has_data = bool(tasks) or bool(subject_minutes)

    pending = [t for t in tasks if t.status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)]
    summary = PeriodSummary(
        period=period,
        start_date=start,
        end_date=end,
        total_tasks=len(tasks),
        completed_tasks=sum(1 for t in tasks if t.status == TaskStatus.COMPLETED),
        pending_tasks=len(pending),
        skipped_tasks=sum(1 for t in tasks if t.status == TaskStatus.SKIPPED),
        completion_rate=_completion(tasks),
        study_minutes=study,
        subject_minutes=subject_minutes,
        weak_subjects=weak_task_subjects(tasks),
        days=daily_progress(tasks) if period == PeriodType.WEEKLY else [],
        top_subject=top_subject(tasks, subject_minutes) if period == PeriodType.MONTHLY else None,
        previous_day_rate=_completion(previous_day) if previous_day else None,
        days_left=days_left,
        content=NO_DATA_MESSAGES[period],
        has_data=has_data,
    )
    if has_data:
        summary.content = period_fallback(summary, [t.title for t in pending])
    return summary


def _period_prompt(summary: PeriodSummary, tasks: List[PlanTask]) -> str:
    if summary.subject_minutes:
        study_lines = "\n".join(
            f"- {name}: {format_minutes(mins)}"
            for name, mins in sorted(summary.subject_minutes.items(), key=lambda kv: -kv[1])
        )
    else:
        study_lines = "No study sessions recorded"

    lines = [f"Student data for {summary.start_date.isoformat()} to {summary.end_date.isoformat()}:", ""]
    if summary.period == PeriodType.DAILY:
        lines.append("Today's tasks:")
        lines.extend(
            f"- [{t.status.value}] {t.title}" + (f" [{t.subject_name}]" if t.subject_name else "")
            + f" ({t.duration_minutes}m)"
            for t in tasks
        )
        if summary.previous_day_rate is not None:
            lines.append(f"Yesterday's completion: {summary.previous_day_rate}%")
    elif summary.period == PeriodType.WEEKLY:
        lines.append("Tasks day by day:")
        lines.extend(
            f"- {d.date.isoformat()}: {d.completed}/{d.total} done"
            + (f", {d.skipped} skipped" if d.skipped else "")
            for d in summary.days
        )
    elif summary.days_left is not None:
        lines.append(f"Exam in {summary.days_left} days")

    lines += [
        "",
        "Study time per subject:",
        study_lines,
        f"Total study time: {format_minutes(summary.study_minutes)}",
        "",
        f"Tasks: {summary.completed_tasks}/{summary.total_tasks} done ({summary.completion_rate}%), "
        f"{summary.pending_tasks} pending, {summary.skipped_tasks} skipped",
        f"Weak subjects (completion < 50%): {', '.join(summary.weak_subjects) or 'None'}",
        "",
        "Write 3 sentences: what happened with actual numbers and subject names, "
        "what needs attention, and one precise tip.",
    ]
    return "\n".join(lines)


# ============================================
# FEEDBACK SERVICE
# ============================================

class FeedbackService:
    def __init__(self, store=None, config=None):
        self.store = store or default_store
        self.profiler = BehaviorProfiler(self.store)
        self.scores = ScoreCalculator(self.store)
        self.detector = WeakAreaDetector(self.store, self.profiler)
        self.config = config or get_engine_config()

    async def generate_feedback(
        self,
        user_id: str,
        enhancer: Optional[NarrativeEnhancer] = None,
        today: Optional[date] = None,
    ) -> Feedback:
        today = today or date.today()
        profile, scores, weak = await asyncio.gather(
            self.profiler.analyze(user_id, 7, today),
            self.scores.calculate(user_id, today),
            self.detector.detect(user_id, today),
        )
        return await self._feedback(profile, scores, weak, enhancer)

    async def _feedback(
        self,
        profile: BehaviorProfile,
        scores: BehaviorScores,
        weak: List[WeakArea],
        enhancer: Optional[NarrativeEnhancer],
    ) -> Feedback:
        fallback = {
            "summary": heuristic_summary(scores),
            "tips": heuristic_tips(scores, weak),
            "encouragement": heuristic_encouragement(scores),
        }

        weak_names = ", ".join(w.subject_name for w in weak[:2]) or "none"
        prompt = (
            "Student 7-day data:\n"
            f"- Daily study avg: {profile.avg_daily_seconds / 3600:.1f}h\n"
            f"- Consistency: {profile.consistency_score}%\n"
            f"- Streak: {profile.current_streak} days\n"
            f"- Plan adherence: {scores.adherence}%\n"
            f"- Productivity: {scores.productivity}%\n"
            f"- Focus score: {scores.focus}%\n"
            f"- Weak subjects: {weak_names}\n\n"
            "Reply ONLY with valid JSON (no markdown):\n"
            '{"summary":"2-sentence overview","tips":["tip1","tip2","tip3"],"encouragement":"1 sentence"}'
        )
        raw = await safe_generate(
            enhancer,
            [
                {"role": "system", "content": (
                    "You are an expert academic coach. Analyse student performance data and give "
                    "concise, actionable feedback. Be encouraging but honest. Keep the response under 200 words."
                )},
                {"role": "user", "content": prompt},
            ],
            max_tokens=350,
            purpose="feedback",
        )
        return Feedback(**overlay_fields(fallback, extract_json_object(raw), FEEDBACK_RULES))

    async def save_insights(
        self,
        user_id: str,
        enhancer: Optional[NarrativeEnhancer] = None,
        today: Optional[date] = None,
    ) -> List[Insight]:
        """Replace the user's insights with a fresh batch that expires in a week."""
        today = today or date.today()
        week_profile, month_profile, scores, weak = await asyncio.gather(
            self.profiler.analyze(user_id, 7, today),
            self.profiler.analyze(user_id, 30, today),
            self.scores.calculate(user_id, today),
            self.detector.detect(user_id, today),
        )
        feedback = await self._feedback(week_profile, scores, weak, enhancer)

        expires_at = datetime.combine(today + timedelta(days=INSIGHT_TTL_DAYS), time.min)
        rows = build_insights(user_id, feedback, scores, weak, month_profile, expires_at)
        saved = await self.store.replace_insights(user_id, rows)
        logger.info(f"Saved {len(saved)} insight(s) for {user_id}")
        return saved

    async def period_summary(
        self,
        user_id: str,
        period: PeriodType = PeriodType.DAILY,
        enhancer: Optional[NarrativeEnhancer] = None,
        today: Optional[date] = None,
    ) -> PeriodSummary:
        """Daily, weekly or monthly progress; the message may be rewritten by the enhancer."""
        today = today or date.today()
        start, end = period_window(period, today, self.config.week_start_weekday)
        since = datetime.combine(start, time.min)
        until = datetime.combine(end + timedelta(days=1), time.min)

        tasks, sessions, subjects, goal = await asyncio.gather(
            self.store.get_tasks_in_range(user_id, start, end),
            self.store.get_completed_sessions(user_id, since, until),
            self.store.get_subjects(user_id, active_only=False),
            self.store.get_active_goal(user_id),
        )
        previous_day = None
        if period == PeriodType.DAILY:
            previous_day = await self.store.get_tasks_for_date(user_id, today - timedelta(days=1))
        days_left = days_until(goal, today)

        summary = summarize_period(
            period, start, end, tasks, minutes_by_subject(sessions, subjects),
            previous_day=previous_day,
            days_left=max(0, days_left) if days_left is not None else None,
        )
        if not summary.has_data:
            return summary

        raw = await safe_generate(
            enhancer,
            [
                {"role": "system", "content": (
                    "You are an academic analyst. Read the student's actual data and analyse it precisely. "
                    "Name real subjects and tasks. No JSON, no markdown, no generic advice."
                )},
                {"role": "user", "content": _period_prompt(summary, tasks)},
            ],
            max_tokens=PERIOD_MAX_TOKENS[period],
            temperature=0.5,
            purpose=f"{period.value} summary",
        )
        text = PERIOD_TEXT(raw)
        if text:
            summary.content = text
        return summary


async def generate_feedback(user_id: str, enhancer: Optional[NarrativeEnhancer] = None,
                            today: Optional[date] = None, store=None) -> Feedback:
    return await FeedbackService(store).generate_feedback(user_id, enhancer, today)


async def save_insights(user_id: str, enhancer: Optional[NarrativeEnhancer] = None,
                        today: Optional[date] = None, store=None) -> List[Insight]:
    return await FeedbackService(store).save_insights(user_id, enhancer, today)


async def period_summary(user_id: str, period: PeriodType = PeriodType.DAILY,
                         enhancer: Optional[NarrativeEnhancer] = None,
                         today: Optional[date] = None, store=None) -> PeriodSummary:
    return await FeedbackService(store).period_summary(user_id, period, enhancer, today)


async def get_insights(user_id: str, now: Optional[datetime] = None, store=None) -> List[Insight]:
    """Insights that have not expired yet, highest priority first."""
    store = store or default_store
    return await store.get_insights(user_id, now or datetime.now())
