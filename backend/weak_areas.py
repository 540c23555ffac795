"""
Study Engine - Weak Area Detection
Ranks active subjects by risk: no recent sessions, staleness, low share of
study time, and low practice grades.
"""

import asyncio
from datetime import date
from typing import List, Optional

from database import store as default_store
from logger import get_logger
from models import BehaviorProfile, PracticeAttempt, SEVERITY_RANK, Severity, Subject, WeakArea
from profiler import BehaviorProfiler, window_start

logger = get_logger(__name__)

WEAK_AREA_WINDOW_DAYS = 30
STALE_HIGH_DAYS = 14
STALE_MEDIUM_DAYS = 7
MIN_SHARE_PCT = 10
MIN_TRACKED_SUBJECTS = 3
MIN_GRADED_ATTEMPTS = 2
LOW_GRADE = 65
VERY_LOW_GRADE = 50


def _plural_days(n: int) -> str:
    return f"{n} day{'s' if n != 1 else ''}"


def find_weak_areas(
    subjects: List[Subject],
    profile: BehaviorProfile,
    attempts: List[PracticeAttempt],
    today: date,
) -> List[WeakArea]:
    """
    Pure detection over a 30-day profile.

    Recency and share-of-time produce at most one entry per subject; the
    practice-grade check runs for every subject on top of that, so a subject
    can appear twice.
    """
    by_subject = {b.subject_id: b for b in profile.subject_breakdown}
    tracked = len(profile.subject_breakdown)
    weak: List[WeakArea] = []

    for subject in subjects:
        behavior = by_subject.get(subject.id)

        if behavior is None:
            weak.append(WeakArea(
                subject_id=subject.id,
                subject_name=subject.name,
                reason=f"No study sessions in the last {WEAK_AREA_WINDOW_DAYS} days",
                severity=Severity.HIGH,
                recommendation=f"Start with a focused 45-minute session for {subject.name} this week.",
            ))
        else:
            days_since = (today - behavior.last_studied).days if behavior.last_studied else None

            if days_since is not None and days_since > STALE_MEDIUM_DAYS:
                weak.append(WeakArea(
                    subject_id=subject.id,
                    subject_name=subject.name,
                    reason=f"Not studied for {_plural_days(days_since)}",
                    severity=Severity.HIGH if days_since > STALE_HIGH_DAYS else Severity.MEDIUM,
                    recommendation=f"Schedule a review session for {subject.name} in the next 2 days.",
                ))
            elif tracked >= MIN_TRACKED_SUBJECTS and behavior.percentage < MIN_SHARE_PCT:
                weak.append(WeakArea(
                    subject_id=subject.id,
                    subject_name=subject.name,
                    reason=f"Only {behavior.percentage}% of total study time",
                    severity=Severity.MEDIUM,
                    recommendation=f"Increase {subject.name} to at least 20% of your weekly study time.",
                ))

        key = subject.name.strip().lower()
        grades = [
            a.average_grade for a in attempts
            if a.subject and a.subject.strip().lower() == key and a.average_grade is not None
        ]
        if len(grades) >= MIN_GRADED_ATTEMPTS:
            avg = sum(grades) / len(grades)
            if avg < LOW_GRADE:
                weak.append(WeakArea(
                    subject_id=subject.id,
                    subject_name=subject.name,
                    reason=f"Low practice score: {round(avg)}% average",
                    severity=Severity.HIGH if avg < VERY_LOW_GRADE else Severity.MEDIUM,
                    recommendation=f"Focus on understanding core concepts in {subject.name} before doing more practice.",
                ))

    # sort() is stable, so subject order is kept within a severity
    weak.sort(key=lambda w: SEVERITY_RANK[w.severity])
    return weak


class WeakAreaDetector:
    def __init__(self, store=None, profiler: Optional[BehaviorProfiler] = None):
        self.store = store or default_store
        self.profiler = profiler or BehaviorProfiler(self.store)

    async def detect(self, user_id: str, today: Optional[date] = None) -> List[WeakArea]:
        today = today or date.today()

        profile, subjects, attempts = await asyncio.gather(
            self.profiler.analyze(user_id, WEAK_AREA_WINDOW_DAYS, today),
            self.store.get_subjects(user_id, active_only=True),
            self.store.get_practice_attempts(user_id, window_start(today, WEAK_AREA_WINDOW_DAYS)),
        )

        weak = find_weak_areas(subjects, profile, attempts, today)
        logger.debug(f"Detected {len(weak)} weak areas for {user_id}")
        return weak


async def detect_weak_areas(user_id: str, today: Optional[date] = None, store=None) -> List[WeakArea]:
    return await WeakAreaDetector(store).detect(user_id, today)
