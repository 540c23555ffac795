"""Tests for backend/profiler.py

Covers the behavior profile aggregation and the 30-day completion insights:
- Streak arithmetic
- Peak hour, consistency and subject breakdown
- Empty-history defaults
- Completion patterns and the optional narrative
"""

from datetime import date, timedelta

import pytest

from conftest import TODAY, ScriptedEnhancer, at
from models import Break, BreakType, Session, SleepLog, Subject, TaskStatus
from profiler import (
    BehaviorProfiler, best_and_worst_day, build_profile, calc_streaks,
    completion_streak, sleep_correlation,
)


def make_session(subject_id, started_at, seconds, sid="s"):
    return Session(id=sid, user_id="user-1", subject_id=subject_id,
                   started_at=started_at, duration_seconds=seconds)


def make_subject(sid, name):
    return Subject(id=sid, user_id="user-1", name=name)


# ─────────────────────────────────────────────────────────────────────────────
# Streaks
# ─────────────────────────────────────────────────────────────────────────────


class TestCalcStreaks:
    """Tests for longest and current study streaks."""

    def test_run_broken_before_today(self):
        days = [date(2025, 1, 1), date(2025, 1, 2), date(2025, 1, 3)]

        assert calc_streaks(days, date(2025, 1, 5)) == (3, 0)

    def test_current_run_through_yesterday_counts(self):
        days = [date(2025, 1, 1), date(2025, 1, 3), date(2025, 1, 4)]

        assert calc_streaks(days, date(2025, 1, 5)) == (2, 2)

    def test_duplicates_are_ignored(self):
        days = [TODAY, TODAY, TODAY - timedelta(days=1)]

        assert calc_streaks(days, TODAY) == (2, 2)

    def test_no_days(self):
        assert calc_streaks([], TODAY) == (0, 0)


# ─────────────────────────────────────────────────────────────────────────────
# Profile aggregation
# ─────────────────────────────────────────────────────────────────────────────


class TestBuildProfile:
    """Tests for the pure profile builder."""

    def test_empty_history_defaults(self):
        profile = build_profile([], [], [], 14, TODAY)

        assert profile.has_data is False
        assert profile.peak_hour == 9
        assert profile.total_study_seconds == 0
        assert profile.subject_breakdown == []
        assert profile.weekday_seconds == [0] * 7

    def test_aggregates_sessions(self):
        yesterday = TODAY - timedelta(days=1)
        sessions = [
            make_session("m", at(TODAY, 10), 3600),
            make_session("m", at(yesterday, 14), 1800),
            make_session("p", at(yesterday, 10), 1800),
        ]
        subjects = [make_subject("m", "Math"), make_subject("p", "Physics")]

        profile = build_profile(sessions, [], subjects, 7, TODAY)

        assert profile.has_data is True
        assert profile.total_study_seconds == 7200
        assert profile.peak_hour == 10
        assert profile.consistency_score == 29
        assert (profile.longest_streak, profile.current_streak) == (2, 2)
        assert profile.unique_study_days == 2
        assert [b.subject_name for b in profile.subject_breakdown] == ["Math", "Physics"]
        assert [b.percentage for b in profile.subject_breakdown] == [75, 25]
        assert profile.subject_breakdown[0].last_studied == TODAY

    def test_peak_hour_tie_goes_to_lowest_hour(self):
        sessions = [
            make_session("m", at(TODAY, 15), 3600),
            make_session("m", at(TODAY, 8), 3600),
        ]

        assert build_profile(sessions, [], [], 7, TODAY).peak_hour == 8

    def test_weekday_averages(self):
        # TODAY is a Monday
        sessions = [
            make_session("m", at(TODAY, 9), 3000),
            make_session("m", at(TODAY - timedelta(days=7), 9), 1000),
        ]

        profile = build_profile(sessions, [], [], 14, TODAY)

        assert profile.weekday_seconds[0] == 2000
        assert profile.weekday_seconds[1:] == [0] * 6

    def test_break_statistics(self):
        sessions = [make_session("m", at(TODAY, 9), 3600), make_session("m", at(TODAY, 13), 3600)]
        breaks = [
            Break(id="b1", user_id="user-1", session_id="s", break_type=BreakType.MEAL,
                  started_at=at(TODAY, 10), duration_seconds=600),
            Break(id="b2", user_id="user-1", session_id="s", break_type=BreakType.MEAL,
                  started_at=at(TODAY, 11), duration_seconds=300),
            Break(id="b3", user_id="user-1", session_id="s", break_type=BreakType.REST,
                  started_at=at(TODAY, 14), duration_seconds=300),
        ]

        profile = build_profile(sessions, breaks, [], 7, TODAY)

        assert profile.common_break_type == BreakType.MEAL
        assert profile.avg_break_seconds == 400
        assert profile.avg_breaks_per_session == 1.5

    def test_unknown_subject_name(self):
        profile = build_profile([make_session("gone", at(TODAY, 9), 600)], [], [], 7, TODAY)

        assert profile.subject_breakdown[0].subject_name == "Unknown"


class TestBehaviorProfiler:
    """Tests for reading the profile window from the store."""

    @pytest.mark.asyncio
    async def test_window_excludes_older_sessions(self, store, user_id):
        math = store.add_subject(user_id, "Math")
        store.add_session(user_id, math.id, at(TODAY - timedelta(days=3), 9), 3600)
        store.add_session(user_id, math.id, at(TODAY - timedelta(days=20), 9), 3600)

        profile = await BehaviorProfiler(store).analyze(user_id, 7, TODAY)

        assert profile.total_study_seconds == 3600
        assert profile.window_days == 7

    @pytest.mark.asyncio
    async def test_other_users_are_invisible(self, store, user_id):
        store.add_session("someone-else", None, at(TODAY, 9), 3600)

        profile = await BehaviorProfiler(store).analyze(user_id, 7, TODAY)

        assert profile.has_data is False


# ─────────────────────────────────────────────────────────────────────────────
# Completion insights
# ─────────────────────────────────────────────────────────────────────────────


class TestCompletionHelpers:
    """Tests for streak, weekday and sleep helpers over plan tasks."""

    def test_completion_streak_allows_open_today(self, store, user_id):
        tasks = [
            store.add_task(user_id, TODAY, status=TaskStatus.PENDING),
            store.add_task(user_id, TODAY - timedelta(days=1), status=TaskStatus.COMPLETED),
            store.add_task(user_id, TODAY - timedelta(days=2), status=TaskStatus.COMPLETED),
            store.add_task(user_id, TODAY - timedelta(days=4), status=TaskStatus.COMPLETED),
        ]

        assert completion_streak(tasks, TODAY) == 2

    def test_best_and_worst_need_two_tasks(self, store, user_id):
        monday, tuesday, wednesday = (TODAY - timedelta(days=7 - i) for i in range(3))
        tasks = [
            store.add_task(user_id, monday, status=TaskStatus.COMPLETED),
            store.add_task(user_id, monday, status=TaskStatus.COMPLETED),
            store.add_task(user_id, tuesday, status=TaskStatus.COMPLETED),
            store.add_task(user_id, tuesday),
            store.add_task(user_id, wednesday),
        ]

        best, worst, best_rate, worst_rate = best_and_worst_day(tasks)

        assert (best, worst) == (0, 1)
        assert (best_rate, worst_rate) == (1.0, 0.5)

    def test_sleep_correlation(self, store, user_id):
        days = [TODAY - timedelta(days=i) for i in range(1, 6)]
        logs = [
            SleepLog(id=f"l{i}", user_id=user_id, log_date=d, sleep_duration_minutes=480 if i < 3 else 300)
            for i, d in enumerate(days)
        ]
        tasks = [
            store.add_task(user_id, d, status=TaskStatus.COMPLETED if i < 3 else TaskStatus.PENDING)
            for i, d in enumerate(days)
        ]

        assert sleep_correlation(tasks, logs) == "Your output is 100% higher after 7+ hours of sleep"
        assert sleep_correlation(tasks, logs[:4]) is None


class TestBehaviorInsights:
    """Tests for the 30-day completion insight bundle."""

    def _seed_week(self, store, user_id):
        monday, tuesday = TODAY - timedelta(days=7), TODAY - timedelta(days=6)
        store.add_task(user_id, monday, status=TaskStatus.COMPLETED)
        store.add_task(user_id, monday, status=TaskStatus.COMPLETED)
        store.add_task(user_id, tuesday, status=TaskStatus.COMPLETED)
        store.add_task(user_id, tuesday)

    @pytest.mark.asyncio
    async def test_too_few_tasks(self, store, user_id):
        store.add_task(user_id, TODAY)

        data = await BehaviorProfiler(store).behavior_insights(user_id, today=TODAY)

        assert data.has_enough_data is False
        assert data.insights[0].value == "Need more data"

    @pytest.mark.asyncio
    async def test_computed_patterns(self, store, user_id):
        self._seed_week(store, user_id)

        data = await BehaviorProfiler(store).behavior_insights(user_id, today=TODAY)

        assert data.has_enough_data is True
        assert data.completion_rate == 75
        assert data.best_day == "Monday"
        assert data.worst_day == "Tuesday"
        assert [i.label for i in data.insights] == ["Completion Rate", "Best Day", "Weakest Day", "Day Streak"]
        assert data.narrative == (
            "Your completion rate is 75%. Schedule your hardest topics on Monday, your strongest day."
        )

    @pytest.mark.asyncio
    async def test_generated_narrative_replaces_fallback(self, store, user_id):
        self._seed_week(store, user_id)
        enhancer = ScriptedEnhancer("<think>hmm</think>  Front-load Mondays. Keep Tuesdays light.  ")

        data = await BehaviorProfiler(store).behavior_insights(user_id, enhancer, TODAY)

        assert data.narrative == "Front-load Mondays. Keep Tuesdays light."
        assert data.completion_rate == 75

    @pytest.mark.asyncio
    async def test_enhancer_failure_keeps_fallback(self, store, user_id):
        self._seed_week(store, user_id)
        enhancer = ScriptedEnhancer(TimeoutError("slow"))

        data = await BehaviorProfiler(store).behavior_insights(user_id, enhancer, TODAY)

        assert data.narrative.startswith("Your completion rate is 75%.")
