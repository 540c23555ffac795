"""
Study Engine - Study Timer
Explicit state machine for one user's study timer: idle, running, on_break.
Every transition writes to the activity store first and then persists the
timer snapshot to a JSON file, so a restarted process picks up where it was.
"""

import os
from datetime import datetime
from enum import Enum
from typing import Optional

import aiofiles
from pydantic import BaseModel, ValidationError

from config import get_timer_config
from database import store as default_store
from errors import TimerStateError
from logger import get_logger
from models import BreakType, Session

logger = get_logger(__name__)


class TimerStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ON_BREAK = "on_break"


class TimerState(BaseModel):
    """Serializable snapshot of the timer."""
    user_id: str
    status: TimerStatus = TimerStatus.IDLE
    session_id: Optional[str] = None
    subject_id: Optional[str] = None
    started_at: Optional[datetime] = None
    break_id: Optional[str] = None
    break_type: Optional[BreakType] = None
    break_started_at: Optional[datetime] = None
    total_break_seconds: int = 0


def _seconds_between(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds()))


class StudyTimer:
    """
    Owned timer object. Build it with `await StudyTimer.open(...)` to restore
    the persisted state.
    """

    def __init__(self, user_id: str, store=None, state_path: Optional[str] = None,
                 state: Optional[TimerState] = None):
        self.user_id = user_id
        self.store = store or default_store
        self.state_path = state_path or get_timer_config().state_path
        self.state = state or TimerState(user_id=user_id)

    @classmethod
    async def open(cls, user_id: str, store=None, state_path: Optional[str] = None) -> "StudyTimer":
        timer = cls(user_id, store, state_path)
        timer.state = await timer._restore()
        return timer

    @property
    def status(self) -> TimerStatus:
        return self.state.status

    # ============================================
    # PERSISTENCE
    # ============================================

    async def _restore(self) -> TimerState:
        if not os.path.exists(self.state_path):
            return TimerState(user_id=self.user_id)
        async with aiofiles.open(self.state_path, "r", encoding="utf-8") as f:
            content = await f.read()
        try:
            state = TimerState.model_validate_json(content)
        except ValidationError:
            logger.warning(f"Timer state at {self.state_path} is unreadable, starting idle")
            return TimerState(user_id=self.user_id)
        if state.user_id != self.user_id:
            return TimerState(user_id=self.user_id)
        if state.status != TimerStatus.IDLE:
            logger.info(f"Restored {state.status.value} timer for {self.user_id}")
        return state

    async def _persist(self):
        directory = os.path.dirname(self.state_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        async with aiofiles.open(self.state_path, "w", encoding="utf-8") as f:
            await f.write(self.state.model_dump_json())

    def _require(self, action: str, *allowed: TimerStatus):
        if self.state.status not in allowed:
            raise TimerStateError(action, self.state.status.value)

    # ============================================
    # TRANSITIONS
    # ============================================

    async def start(self, subject_id: Optional[str], now: Optional[datetime] = None) -> TimerState:
        self._require("start", TimerStatus.IDLE)
        now = now or datetime.now()

        session = await self.store.create_session(self.user_id, subject_id, now)
        self.state = TimerState(
            user_id=self.user_id,
            status=TimerStatus.RUNNING,
            session_id=session.id,
            subject_id=subject_id,
            started_at=now,
        )
        await self._persist()
        logger.info(f"Timer started for {self.user_id} (session {session.id})")
        return self.state

    async def start_break(self, break_type: BreakType = BreakType.REST,
                          now: Optional[datetime] = None) -> TimerState:
        self._require("start a break", TimerStatus.RUNNING)
        now = now or datetime.now()

        brk = await self.store.create_break(self.user_id, self.state.session_id, break_type, now)
        self.state = self.state.model_copy(update={
            "status": TimerStatus.ON_BREAK,
            "break_id": brk.id,
            "break_type": break_type,
            "break_started_at": now,
        })
        await self._persist()
        return self.state

    async def end_break(self, now: Optional[datetime] = None) -> TimerState:
        self._require("end a break", TimerStatus.ON_BREAK)
        now = now or datetime.now()
        await self._close_break(now)
        await self._persist()
        return self.state

    async def stop(self, now: Optional[datetime] = None) -> Session:
        """Finish the session. Study time is the wall span minus breaks, never negative."""
        self._require("stop", TimerStatus.RUNNING, TimerStatus.ON_BREAK)
        now = now or datetime.now()

        if self.state.status == TimerStatus.ON_BREAK:
            await self._close_break(now)

        wall = _seconds_between(self.state.started_at, now)
        breaks = min(self.state.total_break_seconds, wall)
        duration = max(0, wall - breaks)

        session = await self.store.complete_session(self.user_id, self.state.session_id, now, duration)
        self.state = TimerState(user_id=self.user_id)
        await self._persist()
        logger.info(f"Timer stopped for {self.user_id}: {duration}s studied, {breaks}s on break")
        return session

    async def _close_break(self, now: datetime):
        duration = _seconds_between(self.state.break_started_at, now)
        await self.store.finish_break(self.user_id, self.state.break_id, now, duration)
        self.state = self.state.model_copy(update={
            "status": TimerStatus.RUNNING,
            "break_id": None,
            "break_type": None,
            "break_started_at": None,
            "total_break_seconds": self.state.total_break_seconds + duration,
        })

    def elapsed_seconds(self, now: Optional[datetime] = None) -> int:
        """Study seconds so far in the current session, excluding breaks."""
        if self.state.status == TimerStatus.IDLE:
            return 0
        now = now or datetime.now()
        wall = _seconds_between(self.state.started_at, now)
        breaks = self.state.total_break_seconds
        if self.state.status == TimerStatus.ON_BREAK:
            breaks += _seconds_between(self.state.break_started_at, now)
        return max(0, wall - min(breaks, wall))
