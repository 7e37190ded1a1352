# scheduler.py
"""
Matchday — scheduler.py
In-process cron. Every tick, each league's lifecycle actions whose trigger band
contains the current minute are run, at most once per civil date. The last run
date is kept in kv so a restart inside a band does not fire the job again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import db as dbmod
import windows
from config import settings
from windows import ACTIONS, LEAGUES, is_trigger_time
from workers import WorkerError, WorkerRunner

log = logging.getLogger(__name__)


def job_key(league: str, action: str) -> str:
    return f"job:{league}:{action}:last"


class Scheduler:
    def __init__(self, runner: WorkerRunner, tick_seconds: Optional[float] = None):
        self.runner = runner
        self.tick_seconds = tick_seconds if tick_seconds is not None else settings.SCHEDULER_TICK_SECONDS
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the loop; False when it was already running."""
        if self.running:
            return False
        self._task = asyncio.create_task(self._loop())
        log.info("[scheduler] started (tick %.0fs)", self.tick_seconds)
        return True

    async def stop(self) -> bool:
        """Stop the loop; False when it was not running."""
        if not self.running:
            self._task = None
            return False
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("[scheduler] stopped")
        return True

    async def tick(self, now: Optional[datetime] = None) -> List[Tuple[str, str]]:
        """Run every due job once; returns the (league, action) pairs that ran."""
        now = now or windows.utcnow()
        ran: List[Tuple[str, str]] = []
        for window in LEAGUES.values():
            civil_day = window.to_civil(now).date().isoformat()
            for action in ACTIONS:
                if not is_trigger_time(window, action, now):
                    continue
                key = job_key(window.league, action)
                if await dbmod.kv_get(self.runner.conn, key) == civil_day:
                    continue
                # mark first so a failing job is not retried every tick of its band
                await dbmod.kv_set(self.runner.conn, key, civil_day)
                try:
                    result = await self.runner.run(window.league, action, now)
                    log.info("[scheduler] %s/%s: %s", window.league, action, result.get("message", "ok"))
                except WorkerError as e:
                    log.warning("[scheduler] %s/%s refused (%s): %s",
                                window.league, action, e.status_code, e.message)
                except Exception:
                    log.exception("[scheduler] %s/%s failed", window.league, action)
                ran.append((window.league, action))
        return ran

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("[scheduler] tick failed")
            await asyncio.sleep(self.tick_seconds)

    def status(self) -> Dict[str, Any]:
        return {"running": self.running, "tick_seconds": self.tick_seconds}
