"""
Matchday — selection.py
Selection lock: which match ids were chosen for a league's civil date.

Last write wins. A record older than the staleness threshold reads as absent,
and so does anything that cannot be decoded.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

import aiosqlite

import windows
from config import settings
from windows import as_utc, parse_iso_z, rfc3339

log = logging.getLogger(__name__)

DateLike = Union[str, date]


def _date_key(for_date: DateLike) -> str:
    if isinstance(for_date, date):
        return for_date.isoformat()
    return str(for_date).strip()


@dataclass(frozen=True)
class Selection:
    league: str
    for_date: str
    match_ids: List[str]
    locked_at: datetime

    def age(self, now: datetime) -> timedelta:
        return as_utc(now) - self.locked_at

    def as_dict(self) -> Dict[str, Any]:
        return {
            "league": self.league,
            "for_date": self.for_date,
            "match_ids": list(self.match_ids),
            "locked_at": rfc3339(self.locked_at),
        }


class SelectionLock:
    def __init__(self, conn: aiosqlite.Connection, stale_after: Optional[timedelta] = None):
        self.conn = conn
        if stale_after is None:
            stale_after = timedelta(hours=settings.SELECTION_STALE_HOURS)
        self.stale_after = stale_after

    async def lock(
        self,
        league: str,
        for_date: DateLike,
        match_ids: Sequence[str],
        now: Optional[datetime] = None,
    ) -> Selection:
        """Create or overwrite the selection for (league, for_date)."""
        locked_at = as_utc(now or windows.utcnow())
        ids: List[str] = []
        for mid in match_ids:
            s = str(mid)
            if s not in ids:
                ids.append(s)
        key = _date_key(for_date)

        await self.conn.execute(
            "INSERT INTO selections(league, for_date, match_ids, locked_at) VALUES(?,?,?,?) "
            "ON CONFLICT(league, for_date) DO UPDATE SET "
            "match_ids=excluded.match_ids, locked_at=excluded.locked_at",
            (league, key, json.dumps(ids), _stamp(locked_at)),
        )
        await self.conn.commit()
        log.info("[selection] locked %s %s: %s", league, key, ", ".join(ids) or "<none>")
        return Selection(league=league, for_date=key, match_ids=ids, locked_at=locked_at)

    async def get(
        self,
        league: str,
        for_date: DateLike,
        now: Optional[datetime] = None,
    ) -> Optional[Selection]:
        """Return the non-stale selection for (league, for_date), or None."""
        key = _date_key(for_date)
        async with self.conn.execute(
            "SELECT match_ids, locked_at FROM selections WHERE league=? AND for_date=?",
            (league, key),
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None

        sel = _decode(league, key, row[0], row[1])
        if sel is None:
            return None

        age = sel.age(now or windows.utcnow())
        if age > self.stale_after:
            log.info("[selection] %s %s too old (%.1fh), ignoring",
                     league, key, age.total_seconds() / 3600)
            return None
        return sel


def _stamp(dt: datetime) -> str:
    # keep microseconds; get() measures staleness against this value
    return as_utc(dt).replace(tzinfo=None).isoformat(timespec="microseconds") + "Z"


def _decode(league: str, key: str, raw_ids: Any, raw_locked_at: Any) -> Optional[Selection]:
    try:
        ids = json.loads(raw_ids) if raw_ids else None
        locked_at = parse_iso_z(raw_locked_at)
    except (TypeError, ValueError) as e:
        log.warning("[selection] unreadable record %s %s: %s", league, key, e)
        return None
    if not isinstance(ids, list) or not ids or locked_at is None:
        return None
    return Selection(league=league, for_date=key, match_ids=[str(i) for i in ids], locked_at=locked_at)
