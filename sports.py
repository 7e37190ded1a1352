"""
Matchday — sports.py
Scoreboard client (ESPN public JSON) + match normalization.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import httpx

from config import settings
from windows import LeagueWindow, parse_iso_z

log = logging.getLogger(__name__)

FINISHED_MARKERS = ("final",)
FINISHED_EXACT = {"ft", "aot", "aet", "ft-pens", "pen", "completed"}


def is_finished_status(status: Optional[str]) -> bool:
    """FT / Final / Final/OT / AOT and friends."""
    s = "".join(str(status or "").split()).lower()
    if not s:
        return False
    return any(m in s for m in FINISHED_MARKERS) or s in FINISHED_EXACT


def decide_winner(home: str, away: str, home_score: Optional[int], away_score: Optional[int]) -> Optional[str]:
    if home_score is None or away_score is None:
        return None
    if home_score > away_score:
        return home
    if away_score > home_score:
        return away
    return "Draw"


def _int_or_none(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(float(v))
    except (TypeError, ValueError):
        return None


@dataclass
class MatchRef:
    external_id: str
    league: str
    home_team: str
    away_team: str
    start_instant: Optional[datetime]
    status: str = "scheduled"
    venue: Optional[str] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None

    @property
    def finished(self) -> bool:
        return is_finished_status(self.status)


def parse_event(league: str, ev: Dict[str, Any]) -> Optional[MatchRef]:
    """One ESPN scoreboard event -> MatchRef (None when the shape is unusable)."""
    comps = ev.get("competitions") or []
    comp = comps[0] if comps else {}
    competitors = comp.get("competitors") or []
    home = next((c for c in competitors if c.get("homeAway") == "home"), None)
    away = next((c for c in competitors if c.get("homeAway") == "away"), None)
    if not ev.get("id") or not home or not away:
        return None

    def _team(c: Dict[str, Any]) -> str:
        t = c.get("team") or {}
        return t.get("displayName") or t.get("name") or "Unknown Team"

    st = ((comp.get("status") or ev.get("status") or {}).get("type") or {})
    status = st.get("shortDetail") or st.get("description") or st.get("name") or "scheduled"

    try:
        start = parse_iso_z(ev.get("date") or comp.get("date"))
    except ValueError:
        start = None

    finished_or_live = st.get("state") in ("in", "post")
    return MatchRef(
        external_id=str(ev["id"]),
        league=league,
        home_team=_team(home),
        away_team=_team(away),
        start_instant=start,
        status=status,
        venue=((comp.get("venue") or {}).get("fullName")),
        home_score=_int_or_none(home.get("score")) if finished_or_live else None,
        away_score=_int_or_none(away.get("score")) if finished_or_live else None,
    )


def parse_scoreboard(league: str, payload: Dict[str, Any]) -> List[MatchRef]:
    out: List[MatchRef] = []
    for ev in payload.get("events") or []:
        m = parse_event(league, ev)
        if m is not None:
            out.append(m)
    return out


class ScoreboardClient:
    """
    Thin async wrapper over the scoreboard endpoint:
        GET {base}/{sport}/{league}/scoreboard?dates=YYYYMMDD
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.SCOREBOARD_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.SCOREBOARD_TIMEOUT
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _fetch_day(self, client: httpx.AsyncClient, window: LeagueWindow, day: date) -> List[MatchRef]:
        r = await client.get(
            f"/{window.scoreboard_path}/scoreboard",
            params={"dates": day.strftime("%Y%m%d")},
        )
        r.raise_for_status()
        return parse_scoreboard(window.league, r.json())

    async def fetch_days(self, window: LeagueWindow, days: Iterable[date]) -> List[MatchRef]:
        """
        Fetch several days, de-duplicating by event id. A failing day is logged and
        skipped so one bad response does not sink the whole ingest.
        """
        by_id: Dict[str, MatchRef] = {}
        async with self._client() as client:
            for day in days:
                try:
                    for m in await self._fetch_day(client, window, day):
                        by_id[m.external_id] = m
                except (httpx.HTTPError, ValueError) as e:
                    log.warning("[scoreboard] %s %s fetch failed: %s", window.league, day, e)
        return list(by_id.values())


def range_fetch_days(start: date, end: date) -> List[date]:
    """Civil dates plus the day before (the scoreboard keys games by US/EU local date)."""
    n = (end - start).days
    return [start - timedelta(days=1)] + [start + timedelta(days=i) for i in range(n + 1)]
