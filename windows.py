"""
Matchday — windows.py
Daily purchase windows per league.

Every league has one recurring band expressed as UTC minute-of-day constants plus
a fixed civil offset (WIB = UTC+7). All arithmetic is done against that fixed
offset; the host timezone is never consulted.

    NBA     opens 06:00 UTC (13:00 WIB)  closes 23:30 UTC (06:30 WIB)   D+1
    EPL     opens 18:00 UTC (01:00 WIB)  closes 09:00 UTC (16:00 WIB)   D..D+16
    LaLiga  same band as EPL                                            D..D+16
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

MINUTES_PER_DAY = 24 * 60
WIB_OFFSET_MINUTES = 7 * 60
TRIGGER_GRACE_MINUTES = 5

ACTIONS = ("ingest", "select", "predict", "open", "close", "results", "raffle")


# =========================================================
# Time helpers
# =========================================================
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Normalize to an aware UTC datetime (naive values are treated as UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def rfc3339(dt: Optional[datetime]) -> Optional[str]:
    """
    Return an RFC3339-style UTC timestamp ending with 'Z'.
    Accepts naive or aware datetimes and normalizes to UTC (no offset).
    """
    if dt is None:
        return None
    iso = as_utc(dt).replace(microsecond=0, tzinfo=None).isoformat()
    return iso + "Z"


def parse_iso_z(s: Optional[str]) -> Optional[datetime]:
    """Parse an RFC3339-ish string into aware UTC. Accepts trailing 'Z' and 'HH:MM' times."""
    if not s:
        return None
    s2 = str(s).strip()
    if s2.endswith("Z"):
        s2 = s2[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(s2))


def minute_of_day(dt: datetime) -> int:
    u = as_utc(dt)
    return u.hour * 60 + u.minute


def _check_minute(name: str, value: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"{name} must be an integer minute-of-day, got {value!r}")
    if value < 0 or value >= MINUTES_PER_DAY:
        raise ValueError(f"{name} out of range 0..{MINUTES_PER_DAY - 1}: {value}")


def band_contains(start: int, end: int, minute: int) -> bool:
    """True when minute-of-day falls in [start, end), wrapping past midnight if start > end."""
    if start < end:
        return start <= minute < end
    return minute >= start or minute < end


# =========================================================
# League window configuration
# =========================================================
@dataclass(frozen=True)
class LeagueWindow:
    league: str
    display_name: str
    sport: str                      # "basketball" | "soccer"
    scoreboard_path: str            # ESPN path, e.g. "basketball/nba"
    opens_at_utc_minute: int
    closes_at_utc_minute: int
    civil_offset_minutes: int = WIB_OFFSET_MINUTES
    range_start_offset_days: int = 1
    range_days: int = 1
    max_picks: int = 5
    select_at_utc_minute: int = 4 * 60
    predict_at_utc_minute: int = 5 * 60
    raffle_at_utc_minute: int = 8 * 60
    aliases: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        for name in (
            "opens_at_utc_minute",
            "closes_at_utc_minute",
            "select_at_utc_minute",
            "predict_at_utc_minute",
            "raffle_at_utc_minute",
        ):
            _check_minute(name, getattr(self, name))
        if self.opens_at_utc_minute == self.closes_at_utc_minute:
            raise ValueError(f"{self.league}: window opens and closes at the same minute")
        if abs(self.civil_offset_minutes) > 14 * 60:
            raise ValueError(f"{self.league}: civil offset out of range: {self.civil_offset_minutes}")
        if self.range_days < 1:
            raise ValueError(f"{self.league}: range_days must be >= 1")
        if self.max_picks < 1:
            raise ValueError(f"{self.league}: max_picks must be >= 1")

    # -------------------------
    # Derived
    # -------------------------
    @property
    def civil_tz(self) -> timezone:
        return timezone(timedelta(minutes=self.civil_offset_minutes))

    @property
    def spans_utc_midnight(self) -> bool:
        return self.opens_at_utc_minute > self.closes_at_utc_minute

    @property
    def opens_at_civil_minute(self) -> int:
        return (self.opens_at_utc_minute + self.civil_offset_minutes) % MINUTES_PER_DAY

    @property
    def closes_at_civil_minute(self) -> int:
        return (self.closes_at_utc_minute + self.civil_offset_minutes) % MINUTES_PER_DAY

    @property
    def spans_civil_midnight(self) -> bool:
        return self.opens_at_civil_minute > self.closes_at_civil_minute

    def to_civil(self, now: datetime) -> datetime:
        return as_utc(now).astimezone(self.civil_tz)

    def trigger_minute(self, action: str) -> int:
        """UTC minute-of-day at which a lifecycle action is due."""
        if action == "ingest":
            return (self.select_at_utc_minute - 60) % MINUTES_PER_DAY
        if action == "select":
            return self.select_at_utc_minute
        if action == "predict":
            return self.predict_at_utc_minute
        if action == "open":
            return self.opens_at_utc_minute
        if action == "close":
            return self.closes_at_utc_minute
        if action == "results":
            return (self.raffle_at_utc_minute - 30) % MINUTES_PER_DAY
        if action == "raffle":
            return self.raffle_at_utc_minute
        raise ValueError(f"unknown action: {action}")


def _hm(h: int, m: int = 0) -> int:
    return h * 60 + m


LEAGUES: Dict[str, LeagueWindow] = {
    "nba": LeagueWindow(
        league="nba",
        display_name="NBA",
        sport="basketball",
        scoreboard_path="basketball/nba",
        opens_at_utc_minute=_hm(6),
        closes_at_utc_minute=_hm(23, 30),
        range_start_offset_days=1,
        range_days=1,
        max_picks=5,
        select_at_utc_minute=_hm(4),
        predict_at_utc_minute=_hm(5),
        raffle_at_utc_minute=_hm(8),
        aliases=("basketball",),
    ),
    "epl": LeagueWindow(
        league="epl",
        display_name="English Premier League",
        sport="soccer",
        scoreboard_path="soccer/eng.1",
        opens_at_utc_minute=_hm(18),
        closes_at_utc_minute=_hm(9),
        range_start_offset_days=0,
        range_days=17,
        max_picks=6,
        select_at_utc_minute=_hm(16),
        predict_at_utc_minute=_hm(17),
        raffle_at_utc_minute=_hm(8),
        aliases=("premier league", "english premier league", "premier-league"),
    ),
    "laliga": LeagueWindow(
        league="laliga",
        display_name="Spanish La Liga",
        sport="soccer",
        scoreboard_path="soccer/esp.1",
        opens_at_utc_minute=_hm(18),
        closes_at_utc_minute=_hm(9),
        range_start_offset_days=0,
        range_days=17,
        max_picks=6,
        select_at_utc_minute=_hm(16),
        predict_at_utc_minute=_hm(17),
        raffle_at_utc_minute=_hm(8),
        aliases=("la liga", "spanish la liga", "la-liga"),
    ),
}


def resolve_league(name: Optional[str]) -> Optional[LeagueWindow]:
    """Look a league up by key, display name or alias (case-insensitive)."""
    if not name:
        return None
    key = str(name).strip().lower()
    if key in LEAGUES:
        return LEAGUES[key]
    for w in LEAGUES.values():
        if key == w.display_name.lower() or key in w.aliases:
            return w
    return None


# =========================================================
# Window Clock
# =========================================================
@dataclass(frozen=True)
class WindowStatus:
    league: str
    is_open: bool
    minutes_until_next_transition: int
    next_transition_is_open: bool
    next_transition_at: datetime
    utc_hour: int
    civil_hour: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "league": self.league,
            "is_open": self.is_open,
            "minutes_until_next_transition": self.minutes_until_next_transition,
            "next_transition_is_open": self.next_transition_is_open,
            "next_transition_at": rfc3339(self.next_transition_at),
            "utc_hour": self.utc_hour,
            "wib_hour": self.civil_hour,
        }


def window_status(window: LeagueWindow, now: datetime) -> WindowStatus:
    now_u = as_utc(now)
    m = minute_of_day(now_u)
    is_open = band_contains(window.opens_at_utc_minute, window.closes_at_utc_minute, m)

    if is_open:
        delta = (window.closes_at_utc_minute - m) % MINUTES_PER_DAY
    else:
        delta = (window.opens_at_utc_minute - m) % MINUTES_PER_DAY

    floor = now_u.replace(second=0, microsecond=0)
    return WindowStatus(
        league=window.league,
        is_open=is_open,
        minutes_until_next_transition=delta,
        next_transition_is_open=not is_open,
        next_transition_at=floor + timedelta(minutes=delta),
        utc_hour=now_u.hour,
        civil_hour=window.to_civil(now_u).hour,
    )


def is_window_open(window: LeagueWindow, now: datetime) -> bool:
    return band_contains(window.opens_at_utc_minute, window.closes_at_utc_minute, minute_of_day(now))


def is_trigger_time(window: LeagueWindow, action: str, now: datetime,
                    grace: int = TRIGGER_GRACE_MINUTES) -> bool:
    """True during the first `grace` minutes after the action's trigger minute."""
    return (minute_of_day(now) - window.trigger_minute(action)) % MINUTES_PER_DAY < grace


def next_trigger_at(window: LeagueWindow, action: str, now: datetime) -> datetime:
    now_u = as_utc(now)
    target = window.trigger_minute(action)
    base = now_u.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(minutes=target)
    if minute_of_day(now_u) >= target:
        base += timedelta(days=1)
    return base


# =========================================================
# D+1 / Visibility Range Calculator
# =========================================================
@dataclass(frozen=True)
class VisibilityRange:
    league: str
    start_date: date
    end_date: date
    start_utc: datetime
    end_utc: datetime

    @property
    def days(self) -> List[str]:
        n = (self.end_date - self.start_date).days
        return [(self.start_date + timedelta(days=i)).isoformat() for i in range(n + 1)]

    @property
    def for_date(self) -> str:
        """Key the selection is locked under (first civil date of the range)."""
        return self.start_date.isoformat()

    def contains(self, instant: Optional[datetime]) -> bool:
        if instant is None:
            return False
        u = as_utc(instant)
        return self.start_utc <= u <= self.end_utc

    def as_dict(self) -> Dict[str, Any]:
        return {
            "league": self.league,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "days": self.days,
            "start_utc": rfc3339(self.start_utc),
            "end_utc": rfc3339(self.end_utc),
        }


def window_open_day(window: LeagueWindow, now: datetime) -> date:
    """Civil date on which the current (or next) window opens."""
    civil = window.to_civil(now)
    m = civil.hour * 60 + civil.minute
    today = civil.date()
    if m >= window.opens_at_civil_minute:
        return today
    if window.spans_civil_midnight and m < window.closes_at_civil_minute:
        # still inside the window that opened yesterday
        return today - timedelta(days=1)
    return today


def last_open_day(window: LeagueWindow, now: datetime) -> date:
    """Civil date on which the most recent window (open or already closed) opened."""
    civil = window.to_civil(now)
    m = civil.hour * 60 + civil.minute
    if m >= window.opens_at_civil_minute:
        return civil.date()
    return civil.date() - timedelta(days=1)


def _range_from_open_day(window: LeagueWindow, open_day: date) -> VisibilityRange:
    start = open_day + timedelta(days=window.range_start_offset_days)
    end = start + timedelta(days=window.range_days - 1)
    tz = window.civil_tz
    return VisibilityRange(
        league=window.league,
        start_date=start,
        end_date=end,
        start_utc=datetime.combine(start, time(0, 0, 0), tzinfo=tz).astimezone(timezone.utc),
        end_utc=datetime.combine(end, time(23, 59, 59), tzinfo=tz).astimezone(timezone.utc),
    )


def visibility_range(window: LeagueWindow, now: datetime) -> VisibilityRange:
    """Match days eligible for the current (or next) window."""
    return _range_from_open_day(window, window_open_day(window, now))


def upcoming_open_day(window: LeagueWindow, now: datetime) -> date:
    """Civil open date of the window that is open now, or else of the one opening next."""
    if is_window_open(window, now):
        return window_open_day(window, now)
    return window.to_civil(window_status(window, now).next_transition_at).date()


def upcoming_range(window: LeagueWindow, now: datetime) -> VisibilityRange:
    """What select/predict/open prepare: matches of the window open now or opening next."""
    return _range_from_open_day(window, upcoming_open_day(window, now))


def closing_range(window: LeagueWindow, now: datetime) -> VisibilityRange:
    """Match days of the most recently opened window; what a close acts on."""
    return _range_from_open_day(window, last_open_day(window, now))


def filter_matches_to_range(
    matches: Iterable[Any],
    rng_: VisibilityRange,
    key: Callable[[Any], Optional[datetime]] = lambda m: m.start_instant,
) -> List[Any]:
    return [m for m in matches if rng_.contains(key(m))]


def pick_matches(matches: Sequence[Any], limit: int, rng: Optional[random.Random] = None) -> List[Any]:
    """Random subset (shuffled) of at most `limit` matches."""
    pool = list(matches)
    (rng or random).shuffle(pool)
    return pool[: max(0, limit)]
