import asyncio
from datetime import datetime, timezone

import httpx
import pytest

import db as dbmod
from config import settings


def utc(y, mo, d, h=0, mi=0):
    return datetime(y, mo, d, h, mi, tzinfo=timezone.utc)


def espn_event(eid, home, away, when, state="pre", detail="Scheduled", home_score=None, away_score=None):
    return {
        "id": eid,
        "date": when,
        "competitions": [{
            "competitors": [
                {"homeAway": "home", "team": {"displayName": home},
                 "score": "" if home_score is None else str(home_score)},
                {"homeAway": "away", "team": {"displayName": away},
                 "score": "" if away_score is None else str(away_score)},
            ],
            "status": {"type": {"state": state, "shortDetail": detail}},
            "venue": {"fullName": f"{home} Arena"},
        }],
    }


def scoreboard_transport(events_by_date, calls=None):
    """MockTransport answering /{sport}/{league}/scoreboard?dates=YYYYMMDD."""
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        day = request.url.params.get("dates")
        return httpx.Response(200, json={"events": events_by_date.get(day, [])})
    return httpx.MockTransport(handler)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "matchday.db")


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch, db_path):
    monkeypatch.setattr(settings, "DB_PATH", db_path)
    monkeypatch.setattr(settings, "SCHEDULER_ENABLED", False)
    monkeypatch.setattr(settings, "WORKER_API_KEY", "test-key")
    monkeypatch.setattr(settings, "ADMIN_TOKEN", "admin-token")
    monkeypatch.setattr(settings, "PAYOUTS_ENABLED", False)
    monkeypatch.setattr(settings, "DEBUG", False)


@pytest.fixture
def with_db(db_path):
    """Run `fn(conn)` on a fresh connection inside one event loop."""
    def _run(fn):
        async def _main():
            conn = await dbmod.connect(db_path)
            try:
                return await fn(conn)
            finally:
                await conn.close()
        return asyncio.run(_main())
    return _run


# NBA window opening 06:00 UTC on Oct 18 shows WIB Oct 19 = [Oct 18 17:00Z, Oct 19 16:59:59Z]
NBA_EVENTS = {
    "20261018": [
        espn_event("g1", "Lakers", "Celtics", "2026-10-18T23:00Z"),
        espn_event("g2", "Knicks", "Heat", "2026-10-18T23:30Z"),
        espn_event("g3", "Bulls", "Nets", "2026-10-19T00:00Z"),
        espn_event("old", "Suns", "Jazz", "2026-10-18T12:00Z"),
    ],
    "20261019": [
        espn_event("g4", "Warriors", "Kings", "2026-10-19T02:00Z"),
        espn_event("g5", "Bucks", "Magic", "2026-10-19T02:30Z"),
        espn_event("g6", "Spurs", "Hawks", "2026-10-19T03:00Z"),
    ],
}
