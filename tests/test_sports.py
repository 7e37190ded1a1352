import asyncio
from datetime import date

import httpx
import pytest

from conftest import espn_event, scoreboard_transport, utc
from sports import (
    ScoreboardClient,
    decide_winner,
    is_finished_status,
    parse_event,
    parse_scoreboard,
    range_fetch_days,
)
from windows import LEAGUES


@pytest.mark.parametrize("status,done", [
    ("Final", True),
    ("Final/OT", True),
    ("FT", True),
    ("ft", True),
    ("AOT", True),
    ("AET", True),
    ("FT-Pens", True),
    ("completed", True),
    ("waiting for result", False),
    ("Scheduled", False),
    ("7:30 PM ET", False),
    ("", False),
    (None, False),
])
def test_is_finished_status(status, done):
    assert is_finished_status(status) is done


def test_decide_winner():
    assert decide_winner("A", "B", 100, 90) == "A"
    assert decide_winner("A", "B", 1, 2) == "B"
    assert decide_winner("A", "B", 1, 1) == "Draw"
    assert decide_winner("A", "B", None, 1) is None


def test_parse_event_pre_game_has_no_scores():
    ev = espn_event("401", "Lakers", "Celtics", "2026-10-19T00:30Z", home_score=0, away_score=0)
    m = parse_event("nba", ev)
    assert m.external_id == "401"
    assert (m.home_team, m.away_team) == ("Lakers", "Celtics")
    assert m.start_instant == utc(2026, 10, 19, 0, 30)
    assert m.home_score is None and m.away_score is None
    assert m.venue == "Lakers Arena"
    assert not m.finished


def test_parse_event_final():
    ev = espn_event("401", "Lakers", "Celtics", "2026-10-19T00:30Z",
                    state="post", detail="Final", home_score=110, away_score=104)
    m = parse_event("nba", ev)
    assert m.finished
    assert (m.home_score, m.away_score) == (110, 104)


def test_parse_scoreboard_skips_broken_events():
    payload = {"events": [
        espn_event("1", "A", "B", "2026-10-19T00:30Z"),
        {"id": "2", "competitions": [{"competitors": []}]},
        {"competitions": []},
    ]}
    assert [m.external_id for m in parse_scoreboard("nba", payload)] == ["1"]


def test_range_fetch_days_includes_previous_day():
    assert range_fetch_days(date(2026, 10, 19), date(2026, 10, 20)) == [
        date(2026, 10, 18), date(2026, 10, 19), date(2026, 10, 20),
    ]


def test_fetch_days_dedupes_and_requests_league_path():
    calls = []
    ev = espn_event("401", "Lakers", "Celtics", "2026-10-19T00:30Z")
    transport = scoreboard_transport({"20261018": [ev], "20261019": [ev]}, calls)
    client = ScoreboardClient(base_url="https://scores.test", transport=transport)

    got = asyncio.run(client.fetch_days(LEAGUES["nba"], [date(2026, 10, 18), date(2026, 10, 19)]))

    assert [m.external_id for m in got] == ["401"]
    assert [c.url.path for c in calls] == ["/basketball/nba/scoreboard"] * 2
    assert [c.url.params["dates"] for c in calls] == ["20261018", "20261019"]


def test_fetch_days_skips_failing_day():
    def handler(request):
        if request.url.params["dates"] == "20261018":
            return httpx.Response(503)
        return httpx.Response(200, json={"events": [espn_event("9", "A", "B", "2026-10-19T10:00Z")]})

    client = ScoreboardClient(base_url="https://scores.test", transport=httpx.MockTransport(handler))
    got = asyncio.run(client.fetch_days(LEAGUES["epl"], [date(2026, 10, 18), date(2026, 10, 19)]))
    assert [m.external_id for m in got] == ["9"]
