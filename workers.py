"""
Matchday — workers.py
Daily lifecycle per league, one coroutine per step:

    ingest   pull the scoreboard for the visibility range into matches_pending
    select   lock up to max_picks matches for the range (keeps an existing lock)
    predict  generate predictions for the locked matches
    open     flip predicted matches to 'open' (window must be open)
    close    archive the window's matches to history, mark the window closed
    results  pull final scores for archived matches
    raffle   draw every finished match that has buyers

All steps are parameterised by a LeagueWindow; nothing here is league specific.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiosqlite

import db as dbmod
import raffle as rafflemod
import windows
from predictions import generate_prediction
from selection import SelectionLock
from sports import (
    MatchRef,
    ScoreboardClient,
    decide_winner,
    is_finished_status,
    range_fetch_days,
)
from windows import (
    ACTIONS,
    LeagueWindow,
    filter_matches_to_range,
    is_trigger_time,
    parse_iso_z,
    pick_matches,
    resolve_league,
    rfc3339,
    window_status,
)

log = logging.getLogger(__name__)


class WorkerError(Exception):
    def __init__(self, status_code: int, message: str, **extra: Any):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.extra = extra


def _instant(row: Dict[str, Any]) -> Optional[datetime]:
    try:
        return parse_iso_z(row.get("event_date"))
    except ValueError:
        return None


def _placeholders(n: int) -> str:
    return ",".join("?" * n)


# =========================================================
# ingest
# =========================================================
async def upsert_pending(conn: aiosqlite.Connection, matches: List[MatchRef], now: datetime) -> int:
    n = 0
    async with dbmod.tx(conn):
        for m in matches:
            if m.start_instant is None:
                continue
            await conn.execute(
                "INSERT INTO matches_pending(event_id,league,home_team,away_team,event_date,venue,"
                "feed_status,home_score,away_score,updated_at) VALUES(?,?,?,?,?,?,?,?,?,?) "
                "ON CONFLICT(event_id) DO UPDATE SET home_team=excluded.home_team, "
                "away_team=excluded.away_team, event_date=excluded.event_date, venue=excluded.venue, "
                "feed_status=excluded.feed_status, home_score=excluded.home_score, "
                "away_score=excluded.away_score, updated_at=excluded.updated_at",
                (m.external_id, m.league, m.home_team, m.away_team, rfc3339(m.start_instant),
                 m.venue, m.status, m.home_score, m.away_score, rfc3339(now)),
            )
            n += 1
    return n


async def ingest(conn: aiosqlite.Connection, window: LeagueWindow, now: datetime,
                 scoreboard: ScoreboardClient) -> Dict[str, Any]:
    rng_ = windows.upcoming_range(window, now)
    matches = await scoreboard.fetch_days(window, range_fetch_days(rng_.start_date, rng_.end_date))
    stored = await upsert_pending(conn, matches, now)
    in_range = filter_matches_to_range(matches, rng_)
    log.info("[ingest] %s fetched %d, stored %d, %d in range %s..%s",
             window.league, len(matches), stored, len(in_range), rng_.start_date, rng_.end_date)
    return {
        "message": f"Fetched {len(matches)} {window.display_name} matches",
        "fetchedCount": len(matches),
        "storedCount": stored,
        "inRangeCount": len(in_range),
        "range": rng_.as_dict(),
    }


# =========================================================
# select
# =========================================================
async def select(conn: aiosqlite.Connection, window: LeagueWindow, now: datetime,
                 rng: Optional[random.Random] = None) -> Dict[str, Any]:
    rng_ = windows.upcoming_range(window, now)
    lock = SelectionLock(conn)

    rows = await dbmod.fetch_all(
        conn, "SELECT * FROM matches_pending WHERE league=? AND status IN ('pending','open')", (window.league,)
    )
    candidates = filter_matches_to_range(rows, rng_, key=_instant)
    candidate_ids = {r["event_id"] for r in candidates}

    existing = await lock.get(window.league, rng_.for_date, now)
    kept = [i for i in (existing.match_ids if existing else []) if i in candidate_ids]

    if len(kept) >= window.max_picks:
        log.info("[select] %s already has %d locked matches for %s", window.league, len(kept), rng_.for_date)
        return {
            "message": f"Already have {len(kept)} locked matches for {rng_.for_date}",
            "selectedCount": 0,
            "totalLocked": len(kept),
            "forDate": rng_.for_date,
        }

    available = [r for r in candidates if r["status"] == "pending" and r["event_id"] not in kept]
    added = pick_matches(available, window.max_picks - len(kept), rng)
    final_ids = kept + [r["event_id"] for r in added]

    if not final_ids:
        log.info("[select] %s no matches for %s", window.league, rng_.for_date)
        return {"message": f"No {window.display_name} matches for {rng_.for_date}",
                "selectedCount": 0, "forDate": rng_.for_date}

    await lock.lock(window.league, rng_.for_date, final_ids, now)

    async with dbmod.tx(conn):
        await conn.execute(
            "UPDATE matches_pending SET selected_for_date=NULL, selected_at=NULL "
            "WHERE league=? AND selected_for_date=?",
            (window.league, rng_.for_date),
        )
        await conn.execute(
            f"UPDATE matches_pending SET selected_for_date=?, selected_at=? "
            f"WHERE event_id IN ({_placeholders(len(final_ids))})",
            (rng_.for_date, rfc3339(now), *final_ids),
        )

    log.info("[select] %s %s: kept %d, added %d", window.league, rng_.for_date, len(kept), len(added))
    return {
        "message": f"Selected {len(final_ids)} {window.display_name} matches for {rng_.for_date}",
        "forDate": rng_.for_date,
        "existingCount": len(kept),
        "addedCount": len(added),
        "selectedCount": len(final_ids),
        "matchIds": final_ids,
        "matches": [f"{r['home_team']} vs {r['away_team']}" for r in added],
    }


async def selected_ids(conn: aiosqlite.Connection, window: LeagueWindow, for_date: str,
                        now: datetime) -> List[str]:
    """Ids locked for the date, plus any pending rows stamped with it."""
    sel = await SelectionLock(conn).get(window.league, for_date, now)
    ids = list(sel.match_ids) if sel else []
    rows = await dbmod.fetch_all(
        conn,
        "SELECT event_id FROM matches_pending WHERE league=? AND selected_for_date=?",
        (window.league, for_date),
    )
    for r in rows:
        if r["event_id"] not in ids:
            ids.append(r["event_id"])
    return ids


# =========================================================
# predict
# =========================================================
async def predict(conn: aiosqlite.Connection, window: LeagueWindow, now: datetime,
                  rng: Optional[random.Random] = None) -> Dict[str, Any]:
    rng_ = windows.upcoming_range(window, now)
    ids = await selected_ids(conn, window, rng_.for_date, now)
    if not ids:
        return {"message": f"No selected matches found for {rng_.for_date}", "generatedCount": 0}

    rows = await dbmod.fetch_all(
        conn,
        f"SELECT * FROM matches_pending WHERE event_id IN ({_placeholders(len(ids))})",
        tuple(ids),
    )
    if not rows:
        raise WorkerError(404, "No matches found for the selected IDs", generatedCount=0)

    have = await dbmod.fetch_all(
        conn,
        f"SELECT event_id FROM predictions WHERE event_id IN ({_placeholders(len(ids))})",
        tuple(ids),
    )
    have_ids = {r["event_id"] for r in have}
    todo = [r for r in rows if r["event_id"] not in have_ids]
    if not todo:
        return {"message": "All locked matches already have predictions",
                "generatedCount": 0, "matchCount": len(rows)}

    async with dbmod.tx(conn):
        for r in todo:
            p = generate_prediction(window, r["event_id"], r["home_team"], r["away_team"], rng=rng, now=now)
            await conn.execute(
                "INSERT INTO predictions(event_id,league,predicted_winner,predicted_score,total_score,"
                "confidence,review,prediction_text,status,created_at) VALUES(?,?,?,?,?,?,?,?,?,?) "
                "ON CONFLICT(event_id) DO NOTHING",
                (p.event_id, p.league, p.predicted_winner, p.predicted_score, p.total_score,
                 p.confidence, p.review, p.text, "generated", rfc3339(p.generated_at)),
            )

    log.info("[predict] %s generated %d predictions", window.league, len(todo))
    return {
        "message": f"Generated {len(todo)} predictions for locked {window.display_name} matches",
        "generatedCount": len(todo),
        "matchCount": len(rows),
        "matches": [f"{r['home_team']} vs {r['away_team']}" for r in todo],
    }


# =========================================================
# open
# =========================================================
async def open_window(conn: aiosqlite.Connection, window: LeagueWindow, now: datetime) -> Dict[str, Any]:
    status = window_status(window, now)
    if not status.is_open:
        raise WorkerError(409, "Window not open", windowStatus=status.as_dict())

    for_date = windows.upcoming_range(window, now).for_date
    ids = await selected_ids(conn, window, for_date, now)
    if not ids:
        return {"message": "No selected matches to open", "openedCount": 0}

    rows = await dbmod.fetch_all(
        conn,
        f"SELECT m.event_id, m.home_team, m.away_team FROM matches_pending m "
        f"JOIN predictions p ON p.event_id = m.event_id "
        f"WHERE m.status='pending' AND m.event_id IN ({_placeholders(len(ids))})",
        tuple(ids),
    )
    if not rows:
        return {"message": "No matches with predictions to open", "openedCount": 0}

    opened = [r["event_id"] for r in rows]
    async with dbmod.tx(conn):
        await conn.execute(
            f"UPDATE matches_pending SET status='open', updated_at=? "
            f"WHERE event_id IN ({_placeholders(len(opened))})",
            (rfc3339(now), *opened),
        )
    log.info("[open] %s opened %s", window.league, ", ".join(opened))
    return {
        "message": f"Opened {len(opened)} {window.display_name} matches for purchase",
        "openedCount": len(opened),
        "matches": [f"{r['home_team']} vs {r['away_team']}" for r in rows],
    }


# =========================================================
# close
# =========================================================
async def close_window(conn: aiosqlite.Connection, window: LeagueWindow, now: datetime) -> Dict[str, Any]:
    if windows.is_window_open(window, now):
        log.warning("[close] %s window still open, closing anyway (manual trigger)", window.league)

    for_date = windows.closing_range(window, now).for_date
    ids = await selected_ids(conn, window, for_date, now)
    if not ids:
        return {"ok": False, "message": f"No locked {window.display_name} matches found for {for_date}",
                "archived": 0}

    rows = await dbmod.fetch_all(
        conn,
        f"SELECT * FROM matches_pending WHERE event_id IN ({_placeholders(len(ids))})",
        tuple(ids),
    )
    stamp = rfc3339(now)
    archived = 0
    async with dbmod.tx(conn):
        for r in rows:
            finished = is_finished_status(r.get("feed_status"))
            cur = await conn.execute(
                "INSERT INTO matches_history(event_id,league,home_team,away_team,event_date,venue,"
                "home_score,away_score,status,winner,archived_at,updated_at) VALUES(?,?,?,?,?,?,?,?,?,?,?,?) "
                "ON CONFLICT(event_id) DO NOTHING",
                (r["event_id"], r["league"], r["home_team"], r["away_team"], r["event_date"], r["venue"],
                 r["home_score"], r["away_score"],
                 r["feed_status"] if finished else "waiting for result",
                 decide_winner(r["home_team"], r["away_team"], r["home_score"], r["away_score"]) if finished else None,
                 stamp, stamp),
            )
            archived += cur.rowcount if cur.rowcount and cur.rowcount > 0 else 0
        await conn.execute(
            f"UPDATE matches_pending SET status='closed', updated_at=? "
            f"WHERE event_id IN ({_placeholders(len(ids))})",
            (stamp, *ids),
        )
        await conn.execute(
            "INSERT INTO window_dates(league,for_date,match_ids,closed,closed_at) VALUES(?,?,?,1,?) "
            "ON CONFLICT(league, for_date) DO UPDATE SET match_ids=excluded.match_ids, closed=1, "
            "closed_at=excluded.closed_at",
            (window.league, for_date, json.dumps(ids), stamp),
        )

    log.info("[close] %s %s archived %d matches", window.league, for_date, archived)
    return {
        "message": f"Archived {archived} {window.display_name} matches to history",
        "archived": archived,
        "forDate": for_date,
    }


# =========================================================
# results
# =========================================================
async def record_result(
    conn: aiosqlite.Connection,
    event_id: str,
    home_score: Optional[int],
    away_score: Optional[int],
    status: str = "Final",
    now: Optional[datetime] = None,
    match: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Store a result on the history row. When the match was never archived, `match`
    (home, away, league, datetime, venue) is used to create it.
    """
    now = now or windows.utcnow()
    event_id = str(event_id)
    row = await dbmod.fetch_one(conn, "SELECT * FROM matches_history WHERE event_id=?", (event_id,))
    if row is None:
        src = match or await dbmod.fetch_one(conn, "SELECT * FROM matches_pending WHERE event_id=?", (event_id,))
        if not src:
            raise WorkerError(404, f"unknown event {event_id}")
        home = src.get("home_team") or src.get("home")
        away = src.get("away_team") or src.get("away")
        league_w = resolve_league(src.get("league"))
        if not home or not away or league_w is None:
            raise WorkerError(400, "Missing required fields: eventId, home, away, league")
        event_date = src.get("event_date") or src.get("datetime") or rfc3339(now)
        await conn.execute(
            "INSERT INTO matches_history(event_id,league,home_team,away_team,event_date,venue,archived_at) "
            "VALUES(?,?,?,?,?,?,?)",
            (event_id, league_w.league, home, away, event_date, src.get("venue"), rfc3339(now)),
        )
        row = {"home_team": home, "away_team": away}

    winner = decide_winner(row["home_team"], row["away_team"], home_score, away_score) \
        if is_finished_status(status) else None
    await conn.execute(
        "UPDATE matches_history SET home_score=?, away_score=?, status=?, winner=?, updated_at=? "
        "WHERE event_id=?",
        (home_score, away_score, status, winner, rfc3339(now), event_id),
    )
    await conn.commit()
    log.info("[results] %s %s vs %s %s-%s (%s)", event_id, row["home_team"], row["away_team"],
             home_score, away_score, status)
    return {"eventId": event_id, "status": status, "winner": winner,
            "homeScore": home_score, "awayScore": away_score}


async def sync_results(conn: aiosqlite.Connection, window: LeagueWindow, now: datetime,
                       scoreboard: ScoreboardClient) -> Dict[str, Any]:
    rows = await dbmod.fetch_all(
        conn, "SELECT * FROM matches_history WHERE league=?", (window.league,)
    )
    waiting = [r for r in rows if not is_finished_status(r["status"])]
    if not waiting:
        return {"message": "No matches waiting for a result", "updatedCount": 0}

    days = set()
    for r in waiting:
        inst = _instant(r)
        if inst is not None:
            days.add(inst.date())
            days.add(inst.date() - timedelta(days=1))
    feed = {m.external_id: m for m in await scoreboard.fetch_days(window, sorted(days))}

    updated = []
    for r in waiting:
        m = feed.get(r["event_id"])
        if m is None or not m.finished:
            continue
        await record_result(conn, r["event_id"], m.home_score, m.away_score, m.status, now=now)
        updated.append(f"{r['home_team']} vs {r['away_team']}")
    return {"message": f"Updated {len(updated)} results", "updatedCount": len(updated), "matches": updated}


# =========================================================
# Runner
# =========================================================
class WorkerRunner:
    """
    Dispatches lifecycle actions. One asyncio.Lock per league serialises runs
    inside the process so two triggers never interleave their writes.
    """

    def __init__(
        self,
        conn: aiosqlite.Connection,
        scoreboard: Optional[ScoreboardClient] = None,
        rng: Optional[random.Random] = None,
        payout: Optional[rafflemod.PayoutFn] = None,
    ):
        self.conn = conn
        self.scoreboard = scoreboard or ScoreboardClient()
        self.rng = rng
        self.payout = payout
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, league: str) -> asyncio.Lock:
        if league not in self._locks:
            self._locks[league] = asyncio.Lock()
        return self._locks[league]

    def _handler(self, action: str) -> Callable[[LeagueWindow, datetime], Awaitable[Dict[str, Any]]]:
        return {
            "ingest": lambda w, now: ingest(self.conn, w, now, self.scoreboard),
            "select": lambda w, now: select(self.conn, w, now, self.rng),
            "predict": lambda w, now: predict(self.conn, w, now, self.rng),
            "open": lambda w, now: open_window(self.conn, w, now),
            "close": lambda w, now: close_window(self.conn, w, now),
            "results": lambda w, now: sync_results(self.conn, w, now, self.scoreboard),
            "raffle": lambda w, now: rafflemod.run_pending_raffles(
                self.conn, w, now=now, rng=self.rng, payout=self.payout),
        }[action]

    async def run(self, league: str, action: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        window = resolve_league(league)
        if window is None:
            raise WorkerError(404, f"unknown league: {league}")
        if action not in ACTIONS:
            raise WorkerError(404, f"unknown action: {action}")

        now = now or windows.utcnow()
        if not is_trigger_time(window, action, now):
            log.warning("[%s] %s called at %s, outside its trigger band; proceeding (manual trigger allowed)",
                        action, window.league, rfc3339(now))

        async with self._lock(window.league):
            result = await self._handler(action)(window, now)

        result.setdefault("ok", True)
        result["league"] = window.league
        result["action"] = action
        result["timestamp"] = rfc3339(now)
        return result
