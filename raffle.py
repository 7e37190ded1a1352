"""
Matchday — raffle.py
One raffle per finished match: a winner drawn among the buyers of the match's
prediction, paid a share of the pooled entry fees.
"""

from __future__ import annotations

import json
import logging
import random
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import aiosqlite

import db as dbmod
import payouts
import windows
from config import settings
from sports import is_finished_status
from windows import LeagueWindow, rfc3339

log = logging.getLogger(__name__)

PayoutFn = Callable[[str, int], Awaitable[str]]


class RaffleError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def prize_breakdown(buyer_count: int, entry_fee_base: int, share_bps: int) -> Tuple[int, int]:
    """(prize_pool, winner_payout) in token base units."""
    pool = max(0, int(buyer_count)) * max(0, int(entry_fee_base))
    return pool, pool * int(share_bps) // 10_000


def choose_winners(buyers: Sequence[str], count: int = 1, rng: Optional[random.Random] = None) -> List[str]:
    """Distinct entries, uniformly at random; never more winners than entries."""
    r = rng or random.SystemRandom()
    n = min(max(int(count or 1), 1), len(buyers))
    return [str(buyers[i]) for i in r.sample(range(len(buyers)), n)]


async def run_raffle(
    conn: aiosqlite.Connection,
    event_id: str,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    payout: Optional[PayoutFn] = None,
    winners_count: int = 1,
) -> Dict[str, Any]:
    """
    Draw and record the raffle for one finished match, then attempt the payout.

    With `winners_count` > 1 the winner payout is split evenly between that
    many distinct buyers (capped at the number of entries). `winner` stays the
    first drawn; `winners` lists all of them.
    """
    now = now or windows.utcnow()
    event_id = str(event_id)

    match = await dbmod.fetch_one(conn, "SELECT * FROM matches_history WHERE event_id=?", (event_id,))
    if not match:
        raise RaffleError(404, "match not found")
    if not is_finished_status(match.get("status")):
        raise RaffleError(400, "match is not finished yet (not FT/final status)")

    existing = await dbmod.fetch_one(conn, "SELECT id FROM raffles WHERE event_id=?", (event_id,))
    if existing:
        raise RaffleError(400, "raffle already completed for this event")

    entries = await dbmod.fetch_all(
        conn, "SELECT buyer FROM purchases WHERE event_id=? ORDER BY created_at, id", (event_id,)
    )
    if not entries:
        raise RaffleError(400, "no entries for event")

    buyers = [e["buyer"] for e in entries]
    winners = choose_winners(buyers, winners_count, rng)
    winner = winners[0]
    pool, winner_payout = prize_breakdown(len(buyers), settings.entry_fee_base, settings.WINNER_SHARE_BPS)
    per_winner = winner_payout // len(winners)

    rec = {
        "id": f"{event_id}-{uuid.uuid4()}",
        "event_id": event_id,
        "league": match["league"],
        "winner": winner,
        "winners": winners,
        "buyer_count": len(buyers),
        "prize_pool": pool,
        "winner_payout": winner_payout,
        "payout_each": per_winner,
        "token": settings.TOKEN_SYMBOL,
        "tx_hash": None,
        "payout_error": None,
        "home_team": match["home_team"],
        "away_team": match["away_team"],
        "match_date": (match["event_date"] or "")[:10] or None,
        "created_at": rfc3339(now),
    }
    try:
        await conn.execute(
            "INSERT INTO raffles(id,event_id,league,winner,winners,buyer_count,prize_pool,winner_payout,token,"
            "home_team,away_team,match_date,created_at) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (rec["id"], rec["event_id"], rec["league"], rec["winner"], json.dumps(winners),
             rec["buyer_count"], rec["prize_pool"], rec["winner_payout"], rec["token"],
             rec["home_team"], rec["away_team"], rec["match_date"], rec["created_at"]),
        )
        await conn.commit()
    except aiosqlite.IntegrityError:
        await conn.rollback()
        raise RaffleError(400, "raffle already completed for this event")

    log.info("[raffle] %s winners %s pool %s payout %s", event_id, ", ".join(winners), pool, winner_payout)

    pay = payout or (payouts.pay_raffle_winner if settings.PAYOUTS_ENABLED else None)
    if pay is not None and per_winner > 0:
        sigs: List[str] = []
        errs: List[str] = []
        for w in winners:
            try:
                sigs.append(await pay(w, per_winner))
            except Exception as e:
                log.exception("[raffle] payout to %s failed for %s", w, event_id)
                errs.append(f"{w}: {e}" if len(winners) > 1 else str(e))
        rec["tx_hash"] = ",".join(sigs) or None
        rec["payout_error"] = "; ".join(errs) or None
        await conn.execute(
            "UPDATE raffles SET tx_hash=?, payout_error=? WHERE id=?",
            (rec["tx_hash"], rec["payout_error"], rec["id"]),
        )
        await conn.commit()

    return rec


async def run_pending_raffles(
    conn: aiosqlite.Connection,
    window: LeagueWindow,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    payout: Optional[PayoutFn] = None,
) -> Dict[str, Any]:
    """Raffle every finished match of a league that has buyers and no raffle yet."""
    rows = await dbmod.fetch_all(
        conn,
        "SELECT h.event_id, h.status, h.home_team, h.away_team FROM matches_history h "
        "LEFT JOIN raffles r ON r.event_id = h.event_id "
        "WHERE h.league=? AND r.id IS NULL ORDER BY h.event_date",
        (window.league,),
    )
    processed: List[Dict[str, Any]] = []
    skipped: List[str] = []
    for row in rows:
        if not is_finished_status(row["status"]):
            continue
        try:
            processed.append(await run_raffle(conn, row["event_id"], now=now, rng=rng, payout=payout))
        except RaffleError as e:
            log.info("[raffle] %s skipped: %s", row["event_id"], e.message)
            skipped.append(row["event_id"])
    return {
        "processedCount": len(processed),
        "raffles": processed,
        "skipped": skipped,
        "matches": [f"{r['home_team']} vs {r['away_team']}" for r in processed],
    }
