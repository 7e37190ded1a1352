# main.py
# =========================================================
# Matchday Backend (FastAPI)
# =========================================================
from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

import aiosqlite
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field, field_validator

import db as dbmod
import windows
from config import settings
from raffle import RaffleError, run_raffle
from scheduler import Scheduler
from sports import ScoreboardClient, is_finished_status
from windows import (
    ACTIONS,
    LEAGUES,
    is_window_open,
    next_trigger_at,
    resolve_league,
    rfc3339,
    upcoming_range,
    visibility_range,
    window_status,
)
from workers import WorkerError, WorkerRunner, record_result, selected_ids

VERSION = "0.1.0"

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
log = logging.getLogger("matchday")

# =========================================================
# Auth
# =========================================================
_auth_scheme = HTTPBearer(auto_error=False)


def admin_guard(creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    token = settings.ADMIN_TOKEN
    if not token:
        # allow only if explicitly running in debug/dev
        if settings.DEBUG:
            return True
        raise HTTPException(401, "ADMIN_TOKEN required in production")
    if not creds or creds.credentials != token:
        raise HTTPException(401, "Unauthorized")
    return True


def worker_guard(request: Request, creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    """Cron callers authenticate with the worker key as Bearer token or x-api-key header."""
    key = settings.WORKER_API_KEY
    if not key:
        if settings.DEBUG:
            return True
        raise HTTPException(401, "WORKER_API_KEY required in production")
    supplied = request.headers.get("x-api-key") or (creds.credentials if creds else None)
    if supplied != key:
        raise HTTPException(401, "Unauthorized")
    return True


# =========================================================
# App Init
# =========================================================
app = FastAPI(title="Matchday Backend", version=VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

API = settings.API_PREFIX.rstrip("/")


def _conn() -> aiosqlite.Connection:
    return app.state.db


def _league_or_404(name: str):
    window = resolve_league(name)
    if window is None:
        raise HTTPException(404, f"unknown league: {name}")
    return window


# =========================================================
# Lifecycle
# =========================================================
@app.on_event("startup")
async def on_startup():
    # Connect DB + ensure schema
    app.state.db = await dbmod.connect(settings.DB_PATH)
    await dbmod.ensure_schema(app.state.db)

    app.state.runner = WorkerRunner(app.state.db, ScoreboardClient())
    app.state.scheduler = Scheduler(app.state.runner)
    if settings.SCHEDULER_ENABLED:
        app.state.scheduler.start()
    else:
        log.info("[startup] scheduler disabled")
    log.info("[startup] db=%s api=%s", settings.DB_PATH, API or "/")


@app.on_event("shutdown")
async def on_shutdown():
    await app.state.scheduler.stop()
    await app.state.db.close()


# =========================================================
# Health
# =========================================================
@app.get(f"{API}/health")
async def health():
    return {
        "ok": True,
        "ts": time.time(),
        "service": "matchday",
        "version": VERSION,
        "scheduler": app.state.scheduler.status(),
    }


# =========================================================
# Models
# =========================================================
class PurchaseIn(BaseModel):
    event_id: str = Field(min_length=1)
    buyer: str = Field(min_length=1, description="Buyer wallet address")
    txid: Optional[str] = None
    amount: Optional[int] = Field(default=None, ge=0, description="Amount in token base units")

    # strip before the length check so "   " is rejected
    @field_validator("buyer", mode="before")
    @classmethod
    def _strip_buyer(cls, v):
        return v.strip() if isinstance(v, str) else v


class PurchaseResp(BaseModel):
    ok: bool = True
    id: str
    event_id: str
    league: str
    buyer: str
    prediction: str
    created_at: str


class RaffleIn(BaseModel):
    event_id: str = Field(min_length=1)
    winners_count: int = Field(default=1, ge=1, le=10, description="Distinct winners sharing the payout")


class FinishMatchIn(BaseModel):
    event_id: str = Field(min_length=1)
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    status: str = "Final"
    # only needed when the match was never archived
    home: Optional[str] = None
    away: Optional[str] = None
    league: Optional[str] = None
    datetime: Optional[str] = None
    venue: Optional[str] = None


class RafflePage(BaseModel):
    page: int
    limit: int
    total: int
    rows: List[Dict[str, Any]]


# =========================================================
# Endpoints — Windows
# =========================================================
def _window_payload(window, now) -> Dict[str, Any]:
    return {
        "league": window.league,
        "display_name": window.display_name,
        "max_picks": window.max_picks,
        "status": window_status(window, now).as_dict(),
        "range": visibility_range(window, now).as_dict(),
        "upcoming": upcoming_range(window, now).as_dict(),
        "next_triggers": {a: rfc3339(next_trigger_at(window, a, now)) for a in ACTIONS},
    }


@app.get(f"{API}/windows")
async def windows_all():
    now = windows.utcnow()
    return {"now": rfc3339(now), "windows": [_window_payload(w, now) for w in LEAGUES.values()]}


@app.get(f"{API}/windows/{{league}}")
async def windows_one(league: str):
    window = _league_or_404(league)
    now = windows.utcnow()
    return {"now": rfc3339(now), **_window_payload(window, now)}


# =========================================================
# Endpoints — Matches
# =========================================================
async def _league_matches(window, now) -> Dict[str, Any]:
    conn = _conn()
    rng_ = upcoming_range(window, now)
    ids = await selected_ids(conn, window, rng_.for_date, now)
    rows: List[Dict[str, Any]] = []
    if ids:
        marks = ",".join("?" * len(ids))
        rows = await dbmod.fetch_all(
            conn,
            f"SELECT m.event_id, m.league, m.home_team, m.away_team, m.event_date, m.venue, m.status, "
            f"(SELECT COUNT(*) FROM purchases p WHERE p.event_id = m.event_id) AS purchase_count, "
            f"EXISTS(SELECT 1 FROM predictions x WHERE x.event_id = m.event_id) AS has_prediction "
            f"FROM matches_pending m WHERE m.event_id IN ({marks}) ORDER BY m.event_date",
            tuple(ids),
        )
        for r in rows:
            r["has_prediction"] = bool(r["has_prediction"])
    return {
        "league": window.league,
        "for_date": rng_.for_date,
        "window_open": is_window_open(window, now),
        "matches": rows,
    }


@app.get(f"{API}/matches")
async def matches(league: Optional[str] = Query(None)):
    now = windows.utcnow()
    if league:
        return await _league_matches(_league_or_404(league), now)
    return {"leagues": [await _league_matches(w, now) for w in LEAGUES.values()]}


# =========================================================
# Endpoints — Purchases
# =========================================================
@app.post(f"{API}/purchases", response_model=PurchaseResp)
async def create_purchase(body: PurchaseIn):
    """
    Buy the prediction of an open match. One purchase per buyer per event; the
    purchase doubles as the buyer's raffle entry for that match.
    """
    conn = _conn()
    now = windows.utcnow()
    match = await dbmod.fetch_one(conn, "SELECT * FROM matches_pending WHERE event_id=?", (body.event_id,))
    if not match:
        raise HTTPException(404, "match not found")
    window = resolve_league(match["league"])
    if window is None:
        raise HTTPException(404, f"unknown league: {match['league']}")
    if match["status"] != "open":
        raise HTTPException(409, "match is not open for purchase")
    if not is_window_open(window, now):
        raise HTTPException(409, f"{window.display_name} window is closed")

    pred = await dbmod.fetch_one(conn, "SELECT prediction_text FROM predictions WHERE event_id=?", (body.event_id,))
    if not pred:
        raise HTTPException(404, "prediction not found")

    rec = {
        "id": uuid.uuid4().hex,
        "event_id": body.event_id,
        "league": window.league,
        "buyer": body.buyer,
        "created_at": rfc3339(now),
    }
    try:
        await conn.execute(
            "INSERT INTO purchases(id,event_id,league,buyer,txid,amount,token,created_at) VALUES(?,?,?,?,?,?,?,?)",
            (rec["id"], rec["event_id"], rec["league"], rec["buyer"], body.txid,
             body.amount if body.amount is not None else settings.entry_fee_base,
             settings.TOKEN_SYMBOL, rec["created_at"]),
        )
        await conn.commit()
    except aiosqlite.IntegrityError:
        await conn.rollback()
        raise HTTPException(409, "already purchased")

    log.info("[purchase] %s bought %s", rec["buyer"], rec["event_id"])
    return PurchaseResp(prediction=pred["prediction_text"], **rec)


@app.get(f"{API}/purchases")
async def list_purchases(eventid: Optional[str] = Query(None), buyer: Optional[str] = Query(None)):
    where, params = [], []
    if eventid:
        where.append("event_id=?")
        params.append(eventid)
    if buyer:
        where.append("buyer=?")
        params.append(buyer)
    sql = "SELECT id,event_id,league,buyer,txid,amount,token,created_at FROM purchases"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY created_at DESC LIMIT 500"
    return {"rows": await dbmod.fetch_all(_conn(), sql, tuple(params))}


@app.get(f"{API}/purchases/count")
async def purchase_count(eventid: str = Query(...)):
    row = await dbmod.fetch_one(_conn(), "SELECT COUNT(*) AS n FROM purchases WHERE event_id=?", (eventid,))
    return {"eventid": eventid, "count": int(row["n"] if row else 0)}


# =========================================================
# Endpoints — Predictions
# =========================================================
@app.get(f"{API}/predictions/{{event_id}}")
async def get_prediction(event_id: str, buyer: str = Query(...)):
    conn = _conn()
    owned = await dbmod.fetch_one(
        conn, "SELECT id FROM purchases WHERE event_id=? AND buyer=?", (event_id, buyer)
    )
    if not owned:
        raise HTTPException(403, "purchase required")
    pred = await dbmod.fetch_one(conn, "SELECT * FROM predictions WHERE event_id=?", (event_id,))
    if not pred:
        raise HTTPException(404, "prediction not found")
    return pred


def _same_team(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a and b) and a.strip().lower() == b.strip().lower()


@app.get(f"{API}/analytics/predictions")
async def prediction_accuracy():
    """Predicted winner vs actual winner over finished matches, per league."""
    rows = await dbmod.fetch_all(
        _conn(),
        "SELECT p.league, p.predicted_winner, h.winner, h.status FROM predictions p "
        "JOIN matches_history h ON h.event_id = p.event_id",
    )
    per: Dict[str, Dict[str, Any]] = {}
    for r in rows:
        if not is_finished_status(r["status"]) or not r["winner"]:
            continue
        s = per.setdefault(r["league"], {"total": 0, "correct": 0})
        s["total"] += 1
        s["correct"] += int(_same_team(r["predicted_winner"], r["winner"]))

    total = sum(s["total"] for s in per.values())
    correct = sum(s["correct"] for s in per.values())
    for s in per.values():
        s["accuracy"] = round(100.0 * s["correct"] / s["total"], 1)
    return {
        "leagues": per,
        "overall": {
            "total": total,
            "correct": correct,
            "accuracy": round(100.0 * correct / total, 1) if total else None,
        },
    }


# =========================================================
# Endpoints — Raffle
# =========================================================
@app.get(f"{API}/raffle")
async def raffle_list(
    eventid: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    conn = _conn()
    if eventid:
        pred = await dbmod.fetch_one(conn, "SELECT predicted_winner FROM predictions WHERE event_id=?", (eventid,))
        hist = await dbmod.fetch_one(conn, "SELECT winner, status FROM matches_history WHERE event_id=?", (eventid,))
        if not pred and not hist:
            raise HTTPException(404, "event not found")
        predicted = pred["predicted_winner"] if pred else None
        actual = hist["winner"] if hist and is_finished_status(hist["status"]) else None
        raffle = await dbmod.fetch_one(conn, "SELECT * FROM raffles WHERE event_id=?", (eventid,))
        return {
            "eventid": eventid,
            "predicted_winner": predicted,
            "actual_winner": actual,
            "correct": _same_team(predicted, actual) if actual else None,
            "raffle": raffle,
        }

    total = await dbmod.fetch_one(conn, "SELECT COUNT(*) AS n FROM raffles")
    rows = await dbmod.fetch_all(
        conn,
        "SELECT * FROM raffles ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
        (limit, (page - 1) * limit),
    )
    return RafflePage(page=page, limit=limit, total=int(total["n"]), rows=rows)


@app.get(f"{API}/raffle/latest")
async def raffle_latest():
    row = await dbmod.fetch_one(_conn(), "SELECT * FROM raffles ORDER BY created_at DESC, id LIMIT 1")
    if not row:
        raise HTTPException(404, "no raffles yet")
    return row


@app.post(f"{API}/raffle")
async def raffle_run(body: RaffleIn, auth: bool = Depends(worker_guard)):
    try:
        return await run_raffle(
            _conn(), body.event_id, payout=app.state.runner.payout, winners_count=body.winners_count
        )
    except RaffleError as e:
        raise HTTPException(e.status_code, e.message)


@app.get(f"{API}/treasury")
async def treasury():
    """Public key the purchase transfers go to."""
    pub = (settings.TREASURY_PUBKEY or "").strip()
    if not pub:
        raise HTTPException(500, "no treasury configured")
    return {"ok": True, "treasury": pub}


# =========================================================
# Endpoints — Workers (cron)
# =========================================================
@app.post(f"{API}/worker/finish-match")
async def worker_finish_match(body: FinishMatchIn, auth: bool = Depends(worker_guard)):
    match = None
    if body.home and body.away and body.league:
        match = {"home": body.home, "away": body.away, "league": body.league,
                 "datetime": body.datetime, "venue": body.venue}
    try:
        result = await record_result(
            _conn(), body.event_id, body.home_score, body.away_score, body.status, match=match
        )
    except WorkerError as e:
        raise HTTPException(e.status_code, e.message)
    return {"ok": True, **result}


@app.post(f"{API}/worker/{{league}}/{{action}}")
async def worker_run(league: str, action: str, auth: bool = Depends(worker_guard)):
    try:
        return await app.state.runner.run(league, action)
    except WorkerError as e:
        raise HTTPException(e.status_code, e.message)


# =========================================================
# Endpoints — Admin
# =========================================================
@app.get(f"{API}/admin/scheduler")
async def admin_scheduler_status(auth: bool = Depends(admin_guard)):
    return app.state.scheduler.status()


@app.post(f"{API}/admin/scheduler/{{op}}")
async def admin_scheduler(op: str, auth: bool = Depends(admin_guard)):
    sched: Scheduler = app.state.scheduler
    if op == "start":
        changed = sched.start()
    elif op == "stop":
        changed = await sched.stop()
    else:
        raise HTTPException(404, f"unknown scheduler op: {op}")
    return {"ok": True, "changed": changed, **sched.status()}
