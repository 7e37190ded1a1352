import json
import random

import pytest

import raffle as rafflemod
from config import settings
from conftest import utc
from raffle import RaffleError, choose_winners, prize_breakdown, run_pending_raffles, run_raffle
from windows import LEAGUES

NOW = utc(2026, 10, 20, 8, 0)


async def _history(conn, event_id, status="Final", league="nba", home="Lakers", away="Celtics"):
    await conn.execute(
        "INSERT INTO matches_history(event_id,league,home_team,away_team,event_date,status) VALUES(?,?,?,?,?,?)",
        (event_id, league, home, away, "2026-10-19T00:30:00Z", status),
    )
    await conn.commit()


async def _buy(conn, event_id, *buyers):
    for i, b in enumerate(buyers):
        await conn.execute(
            "INSERT INTO purchases(id,event_id,league,buyer,created_at) VALUES(?,?,?,?,?)",
            (f"{event_id}-{i}", event_id, "nba", b, f"2026-10-19T0{i}:00:00Z"),
        )
    await conn.commit()


def test_prize_breakdown():
    assert prize_breakdown(3, 1_000_000_000, 8000) == (3_000_000_000, 2_400_000_000)
    assert prize_breakdown(0, 10, 8000) == (0, 0)


def test_choose_winners_never_exceeds_entries():
    assert choose_winners(["a"], 3, random.Random(1)) == ["a"]
    got = choose_winners(["a", "b", "c"], 2, random.Random(1))
    assert len(set(got)) == 2 and set(got) <= {"a", "b", "c"}


def test_run_raffle_records_winner_and_pays(with_db):
    paid = []

    async def payout(winner, amount):
        paid.append((winner, amount))
        return "sig123"

    async def scenario(conn):
        await _history(conn, "401")
        await _buy(conn, "401", "w1", "w2", "w3")
        rec = await run_raffle(conn, "401", now=NOW, rng=random.Random(3), payout=payout)
        stored = await conn.execute_fetchall("SELECT winner, tx_hash, buyer_count FROM raffles")
        return rec, [tuple(r) for r in stored]

    rec, stored = with_db(scenario)
    pool = 3 * settings.entry_fee_base
    assert rec["winner"] in {"w1", "w2", "w3"}
    assert rec["prize_pool"] == pool
    assert rec["winner_payout"] == pool * 8000 // 10000
    assert rec["tx_hash"] == "sig123"
    assert paid == [(rec["winner"], rec["winner_payout"])]
    assert stored == [(rec["winner"], "sig123", 3)]


def test_several_winners_split_the_payout(with_db):
    paid = []

    async def payout(winner, amount):
        if winner == "w2":
            raise RuntimeError("no ata")
        paid.append((winner, amount))
        return f"sig-{winner}"

    async def scenario(conn):
        await _history(conn, "401")
        await _buy(conn, "401", "w1", "w2", "w3", "w4")
        rec = await run_raffle(conn, "401", now=NOW, rng=random.Random(5), payout=payout, winners_count=4)
        row = await conn.execute_fetchall("SELECT winner, winners, tx_hash, payout_error FROM raffles")
        return rec, tuple(row[0])

    rec, (winner, winners_json, tx_hash, error) = with_db(scenario)
    each = 4 * settings.entry_fee_base * 8000 // 10000 // 4
    assert sorted(rec["winners"]) == ["w1", "w2", "w3", "w4"]
    assert rec["winner"] == rec["winners"][0] == winner
    assert json.loads(winners_json) == rec["winners"]
    assert rec["payout_each"] == each
    assert sorted(paid) == [("w1", each), ("w3", each), ("w4", each)]
    assert sorted(tx_hash.split(",")) == ["sig-w1", "sig-w3", "sig-w4"]
    assert error == "w2: no ata"


def test_winners_count_is_capped_at_entries(with_db):
    async def scenario(conn):
        await _history(conn, "401")
        await _buy(conn, "401", "w1", "w2")
        return await run_raffle(conn, "401", now=NOW, winners_count=5)

    rec = with_db(scenario)
    assert sorted(rec["winners"]) == ["w1", "w2"]
    assert rec["payout_each"] == rec["winner_payout"] // 2


def test_payout_failure_is_stored_not_raised(with_db):
    async def payout(winner, amount):
        raise RuntimeError("rpc down")

    async def scenario(conn):
        await _history(conn, "401")
        await _buy(conn, "401", "w1")
        rec = await run_raffle(conn, "401", now=NOW, payout=payout)
        row = await conn.execute_fetchall("SELECT tx_hash, payout_error FROM raffles")
        return rec, tuple(row[0])

    rec, row = with_db(scenario)
    assert rec["winner"] == "w1"
    assert row == (None, "rpc down")


def test_payouts_disabled_skips_transfer(with_db, monkeypatch):
    async def boom(*a):
        raise AssertionError("should not pay")

    monkeypatch.setattr(rafflemod.payouts, "pay_raffle_winner", boom)

    async def scenario(conn):
        await _history(conn, "401")
        await _buy(conn, "401", "w1")
        return await run_raffle(conn, "401", now=NOW)

    rec = with_db(scenario)
    assert rec["tx_hash"] is None and rec["payout_error"] is None


@pytest.mark.parametrize("setup,status", [
    ("missing", 404),
    ("unfinished", 400),
    ("no_entries", 400),
    ("twice", 400),
])
def test_run_raffle_errors(with_db, setup, status):
    async def scenario(conn):
        if setup != "missing":
            await _history(conn, "401", status="waiting for result" if setup == "unfinished" else "FT")
        if setup in ("unfinished", "twice"):
            await _buy(conn, "401", "w1")
        if setup == "twice":
            await run_raffle(conn, "401", now=NOW)
        with pytest.raises(RaffleError) as exc:
            await run_raffle(conn, "401", now=NOW)
        return exc.value.status_code

    assert with_db(scenario) == status


def test_run_pending_raffles(with_db):
    async def scenario(conn):
        await _history(conn, "done-with-buyers", status="Final")
        await _history(conn, "done-no-buyers", status="Final")
        await _history(conn, "waiting", status="waiting for result")
        await _history(conn, "other-league", status="FT", league="epl")
        await _buy(conn, "done-with-buyers", "w1", "w2")
        await _buy(conn, "waiting", "w3")
        first = await run_pending_raffles(conn, LEAGUES["nba"], now=NOW, rng=random.Random(1))
        second = await run_pending_raffles(conn, LEAGUES["nba"], now=NOW, rng=random.Random(1))
        return first, second

    first, second = with_db(scenario)
    assert first["processedCount"] == 1
    assert first["raffles"][0]["event_id"] == "done-with-buyers"
    assert first["skipped"] == ["done-no-buyers"]
    assert second["processedCount"] == 0
