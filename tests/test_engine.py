"""
Tests for the engine facade: the end-to-end dice flow, fail-closed startup,
restart recovery and round routing.
"""

import asyncio

import pytest

import engine as engine_mod
from balances import MemoryBalances, SqliteBalances
from commitment import hash_seed
from conftest import open_repo
from engine import FairplayEngine
from errors import (
    BetNotFoundError, EntropyUnavailableError, NotCommittedError, NothingToRevealError,
    RoundInProgressError, StateConflictError, UnknownGameError, ValidationError,
)
from ledger import PENDING, REFUNDED, SETTLED
from outcomes import CoinConfig, DiceConfig
import seeds as seeds_mod


def make_engine(**kw):
    games = {"coin": CoinConfig(), "dice": DiceConfig(low=1, high=6)}
    return FairplayEngine(balances=MemoryBalances({"p": 100}), games=games, **kw)


def test_dice_bet_can_be_verified_after_reveal():
    async def scenario():
        eng = make_engine()
        eng.startup()
        await eng.set_client_seed("p", 42)
        committed = await eng.request_commitment("p")
        placed = await eng.place_bet("p", "dice", {"target": 3}, 10)
        result = await eng.get_outcome(placed["bet_id"])
        revealed = await eng.reveal_seed("p")
        check = eng.verify(revealed["server_seed"], committed["server_seed_hash"], 42, 0, "dice")
        return committed, placed, result, revealed, check, await eng.balance("p")

    committed, placed, result, revealed, check, balance = asyncio.run(scenario())
    assert placed["nonce"] == 0
    assert placed["client_seed"] == "42"
    assert placed["round_id"] is None
    assert result["status"] == SETTLED
    assert hash_seed(revealed["server_seed"]) == committed["server_seed_hash"]
    assert revealed["nonce"] == 1
    assert revealed["next_server_seed_hash"] not in (None, committed["server_seed_hash"])
    assert check["commitment_valid"] is True
    assert check["outcome"] == result["outcome"]
    won = result["outcome"]["roll"] == 3
    assert result["payout"] == (59 if won else 0)
    assert balance == 90 + result["payout"]


def test_bet_without_commitment_is_refused():
    async def scenario():
        eng = make_engine()
        with pytest.raises(NotCommittedError):
            await eng.place_bet("p", "dice", {"target": 3}, 10)
        return await eng.balance("p")

    assert asyncio.run(scenario()) == 100


def test_unknown_game_and_bet():
    async def scenario():
        eng = make_engine()
        with pytest.raises(UnknownGameError):
            await eng.place_bet("p", "poker", {}, 1)
        with pytest.raises(BetNotFoundError):
            await eng.get_outcome("missing")

    asyncio.run(scenario())


def test_entropy_failure_fails_closed(monkeypatch):
    def broken():
        raise EntropyUnavailableError("self-test failed")

    monkeypatch.setattr(engine_mod, "self_check", broken)

    async def scenario():
        eng = make_engine()
        eng.startup()
        with pytest.raises(EntropyUnavailableError):
            await eng.request_commitment("p")
        with pytest.raises(EntropyUnavailableError):
            await eng.place_bet("p", "dice", {"target": 3}, 10)
        return eng

    eng = asyncio.run(scenario())
    assert eng.fail_closed == "self-test failed"


def test_round_game_bets_go_to_the_scheduler():
    async def scenario():
        eng = make_engine()
        sched = eng.add_round_game("coin", betting_seconds=30)
        await sched.open_round()
        placed = await eng.place_bet("p", "COIN", {"side": "HEADS"}, 5)
        result = await eng.get_outcome(placed["bet_id"])
        return placed, result

    placed, result = asyncio.run(scenario())
    assert placed["round_id"] == "R0001"
    assert placed["nonce"] == 0
    assert result["status"] == PENDING
    assert result["profit"] is None


def _pending_row(bet_id, server_seed_hash, nonce, stake=10):
    return {
        "id": bet_id, "context": "p", "game": "dice", "params": {"direction": "EXACT", "target": 3},
        "stake": stake, "round_id": None, "server_seed_hash": server_seed_hash, "client_seed": "c",
        "nonce": nonce, "status": PENDING, "outcome": None, "multiplier": None, "payout": None,
        "created_at": "2026-01-01T00:00:00+00:00", "settled_at": None,
    }


def test_recover_refunds_pending_bets(tmp_path):
    async def scenario():
        repo = await open_repo(tmp_path / "engine.db")
        try:
            eng = FairplayEngine(repo, SqliteBalances(repo, starting_balance=100), games={"dice": DiceConfig()})
            await repo.append_bet(_pending_row("lost", "h" * 64, 0, stake=10))
            refunded = await eng.recover()
            return refunded, await repo.get_bet("lost"), await eng.balance("p")
        finally:
            await repo.conn.close()

    refunded, row, balance = asyncio.run(scenario())
    assert refunded == 1
    assert row["status"] == REFUNDED
    assert balance == 110


def test_nonce_collision_is_reconciled(tmp_path):
    async def scenario():
        repo = await open_repo(tmp_path / "engine.db")
        try:
            eng = FairplayEngine(repo, SqliteBalances(repo, starting_balance=100), games={"dice": DiceConfig()})
            committed = await eng.request_commitment("p")
            # another writer already used nonce 0 under this seed
            row = _pending_row("other", committed["server_seed_hash"], 0, stake=1)
            row.update(status=SETTLED, payout=0)
            await repo.append_bet(row)
            placed = await eng.place_bet("p", "dice", {"target": 3}, 10)
            result = await eng.get_outcome(placed["bet_id"])
            return placed, result, await eng.balance("p")
        finally:
            await repo.conn.close()

    placed, result, balance = asyncio.run(scenario())
    assert placed["nonce"] == 1
    assert balance == 90 + result["payout"]


def test_history_falls_back_to_storage(tmp_path):
    async def scenario():
        repo = await open_repo(tmp_path / "engine.db")
        try:
            first = FairplayEngine(repo, SqliteBalances(repo, starting_balance=100), games={"dice": DiceConfig()})
            await first.request_commitment("p")
            for _ in range(3):
                await first.place_bet("p", "dice", {"target": 3}, 1)
            restarted = FairplayEngine(repo, SqliteBalances(repo, starting_balance=100), games={"dice": DiceConfig()})
            return await restarted.history("p", limit=2), await restarted.seed_status("p")
        finally:
            await repo.conn.close()

    rows, status = asyncio.run(scenario())
    assert [r["nonce"] for r in rows] == [2, 1]
    assert status["nonce"] == 3


def test_history_and_totals_survive_restart(tmp_path):
    async def scenario():
        repo = await open_repo(tmp_path / "engine.db")
        try:
            first = FairplayEngine(repo, SqliteBalances(repo, starting_balance=100), games={"dice": DiceConfig()})
            await first.request_commitment("p")
            for _ in range(3):
                await first.place_bet("p", "dice", {"target": 3}, 1)
            restarted = FairplayEngine(repo, SqliteBalances(repo, starting_balance=100), games={"dice": DiceConfig()})
            await restarted.place_bet("p", "dice", {"target": 3}, 2)
            return await restarted.history("p"), await restarted.totals("p")
        finally:
            await repo.conn.close()

    rows, totals = asyncio.run(scenario())
    assert [r["nonce"] for r in rows] == [3, 2, 1, 0]
    assert totals["bets"] == 4
    assert totals["wagered"] == 5
    assert totals["wins"] + totals["losses"] == 4
    assert totals["games"] == {"dice": 4}


def test_round_seed_cannot_be_revealed_by_players():
    async def scenario():
        eng = make_engine()
        sched = eng.add_round_game("coin", betting_seconds=30)
        rnd = await sched.open_round()
        ctx = rnd.seed_context
        with pytest.raises(ValidationError):
            await eng.reveal_seed(ctx)
        with pytest.raises(ValidationError):
            await eng.set_client_seed(ctx, "mine")
        with pytest.raises(ValidationError):
            await eng.request_commitment(ctx)
        with pytest.raises(ValidationError):
            await eng.place_bet(ctx, "dice", {"target": 3}, 1)
        # the store itself keeps the seed sealed too
        with pytest.raises(NothingToRevealError):
            await eng.seeds.reveal(ctx)
        with pytest.raises(RoundInProgressError):
            await eng.seeds.set_client_seed(ctx, "mine")
        placed = await eng.place_bet("p", "coin", {"side": "HEADS"}, 5)
        await sched.close_betting(rnd)
        await sched.resolve_round(rnd)
        return rnd, await eng.get_outcome(placed["bet_id"])

    rnd, result = asyncio.run(scenario())
    assert hash_seed(rnd.server_seed_reveal) == rnd.server_seed_hash
    assert result["status"] == SETTLED
    assert result["outcome"] == rnd.result


def test_bet_pinned_to_a_moved_commitment_is_refused():
    async def scenario():
        eng = make_engine()
        committed = await eng.request_commitment("p")
        with pytest.raises(StateConflictError):
            await eng.place_bet("p", "dice", {"target": 3}, 10, expect={"nonce": 5})
        with pytest.raises(StateConflictError):
            await eng.place_bet("p", "dice", {"target": 3}, 10, expect={"server_seed_hash": "0" * 64})
        with pytest.raises(StateConflictError):
            await eng.place_bet("p", "dice", {"target": 3}, 10, expect={"client_seed": "not-mine"})
        refused = await eng.seed_status("p"), await eng.balance("p")
        placed = await eng.place_bet("p", "dice", {"target": 3}, 10, expect={
            "server_seed_hash": committed["server_seed_hash"],
            "client_seed": committed["client_seed"],
            "nonce": 0,
        })
        return refused, placed

    (status, balance), placed = asyncio.run(scenario())
    assert status["nonce"] == 0
    assert status["pending"] == 0
    assert balance == 100
    assert placed["nonce"] == 0


def test_seed_rotates_after_rotate_every_bets():
    async def scenario():
        eng = make_engine(rotate_every=3)
        committed = await eng.request_commitment("p")
        placed = [await eng.place_bet("p", "dice", {"target": 3}, 1) for _ in range(3)]
        first = await eng.get_outcome(placed[0]["bet_id"])
        after = await eng.place_bet("p", "dice", {"target": 3}, 1)
        return eng, committed, placed, first, after

    eng, committed, placed, first, after = asyncio.run(scenario())
    assert [p["rotated"] for p in placed[:2]] == [None, None]
    rotated = placed[2]["rotated"]
    assert hash_seed(rotated["server_seed"]) == committed["server_seed_hash"]
    assert rotated["nonce"] == 3
    check = eng.verify(rotated["server_seed"], committed["server_seed_hash"], rotated["client_seed"], 0, "dice")
    assert check["commitment_valid"] is True
    assert check["outcome"] == first["outcome"]
    assert after["nonce"] == 0
    assert after["server_seed_hash"] == rotated["next_server_seed_hash"]
    assert after["server_seed_hash"] != committed["server_seed_hash"]
    assert after["rotated"] is None


def test_round_loop_without_entropy_fails_engine_closed(monkeypatch):
    def broken():
        raise EntropyUnavailableError("no randomness")

    monkeypatch.setattr(seeds_mod, "generate_server_seed", broken)

    async def scenario():
        eng = make_engine()
        eng.add_round_game("coin", betting_seconds=30)
        eng.start_rounds()
        await asyncio.wait_for(eng.rounds["coin"]._task, timeout=1)
        with pytest.raises(EntropyUnavailableError):
            await eng.place_bet("p", "dice", {"target": 3}, 10)
        with pytest.raises(EntropyUnavailableError):
            eng.start_rounds()
        return eng

    eng = asyncio.run(scenario())
    assert eng.fail_closed == "no randomness"
