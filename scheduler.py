# scheduler.py
"""
FAIRPLAY — Round scheduler
Timed rounds for continuous games (coin-flip, crash):

    WAITING (countdown, bets accepted) -> RUNNING (resolving) -> ENDED (cooldown) -> WAITING (next)

Every round commits its own server seed under the seed context `round:<id>`;
all bets of the round share one outcome derived with nonce 0 and the round id.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from broadcast import NullBroadcaster
from commitment import generate_client_seed
from errors import (
    BettingClosedError, EntropyUnavailableError, NothingToRevealError, PersistenceFailureError,
)
from outcomes import derive

logger = logging.getLogger("fairplay.scheduler")

WAITING = "WAITING"
RUNNING = "RUNNING"
ENDED = "ENDED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Round:
    id: str
    game: str
    opens_at: datetime
    closes_at: datetime
    client_seed: str
    server_seed_hash: str
    status: str = WAITING
    server_seed_reveal: Optional[str] = None
    result: Optional[dict] = None
    aborted: bool = False
    ended_at: Optional[datetime] = None
    bets: List[str] = field(default_factory=list)

    @property
    def seed_context(self) -> str:
        return f"round:{self.id}"

    def to_row(self) -> dict:
        return {
            "id": self.id, "game": self.game, "status": self.status,
            "opens_at": self.opens_at.isoformat(), "closes_at": self.closes_at.isoformat(),
            "client_seed": self.client_seed, "server_seed_hash": self.server_seed_hash,
            "server_seed_reveal": self.server_seed_reveal, "result": self.result,
            "aborted": self.aborted, "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }

    def public(self) -> dict:
        d = self.to_row()
        d["bets"] = len(self.bets)
        return d


class RoundScheduler:
    def __init__(self, game: str, config, ledger, seeds, repo=None, broadcaster=None, *,
                 betting_seconds: float = 10.0, cooldown_seconds: float = 3.0, min_bets: int = 0,
                 clock: Callable[[], datetime] = _utcnow, keep: int = 50,
                 guard: Optional[Callable[[], None]] = None,
                 on_entropy_failure: Optional[Callable[[str], None]] = None):
        self.game = game
        self.config = config
        self.ledger = ledger
        self.seeds = seeds
        self.repo = repo
        self.broadcaster = broadcaster or NullBroadcaster()
        self.betting_seconds = float(betting_seconds)
        self.cooldown_seconds = float(cooldown_seconds)
        self.min_bets = int(min_bets)
        self.clock = clock
        self.current: Optional[Round] = None
        self.recent = deque(maxlen=keep)
        self._betting_lock = asyncio.Lock()
        self._enough_bets = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._local_ids = 0
        self.guard = guard
        self.on_entropy_failure = on_entropy_failure

    # ---------- persistence ----------
    async def _next_round_id(self) -> str:
        if self.repo is not None:
            return await self.repo.alloc_next_round_id()
        self._local_ids += 1
        return f"R{self._local_ids:04d}"

    async def _save(self, rnd: Round) -> None:
        if self.repo is not None:
            await self.repo.save_round(rnd.to_row())

    def _publish(self, kind: str, rnd: Round, **extra) -> None:
        self.broadcaster.publish({"type": kind, "game": self.game, "round": rnd.public(), **extra})

    # ---------- phases ----------
    async def open_round(self) -> Round:
        if self.guard is not None:
            self.guard()
        rid = await self._next_round_id()
        ctx = f"round:{rid}"
        client_seed = await self.seeds.set_client_seed(ctx, generate_client_seed())
        try:
            # sealed: only resolve_round / abort may reveal it
            server_seed_hash = await self.seeds.commit(ctx, sealed=True)
        except EntropyUnavailableError:
            self.seeds.forget(ctx)
            raise

        now = self.clock()
        rnd = Round(
            id=rid,
            game=self.game,
            opens_at=now,
            closes_at=now + timedelta(seconds=self.betting_seconds),
            client_seed=client_seed,
            server_seed_hash=server_seed_hash,
        )
        await self._save(rnd)
        self._enough_bets = asyncio.Event()
        self.current = rnd
        logger.info("[round_scheduler] %s opened %s -> %s", rid, rnd.opens_at, rnd.closes_at)
        self._publish("round.waiting", rnd)
        return rnd

    async def accept_bet(self, context: str, params: Optional[dict], stake: int, expect: Optional[dict] = None):
        async with self._betting_lock:
            rnd = self.current
            if rnd is None or rnd.status != WAITING or self.clock() >= rnd.closes_at:
                raise BettingClosedError()
            bet = await self.ledger.place_bet(context, self.config, params, stake,
                                              round_id=rnd.id, shared=True, expect=expect)
            rnd.bets.append(bet.id)
            if self.min_bets and len(rnd.bets) >= self.min_bets:
                self._enough_bets.set()
            return bet

    async def wait_for_close(self, rnd: Round) -> None:
        remaining = (rnd.closes_at - self.clock()).total_seconds()
        try:
            await asyncio.wait_for(self._enough_bets.wait(), timeout=max(0.0, remaining))
        except asyncio.TimeoutError:
            pass  # countdown elapsed

    async def close_betting(self, rnd: Round) -> None:
        async with self._betting_lock:
            rnd.status = RUNNING
            rnd.closes_at = min(rnd.closes_at, self.clock())
        await self._save(rnd)
        logger.info("[round_scheduler] %s betting closed with %d bet(s)", rnd.id, len(rnd.bets))
        self._publish("round.running", rnd)

    async def resolve_round(self, rnd: Round) -> Round:
        ctx = rnd.seed_context
        alloc = await self.seeds.next_nonce(ctx)
        server_seed = await self.seeds.server_seed(ctx, alloc.server_seed_hash)
        outcome = derive(server_seed, alloc.client_seed, alloc.nonce, self.config, round_id=rnd.id)

        for bet in self.ledger.pending(round_id=rnd.id):
            try:
                await self.ledger.settle_bet(bet, outcome, self.config)
            except PersistenceFailureError:
                logger.error("[round_scheduler] %s bet %s refunded, settlement not recorded", rnd.id, bet.id)
        await self.seeds.resolve(ctx)

        revealed = await self.seeds.reveal(ctx, unseal=True)
        self.seeds.forget(ctx)
        rnd.server_seed_reveal = revealed.server_seed
        rnd.result = outcome.to_dict()
        rnd.status = ENDED
        rnd.ended_at = self.clock()
        await self._save(rnd)
        self.recent.appendleft(rnd)
        logger.info("[round_scheduler] %s ended %s", rnd.id, rnd.result)
        self._publish("round.ended", rnd)
        return rnd

    async def run_round(self) -> Round:
        rnd = await self.open_round()
        await self.wait_for_close(rnd)
        await self.close_betting(rnd)
        return await self.resolve_round(rnd)

    async def abort(self, reason: str = "aborted") -> Optional[Round]:
        """Abort the current round and refund its unsettled bets."""
        rnd = self.current
        if rnd is None or rnd.status == ENDED:
            return None
        async with self._betting_lock:
            rnd.status = RUNNING
        for bet in self.ledger.pending(round_id=rnd.id):
            await self.ledger.refund_bet(bet, reason)
        try:
            revealed = await self.seeds.reveal(rnd.seed_context, unseal=True)
            self.seeds.forget(rnd.seed_context)
            rnd.server_seed_reveal = revealed.server_seed
        except NothingToRevealError as e:
            logger.warning("[round_scheduler] %s seed not revealed on abort: %s", rnd.id, e)
        rnd.aborted = True
        rnd.status = ENDED
        rnd.ended_at = self.clock()
        await self._save(rnd)
        self.recent.appendleft(rnd)
        logger.warning("[round_scheduler] %s aborted (%s), %d bet(s) refunded", rnd.id, reason, len(rnd.bets))
        self._publish("round.aborted", rnd, reason=reason)
        return rnd

    # ---------- loop ----------
    async def run(self) -> None:
        while True:
            try:
                await self.run_round()
                await asyncio.sleep(self.cooldown_seconds)
            except asyncio.CancelledError:
                await self.abort("scheduler stopped")
                raise
            except EntropyUnavailableError as e:
                # no fresh seeds: stop opening rounds and fail the engine closed
                logger.critical("[round_scheduler] %s stopping: %s", self.game, e)
                await self.abort("randomness unavailable")
                if self.on_entropy_failure is not None:
                    self.on_entropy_failure(str(e))
                return
            except Exception:
                # keep the loop alive; the round in flight is refunded
                logger.exception("[round_scheduler] %s loop error", self.game)
                await self.abort("round failed")
                await asyncio.sleep(max(1.0, self.cooldown_seconds))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            logger.info("[round_scheduler] starting %s task", self.game)
            self._task = asyncio.create_task(self.run(), name=f"rounds:{self.game}")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


async def recover_rounds(repo, clock: Callable[[], datetime] = _utcnow) -> List[str]:
    """
    Mark rounds left unfinished by a crash as aborted and reveal their seeds so
    they stay auditable. Their bets are refunded by the engine.
    """
    aborted = []
    for rid in await repo.unfinished_rounds():
        row = await repo.get_round(rid)
        if row is None:
            continue
        ended_at = clock().isoformat()
        pair = await repo.active_seed_pair(f"round:{rid}")
        if pair is not None and pair["server_seed_hash"] == row.get("server_seed_hash"):
            await repo.mark_seed_revealed(pair["server_seed_hash"], ended_at)
            row["server_seed_reveal"] = pair["server_seed"]
        row.update(status=ENDED, aborted=True, ended_at=ended_at)
        await repo.save_round(row)
        aborted.append(rid)
        logger.warning("[round_scheduler] %s left open by restart, marked aborted", rid)
    return aborted
