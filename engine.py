# engine.py
"""
FAIRPLAY — Engine
The operations the API layer calls: request a commitment, place a bet, read an
outcome, reveal a seed, verify. Wires SeedStore, BetLedger and the round
schedulers together; balances and broadcasting are collaborators.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, Optional

import outcomes
from balances import MemoryBalances
from broadcast import NullBroadcaster
from commitment import self_check
from errors import (
    BetNotFoundError, EntropyUnavailableError, NonceConflictError, NothingToRevealError,
    UnknownGameError, ValidationError,
)
from ledger import Bet, BetLedger, LedgerTotals
from outcomes import CoinConfig, CrashConfig, DiceConfig, GameConfig, SlotsConfig, validate_config
from scheduler import RoundScheduler, recover_rounds
from seeds import SeedStore, is_round_context

logger = logging.getLogger("fairplay.engine")

MAX_CONTEXT_LEN = 128

DEFAULT_PAYTABLE = {
    "SEVEN": {3: Decimal(100)},
    "STAR": {3: Decimal(50)},
    "BELL": {3: Decimal(20)},
    "LEMON": {3: Decimal(8)},
    "CHERRY": {2: Decimal(1), 3: Decimal(4)},
}


def default_games(settings) -> Dict[str, GameConfig]:
    reels = tuple(
        tuple(s.strip() for s in reel.split(",") if s.strip())
        for reel in settings.SLOT_REELS
    )
    return {
        "coin": CoinConfig(house_edge=settings.house_edge),
        "dice": DiceConfig(low=settings.DICE_LOW, high=settings.DICE_HIGH, house_edge=settings.house_edge),
        "slots": SlotsConfig(reels=reels, paytable=DEFAULT_PAYTABLE),
        "crash": CrashConfig(house_edge=settings.crash_edge, max_multiplier=settings.CRASH_MAX_MULTIPLIER),
    }


class FairplayEngine:
    def __init__(self, repo=None, balances=None, broadcaster=None,
                 games: Optional[Dict[str, GameConfig]] = None, *,
                 min_stake: int = 1, max_stake: int = 1_000_000_000, history_limit: int = 100,
                 rotate_every: int = 0):
        self.repo = repo
        self.balances = balances or MemoryBalances()
        self.broadcaster = broadcaster or NullBroadcaster()
        self.games: Dict[str, GameConfig] = dict(games or {})
        for config in self.games.values():
            validate_config(config)
        self.seeds = SeedStore(repo)
        self.ledger = BetLedger(self.seeds, self.balances, repo, self.broadcaster,
                                min_stake=min_stake, max_stake=max_stake, history_limit=history_limit)
        self.rounds: Dict[str, RoundScheduler] = {}
        self.rotate_every = max(0, int(rotate_every))
        self.fail_closed: Optional[str] = None

    @classmethod
    def from_settings(cls, settings, repo=None, balances=None, broadcaster=None) -> "FairplayEngine":
        return cls(
            repo=repo,
            balances=balances,
            broadcaster=broadcaster,
            games=default_games(settings),
            min_stake=settings.MIN_STAKE,
            max_stake=settings.MAX_STAKE,
            history_limit=settings.HISTORY_LIMIT,
            rotate_every=settings.SEED_ROTATE_EVERY,
        )

    # =========================================================
    # Lifecycle
    # =========================================================
    def startup(self) -> None:
        try:
            self_check()
        except EntropyUnavailableError as e:
            self._close(str(e))

    def _close(self, reason: str) -> None:
        if self.fail_closed is None:
            logger.critical("[engine] failing closed: %s", reason)
        self.fail_closed = reason

    def _guard(self) -> None:
        if self.fail_closed is not None:
            raise EntropyUnavailableError(self.fail_closed)

    @staticmethod
    def _player_context(context: str) -> str:
        """Player-facing contexts; round seed contexts belong to the scheduler."""
        if not context or len(context) > MAX_CONTEXT_LEN:
            raise ValidationError(f"context must be 1..{MAX_CONTEXT_LEN} characters")
        if is_round_context(context):
            raise ValidationError("round seed contexts are not player contexts")
        return context

    def game(self, name: str) -> GameConfig:
        config = self.games.get((name or "").lower())
        if config is None:
            raise UnknownGameError(f"Unknown game '{name}'")
        return config

    def add_round_game(self, game: str, **kwargs) -> RoundScheduler:
        kwargs.setdefault("guard", self._guard)
        kwargs.setdefault("on_entropy_failure", self._close)
        sched = RoundScheduler(game, self.game(game), self.ledger, self.seeds, self.repo,
                               self.broadcaster, **kwargs)
        self.rounds[game] = sched
        return sched

    def start_rounds(self) -> None:
        self._guard()
        for sched in self.rounds.values():
            sched.start()

    async def stop_rounds(self) -> None:
        for sched in self.rounds.values():
            await sched.stop()

    async def recover(self) -> int:
        """Refund every bet left pending by a restart (stake back, outcome never derived)."""
        if self.repo is None:
            return 0
        rows = await self.repo.pending_bets()
        for row in rows:
            bet = Bet.from_row(row)
            await self.ledger.refund_bet(bet, "recovered after restart")
            if bet.round_id:
                self.seeds.forget(bet.seed_context)
        await recover_rounds(self.repo)
        if rows:
            logger.warning("[engine] refunded %d pending bet(s) on startup", len(rows))
        return len(rows)

    # =========================================================
    # Seeds
    # =========================================================
    async def request_commitment(self, context: str) -> dict:
        self._player_context(context)
        self._guard()
        try:
            await self.seeds.commit(context)
        except EntropyUnavailableError as e:
            self._close(str(e))
            raise
        return await self.seed_status(context)

    async def seed_status(self, context: str) -> dict:
        st = await self.seeds.status(self._player_context(context))
        return {
            "server_seed_hash": st["server_seed_hash"],
            "client_seed": st["client_seed"],
            "nonce": st["nonce"],
            "pending": st["pending"],
        }

    async def set_client_seed(self, context: str, seed) -> dict:
        await self.seeds.set_client_seed(self._player_context(context), seed)
        return await self.seed_status(context)

    async def reveal_seed(self, context: str) -> dict:
        revealed = await self.seeds.reveal(self._player_context(context))
        next_hash = None
        if self.fail_closed is None:
            next_hash = (await self.request_commitment(context))["server_seed_hash"]
        return {
            "server_seed": revealed.server_seed,
            "server_seed_hash": revealed.server_seed_hash,
            "client_seed": revealed.client_seed,
            "nonce": revealed.nonce,
            "next_server_seed_hash": next_hash,
        }

    # =========================================================
    # Bets
    # =========================================================
    async def place_bet(self, context: str, game: str, params: Optional[dict], stake: int,
                        expect: Optional[dict] = None) -> dict:
        """
        Place a bet. Round games join the open round; instant games settle
        right away and, every `rotate_every` nonces, reveal and rotate the seed.
        `expect` pins the commitment the player saw (server_seed_hash,
        client_seed, nonce).
        """
        self._player_context(context)
        self._guard()
        config = self.game(game)
        await self.ledger.pay_unpaid(context)

        sched = self.rounds.get(game.lower())
        if sched is not None:
            bet = await sched.accept_bet(context, params, stake, expect=expect)
            return self._placed(bet)

        bet = None
        for attempt in (0, 1):
            try:
                bet = await self.ledger.place_bet(context, config, params, stake, expect=expect)
                break
            except NonceConflictError:
                if attempt:
                    raise
                logger.warning("[engine] nonce collision for %s, reconciling and retrying", context)
                await self.seeds.reconcile(context)

        # instant game: resolve under the committed seed right away
        server_seed = await self.seeds.server_seed(bet.seed_context, bet.server_seed_hash)
        outcome = outcomes.derive(server_seed, bet.client_seed, bet.nonce, config)
        await self.ledger.settle_bet(bet, outcome, config)

        placed = self._placed(bet)
        if self.rotate_every and bet.nonce + 1 >= self.rotate_every:
            placed["rotated"] = await self._rotate(context)
        return placed

    async def _rotate(self, context: str) -> Optional[dict]:
        try:
            revealed = await self.reveal_seed(context)
        except NothingToRevealError:
            # other bets of this context are still in flight; a later bet rotates
            return None
        logger.info("[engine] %s rotated seed after nonce %d", context, revealed["nonce"] - 1)
        self.broadcaster.publish({"type": "seed.rotated", "context": context, **revealed})
        return revealed

    @staticmethod
    def _placed(bet: Bet) -> dict:
        return {
            "bet_id": bet.id,
            "nonce": bet.nonce,
            "server_seed_hash": bet.server_seed_hash,
            "client_seed": bet.client_seed,
            "game": bet.game,
            "round_id": bet.round_id,
            "rotated": None,
        }

    async def find_bet(self, bet_id: str) -> Bet:
        bet = self.ledger.get_bet(bet_id)
        if bet is None and self.repo is not None:
            row = await self.repo.get_bet(bet_id)
            bet = Bet.from_row(row) if row else None
        if bet is None:
            raise BetNotFoundError()
        return bet

    async def get_outcome(self, bet_id: str) -> dict:
        bet = await self.find_bet(bet_id)
        return {
            "bet_id": bet.id,
            "status": bet.status,
            "game": bet.game,
            "outcome": bet.outcome,
            "multiplier": str(bet.multiplier) if bet.multiplier is not None else None,
            "payout": bet.payout,
            "profit": bet.profit,
        }

    async def history(self, context: str, limit: int = 20) -> list:
        if self.repo is None:
            return [b.public() for b in self.ledger.get_history(context, limit)]
        capped = max(0, min(int(limit), self.ledger.history_limit))
        rows = await self.repo.settled_bets(context, capped) if capped else []
        return [Bet.from_row(r).public() for r in rows]

    async def totals(self, context: str) -> dict:
        if self.repo is None:
            return self.ledger.totals(context).to_dict()
        return LedgerTotals.from_rows(await self.repo.bet_totals(context)).to_dict()

    async def balance(self, context: str) -> int:
        return await self.balances.balance(context)

    # =========================================================
    # Verification (stateless)
    # =========================================================
    def verify(self, server_seed: str, server_seed_hash: str, client_seed, nonce: int,
               game: str, round_id: Optional[str] = None) -> dict:
        ok, outcome = outcomes.verify(server_seed, server_seed_hash, client_seed, nonce,
                                      self.game(game), round_id)
        return {"commitment_valid": ok, "outcome": outcome.to_dict()}
