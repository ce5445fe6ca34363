# ledger.py
"""
FAIRPLAY — Bet ledger
Places bets against the current seed commitment, settles them into an
append-only history and keeps running totals per context.

Money invariant per context, over settled bets:
    initial_balance - sum(stake) + sum(payout) == final_balance
Refunded bets return their stake and count in neither sum.
"""

from __future__ import annotations

import logging
import secrets
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import payouts
from broadcast import NullBroadcaster
from errors import (
    AlreadySettledError, InvalidGameConfigError, NonceConflictError,
    PersistenceFailureError, StateConflictError, ValidationError,
)
from outcomes import GameConfig, Outcome, validate_config

logger = logging.getLogger("fairplay.ledger")

PENDING = "PENDING"
SETTLED = "SETTLED"
REFUNDED = "REFUNDED"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Bet:
    id: str
    context: str
    game: str
    params: dict
    stake: int
    server_seed_hash: str
    client_seed: str
    nonce: int
    created_at: str
    round_id: Optional[str] = None
    status: str = PENDING
    outcome: Optional[dict] = None
    multiplier: Optional[Decimal] = None
    payout: int = 0
    settled_at: Optional[str] = None

    @property
    def seed_context(self) -> str:
        return f"round:{self.round_id}" if self.round_id else self.context

    @property
    def profit(self) -> Optional[int]:
        if self.status == SETTLED:
            return self.payout - self.stake
        if self.status == REFUNDED:
            return 0
        return None

    def to_row(self) -> dict:
        return {
            "id": self.id, "context": self.context, "game": self.game, "params": self.params,
            "stake": self.stake, "round_id": self.round_id, "server_seed_hash": self.server_seed_hash,
            "client_seed": self.client_seed, "nonce": self.nonce, "status": self.status,
            "outcome": self.outcome,
            "multiplier": str(self.multiplier) if self.multiplier is not None else None,
            "payout": self.payout, "created_at": self.created_at, "settled_at": self.settled_at,
        }

    @classmethod
    def from_row(cls, row: dict) -> "Bet":
        return cls(
            id=row["id"], context=row["context"], game=row["game"], params=row.get("params") or {},
            stake=int(row["stake"]), server_seed_hash=row["server_seed_hash"],
            client_seed=row["client_seed"], nonce=int(row["nonce"]), created_at=row["created_at"],
            round_id=row.get("round_id"), status=row.get("status") or PENDING,
            outcome=row.get("outcome"),
            multiplier=Decimal(row["multiplier"]) if row.get("multiplier") else None,
            payout=int(row.get("payout") or 0), settled_at=row.get("settled_at"),
        )

    def public(self) -> dict:
        d = self.to_row()
        d["profit"] = self.profit
        return d


@dataclass
class LedgerTotals:
    bets: int = 0
    wins: int = 0
    losses: int = 0
    refunds: int = 0
    wagered: int = 0
    paid_out: int = 0
    games: Dict[str, int] = field(default_factory=dict)

    @property
    def net(self) -> int:
        """Player result: paid_out - wagered."""
        return self.paid_out - self.wagered

    @classmethod
    def from_rows(cls, rows) -> "LedgerTotals":
        """Build from repository aggregates: (status, game, count, wins, wagered, paid_out) rows."""
        t = cls()
        for status, game, count, wins, wagered, paid_out in rows:
            if status == REFUNDED:
                t.refunds += count
                continue
            t.bets += count
            t.wins += wins
            t.losses += count - wins
            t.wagered += wagered
            t.paid_out += paid_out
            t.games[game] = t.games.get(game, 0) + count
        return t

    def to_dict(self) -> dict:
        return {
            "bets": self.bets, "wins": self.wins, "losses": self.losses, "refunds": self.refunds,
            "wagered": self.wagered, "paid_out": self.paid_out, "net": self.net, "games": dict(self.games),
        }


class BetLedger:
    def __init__(self, seeds, balances, repo=None, broadcaster=None, *,
                 min_stake: int = 1, max_stake: int = 1_000_000_000, history_limit: int = 100,
                 cache_size: int = 1024):
        self.seeds = seeds
        self.balances = balances
        self.repo = repo
        self.broadcaster = broadcaster or NullBroadcaster()
        self.min_stake = int(min_stake)
        self.max_stake = int(max_stake)
        self.history_limit = int(history_limit)
        self.cache_size = int(cache_size)
        self._bets: Dict[str, Bet] = {}  # pending only
        self._finished: "OrderedDict[str, Bet]" = OrderedDict()
        self._configs: Dict[str, GameConfig] = {}
        self._history: Dict[str, List[Bet]] = {}
        self._totals: Dict[str, LedgerTotals] = {}
        self._unpaid: Dict[str, Bet] = {}

    # ---------- placement ----------
    def validate_stake(self, stake) -> int:
        if isinstance(stake, bool) or not isinstance(stake, int):
            raise ValidationError("stake must be an integer amount of base units")
        if stake < self.min_stake:
            raise ValidationError(f"Min stake is {self.min_stake}")
        if stake > self.max_stake:
            raise ValidationError(f"Max stake is {self.max_stake}")
        return stake

    @staticmethod
    def _check_expected(alloc, expect: Optional[dict]) -> None:
        if not expect:
            return
        for key in ("server_seed_hash", "client_seed", "nonce"):
            want = expect.get(key)
            if want is not None and str(want) != str(getattr(alloc, key)):
                raise StateConflictError(f"Invalid {key.replace('_', ' ')}: the commitment has moved on")

    async def place_bet(self, context: str, config: GameConfig, params: Optional[dict], stake: int, *,
                        round_id: Optional[str] = None, shared: bool = False,
                        expect: Optional[dict] = None) -> Bet:
        """
        Debit the stake and durably record a pending bet bound to the current
        commitment of the seed context. The nonce is consumed only once the
        bet is recorded; `shared` bets join the round's single outcome.

        `expect` may pin server_seed_hash / client_seed / nonce as the player
        saw them; a mismatch raises StateConflictError and nothing is charged.
        """
        validate_config(config)
        parsed = payouts.parse_params(config, params)
        stake = self.validate_stake(stake)
        seed_context = f"round:{round_id}" if round_id else context

        async def record(alloc) -> Bet:
            self._check_expected(alloc, expect)
            bet = Bet(
                id=secrets.token_hex(8),
                context=context,
                game=config.kind,
                params=parsed.model_dump(mode="json"),
                stake=stake,
                server_seed_hash=alloc.server_seed_hash,
                client_seed=alloc.client_seed,
                nonce=alloc.nonce,
                created_at=_now(),
                round_id=round_id,
            )
            await self.balances.debit(context, stake)
            if self.repo is not None:
                try:
                    await self.repo.append_bet(bet.to_row())
                except (PersistenceFailureError, NonceConflictError):
                    # bet not recorded: give the stake back
                    await self.balances.credit(context, stake)
                    raise
            return bet

        allocate = self.seeds.attach if shared else self.seeds.next_nonce
        bet = await allocate(seed_context, record)
        self._bets[bet.id] = bet
        self._configs[bet.id] = config
        self.broadcaster.publish({"type": "bet.placed", "bet_id": bet.id, "context": context,
                                  "game": bet.game, "stake": stake, "round_id": round_id})
        return bet

    # ---------- settlement ----------
    async def settle_bet(self, bet: Bet, outcome: Outcome, config: Optional[GameConfig] = None) -> Bet:
        current = self._lookup(bet.id) or bet
        if current.status != PENDING:
            raise AlreadySettledError(f"bet {bet.id} is {current.status}")
        config = config or self._configs.get(bet.id)
        if config is None:
            raise InvalidGameConfigError(f"no game config for bet {bet.id}")

        params = payouts.parse_params(config, current.params)
        result = payouts.settle(config, params, outcome, current.stake)
        settled = replace(
            current,
            status=SETTLED,
            outcome=outcome.to_dict(),
            multiplier=result.multiplier,
            payout=result.payout,
            settled_at=_now(),
        )

        if self.repo is not None:
            try:
                await self.repo.settle_bet(settled.to_row())
            except PersistenceFailureError:
                logger.error("[ledger] settlement of %s not recorded; refunding stake", bet.id)
                await self._refund(current, "settlement not recorded", strict=False)
                raise

        # the settlement is final from here on; a failed credit is owed, not lost
        self._finish(settled)
        try:
            if settled.payout:
                await self.balances.credit(settled.context, settled.payout)
        except Exception:
            self._unpaid[settled.id] = settled
            logger.exception("[ledger] payout of %d for %s not credited; kept for retry",
                             settled.payout, settled.id)
            raise
        finally:
            self._append(settled)
            await self.seeds.resolve(settled.seed_context)

        self.broadcaster.publish({"type": "bet.settled", "bet_id": settled.id, "context": settled.context,
                                  "game": settled.game, "outcome": settled.outcome,
                                  "payout": settled.payout, "profit": settled.profit})
        return settled

    async def pay_unpaid(self, context: Optional[str] = None) -> int:
        """Retry payouts whose credit failed after settlement. Returns how many were paid."""
        paid = 0
        for bet_id, bet in list(self._unpaid.items()):
            if context is not None and bet.context != context:
                continue
            await self.balances.credit(bet.context, bet.payout)
            del self._unpaid[bet_id]
            paid += 1
            logger.info("[ledger] owed payout of %d for %s credited", bet.payout, bet_id)
        return paid

    @property
    def unpaid(self) -> List[Bet]:
        return list(self._unpaid.values())

    async def refund_bet(self, bet: Bet, reason: str = "refund") -> Bet:
        current = self._lookup(bet.id) or bet
        if current.status != PENDING:
            raise AlreadySettledError(f"bet {bet.id} is {current.status}")
        return await self._refund(current, reason, strict=True)

    async def _refund(self, bet: Bet, reason: str, strict: bool) -> Bet:
        refunded = replace(bet, status=REFUNDED, payout=0, settled_at=_now())
        # stake goes back first: a lost refund record errs toward the player
        await self.balances.credit(bet.context, bet.stake)
        self._finish(refunded)
        totals = self._totals.setdefault(bet.context, LedgerTotals())
        totals.refunds += 1
        await self.seeds.resolve(bet.seed_context)
        if self.repo is not None:
            try:
                await self.repo.refund_bet(bet.id, refunded.settled_at)
            except PersistenceFailureError:
                logger.error("[ledger] refund of %s (%s) credited but not recorded", bet.id, reason)
                if strict:
                    raise
        logger.info("[ledger] refunded %s stake=%d (%s)", bet.id, bet.stake, reason)
        self.broadcaster.publish({"type": "bet.refunded", "bet_id": bet.id, "context": bet.context,
                                  "reason": reason})
        return refunded

    # ---------- bookkeeping ----------
    def _lookup(self, bet_id: str) -> Optional[Bet]:
        return self._bets.get(bet_id) or self._finished.get(bet_id)

    def _finish(self, bet: Bet) -> None:
        self._bets.pop(bet.id, None)
        self._configs.pop(bet.id, None)
        self._finished[bet.id] = bet
        # with a repository the finished bet is still readable from storage
        if self.repo is not None:
            while len(self._finished) > self.cache_size:
                self._finished.popitem(last=False)

    def _append(self, bet: Bet) -> None:
        history = self._history.setdefault(bet.context, [])
        history.append(bet)
        del history[:max(0, len(history) - self.history_limit)]
        totals = self._totals.setdefault(bet.context, LedgerTotals())
        totals.bets += 1
        totals.wagered += bet.stake
        totals.paid_out += bet.payout
        if bet.payout > 0:
            totals.wins += 1
        else:
            totals.losses += 1
        totals.games[bet.game] = totals.games.get(bet.game, 0) + 1

    # ---------- reads ----------
    def get_bet(self, bet_id: str) -> Optional[Bet]:
        return self._lookup(bet_id)

    def get_history(self, context: str, limit: int = 20) -> List[Bet]:
        """Settled bets, most recent first, capped at history_limit."""
        limit = max(0, min(int(limit), self.history_limit))
        entries = self._history.get(context, [])
        return list(reversed(entries[-limit:])) if limit else []

    def totals(self, context: str) -> LedgerTotals:
        t = self._totals.get(context) or LedgerTotals()
        return replace(t, games=dict(t.games))

    def pending(self, round_id: Optional[str] = None) -> List[Bet]:
        return [b for b in self._bets.values() if round_id is None or b.round_id == round_id]
