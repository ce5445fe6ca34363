# payouts.py
"""
FAIRPLAY — Payouts
Bet parameter validation and payout rules per game. Amounts are integer base
units; payouts round down to the unit.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from errors import InvalidGameConfigError, ValidationError
from outcomes import (
    CoinConfig, DiceConfig, SlotsConfig, CrashConfig, GameConfig,
    CoinOutcome, DiceOutcome, SlotsOutcome, CrashOutcome, Outcome,
)

_CENT = Decimal("0.01")


def _floor_cents(v: Decimal) -> Decimal:
    return v.quantize(_CENT, rounding=ROUND_DOWN)


# =========================================================
# Bet parameters
# =========================================================
class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class CoinParams(_Params):
    side: Literal["HEADS", "TAILS"]

    @field_validator("side", mode="before")
    @classmethod
    def _upper(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class DiceParams(_Params):
    direction: Literal["OVER", "UNDER", "EXACT"] = "EXACT"
    target: int

    @field_validator("direction", mode="before")
    @classmethod
    def _upper(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class SlotsParams(_Params):
    pass


class CrashParams(_Params):
    # auto cash-out multiplier
    cashout: Decimal = Field(ge=Decimal("1.01"), max_digits=12, decimal_places=2)


_PARAMS = {
    "coin": CoinParams,
    "dice": DiceParams,
    "slots": SlotsParams,
    "crash": CrashParams,
}


def parse_params(config: GameConfig, params: Optional[dict]) -> _Params:
    model = _PARAMS.get(getattr(config, "kind", None))
    if model is None:
        raise InvalidGameConfigError(f"unsupported game config {type(config).__name__}")
    try:
        parsed = model.model_validate(params or {})
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ())) or "params"
        raise ValidationError(f"Invalid {config.kind} bet: {loc}: {first.get('msg', 'invalid')}") from e

    if isinstance(parsed, DiceParams):
        if not config.low <= parsed.target <= config.high:
            raise ValidationError(f"Dice target must be within [{config.low}, {config.high}]")
        if _dice_winning_faces(config, parsed) == 0:
            raise ValidationError("Dice bet can never win")
    if isinstance(parsed, CrashParams) and isinstance(config, CrashConfig):
        if config.max_multiplier is not None and parsed.cashout > config.max_multiplier:
            raise ValidationError(f"Cashout above the {config.max_multiplier}x cap")
    return parsed


# =========================================================
# Multipliers
# =========================================================
def _dice_winning_faces(config: DiceConfig, p: DiceParams) -> int:
    if p.direction == "OVER":
        return max(0, config.high - p.target)
    if p.direction == "UNDER":
        return max(0, p.target - config.low)
    return 1


def _dice_wins(p: DiceParams, roll: int) -> bool:
    if p.direction == "OVER":
        return roll > p.target
    if p.direction == "UNDER":
        return roll < p.target
    return roll == p.target


def coin_multiplier(config: CoinConfig) -> Decimal:
    return _floor_cents(2 * (1 - Decimal(config.house_edge)))


def dice_multiplier(config: DiceConfig, p: DiceParams) -> Decimal:
    wins = _dice_winning_faces(config, p)
    if wins == 0:
        return Decimal(0)
    return _floor_cents((1 - Decimal(config.house_edge)) * config.faces / wins)


def slots_multiplier(config: SlotsConfig, symbols) -> Decimal:
    if not symbols:
        return Decimal(0)
    head = symbols[0]
    run = 1
    for s in symbols[1:]:
        if s != head:
            break
        run += 1
    runs = config.paytable.get(head) or {}
    # best paying entry not longer than the run
    eligible = [int(k) for k in runs if int(k) <= run]
    if not eligible:
        return Decimal(0)
    return Decimal(str(runs[max(eligible)]))


def quoted_multiplier(config: GameConfig, params: _Params) -> Optional[Decimal]:
    """Multiplier shown before the bet resolves (None where it depends on the outcome)."""
    if isinstance(config, CoinConfig):
        return coin_multiplier(config)
    if isinstance(config, DiceConfig):
        return dice_multiplier(config, params)
    if isinstance(config, CrashConfig):
        return params.cashout.quantize(_CENT)
    return None


# =========================================================
# Settlement
# =========================================================
@dataclass(frozen=True)
class Settlement:
    win: bool
    multiplier: Decimal
    payout: int


def settle(config: GameConfig, params: _Params, outcome: Outcome, stake: int) -> Settlement:
    if getattr(outcome, "kind", None) != getattr(config, "kind", None):
        raise InvalidGameConfigError(f"outcome {getattr(outcome, 'kind', '?')} does not match game {config.kind}")

    if isinstance(outcome, CoinOutcome):
        win = outcome.side == params.side
        mult = coin_multiplier(config)
    elif isinstance(outcome, DiceOutcome):
        win = _dice_wins(params, outcome.roll)
        mult = dice_multiplier(config, params)
    elif isinstance(outcome, SlotsOutcome):
        mult = slots_multiplier(config, outcome.symbols)
        win = mult > 0
    elif isinstance(outcome, CrashOutcome):
        win = outcome.crash_point >= params.cashout
        mult = params.cashout.quantize(_CENT)
    else:
        raise InvalidGameConfigError(f"unsupported outcome {type(outcome).__name__}")

    payout = int((Decimal(stake) * mult).to_integral_value(rounding=ROUND_DOWN)) if win else 0
    return Settlement(win=win, multiplier=mult if win else Decimal(0), payout=payout)
