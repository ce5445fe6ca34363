"""
Tests for bet parameter parsing and payout rules.
"""

from decimal import Decimal

import pytest

from engine import DEFAULT_PAYTABLE
from errors import InvalidGameConfigError, ValidationError
from outcomes import (
    CoinConfig, CoinOutcome, CrashConfig, CrashOutcome, DiceConfig, DiceOutcome,
    SlotsConfig, SlotsOutcome,
)
from payouts import dice_multiplier, parse_params, settle, slots_multiplier

COIN = CoinConfig(house_edge=Decimal("0.01"))
DICE = DiceConfig(low=1, high=6, house_edge=Decimal("0.01"))
CRASH = CrashConfig(house_edge=Decimal("0.01"), max_multiplier=Decimal("1000"))
SLOTS = SlotsConfig(reels=(("CHERRY", "BELL", "SEVEN"),) * 3, paytable=DEFAULT_PAYTABLE)


def test_coin_win_and_loss():
    params = parse_params(COIN, {"side": "heads"})
    win = settle(COIN, params, CoinOutcome(side="HEADS"), 10)
    assert win.win and win.multiplier == Decimal("1.98") and win.payout == 19
    loss = settle(COIN, params, CoinOutcome(side="TAILS"), 10)
    assert not loss.win and loss.payout == 0


def test_coin_rejects_unknown_side():
    with pytest.raises(ValidationError):
        parse_params(COIN, {"side": "EDGE"})
    with pytest.raises(ValidationError):
        parse_params(COIN, {})


def test_dice_multipliers():
    assert dice_multiplier(DICE, parse_params(DICE, {"direction": "OVER", "target": 3})) == Decimal("1.98")
    assert dice_multiplier(DICE, parse_params(DICE, {"direction": "UNDER", "target": 2})) == Decimal("5.94")
    assert dice_multiplier(DICE, parse_params(DICE, {"target": 4})) == Decimal("5.94")


def test_dice_settlement():
    params = parse_params(DICE, {"direction": "over", "target": 3})
    assert settle(DICE, params, DiceOutcome(roll=4), 100).payout == 198
    assert settle(DICE, params, DiceOutcome(roll=3), 100).payout == 0
    exact = parse_params(DICE, {"direction": "EXACT", "target": 3})
    assert settle(DICE, exact, DiceOutcome(roll=3), 100).payout == 594


def test_dice_rejects_impossible_or_out_of_range_bets():
    with pytest.raises(ValidationError):
        parse_params(DICE, {"direction": "OVER", "target": 6})
    with pytest.raises(ValidationError):
        parse_params(DICE, {"direction": "UNDER", "target": 1})
    with pytest.raises(ValidationError):
        parse_params(DICE, {"direction": "EXACT", "target": 7})
    with pytest.raises(ValidationError):
        parse_params(DICE, {"direction": "SIDEWAYS", "target": 3})


def test_slots_paytable_uses_leading_run():
    assert slots_multiplier(SLOTS, ("SEVEN", "SEVEN", "SEVEN")) == Decimal(100)
    assert slots_multiplier(SLOTS, ("CHERRY", "CHERRY", "BELL")) == Decimal(1)
    assert slots_multiplier(SLOTS, ("CHERRY", "CHERRY", "CHERRY")) == Decimal(4)
    assert slots_multiplier(SLOTS, ("BELL", "SEVEN", "SEVEN")) == Decimal(0)


def test_slots_settlement():
    params = parse_params(SLOTS, {})
    out = SlotsOutcome(stops=(2, 2, 2), symbols=("SEVEN", "SEVEN", "SEVEN"))
    assert settle(SLOTS, params, out, 5).payout == 500
    with pytest.raises(ValidationError):
        parse_params(SLOTS, {"lines": 10})


def test_crash_cashout():
    params = parse_params(CRASH, {"cashout": "2.00"})
    assert settle(CRASH, params, CrashOutcome(crash_point=Decimal("1.99")), 50).payout == 0
    hit = settle(CRASH, params, CrashOutcome(crash_point=Decimal("2.00")), 50)
    assert hit.win and hit.payout == 100


def test_crash_cashout_bounds():
    with pytest.raises(ValidationError):
        parse_params(CRASH, {"cashout": "1.00"})
    with pytest.raises(ValidationError):
        parse_params(CRASH, {"cashout": "5000"})


def test_outcome_must_match_game():
    params = parse_params(COIN, {"side": "HEADS"})
    with pytest.raises(InvalidGameConfigError):
        settle(COIN, params, DiceOutcome(roll=1), 10)
