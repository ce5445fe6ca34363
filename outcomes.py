# outcomes.py
"""
FAIRPLAY — Outcome derivation
Pure mapping (server_seed, client_seed, nonce, round_id, game config) -> outcome.

Canonical message (field order and separators are part of the public
verification contract and must never change):

    message = f"{client_seed}:{nonce}:{round_id or ''}:{cursor}"
    block   = HMAC-SHA256(key=server_seed, msg=message)

cursor starts at 0 and increments each time another 32 bytes are needed,
so the bytes of block 0, block 1, ... form one deterministic stream.

Mappings:
  coin   first hex digit of block 0; even -> HEADS, odd -> TAILS
  dice   4-byte big-endian words, reject >= floor(2^32 / n) * n, low + word % n
  slots  one dice-style draw per reel (reel order) -> stop index
  crash  r = first 13 hex digits of block 0 (52 bits)
         crash = floor(100 * (1 - edge) * 2^52 / (2^52 - r)) / 100, min 1.00
"""

from __future__ import annotations

import hmac
import hashlib
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import ClassVar, Iterator, Mapping, Optional, Tuple, Union

from commitment import verify_commitment
from errors import InvalidGameConfigError

HEADS = "HEADS"
TAILS = "TAILS"

_WORD_SPACE = 1 << 32
_CRASH_SPACE = 1 << 52
_CENT = Decimal("0.01")


def _as_decimal(v, name: str) -> Decimal:
    try:
        return v if isinstance(v, Decimal) else Decimal(str(v))
    except (InvalidOperation, ValueError) as e:
        raise InvalidGameConfigError(f"{name} must be numeric") from e


# =========================================================
# Game configs (tagged variants)
# =========================================================
@dataclass(frozen=True)
class CoinConfig:
    kind: ClassVar[str] = "coin"
    house_edge: Decimal = Decimal("0.01")


@dataclass(frozen=True)
class DiceConfig:
    kind: ClassVar[str] = "dice"
    low: int = 1
    high: int = 6
    house_edge: Decimal = Decimal("0.01")

    @property
    def faces(self) -> int:
        return self.high - self.low + 1


@dataclass(frozen=True)
class SlotsConfig:
    kind: ClassVar[str] = "slots"
    reels: Tuple[Tuple[str, ...], ...] = ()
    # symbol -> {leading run length -> multiplier}
    paytable: Mapping[str, Mapping[int, Decimal]] = field(default_factory=dict)


@dataclass(frozen=True)
class CrashConfig:
    kind: ClassVar[str] = "crash"
    house_edge: Decimal = Decimal("0.01")
    max_multiplier: Optional[Decimal] = None


GameConfig = Union[CoinConfig, DiceConfig, SlotsConfig, CrashConfig]


def _check_edge(edge) -> None:
    edge = _as_decimal(edge, "house_edge")
    if not Decimal(0) <= edge < Decimal(1):
        raise InvalidGameConfigError("house_edge must be in [0, 1)")


def validate_config(config: GameConfig) -> GameConfig:
    """Raise InvalidGameConfigError if the config is outside the supported range."""
    if isinstance(config, CoinConfig):
        _check_edge(config.house_edge)
    elif isinstance(config, DiceConfig):
        if not isinstance(config.low, int) or not isinstance(config.high, int):
            raise InvalidGameConfigError("dice bounds must be integers")
        if config.faces <= 0:
            raise InvalidGameConfigError(f"non-positive die range [{config.low}, {config.high}]")
        if config.faces > _WORD_SPACE:
            raise InvalidGameConfigError("die range too wide")
        _check_edge(config.house_edge)
    elif isinstance(config, SlotsConfig):
        if not config.reels:
            raise InvalidGameConfigError("slots need at least one reel")
        for i, reel in enumerate(config.reels):
            if len(reel) == 0:
                raise InvalidGameConfigError(f"reel {i} has zero length")
        for symbol, runs in config.paytable.items():
            for run, mult in runs.items():
                if not 1 <= int(run) <= len(config.reels):
                    raise InvalidGameConfigError(f"paytable run {run} for {symbol} out of range")
                if _as_decimal(mult, "multiplier") < 0:
                    raise InvalidGameConfigError(f"negative multiplier for {symbol}")
    elif isinstance(config, CrashConfig):
        _check_edge(config.house_edge)
        if config.max_multiplier is not None and _as_decimal(config.max_multiplier, "max_multiplier") < 1:
            raise InvalidGameConfigError("max_multiplier must be >= 1.00")
    else:
        raise InvalidGameConfigError(f"unsupported game config {type(config).__name__}")
    return config


# =========================================================
# Outcomes
# =========================================================
@dataclass(frozen=True)
class CoinOutcome:
    kind: ClassVar[str] = "coin"
    side: str

    def to_dict(self) -> dict:
        return {"kind": self.kind, "side": self.side}


@dataclass(frozen=True)
class DiceOutcome:
    kind: ClassVar[str] = "dice"
    roll: int

    def to_dict(self) -> dict:
        return {"kind": self.kind, "roll": self.roll}


@dataclass(frozen=True)
class SlotsOutcome:
    kind: ClassVar[str] = "slots"
    stops: Tuple[int, ...]
    symbols: Tuple[str, ...]

    def to_dict(self) -> dict:
        return {"kind": self.kind, "stops": list(self.stops), "symbols": list(self.symbols)}


@dataclass(frozen=True)
class CrashOutcome:
    kind: ClassVar[str] = "crash"
    crash_point: Decimal

    def to_dict(self) -> dict:
        return {"kind": self.kind, "crash_point": str(self.crash_point)}


Outcome = Union[CoinOutcome, DiceOutcome, SlotsOutcome, CrashOutcome]


# =========================================================
# Byte stream
# =========================================================
def canonical_message(client_seed: str, nonce: int, round_id: Optional[str] = None, cursor: int = 0) -> str:
    return f"{client_seed}:{int(nonce)}:{round_id or ''}:{int(cursor)}"


def hmac_block(server_seed: str, client_seed: str, nonce: int,
               round_id: Optional[str] = None, cursor: int = 0) -> bytes:
    msg = canonical_message(str(client_seed), nonce, round_id, cursor)
    return hmac.new(server_seed.encode(), msg.encode(), hashlib.sha256).digest()


def byte_stream(server_seed: str, client_seed: str, nonce: int,
                round_id: Optional[str] = None) -> Iterator[int]:
    cursor = 0
    while True:
        yield from hmac_block(server_seed, client_seed, nonce, round_id, cursor)
        cursor += 1


def uniform_int(stream: Iterator[int], n: int) -> int:
    """Unbiased integer in [0, n) by reject-and-resample over 32-bit words."""
    limit = (_WORD_SPACE // n) * n
    while True:
        word = int.from_bytes(bytes(next(stream) for _ in range(4)), "big")
        if word < limit:
            return word % n


def crash_point_from_int(r: int, house_edge, max_multiplier=None) -> Decimal:
    edge = _as_decimal(house_edge, "house_edge")
    hundredths = (Decimal(100) * (1 - edge) * _CRASH_SPACE) // (_CRASH_SPACE - r)
    crash = (max(hundredths, Decimal(100)) / Decimal(100)).quantize(_CENT)
    if max_multiplier is not None:
        crash = min(crash, _as_decimal(max_multiplier, "max_multiplier").quantize(_CENT))
    return crash


# =========================================================
# Derivation
# =========================================================
def derive(server_seed: str, client_seed, nonce: int, config: GameConfig,
           round_id: Optional[str] = None) -> Outcome:
    validate_config(config)
    client_seed = str(client_seed)

    if isinstance(config, CoinConfig):
        first = hmac_block(server_seed, client_seed, nonce, round_id)[0] >> 4
        return CoinOutcome(side=HEADS if first % 2 == 0 else TAILS)

    if isinstance(config, DiceConfig):
        stream = byte_stream(server_seed, client_seed, nonce, round_id)
        return DiceOutcome(roll=config.low + uniform_int(stream, config.faces))

    if isinstance(config, SlotsConfig):
        stream = byte_stream(server_seed, client_seed, nonce, round_id)
        stops = tuple(uniform_int(stream, len(reel)) for reel in config.reels)
        symbols = tuple(reel[stop] for reel, stop in zip(config.reels, stops))
        return SlotsOutcome(stops=stops, symbols=symbols)

    if isinstance(config, CrashConfig):
        r = int(hmac_block(server_seed, client_seed, nonce, round_id).hex()[:13], 16)
        return CrashOutcome(crash_point=crash_point_from_int(r, config.house_edge, config.max_multiplier))

    raise InvalidGameConfigError(f"unsupported game config {type(config).__name__}")


def verify(server_seed: str, server_seed_hash: str, client_seed, nonce: int,
           config: GameConfig, round_id: Optional[str] = None) -> Tuple[bool, Outcome]:
    """
    Player-side recomputation after reveal.
    Returns (commitment matches, outcome derived from the revealed seed).
    """
    return verify_commitment(server_seed, server_seed_hash), derive(server_seed, client_seed, nonce, config, round_id)
