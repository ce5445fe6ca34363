# seeds.py
"""
FAIRPLAY — Seed store
Owns the server seed / client seed / nonce triple of every context and the
commit -> bet -> reveal ordering around it.

Per context:  UNCOMMITTED -> COMMITTED -> (bets, nonce++) -> REVEALED -> UNCOMMITTED

Every mutation of a context runs under that context's asyncio.Lock; contexts
never share state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from commitment import generate_client_seed, generate_server_seed, hash_seed
from errors import (
    AlreadyCommittedError, NotCommittedError, NothingToRevealError,
    RoundInProgressError, StateConflictError, ValidationError,
)

logger = logging.getLogger("fairplay.seeds")

UNCOMMITTED = "UNCOMMITTED"
COMMITTED = "COMMITTED"

MAX_CLIENT_SEED_LEN = 64

# seed contexts owned by the round scheduler; never reachable from player calls
ROUND_PREFIX = "round:"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SeedPair:
    server_seed: str = field(repr=False)
    server_seed_hash: str
    client_seed: str
    nonce: int = 0
    created_at: str = field(default_factory=_now)


@dataclass(frozen=True)
class NonceAllocation:
    server_seed_hash: str
    client_seed: str
    nonce: int


@dataclass(frozen=True)
class RevealedSeed:
    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce: int  # nonces 0..nonce-1 were consumed under this seed


class _Context:
    __slots__ = ("lock", "pair", "pending", "state", "client_seed", "loaded", "sealed")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.pair: Optional[SeedPair] = None
        self.pending = 0
        self.state = UNCOMMITTED
        self.client_seed: Optional[str] = None
        self.loaded = False
        self.sealed = False


def is_round_context(context: str) -> bool:
    return str(context).startswith(ROUND_PREFIX)


def normalize_client_seed(seed) -> str:
    if isinstance(seed, bool) or not isinstance(seed, (str, int)):
        raise ValidationError("client seed must be a string or an integer")
    s = str(seed).strip()
    if not s or len(s) > MAX_CLIENT_SEED_LEN:
        raise ValidationError(f"client seed must be 1..{MAX_CLIENT_SEED_LEN} characters")
    if ":" in s or not s.isprintable():
        raise ValidationError("client seed must be printable and must not contain ':'")
    return s


class SeedStore:
    def __init__(self, repo=None):
        self.repo = repo
        self._contexts: Dict[str, _Context] = {}

    def _ctx(self, context: str) -> _Context:
        st = self._contexts.get(context)
        if st is None:
            st = self._contexts[context] = _Context()
        return st

    def lock(self, context: str) -> asyncio.Lock:
        return self._ctx(context).lock

    async def _load(self, context: str, st: _Context) -> None:
        """Restore the active pair after a restart (lock held)."""
        if st.loaded:
            return
        st.loaded = True
        if self.repo is None:
            return
        row = await self.repo.active_seed_pair(context)
        if row:
            last = await self.repo.last_nonce(row["server_seed_hash"])
            nonce = max(int(row["nonce"] or 0), (last + 1) if last is not None else 0)
            st.pair = SeedPair(
                server_seed=row["server_seed"],
                server_seed_hash=row["server_seed_hash"],
                client_seed=row["client_seed"],
                nonce=nonce,
                created_at=row["created_at"],
            )
            st.state = COMMITTED
            st.client_seed = row["client_seed"]
            st.sealed = is_round_context(context)
            logger.info("[seeds] restored %s at nonce %d", context, nonce)
        else:
            st.client_seed = await self.repo.last_client_seed(context)

    # ---------- commitment ----------
    async def commit(self, context: str, sealed: bool = False) -> str:
        """
        Commit a fresh server seed and return its hash. A `sealed` pair (round
        seeds) can only be revealed with `reveal(..., unseal=True)`.
        """
        st = self._ctx(context)
        async with st.lock:
            await self._load(context, st)
            if st.state == COMMITTED and st.pair is not None:
                if st.pending:
                    raise AlreadyCommittedError()
                return st.pair.server_seed_hash

            server_seed = generate_server_seed()
            pair = SeedPair(
                server_seed=server_seed,
                server_seed_hash=hash_seed(server_seed),
                client_seed=st.client_seed or generate_client_seed(),
            )
            if self.repo is not None:
                await self.repo.save_seed_pair(context, pair)
            st.pair, st.state, st.client_seed = pair, COMMITTED, pair.client_seed
            st.sealed = sealed
            logger.debug("[seeds] %s committed %s", context, pair.server_seed_hash)
            return pair.server_seed_hash

    # ---------- client seed ----------
    async def get_client_seed(self, context: str) -> str:
        st = self._ctx(context)
        async with st.lock:
            await self._load(context, st)
            if st.client_seed is None:
                st.client_seed = generate_client_seed()
            return st.client_seed

    async def set_client_seed(self, context: str, seed) -> str:
        seed = normalize_client_seed(seed)
        st = self._ctx(context)
        async with st.lock:
            await self._load(context, st)
            if st.pending:
                raise RoundInProgressError()
            if st.sealed:
                raise RoundInProgressError("client seed is fixed for this round")
            if st.pair is not None:
                st.pair.client_seed = seed
                if self.repo is not None:
                    await self.repo.save_seed_pair(context, st.pair)
            st.client_seed = seed
            return seed

    # ---------- nonces ----------
    async def _allocate(self, context: str, record, advance: bool):
        st = self._ctx(context)
        async with st.lock:
            await self._load(context, st)
            if st.state != COMMITTED or st.pair is None:
                raise NotCommittedError()
            alloc = NonceAllocation(st.pair.server_seed_hash, st.pair.client_seed, st.pair.nonce)
            result = await record(alloc) if record is not None else alloc
            # durably recorded (or no record requested): only now consume the nonce
            if advance:
                st.pair.nonce += 1
            st.pending += 1
            return result

    async def next_nonce(self, context: str,
                         record: Optional[Callable[[NonceAllocation], Awaitable]] = None):
        """
        Capture (hash, client seed, nonce) and consume the nonce exactly once.
        `record` is awaited under the context lock before the nonce advances;
        if it raises the nonce stays unused. Returns record's result, or the
        allocation when no record is given. Marks one bet pending.
        """
        return await self._allocate(context, record, advance=True)

    async def attach(self, context: str,
                     record: Optional[Callable[[NonceAllocation], Awaitable]] = None):
        """Like next_nonce but joins the current nonce (shared round outcome)."""
        return await self._allocate(context, record, advance=False)

    async def resolve(self, context: str) -> None:
        st = self._ctx(context)
        async with st.lock:
            st.pending = max(0, st.pending - 1)

    async def reconcile(self, context: str) -> None:
        """Re-read the nonce from persisted bets after a collision."""
        st = self._ctx(context)
        async with st.lock:
            if self.repo is None or st.pair is None:
                return
            last = await self.repo.last_nonce(st.pair.server_seed_hash)
            if last is not None and last + 1 > st.pair.nonce:
                logger.warning("[seeds] %s nonce %d behind storage, moving to %d",
                               context, st.pair.nonce, last + 1)
                st.pair.nonce = last + 1

    async def server_seed(self, context: str, server_seed_hash: str) -> str:
        st = self._ctx(context)
        async with st.lock:
            await self._load(context, st)
            if st.pair is None or st.pair.server_seed_hash != server_seed_hash:
                raise StateConflictError("server seed for this bet is no longer active")
            return st.pair.server_seed

    # ---------- reveal ----------
    async def reveal(self, context: str, unseal: bool = False) -> RevealedSeed:
        st = self._ctx(context)
        async with st.lock:
            await self._load(context, st)
            if st.state != COMMITTED or st.pair is None:
                raise NothingToRevealError()
            if st.sealed and not unseal:
                raise NothingToRevealError("seed is sealed until its round ends")
            if st.pending:
                raise NothingToRevealError(f"{st.pending} bet(s) still pending")
            pair = st.pair
            if self.repo is not None:
                await self.repo.mark_seed_revealed(pair.server_seed_hash, _now())
            # revealed; the next commit starts a fresh pair
            st.pair = None
            st.state = UNCOMMITTED
            st.sealed = False
            return RevealedSeed(pair.server_seed, pair.server_seed_hash, pair.client_seed, pair.nonce)

    def forget(self, context: str) -> bool:
        """Drop an idle context (finished rounds); state is reloaded from the repo if used again."""
        st = self._contexts.get(context)
        if st is None or st.lock.locked() or st.pending or st.state != UNCOMMITTED:
            return False
        del self._contexts[context]
        return True

    async def status(self, context: str) -> dict:
        st = self._ctx(context)
        async with st.lock:
            await self._load(context, st)
            return {
                "state": st.state,
                "server_seed_hash": st.pair.server_seed_hash if st.pair else None,
                "client_seed": st.pair.client_seed if st.pair else st.client_seed,
                "nonce": st.pair.nonce if st.pair else 0,
                "pending": st.pending,
            }
