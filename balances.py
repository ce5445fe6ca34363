# balances.py
"""
FAIRPLAY — Balances
Balance collaborator contract (debit / credit in base units) with an
in-memory implementation and one backed by the SQLite repository.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Protocol

from errors import InsufficientFundsError, ValidationError


class BalanceService(Protocol):
    async def debit(self, context: str, amount: int) -> int: ...
    async def credit(self, context: str, amount: int) -> int: ...
    async def balance(self, context: str) -> int: ...


def _check_amount(amount: int) -> int:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
        raise ValidationError("amount must be a non-negative integer")
    return amount


class MemoryBalances:
    def __init__(self, initial: Optional[Dict[str, int]] = None, starting_balance: int = 0):
        self._balances: Dict[str, int] = dict(initial or {})
        self._starting = int(starting_balance)
        self._lock = asyncio.Lock()

    async def balance(self, context: str) -> int:
        return self._balances.get(context, self._starting)

    async def debit(self, context: str, amount: int) -> int:
        _check_amount(amount)
        async with self._lock:
            current = self._balances.get(context, self._starting)
            if current < amount:
                raise InsufficientFundsError(f"balance {current} < stake {amount}")
            self._balances[context] = current - amount
            return self._balances[context]

    async def credit(self, context: str, amount: int) -> int:
        _check_amount(amount)
        async with self._lock:
            self._balances[context] = self._balances.get(context, self._starting) + amount
            return self._balances[context]


class SqliteBalances:
    """Balances persisted in the `balances` table; contexts start at starting_balance."""

    def __init__(self, repo, starting_balance: int = 0):
        self.repo = repo
        self._starting = int(starting_balance)
        self._lock = asyncio.Lock()

    async def _ensure(self, context: str) -> None:
        if not self._starting:
            return
        async with self._lock:
            if await self.repo.get_balance(context) is None:
                await self.repo.adjust_balance(context, self._starting)

    async def balance(self, context: str) -> int:
        current = await self.repo.get_balance(context)
        return self._starting if current is None else current

    async def debit(self, context: str, amount: int) -> int:
        _check_amount(amount)
        await self._ensure(context)
        new = await self.repo.adjust_balance(context, -amount)
        if new is None:
            raise InsufficientFundsError(f"balance below stake {amount}")
        return new

    async def credit(self, context: str, amount: int) -> int:
        _check_amount(amount)
        await self._ensure(context)
        return await self.repo.adjust_balance(context, amount)
