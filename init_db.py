"""
FAIRPLAY — init_db.py
One-shot initializer for the SQLite database:
- Ensures schema (PRAGMA + tables + indexes)
- Optionally funds a demo context: python init_db.py <context> <amount>
"""

import asyncio
import logging
import os
import sys

import db as dbmod
from config import settings  # keeps DB path consistent with app

logger = logging.getLogger("fairplay.init_db")

# =========================================================
# Config
# =========================================================
DB_PATH = os.getenv("DB_PATH", settings.DB_PATH)


async def fund_context(repo: dbmod.Repository, context: str, amount: int) -> int:
    balance = await repo.adjust_balance(context, amount)
    logger.info("Funded %s with %d (balance %s)", context, amount, balance)
    return balance


# =========================================================
# Main
# =========================================================
async def main(argv=None):
    argv = list(sys.argv[1:] if argv is None else argv)
    logger.info("Using DB_PATH=%s", DB_PATH)
    conn = await dbmod.connect(DB_PATH)
    try:
        await dbmod.ensure_schema(conn)
        if len(argv) >= 2:
            await fund_context(dbmod.Repository(conn), argv[0], int(argv[1]))
    finally:
        await conn.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    asyncio.run(main())
