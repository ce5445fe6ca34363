import sys
from pathlib import Path

# ── Ensure project root is on sys.path ──
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import db as dbmod  # noqa: E402


async def open_repo(path):
    """Fresh SQLite file + Repository; caller closes repo.conn."""
    conn = await dbmod.connect(str(path))
    return dbmod.Repository(conn)
