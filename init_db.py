"""
Matchday — init_db.py
One-shot initializer for the SQLite database:
- Ensures schema (PRAGMA + tables + indexes)
- Prints each league's window state and current visibility range
"""

import asyncio
import os
import sys
from typing import Optional

import db as dbmod
import windows
from config import settings  # keeps DB path consistent with app


# =========================================================
# Config
# =========================================================
DB_PATH = os.getenv("DB_PATH", settings.DB_PATH)


# =========================================================
# Helpers
# =========================================================
def describe_windows(now=None) -> list:
    now = now or windows.utcnow()
    lines = []
    for w in windows.LEAGUES.values():
        st = windows.window_status(w, now)
        rng_ = windows.visibility_range(w, now)
        lines.append(
            f"{w.display_name}: {'OPEN' if st.is_open else 'closed'}, "
            f"next transition in {st.minutes_until_next_transition}m, "
            f"range {rng_.start_date}..{rng_.end_date}"
        )
    return lines


# =========================================================
# Main
# =========================================================
async def main(db_path: Optional[str] = None) -> None:
    path = db_path or DB_PATH
    print(f"Using DB_PATH={path}")
    conn = await dbmod.connect(path)
    try:
        await dbmod.ensure_schema(conn)
        async with conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name") as cur:
            tables = [r[0] for r in await cur.fetchall()]
        print(f"Tables: {', '.join(tables)}")
    finally:
        await conn.close()
    for line in describe_windows():
        print(line)


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
