from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone


def maintenance_db(db_path: str, stale_after_days: int = 30) -> int:
    """Mark jobs not seen for ``stale_after_days`` inactive, then VACUUM.

    Returns the number of rows flagged. Rows are never deleted.
    """
    cutoff = (
        datetime.now(timezone.utc).replace(microsecond=0) - timedelta(days=int(stale_after_days))
    ).isoformat()
    conn = sqlite3.connect(db_path)
    try:
        cur = conn.cursor()
        cur.execute(
            "UPDATE jobs SET is_active=0 WHERE is_active=1 AND last_checked_at < ?",
            (cutoff,),
        )
        flagged = cur.rowcount

        # VACUUM must run outside any active transaction.
        conn.commit()
        cur.execute("VACUUM")
    finally:
        conn.close()
    return flagged
