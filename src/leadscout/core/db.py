from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .models import LIST_FIELDS, JobRecord, NgKeyword, RunLogEntry
from .utils import now_utc_iso

SCHEMA_SQL = """

CREATE TABLE IF NOT EXISTS jobs (
  id TEXT PRIMARY KEY,
  source TEXT NOT NULL CHECK(source IN ('mynavi', 'doda', 'rikunabi')),
  source_job_id TEXT NOT NULL,
  source_url TEXT NOT NULL,
  company_name TEXT,
  company_url TEXT,
  company_logo TEXT,
  title TEXT NOT NULL,
  employment_type TEXT,
  industry TEXT,
  description TEXT,
  requirements TEXT,
  benefits TEXT,
  work_hours TEXT,
  salary_min INTEGER,
  salary_max INTEGER,
  salary_text TEXT,
  locations TEXT,
  location_summary TEXT,
  labels TEXT,
  keywords TEXT,
  date_posted TEXT NOT NULL,
  date_expires TEXT,
  date_updated TEXT,
  scraped_at TEXT NOT NULL,
  last_checked_at TEXT NOT NULL,
  is_active INTEGER NOT NULL DEFAULT 1,
  ng_keyword_matches TEXT,
  budget_rank TEXT CHECK(budget_rank IN ('A', 'B', 'C') OR budget_rank IS NULL),
  rank_confidence REAL,
  UNIQUE(source, source_job_id)
);

CREATE TABLE IF NOT EXISTS scraping_logs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  scrape_type TEXT NOT NULL,
  source TEXT NOT NULL,
  target_url TEXT,
  status TEXT NOT NULL CHECK(status IN ('success', 'partial', 'failure')),
  jobs_found INTEGER NOT NULL DEFAULT 0,
  new_jobs INTEGER NOT NULL DEFAULT 0,
  updated_jobs INTEGER NOT NULL DEFAULT 0,
  errors INTEGER NOT NULL DEFAULT 0,
  error_message TEXT,
  duration_ms INTEGER,
  scraped_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ng_keywords (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  keyword TEXT NOT NULL UNIQUE,
  category TEXT CHECK(category IN ('company', 'title', 'description') OR category IS NULL),
  is_regex INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_source ON jobs(source);
CREATE INDEX IF NOT EXISTS idx_jobs_company ON jobs(company_name);
CREATE INDEX IF NOT EXISTS idx_jobs_active ON jobs(is_active);
CREATE INDEX IF NOT EXISTS idx_jobs_scraped ON jobs(scraped_at DESC);
CREATE INDEX IF NOT EXISTS idx_jobs_checked ON jobs(last_checked_at);
CREATE INDEX IF NOT EXISTS idx_logs_source ON scraping_logs(source);
CREATE INDEX IF NOT EXISTS idx_logs_date ON scraping_logs(scraped_at DESC);
"""

DEFAULT_SETTINGS = {
    "rate_limit_ms": "2500",
    "max_concurrent": "1",
}

JOB_COLUMNS = (
    "id",
    "source",
    "source_job_id",
    "source_url",
    "company_name",
    "company_url",
    "company_logo",
    "title",
    "employment_type",
    "industry",
    "description",
    "requirements",
    "benefits",
    "work_hours",
    "salary_min",
    "salary_max",
    "salary_text",
    "locations",
    "location_summary",
    "labels",
    "keywords",
    "date_posted",
    "date_expires",
    "date_updated",
    "scraped_at",
    "last_checked_at",
    "is_active",
    "ng_keyword_matches",
    "budget_rank",
    "rank_confidence",
)

# Columns an update is allowed to write.
UPDATABLE_COLUMNS = set(JOB_COLUMNS) - {"id", "source", "source_job_id", "scraped_at"}

LOG_COLUMNS = (
    "id",
    "scrape_type",
    "source",
    "target_url",
    "status",
    "jobs_found",
    "new_jobs",
    "updated_jobs",
    "touched_jobs",
    "errors",
    "error_message",
    "stop_reason",
    "duration_ms",
    "scraped_at",
)


def _loads_json_list(raw: Any) -> List[str]:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(x) for x in data] if isinstance(data, list) else []


def _column_value(name: str, value: Any) -> Any:
    if name in LIST_FIELDS or name == "ng_keyword_matches":
        return json.dumps(list(value or []), ensure_ascii=False)
    if name == "is_active":
        return 1 if value else 0
    if name == "budget_rank":
        return value or None
    if name in ("salary_min", "salary_max"):
        return None if value is None else int(value)
    if value is None:
        return None
    return value


class Database:
    """SQLite store shared by all source tasks.

    The connection is opened once and guarded by a re-entrant lock, so every
    public method is safe to call from worker threads. ``transaction()`` holds
    the lock for a read-modify-write sequence and commits once at the end.
    """

    def __init__(self, path: str) -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._lock = threading.RLock()
        self._tx_depth = 0
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA foreign_keys=ON;")
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()
        self._ensure_column("scraping_logs", "touched_jobs", "INTEGER NOT NULL DEFAULT 0")
        self._ensure_column("scraping_logs", "stop_reason", "TEXT")
        self._ensure_column("jobs", "budget_rank", "TEXT")
        self._ensure_column("jobs", "rank_confidence", "REAL")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_rank ON jobs(budget_rank)")
        for key, value in DEFAULT_SETTINGS.items():
            self.conn.execute(
                "INSERT OR IGNORE INTO settings(key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, now_utc_iso()),
            )
        self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _columns(self, table: str) -> set[str]:
        cur = self.conn.execute(f"PRAGMA table_info({table})")
        return {row[1] for row in cur.fetchall()}

    def _ensure_column(self, table: str, column: str, col_type: str) -> None:
        if column in self._columns(table):
            return
        self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")
        self.conn.commit()

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        with self._lock:
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self.conn.rollback()
                raise
            else:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self.conn.commit()

    # --- jobs ---
    def _row_to_job(self, row: sqlite3.Row) -> JobRecord:
        return JobRecord(
            id=row["id"],
            source=row["source"],
            source_record_id=row["source_job_id"],
            source_url=row["source_url"],
            company_name=row["company_name"] or "",
            company_url=row["company_url"] or "",
            company_logo=row["company_logo"] or "",
            title=row["title"] or "",
            employment_type=row["employment_type"] or "",
            industry=row["industry"] or "",
            description=row["description"] or "",
            requirements=row["requirements"] or "",
            benefits=row["benefits"] or "",
            work_hours=row["work_hours"] or "",
            salary_min=row["salary_min"],
            salary_max=row["salary_max"],
            salary_text=row["salary_text"] or "",
            locations=_loads_json_list(row["locations"]),
            location_summary=row["location_summary"] or "",
            labels=_loads_json_list(row["labels"]),
            keywords=_loads_json_list(row["keywords"]),
            date_posted=row["date_posted"] or "",
            date_expires=row["date_expires"] or "",
            date_updated=row["date_updated"] or "",
            scraped_at=row["scraped_at"],
            last_checked_at=row["last_checked_at"],
            is_active=bool(row["is_active"]),
            ng_keyword_matches=_loads_json_list(row["ng_keyword_matches"]),
            budget_rank=row["budget_rank"] or "",
            rank_confidence=row["rank_confidence"],
        )

    def get_job(self, record_id: str) -> Optional[JobRecord]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM jobs WHERE id=?", (record_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def insert_job(self, job: JobRecord) -> None:
        values = {
            "id": job.id or job.record_id,
            "source": job.source,
            "source_job_id": job.source_record_id,
        }
        for col in JOB_COLUMNS:
            if col in values:
                continue
            values[col] = _column_value(col, getattr(job, col))
        placeholders = ",".join("?" for _ in JOB_COLUMNS)
        with self._lock:
            self.conn.execute(
                f"INSERT INTO jobs({','.join(JOB_COLUMNS)}) VALUES ({placeholders})",
                tuple(values[c] for c in JOB_COLUMNS),
            )
            self._commit()

    def update_job_fields(self, record_id: str, fields: Dict[str, Any]) -> None:
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Not updatable: {sorted(unknown)}")
        if not fields:
            return
        cols = sorted(fields)
        assignments = []
        params: List[Any] = []
        for col in cols:
            if col == "last_checked_at":
                assignments.append("last_checked_at=MAX(last_checked_at, ?)")
            else:
                assignments.append(f"{col}=?")
            params.append(_column_value(col, fields[col]))
        params.append(record_id)
        with self._lock:
            self.conn.execute(f"UPDATE jobs SET {', '.join(assignments)} WHERE id=?", params)
            self._commit()

    def touch_job(self, record_id: str, checked_at: str) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE jobs SET last_checked_at=MAX(last_checked_at, ?) WHERE id=?",
                (checked_at, record_id),
            )
            self._commit()

    def fetch_jobs(
        self,
        *,
        source: str = "",
        active_only: bool = False,
        limit: int = 100,
    ) -> List[JobRecord]:
        sql = "SELECT * FROM jobs WHERE 1=1"
        params: List[Any] = []
        if source:
            sql += " AND source=?"
            params.append(source)
        if active_only:
            sql += " AND is_active=1"
        sql += " ORDER BY scraped_at DESC LIMIT ?"
        params.append(int(limit))
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_job(r) for r in rows]

    def mark_inactive_before(self, checked_before: str) -> int:
        """Flag rows not observed since ``checked_before``. Rows are kept."""
        with self._lock:
            cur = self.conn.execute(
                "UPDATE jobs SET is_active=0 WHERE is_active=1 AND last_checked_at < ?",
                (checked_before,),
            )
            self._commit()
            return cur.rowcount

    def job_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0]
            active = self.conn.execute("SELECT COUNT(*) FROM jobs WHERE is_active=1").fetchone()[0]
            flagged = self.conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE ng_keyword_matches IS NOT NULL AND ng_keyword_matches != '[]'"
            ).fetchone()[0]
            by_source = {
                r[0]: r[1]
                for r in self.conn.execute("SELECT source, COUNT(*) FROM jobs GROUP BY source")
            }
            by_rank = {
                r[0]: r[1]
                for r in self.conn.execute(
                    "SELECT budget_rank, COUNT(*) FROM jobs WHERE budget_rank IS NOT NULL GROUP BY budget_rank"
                )
            }
        return {
            "total": total,
            "active": active,
            "ng_flagged": flagged,
            "by_source": by_source,
            "by_rank": by_rank,
        }

    # --- scraping logs ---
    def append_run_log(self, entry: RunLogEntry) -> int:
        with self._lock:
            cur = self.conn.execute(
                """INSERT INTO scraping_logs(
                    scrape_type,source,target_url,status,jobs_found,new_jobs,updated_jobs,touched_jobs,
                    errors,error_message,stop_reason,duration_ms,scraped_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                (
                    entry.scrape_type,
                    entry.source,
                    entry.target_url,
                    entry.status,
                    int(entry.jobs_found),
                    int(entry.new_jobs),
                    int(entry.updated_jobs),
                    int(entry.touched_jobs),
                    int(entry.errors),
                    entry.error_message,
                    entry.stop_reason,
                    int(entry.duration_ms),
                    entry.scraped_at or now_utc_iso(),
                ),
            )
            self._commit()
            entry.id = int(cur.lastrowid)
            return entry.id

    def _row_to_log(self, row: sqlite3.Row) -> RunLogEntry:
        return RunLogEntry(
            id=row["id"],
            scrape_type=row["scrape_type"],
            source=row["source"],
            target_url=row["target_url"] or "",
            status=row["status"],
            jobs_found=row["jobs_found"],
            new_jobs=row["new_jobs"],
            updated_jobs=row["updated_jobs"],
            touched_jobs=row["touched_jobs"] or 0,
            errors=row["errors"],
            error_message=row["error_message"],
            stop_reason=row["stop_reason"] or "",
            duration_ms=row["duration_ms"] or 0,
            scraped_at=row["scraped_at"],
        )

    def recent_run_logs(self, limit: int = 20) -> List[RunLogEntry]:
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {','.join(LOG_COLUMNS)} FROM scraping_logs ORDER BY scraped_at DESC, id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [self._row_to_log(r) for r in rows]

    def latest_run_log(self, source: str) -> Optional[RunLogEntry]:
        with self._lock:
            row = self.conn.execute(
                f"SELECT {','.join(LOG_COLUMNS)} FROM scraping_logs WHERE source=? ORDER BY scraped_at DESC, id DESC LIMIT 1",
                (source,),
            ).fetchone()
        return self._row_to_log(row) if row else None

    def run_log_stats(self) -> Dict[str, Any]:
        with self._lock:
            row = self.conn.execute(
                """SELECT COUNT(*),
                          SUM(CASE WHEN status='success' THEN 1 ELSE 0 END),
                          SUM(CASE WHEN status='failure' THEN 1 ELSE 0 END),
                          COALESCE(SUM(new_jobs), 0),
                          COALESCE(SUM(updated_jobs), 0),
                          MAX(scraped_at)
                   FROM scraping_logs"""
            ).fetchone()
        total = int(row[0] or 0)
        success = int(row[1] or 0)
        return {
            "total_runs": total,
            "success_runs": success,
            "failed_runs": int(row[2] or 0),
            "success_rate": round(success / total, 3) if total else 0.0,
            "total_new_jobs": int(row[3] or 0),
            "total_updated_jobs": int(row[4] or 0),
            "last_run_at": row[5],
        }

    # --- ng keywords ---
    def load_ng_keywords(self) -> List[NgKeyword]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT keyword, category, is_regex FROM ng_keywords ORDER BY id"
            ).fetchall()
        return [NgKeyword(keyword=r[0], category=r[1] or "", is_regex=bool(r[2])) for r in rows]

    def add_ng_keyword(self, kw: NgKeyword) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO ng_keywords(keyword, category, is_regex, created_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(keyword) DO UPDATE SET category=excluded.category, is_regex=excluded.is_regex",
                (kw.keyword, kw.category or None, 1 if kw.is_regex else 0, now_utc_iso()),
            )
            self._commit()

    def sync_ng_keywords(self, keywords: List[NgKeyword]) -> int:
        """Make the stored list match ``keywords``. Returns the number of rows removed."""
        wanted = [kw.keyword for kw in keywords]
        with self.transaction():
            if wanted:
                placeholders = ",".join("?" for _ in wanted)
                cur = self.conn.execute(
                    f"DELETE FROM ng_keywords WHERE keyword NOT IN ({placeholders})", wanted
                )
            else:
                cur = self.conn.execute("DELETE FROM ng_keywords")
            for kw in keywords:
                self.add_ng_keyword(kw)
        return cur.rowcount

    # --- settings ---
    def get_setting(self, key: str, default: str = "") -> str:
        with self._lock:
            row = self.conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
        return row[0] if row else default

    def set_setting(self, key: str, value: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO settings(key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                (key, str(value), now_utc_iso()),
            )
            self._commit()
