import sqlite3

import pytest

from conftest import make_raw
from leadscout.core.db import Database
from leadscout.core.db_maintenance import maintenance_db
from leadscout.core.models import JobRecord, NgKeyword, RunLogEntry


def _job(record_id="1", **fields):
    raw = make_raw(record_id=record_id, **fields)
    return JobRecord.from_raw(raw, scraped_at="2026-02-01T00:00:00+00:00", last_checked_at="2026-02-01T00:00:00+00:00")


def test_job_round_trip(db):
    db.insert_job(_job(locations=["東京都港区"], labels=["PR", "転勤なし"], salary_min=3000000))

    job = db.get_job("mynavi_1")

    assert job.locations == ["東京都港区"]
    assert job.labels == ["PR", "転勤なし"]
    assert job.salary_min == 3000000
    assert job.salary_max is None
    assert job.is_active is True
    assert db.get_job("mynavi_2") is None


def test_identity_is_unique_per_source(db):
    db.insert_job(_job())
    with pytest.raises(sqlite3.IntegrityError):
        db.insert_job(_job())


def test_identity_columns_are_not_updatable(db):
    db.insert_job(_job())
    with pytest.raises(ValueError):
        db.update_job_fields("mynavi_1", {"scraped_at": "2030-01-01T00:00:00+00:00"})
    with pytest.raises(ValueError):
        db.update_job_fields("mynavi_1", {"source": "doda"})


def test_transaction_rolls_back_on_error(db):
    with pytest.raises(RuntimeError):
        with db.transaction():
            db.insert_job(_job())
            raise RuntimeError("boom")

    assert db.get_job("mynavi_1") is None


def test_run_logs_and_stats(db):
    db.append_run_log(RunLogEntry(source="mynavi", target_url="u", status="success", new_jobs=3, scraped_at="2026-02-01T00:00:00+00:00"))
    entry = RunLogEntry(
        source="doda",
        target_url="u",
        status="failure",
        errors=1,
        error_message="[blocked] HTTP 403",
        stop_reason="error:blocked",
        scraped_at="2026-02-02T00:00:00+00:00",
    )
    db.append_run_log(entry)

    assert entry.id is not None
    recent = db.recent_run_logs(10)
    assert [e.source for e in recent] == ["doda", "mynavi"]
    assert recent[0].stop_reason == "error:blocked"
    assert db.latest_run_log("mynavi").new_jobs == 3

    stats = db.run_log_stats()
    assert stats["total_runs"] == 2
    assert stats["failed_runs"] == 1
    assert stats["success_rate"] == 0.5
    assert stats["last_run_at"] == "2026-02-02T00:00:00+00:00"


def test_job_stats_and_fetch(db):
    db.insert_job(_job("1"))
    flagged = _job("2")
    flagged.ng_keyword_matches = ["派遣"]
    flagged.is_active = False
    db.insert_job(flagged)

    stats = db.job_stats()
    assert (stats["total"], stats["active"], stats["ng_flagged"]) == (2, 1, 1)
    assert stats["by_source"] == {"mynavi": 2}
    assert [j.id for j in db.fetch_jobs(active_only=True)] == ["mynavi_1"]


def test_ng_keywords_and_settings(db):
    db.add_ng_keyword(NgKeyword("派遣", category="title"))
    db.add_ng_keyword(NgKeyword("派遣", category="title"))
    db.add_ng_keyword(NgKeyword("a.*b", is_regex=True))

    assert db.load_ng_keywords() == [NgKeyword("派遣", "title", False), NgKeyword("a.*b", "", True)]
    assert db.get_setting("rate_limit_ms") == "2500"
    db.set_setting("rate_limit_ms", "4000")
    assert db.get_setting("rate_limit_ms") == "4000"


def test_mark_inactive_before_keeps_rows(db):
    db.insert_job(_job("old"))

    assert db.mark_inactive_before("2026-03-01T00:00:00+00:00") == 1
    job = db.get_job("mynavi_old")
    assert job is not None and job.is_active is False


def test_maintenance_flags_stale_jobs(tmp_path):
    path = str(tmp_path / "leads.db")
    database = Database(path)
    database.insert_job(_job("stale"))
    database.close()

    assert maintenance_db(path, stale_after_days=1) == 1

    database = Database(path)
    try:
        assert database.get_job("mynavi_stale").is_active is False
    finally:
        database.close()


def test_existing_log_table_gains_new_columns(tmp_path):
    path = str(tmp_path / "legacy.db")
    conn = sqlite3.connect(path)
    conn.execute(
        "CREATE TABLE scraping_logs (id INTEGER PRIMARY KEY AUTOINCREMENT, scrape_type TEXT NOT NULL, "
        "source TEXT NOT NULL, target_url TEXT, status TEXT NOT NULL, jobs_found INTEGER NOT NULL DEFAULT 0, "
        "new_jobs INTEGER NOT NULL DEFAULT 0, updated_jobs INTEGER NOT NULL DEFAULT 0, "
        "errors INTEGER NOT NULL DEFAULT 0, error_message TEXT, duration_ms INTEGER, scraped_at TEXT NOT NULL)"
    )
    conn.commit()
    conn.close()

    database = Database(path)
    try:
        database.append_run_log(RunLogEntry(source="doda", target_url="", status="partial", touched_jobs=4))
        assert database.latest_run_log("doda").touched_jobs == 4
    finally:
        database.close()


def test_budget_rank_round_trip_and_stats(db):
    db.insert_job(_job("1", budget_rank="A", rank_confidence=0.95))
    db.insert_job(_job("2", budget_rank="B", rank_confidence=0.7))
    db.insert_job(_job("3"))

    job = db.get_job("mynavi_1")
    assert (job.budget_rank, job.rank_confidence) == ("A", 0.95)
    unranked = db.get_job("mynavi_3")
    assert (unranked.budget_rank, unranked.rank_confidence) == ("", None)
    assert db.job_stats()["by_rank"] == {"A": 1, "B": 1}


def test_add_ng_keyword_overwrites_category_and_regex(db):
    db.add_ng_keyword(NgKeyword("派遣", category="title"))
    db.add_ng_keyword(NgKeyword("派遣", category="company", is_regex=True))

    assert db.load_ng_keywords() == [NgKeyword("派遣", "company", True)]


def test_sync_ng_keywords_drops_entries_missing_from_config(db):
    db.add_ng_keyword(NgKeyword("派遣", category="title"))
    db.add_ng_keyword(NgKeyword("古い語"))

    removed = db.sync_ng_keywords([NgKeyword("派遣", category="description"), NgKeyword("新しい語")])

    assert removed == 1
    assert db.load_ng_keywords() == [NgKeyword("派遣", "description", False), NgKeyword("新しい語", "", False)]
    assert db.sync_ng_keywords([]) == 2
    assert db.load_ng_keywords() == []


def test_existing_jobs_table_gains_rank_columns(tmp_path):
    path = str(tmp_path / "legacy_jobs.db")
    conn = sqlite3.connect(path)
    conn.execute(
        "CREATE TABLE jobs (id TEXT PRIMARY KEY, source TEXT NOT NULL, source_job_id TEXT NOT NULL, "
        "source_url TEXT NOT NULL, company_name TEXT, company_url TEXT, company_logo TEXT, title TEXT NOT NULL, "
        "employment_type TEXT, industry TEXT, description TEXT, requirements TEXT, benefits TEXT, work_hours TEXT, "
        "salary_min INTEGER, salary_max INTEGER, salary_text TEXT, locations TEXT, location_summary TEXT, "
        "labels TEXT, keywords TEXT, date_posted TEXT NOT NULL, date_expires TEXT, date_updated TEXT, "
        "scraped_at TEXT NOT NULL, last_checked_at TEXT NOT NULL, is_active INTEGER NOT NULL DEFAULT 1, "
        "ng_keyword_matches TEXT, UNIQUE(source, source_job_id))"
    )
    conn.commit()
    conn.close()

    database = Database(path)
    try:
        database.insert_job(_job("1", budget_rank="C", rank_confidence=0.6))
        assert database.get_job("mynavi_1").budget_rank == "C"
    finally:
        database.close()
