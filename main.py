#!/usr/bin/env python3
from __future__ import annotations

import argparse
import signal
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT / "src"))

from zoneinfo import ZoneInfo

from leadscout.core.config import ConfigError, build_run_config, load_config, parse_ng_keywords
from leadscout.core.db import Database
from leadscout.core.db_maintenance import maintenance_db
from leadscout.core.http import HttpClient
from leadscout.core.logging import log_error, log_event, setup_logging
from leadscout.engine.events import LogEvent, ProgressEvent, RunState, SummaryEvent
from leadscout.engine.orchestrator import Orchestrator
from leadscout.engine.strategy import default_strategy_factory


def parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Crawl job sites and reconcile leads into SQLite")
    ap.add_argument("--config", default=str(ROOT / "config.yaml"), help="Path to config.yaml")
    ap.add_argument("--sources", default=None, help="Comma separated: mynavi,doda,rikunabi")
    ap.add_argument("--keyword", default=None, help="Search keyword")
    ap.add_argument("--location", default=None, help="Prefecture (東京, 大阪府...)")
    ap.add_argument("--max-pages", type=int, default=None, help="Listing pages per source (0=site default)")
    ap.add_argument("--no-details", action="store_true", help="Use listing cards only, skip detail pages")
    ap.add_argument("--no-smart-stop", action="store_true", help="Crawl to the end even after known records")
    ap.add_argument("--dedup-threshold", type=int, default=None, help="Consecutive known records before stopping")
    ap.add_argument("--max-minutes", type=float, default=None, help="Run time limit (0=unbounded)")
    ap.add_argument("--ranks", default=None, help="Budget ranks to keep, comma separated: A,B,C")
    ap.add_argument("--stats", action="store_true", help="Print stored job / run statistics and exit")
    ap.add_argument("--recent-logs", type=int, default=0, metavar="N", help="Print the last N run log entries and exit")
    return ap.parse_args()


def _format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m{int(seconds % 60):02d}s"
    return f"{int(seconds // 3600)}h{int((seconds % 3600) // 60):02d}m{int(seconds % 60):02d}s"


def _print_stats(db: Database) -> None:
    jobs = db.job_stats()
    runs = db.run_log_stats()
    print(f"jobs: total={jobs['total']} active={jobs['active']} ng_flagged={jobs['ng_flagged']}")
    for source, count in sorted(jobs["by_source"].items()):
        print(f"  {source}: {count}")
    if jobs["by_rank"]:
        print("  ranks: " + " ".join(f"{rank}={count}" for rank, count in sorted(jobs["by_rank"].items())))
    print(
        f"runs: total={runs['total_runs']} success={runs['success_runs']} failed={runs['failed_runs']} "
        f"rate={runs['success_rate']:.1%} new={runs['total_new_jobs']} updated={runs['total_updated_jobs']} "
        f"last={runs['last_run_at'] or '-'}"
    )


def _print_recent_logs(db: Database, limit: int) -> None:
    for e in db.recent_run_logs(limit):
        print(
            f"{e.scraped_at} {e.source:<9} {e.status:<8} found={e.jobs_found} new={e.new_jobs} "
            f"updated={e.updated_jobs} touched={e.touched_jobs} errors={e.errors} "
            f"stop={e.stop_reason or '-'} {e.duration_ms / 1000:.1f}s"
            + (f"  {e.error_message}" if e.error_message else "")
        )


def main() -> int:
    args = parse_args()
    try:
        cfg = load_config(args.config)
        overrides: Dict[str, Any] = {
            "sources": args.sources,
            "keyword": args.keyword,
            "location": args.location,
            "max_pages": args.max_pages,
            "dedup_threshold": args.dedup_threshold,
            "max_duration_minutes": args.max_minutes,
            "rank_filter": args.ranks,
        }
        if args.no_details:
            overrides["fetch_details"] = False
        if args.no_smart_stop:
            overrides["smart_stop"] = False
        run_config = build_run_config(cfg, **overrides)
        ng_keywords = parse_ng_keywords(cfg.get("ng_keywords"))
    except ConfigError as e:
        print(f"Failed to load config: {e}")
        return 2

    runtime = cfg.get("runtime", {})
    tz = ZoneInfo(runtime.get("timezone", "Asia/Tokyo"))
    log_dir = Path(runtime.get("log_dir", "logs"))
    db_path = runtime.get("state_db_path", "state/leads.db")

    if args.stats or args.recent_logs:
        db = Database(db_path)
        try:
            if args.stats:
                _print_stats(db)
            if args.recent_logs:
                _print_recent_logs(db, args.recent_logs)
        finally:
            db.close()
        return 0

    def _make_run_id() -> str:
        base = datetime.now(tz).strftime("%Y%m%d_%H%M%S")
        log_dir.mkdir(parents=True, exist_ok=True)
        candidate = base
        idx = 1
        while (log_dir / f"run_{candidate}.jsonl").exists():
            candidate = f"{base}_{idx:02d}"
            idx += 1
        return candidate

    run_id = _make_run_id()
    setup_logging(run_id, str(log_dir), runtime.get("log_level", "INFO"))
    start_time = time.perf_counter()

    db = Database(db_path)
    removed = db.sync_ng_keywords(ng_keywords)
    log_event("ng_keywords_synced", run_id=run_id, keywords=len(ng_keywords), removed=removed)

    http = HttpClient(
        user_agent=runtime.get("user_agent", "Mozilla/5.0"),
        timeout_sec=int(runtime.get("http_timeout_sec", 30)),
        retries=int(runtime.get("http_retries", 2)),
    )
    orchestrator = Orchestrator(db, strategy_factory=default_strategy_factory(http))

    def _on_sigint(signum, frame) -> None:
        if orchestrator.stop():
            print("\nStopping after in-flight records... (Ctrl+C again to abort)")
            signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, _on_sigint)

    exit_code = 0
    try:
        started = orchestrator.start(run_config)
        if not started.accepted:
            print(f"Run rejected: {started.reason}")
            exit_code = 2
        else:
            for event in orchestrator.events():
                if isinstance(event, ProgressEvent):
                    total = "?" if event.total is None else event.total
                    eta = ""
                    if event.estimated_remaining_ms is not None:
                        eta = f" eta={_format_duration(event.estimated_remaining_ms / 1000)}"
                    print(
                        f"[{event.source}] {event.current}/{total} new={event.new_count} "
                        f"dup={event.duplicate_count} updated={event.updated_count} errors={event.error_count}{eta}",
                        flush=True,
                    )
                elif isinstance(event, LogEvent) and event.level != "INFO":
                    print(f"{event.level}: {event.message}", flush=True)
                elif isinstance(event, SummaryEvent):
                    break
            result = orchestrator.wait()
            if result is None or result.state not in (RunState.COMPLETED, RunState.STOPPED):
                exit_code = 1
            else:
                for e in result.entries:
                    print(f"{e.source}: {e.status} ({e.stop_reason}) new={e.new_jobs} updated={e.updated_jobs}")
                print(
                    f"{result.state.value}: new={result.total_new} updated={result.total_updated} "
                    f"errors={result.total_errors} in {_format_duration(time.perf_counter() - start_time)}"
                )
                if result.failed_sources:
                    exit_code = 1
    except Exception as ex:
        exit_code = 1
        log_error("pipeline_failed", run_id=run_id, error=repr(ex), traceback=traceback.format_exc())
    finally:
        http.close()
        db.close()

    # Maintenance (after closing the main DB connection to avoid locks)
    try:
        flagged = maintenance_db(db_path, stale_after_days=int(runtime.get("stale_after_days", 30)))
        log_event("db_maintenance_done", run_id=run_id, marked_inactive=flagged)
    except Exception as ex:
        log_error("db_maintenance_failed", run_id=run_id, error=repr(ex))

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
