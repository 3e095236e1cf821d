from __future__ import annotations

import sqlite3
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

from ..core.config import ConfigError, RunConfig, build_run_config, validate_run_config
from ..core.db import Database
from ..core.errors import ExtractionError, ReconciliationError
from ..core.logging import log_error, log_event, log_warning
from ..core.models import NgKeyword, Outcome, RunLogEntry, RunStatus, Source
from ..core.utils import now_utc_iso
from .dedup import Decision, SmartStopTracker
from .events import EventChannel, LogEvent, ProgressEvent, RunState, SummaryEvent
from .rate_limiter import RateLimiter
from .reconcile import reconcile
from .strategy import SearchConfig, StrategyFactory


@dataclass
class StartResult:
    accepted: bool
    reason: str = ""


@dataclass
class RunResult:
    state: RunState
    entries: List[RunLogEntry] = field(default_factory=list)
    total_new: int = 0
    total_updated: int = 0
    total_errors: int = 0

    @property
    def failed_sources(self) -> List[str]:
        return [e.source for e in self.entries if e.status == RunStatus.FAILURE.value]


def estimate_remaining_ms(current: int, total: Optional[int], elapsed_ms: int) -> Optional[int]:
    """Average time per record so far times the records still to go."""
    if not total or current <= 0:
        return None
    return int(max(0, total - current) * elapsed_ms / current)


@dataclass
class _TaskCounters:
    found: int = 0
    new: int = 0
    updated: int = 0
    touched: int = 0
    errors: int = 0


class Orchestrator:
    """Runs one crawl across the selected sources.

    ``start`` validates the configuration and hands the run to a supervisor
    thread, which fans the sources out over a thread pool bounded by the
    configured concurrency cap. Each source task pulls records from its
    strategy, reconciles them one by one and feeds the outcome to its own
    smart-stop tracker. Events are delivered through ``events()``; the final
    result is available from ``wait()``.
    """

    def __init__(
        self,
        db: Database,
        *,
        strategy_factory: StrategyFactory,
        ng_keywords: Optional[List[NgKeyword]] = None,
        clock=time.monotonic,
    ) -> None:
        self.db = db
        self.strategy_factory = strategy_factory
        self.ng_keywords = ng_keywords
        self._clock = clock
        self._state = RunState.IDLE
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._done = threading.Event()
        self._channel = EventChannel()
        self._supervisor: Optional[threading.Thread] = None
        self._result: Optional[RunResult] = None

    @property
    def state(self) -> RunState:
        with self._state_lock:
            return self._state

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    # --- commands ---
    def start(self, config: Union[RunConfig, Dict[str, Any]]) -> StartResult:
        with self._state_lock:
            if self._state is RunState.RUNNING:
                return StartResult(False, "already running")
            try:
                rc = build_run_config(config) if isinstance(config, dict) else config
                validate_run_config(rc)
            except ConfigError as ex:
                self._state = RunState.FAILED
                self._reset_run()
                self._finish(SummaryEvent(state=RunState.FAILED, reason=str(ex)))
                log_error("run_rejected", error=str(ex))
                return StartResult(False, str(ex))
            self._state = RunState.RUNNING
            self._reset_run()

        self._log("run_started", f"Run started: {', '.join(s.value for s in rc.sources)}",
                  sources=[s.value for s in rc.sources], concurrency=rc.concurrency_cap)
        self._supervisor = threading.Thread(
            target=self._supervise, args=(rc,), name="leadscout-run", daemon=True
        )
        self._supervisor.start()
        return StartResult(True)

    def stop(self) -> bool:
        if self.state is not RunState.RUNNING:
            return False
        if not self._stop.is_set():
            self._stop.set()
            self._log("stop_requested", "Stop requested; finishing in-flight records")
        return True

    def events(self, timeout: Optional[float] = None) -> Iterator[Any]:
        return self._channel.drain(timeout=timeout)

    def wait(self, timeout: Optional[float] = None) -> Optional[RunResult]:
        if not self._done.wait(timeout):
            return None
        return self._result

    def run(self, config: Union[RunConfig, Dict[str, Any]]) -> RunResult:
        """start + wait. A rejected configuration returns the FAILED result."""
        started = self.start(config)
        if not started.accepted:
            if self.state is RunState.FAILED and self._result is not None:
                return self._result
            raise RuntimeError(started.reason)
        result = self.wait()
        if result is None:
            raise RuntimeError("run finished without a result")
        return result

    # --- internals ---
    def _reset_run(self) -> None:
        self._stop.clear()
        self._done.clear()
        # one channel per orchestrator; consumers may subscribe before start
        self._channel.clear()
        self._result = None

    def _finish(self, summary: SummaryEvent) -> None:
        self._result = RunResult(
            state=summary.state,
            entries=list(summary.entries),
            total_new=summary.total_new,
            total_updated=summary.total_updated,
            total_errors=summary.total_errors,
        )
        self._channel.put(summary)
        self._done.set()

    def _log(self, event: str, message: str, *, source: str = "", level: str = "INFO", **fields: Any) -> None:
        if level == "ERROR":
            log_error(event, source=source, message=message, **fields)
        elif level == "WARNING":
            log_warning(event, source=source, message=message, **fields)
        else:
            log_event(event, source=source, message=message, **fields)
        self._channel.put(LogEvent(message=message, source=source, level=level, event=event))

    def _supervise(self, config: RunConfig) -> None:
        ng = self.ng_keywords
        if ng is None:
            try:
                ng = self.db.load_ng_keywords()
            except sqlite3.Error as ex:
                log_warning("ng_keywords_load_failed", error=repr(ex))
                ng = []
        limiter = RateLimiter(config.rate_limits)
        deadline = None
        if config.max_duration_minutes and config.max_duration_minutes > 0:
            deadline = self._clock() + config.max_duration_minutes * 60.0

        entries: List[RunLogEntry] = []
        with ThreadPoolExecutor(max_workers=config.concurrency_cap, thread_name_prefix="source") as pool:
            futures = [
                pool.submit(self._run_task, source, config, limiter, ng, deadline)
                for source in config.sources
            ]
            for fut in futures:
                try:
                    entry = fut.result()
                except Exception as ex:
                    log_error("source_task_crashed", error=repr(ex), traceback=traceback.format_exc())
                    continue
                if entry is not None:
                    entries.append(entry)

        state = RunState.STOPPED if self._stop.is_set() else RunState.COMPLETED
        summary = SummaryEvent(
            state=state,
            entries=entries,
            total_new=sum(e.new_jobs for e in entries),
            total_updated=sum(e.updated_jobs for e in entries),
            total_errors=sum(e.errors for e in entries),
        )
        with self._state_lock:
            self._state = state
        self._log(
            "run_summary",
            f"Run {state.value}: new={summary.total_new} updated={summary.total_updated} "
            f"errors={summary.total_errors}",
            state=state.value,
            sources={e.source: e.status for e in entries},
            total_new=summary.total_new,
            total_updated=summary.total_updated,
            total_errors=summary.total_errors,
        )
        self._finish(summary)

    def _deadline_passed(self, deadline: Optional[float]) -> bool:
        return deadline is not None and self._clock() >= deadline

    def _run_task(
        self,
        source: Source,
        config: RunConfig,
        limiter: RateLimiter,
        ng_keywords: List[NgKeyword],
        deadline: Optional[float],
    ) -> Optional[RunLogEntry]:
        name = source.value
        if self._stop.is_set() or self._deadline_passed(deadline):
            self._log("task_skipped", f"[{name}] not started", source=name)
            return None

        started = self._clock()
        scraped_at = now_utc_iso()
        counters = _TaskCounters()
        tracker = SmartStopTracker(config.dedup_threshold, enabled=config.smart_stop_enabled)
        status = RunStatus.SUCCESS
        stop_reason = "exhausted"
        error_message: Optional[str] = None
        target_url = ""
        strategy = None
        records = None
        last_progress = 0.0

        self._log("task_started", f"[{name}] started", source=name)
        try:
            strategy = self.strategy_factory(source, config, limiter)
            records = strategy.extract(SearchConfig(keyword=config.keyword, location=config.location))
            for raw in records:
                target_url = getattr(strategy, "search_url", "") or target_url
                counters.found += 1
                try:
                    outcome = reconcile(self.db, raw, ng_keywords)
                except ReconciliationError as ex:
                    counters.errors += 1
                    self._log("record_failed", f"[{name}] {ex}", source=name, level="WARNING")
                    outcome = None

                if outcome is Outcome.INSERTED:
                    counters.new += 1
                elif outcome is Outcome.UPDATED:
                    counters.updated += 1
                elif outcome is Outcome.TOUCHED:
                    counters.touched += 1

                decision = Decision.CONTINUE
                if outcome is not None:
                    decision = tracker.observe(raw.identity, outcome.is_new_or_changed)

                now = self._clock()
                if (
                    config.progress_interval_sec <= 0
                    or now - last_progress >= config.progress_interval_sec
                ):
                    last_progress = now
                    self._progress(name, strategy, counters, tracker, started)

                if decision is Decision.STOP:
                    stop_reason = "smart_stop"
                    self._log(
                        "smart_stop",
                        f"[{name}] smart-stop after {tracker.consecutive} consecutive known records",
                        source=name,
                        consecutive=tracker.consecutive,
                    )
                    break
                if self._stop.is_set():
                    stop_reason = "stop_requested"
                    break
                if self._deadline_passed(deadline):
                    stop_reason = "max_duration"
                    self._log("max_duration", f"[{name}] max duration reached", source=name, level="WARNING")
                    break
        except ExtractionError as ex:
            status = RunStatus.FAILURE
            stop_reason = f"error:{ex.kind}"
            error_message = str(ex)
            self._log("task_failed", f"[{name}] {ex}", source=name, level="ERROR", kind=ex.kind)
        except Exception as ex:
            status = RunStatus.FAILURE
            stop_reason = "error:unexpected"
            error_message = repr(ex)
            self._log(
                "task_crashed",
                f"[{name}] {ex!r}",
                source=name,
                level="ERROR",
                traceback=traceback.format_exc(),
            )
        finally:
            close = getattr(records, "close", None)
            if close is not None:
                close()

        if strategy is not None:
            target_url = getattr(strategy, "search_url", "") or target_url
        if status is RunStatus.SUCCESS and (
            counters.errors or stop_reason in ("stop_requested", "max_duration")
        ):
            status = RunStatus.PARTIAL
        if status is not RunStatus.FAILURE and counters.errors and error_message is None:
            error_message = f"{counters.errors} record(s) failed to store"
        if status is RunStatus.FAILURE:
            counters.errors += 1

        self._progress(name, strategy, counters, tracker, started)
        entry = RunLogEntry(
            source=name,
            target_url=target_url,
            status=status.value,
            jobs_found=counters.found,
            new_jobs=counters.new,
            updated_jobs=counters.updated,
            touched_jobs=counters.touched,
            errors=counters.errors,
            error_message=error_message,
            stop_reason=stop_reason,
            duration_ms=int((self._clock() - started) * 1000),
            scraped_at=scraped_at,
            scrape_type=config.scrape_type,
        )
        try:
            self.db.append_run_log(entry)
        except sqlite3.Error as ex:
            log_error("run_log_write_failed", source=name, error=repr(ex))
        self._log(
            "task_finished",
            f"[{name}] {status.value} ({stop_reason}): found={counters.found} new={counters.new} "
            f"updated={counters.updated} errors={counters.errors}",
            source=name,
            status=status.value,
            stop_reason=stop_reason,
        )
        return entry

    def _progress(
        self,
        name: str,
        strategy: Any,
        counters: _TaskCounters,
        tracker: SmartStopTracker,
        started: float,
    ) -> None:
        total = getattr(strategy, "total_count", None)
        elapsed_ms = int((self._clock() - started) * 1000)
        self._channel.put(
            ProgressEvent(
                source=name,
                current=counters.found,
                total=total,
                new_count=counters.new,
                duplicate_count=tracker.duplicates,
                updated_count=counters.updated,
                error_count=counters.errors,
                elapsed_ms=elapsed_ms,
                estimated_remaining_ms=estimate_remaining_ms(counters.found, total, elapsed_ms),
            )
        )
