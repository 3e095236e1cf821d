from __future__ import annotations

import re
import sqlite3
import time
from dataclasses import fields, replace
from typing import Any, Dict, Iterable, List, Optional

from ..core.db import Database
from ..core.errors import ReconciliationError
from ..core.logging import log_error, log_event, log_warning
from ..core.models import (
    BUDGET_RANKS,
    DETAIL_FIELDS,
    LIST_FIELDS,
    MUTABLE_FIELDS,
    SIGNIFICANT_FIELDS,
    JobRecord,
    NgKeyword,
    Outcome,
    RawRecord,
    Source,
)
from ..core.normalize import clean_company_name, is_expired, normalize_date
from ..core.utils import normalize_whitespace, now_utc_iso

_DATE_FIELDS = ("date_posted", "date_expires", "date_updated")

_NG_FIELDS = {
    "company": ("company_name",),
    "title": ("title",),
    "description": ("description",),
    "": ("title", "description", "company_name"),
}

_regex_cache: Dict[str, Optional[re.Pattern]] = {}


def normalize_raw(raw: RawRecord) -> RawRecord:
    """Canonical form used for both storage and change detection."""
    values: Dict[str, Any] = {}
    for f in fields(RawRecord):
        value = getattr(raw, f.name)
        if f.name in LIST_FIELDS:
            value = [normalize_whitespace(str(v)) for v in (value or [])]
            value = [v for v in dict.fromkeys(value) if v]
        elif f.name in _DATE_FIELDS:
            value = normalize_date(value or "")
        elif f.name in ("salary_min", "salary_max"):
            value = None if value in (None, "") else int(value)
        elif f.name == "rank_confidence":
            value = None if value in (None, "") else round(float(value), 2)
        elif f.name in ("is_active", "partial"):
            value = bool(value)
        elif isinstance(value, str) or value is None:
            value = normalize_whitespace(value or "")
        values[f.name] = value
    values["source"] = Source.parse(values["source"]).value
    values["company_name"] = clean_company_name(values["company_name"])
    rank = values["budget_rank"].upper()
    values["budget_rank"] = rank if rank in BUDGET_RANKS else ""
    if values["is_active"] and is_expired(values["date_expires"]):
        values["is_active"] = False
    return replace(raw, **values)


def _compile(pattern: str) -> Optional[re.Pattern]:
    if pattern not in _regex_cache:
        try:
            _regex_cache[pattern] = re.compile(pattern, re.IGNORECASE)
        except re.error as ex:
            log_warning("ng_keyword_invalid_regex", pattern=pattern, error=str(ex))
            _regex_cache[pattern] = None
    return _regex_cache[pattern]


def match_ng_keywords(record: RawRecord, keywords: Iterable[NgKeyword]) -> List[str]:
    """Blocklist keywords found in title / description / company name. Advisory only."""
    matches: List[str] = []
    for kw in keywords or []:
        if not kw.keyword:
            continue
        targets = _NG_FIELDS.get(kw.category or "", _NG_FIELDS[""])
        hay = [str(getattr(record, name, "") or "") for name in targets]
        if kw.is_regex:
            rx = _compile(kw.keyword)
            hit = rx is not None and any(rx.search(h) for h in hay)
        else:
            needle = kw.keyword.lower()
            hit = any(needle in h.lower() for h in hay)
        if hit and kw.keyword not in matches:
            matches.append(kw.keyword)
    return matches


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == []


def carry_stored(stored: RawRecord, fresh: RawRecord) -> RawRecord:
    """Fill what ``fresh`` did not observe from the stored row.

    Blank values never overwrite stored ones. A partial (card-only) record
    also leaves every stored detail-page field as it was.
    """
    kept: Dict[str, Any] = {}
    for name in MUTABLE_FIELDS:
        if name == "is_active":
            continue
        old = getattr(stored, name)
        if _is_blank(getattr(fresh, name)) or (
            fresh.partial and name in DETAIL_FIELDS and not _is_blank(old)
        ):
            kept[name] = old
    merged = replace(fresh, **kept)
    if merged.is_active and is_expired(merged.date_expires):
        merged = replace(merged, is_active=False)
    return merged


def changed_fields(stored: RawRecord, fresh: RawRecord) -> List[str]:
    return [name for name in SIGNIFICANT_FIELDS if getattr(stored, name) != getattr(fresh, name)]


def _reconcile_once(
    db: Database, fresh: RawRecord, ng_keywords: Iterable[NgKeyword], now: str
) -> Outcome:
    with db.transaction():
        stored = db.get_job(fresh.record_id)
        if stored is None:
            job = JobRecord.from_raw(
                fresh,
                date_posted=fresh.date_posted or now[:10],
                scraped_at=now,
                last_checked_at=now,
                ng_keyword_matches=match_ng_keywords(fresh, ng_keywords),
            )
            db.insert_job(job)
            return Outcome.INSERTED

        merged = carry_stored(stored, fresh)
        diff = changed_fields(stored, merged)
        if not diff:
            db.touch_job(stored.id, now)
            return Outcome.TOUCHED

        updates: Dict[str, Any] = {name: getattr(merged, name) for name in MUTABLE_FIELDS}
        updates["last_checked_at"] = now
        updates["ng_keyword_matches"] = match_ng_keywords(merged, ng_keywords)
        db.update_job_fields(stored.id, updates)
        log_event(
            "job_updated",
            record_id=stored.id,
            changed=diff,
        )
        return Outcome.UPDATED


def reconcile(
    db: Database,
    raw: RawRecord,
    ng_keywords: Iterable[NgKeyword] = (),
    *,
    now: Optional[str] = None,
    retry_backoff_sec: float = 0.5,
) -> Outcome:
    """Insert, update or touch the stored row for ``raw`` and report which.

    A storage failure is retried once after ``retry_backoff_sec``; a second
    failure raises ReconciliationError and leaves the row as it was.
    """
    fresh = normalize_raw(raw)
    ng = list(ng_keywords or [])
    last_exc: Optional[Exception] = None
    for attempt in (1, 2):
        ts = now or now_utc_iso()
        try:
            return _reconcile_once(db, fresh, ng, ts)
        except sqlite3.Error as ex:
            last_exc = ex
            if attempt == 1:
                log_warning(
                    "reconcile_retry",
                    record_id=fresh.record_id,
                    error=repr(ex),
                )
                time.sleep(retry_backoff_sec)
    log_error("reconcile_failed", record_id=fresh.record_id, error=repr(last_exc))
    raise ReconciliationError(fresh.record_id, repr(last_exc)) from last_exc
