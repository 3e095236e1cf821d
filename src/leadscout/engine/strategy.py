from __future__ import annotations

import time
from dataclasses import dataclass
from importlib import import_module
from types import ModuleType
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from ..adapters.sites.common import looks_blocked, split_labels
from ..core.config import RunConfig
from ..core.errors import ExtractionError
from ..core.http import HttpClient, decode_text
from ..core.logging import log_event, log_warning
from ..core.models import RawRecord, Source
from ..core.normalize import (
    clean_company_name,
    is_expired,
    normalize_address,
    normalize_date,
    normalize_industry,
    parse_locations,
    parse_salary,
)
from ..core.utils import canonicalize_url, normalize_whitespace
from .rate_limiter import RateLimiter

BLOCKED_STATUS = (403, 429)
GONE_STATUS = (404, 410)
CARD_PREFERRED = ("title", "company_name")


@dataclass
class SearchConfig:
    keyword: str = ""
    location: str = ""


def load_adapter(source: Any) -> ModuleType:
    return import_module(f"leadscout.adapters.sites.{Source.parse(source).value}")


def merge_card_detail(card: Dict[str, Any], detail: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(card)
    for key, value in (detail or {}).items():
        if key == "removed" or not value:
            continue
        if key in CARD_PREFERRED and merged.get(key):
            continue
        merged[key] = value
    return merged


def build_raw_record(
    source: str,
    source_record_id: str,
    url: str,
    data: Dict[str, Any],
    *,
    keywords: Optional[List[str]] = None,
    partial: bool = False,
) -> RawRecord:
    """Map one merged card/detail dict onto the canonical record shape."""
    salary_text = normalize_whitespace(data.get("salary_text", ""))
    salary_min, salary_max = parse_salary(salary_text)
    address = normalize_address(data.get("address", ""))
    location_text = normalize_whitespace(data.get("location_text", "")) or address
    date_expires = normalize_date(data.get("date_expires", ""))

    is_active = not data.get("removed") and not is_expired(date_expires)

    return RawRecord(
        source=source,
        source_record_id=source_record_id,
        source_url=url,
        title=normalize_whitespace(data.get("title", "")),
        company_name=clean_company_name(data.get("company_name", "")),
        company_url=normalize_whitespace(data.get("company_url", "")),
        company_logo=normalize_whitespace(data.get("company_logo", "")),
        employment_type=normalize_whitespace(data.get("employment_type", "")),
        industry=normalize_industry(data.get("industry", "")),
        description=normalize_whitespace(data.get("description", "")),
        requirements=normalize_whitespace(data.get("requirements", "")),
        benefits=normalize_whitespace(data.get("benefits", "")),
        work_hours=normalize_whitespace(data.get("work_hours", "")),
        salary_min=salary_min,
        salary_max=salary_max,
        salary_text=salary_text,
        locations=parse_locations(location_text),
        location_summary=address or location_text,
        labels=[normalize_whitespace(x) for x in data.get("labels") or [] if normalize_whitespace(x)],
        keywords=list(keywords or []),
        date_posted=normalize_date(data.get("date_posted", "")),
        date_expires=date_expires,
        date_updated=normalize_date(data.get("date_updated", "")),
        is_active=is_active,
        budget_rank=data.get("budget_rank") or "",
        rank_confidence=data.get("rank_confidence"),
        partial=partial,
    )


class SiteStrategy:
    """Lazy record producer for one source.

    Walks the listing pages of the source's search, optionally opens each
    detail page, and yields one RawRecord per job card. Every HTTP request
    passes through the shared RateLimiter. Failures that end the crawl raise
    ExtractionError; records yielded before the failure stay with the caller.
    """

    def __init__(
        self,
        source: Any,
        *,
        http: HttpClient,
        limiter: RateLimiter,
        max_pages: int = 0,
        fetch_details: bool = True,
        adapter: Optional[ModuleType] = None,
        page_interval_sec: Optional[float] = None,
        rank_filter: Optional[List[str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.source = Source.parse(source).value
        self.http = http
        self.limiter = limiter
        self.adapter = adapter or load_adapter(self.source)
        self.max_pages = int(max_pages) if max_pages else int(getattr(self.adapter, "MAX_PAGES", 10))
        self.fetch_details = fetch_details
        if page_interval_sec is None:
            page_interval_sec = float(getattr(self.adapter, "PAGE_INTERVAL_SEC", 0.0))
        self.page_interval_sec = page_interval_sec
        self.rank_filter = [r.upper() for r in rank_filter or []]
        self._sleep = sleep
        self.search_url = ""
        self.total_count: Optional[int] = None
        self.pages_fetched = 0
        self.detail_failures = 0
        self.rank_filtered = 0

    def _fetch(self, url: str, *, listing: bool) -> Optional[str]:
        with self.limiter.acquire(self.source):
            try:
                resp = self.http.get(url)
            except requests.Timeout as ex:
                raise ExtractionError("timeout", repr(ex), url=url) from ex
            except requests.RequestException as ex:
                raise ExtractionError("navigation", repr(ex), url=url) from ex
        status = int(resp.status_code)
        if status in BLOCKED_STATUS:
            raise ExtractionError("blocked", f"HTTP {status}", url=url)
        if status in GONE_STATUS and not listing:
            return None
        if status >= 400:
            raise ExtractionError("navigation", f"HTTP {status}", url=url)
        html = decode_text(resp)
        if looks_blocked(html):
            raise ExtractionError("blocked", "anti-bot page detected", url=url)
        return html

    def _detail(self, url: str) -> Dict[str, Any]:
        try:
            html = self._fetch(url, listing=False)
            if html is None:
                return {"removed": True}
            return self.adapter.enrich_detail(html, url=url) or {}
        except ExtractionError as ex:
            if ex.kind == "blocked":
                raise
            self.detail_failures += 1
            log_warning("detail_fetch_failed", source=self.source, url=url, error=str(ex))
        except Exception as ex:
            self.detail_failures += 1
            log_warning("detail_parse_failed", source=self.source, url=url, error=repr(ex))
        return {}

    def _rank(self, card: Dict[str, Any], position: int) -> None:
        classify = getattr(self.adapter, "classify_rank", None)
        if classify is None:
            return
        rank, confidence = classify(card, position)
        card["budget_rank"] = rank
        card["rank_confidence"] = confidence

    def _record(self, card: Dict[str, Any], keywords: List[str]) -> Optional[RawRecord]:
        url = card.get("url") or ""
        detail = self._detail(url) if self.fetch_details else {}
        merged = merge_card_detail(card, detail)
        if detail.get("removed"):
            merged["removed"] = True
            if not merged.get("title"):
                log_event("detail_removed_skipped", source=self.source, url=url)
                return None
        partial = not any(v for k, v in detail.items() if k != "removed")
        return build_raw_record(
            self.source,
            self.adapter.parse_job_id(url),
            url,
            merged,
            keywords=keywords,
            partial=partial,
        )

    def extract(self, search: SearchConfig) -> Iterator[RawRecord]:
        url = self.adapter.build_search_url(search.keyword, search.location)
        self.search_url = url
        keywords = split_labels(search.keyword)
        seen: set[str] = set()
        page_no = 1
        position = -1

        while url and page_no <= self.max_pages:
            if page_no > 1 and self.page_interval_sec > 0:
                self._sleep(self.page_interval_sec)
            html = self._fetch(url, listing=True) or ""
            self.pages_fetched += 1
            try:
                cards = self.adapter.fetch_list(url, html, limit=1000)
                if page_no == 1:
                    self.total_count = self.adapter.parse_total_count(html)
                next_url = self.adapter.next_page_url(url, html, page_no)
            except Exception as ex:
                raise ExtractionError("parse", repr(ex), url=url) from ex

            if not cards:
                if page_no == 1 and self.total_count is None:
                    raise ExtractionError("parse", "no job cards found", url=url)
                break

            log_event(
                "listing_page",
                source=self.source,
                page=page_no,
                cards=len(cards),
                total=self.total_count,
                rank_filtered=self.rank_filtered,
            )
            for card in cards:
                position += 1
                key = canonicalize_url(card.get("url") or "")
                if not key or key in seen:
                    continue
                seen.add(key)
                self._rank(card, position)
                if self.rank_filter and card.get("budget_rank") not in self.rank_filter:
                    self.rank_filtered += 1
                    continue
                record = self._record(card, keywords)
                if record is not None:
                    yield record

            if not next_url or next_url == url:
                break
            url = next_url
            page_no += 1


StrategyFactory = Callable[[Source, RunConfig, RateLimiter], Any]


def default_strategy_factory(http: HttpClient) -> StrategyFactory:
    def factory(source: Source, config: RunConfig, limiter: RateLimiter) -> SiteStrategy:
        return SiteStrategy(
            source,
            http=http,
            limiter=limiter,
            max_pages=config.max_pages,
            fetch_details=config.fetch_details,
            rank_filter=config.rank_filter,
        )

    return factory
