from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Source(str, Enum):
    MYNAVI = "mynavi"
    DODA = "doda"
    RIKUNABI = "rikunabi"

    @classmethod
    def parse(cls, raw: Any) -> "Source":
        if isinstance(raw, Source):
            return raw
        value = str(raw or "").strip().lower()
        for s in cls:
            if s.value == value:
                return s
        raise ValueError(f"Unknown source: {raw!r}")


class Outcome(str, Enum):
    INSERTED = "INSERTED"
    UPDATED = "UPDATED"
    TOUCHED = "TOUCHED"

    @property
    def is_new_or_changed(self) -> bool:
        return self is not Outcome.TOUCHED


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


# Compared field-by-field to decide UPDATED vs TOUCHED.
SIGNIFICANT_FIELDS = (
    "title",
    "salary_min",
    "salary_max",
    "description",
    "date_expires",
    "is_active",
)

LIST_FIELDS = ("locations", "labels", "keywords")

# Filled from the detail page. A card-only record keeps the stored values.
DETAIL_FIELDS = (
    "company_url",
    "company_logo",
    "employment_type",
    "industry",
    "description",
    "requirements",
    "benefits",
    "work_hours",
    "locations",
    "location_summary",
    "date_posted",
    "date_expires",
    "date_updated",
)

# Listing tier as a proxy for how much the advertiser pays.
BUDGET_RANKS = ("A", "B", "C")
RANK_CONFIDENCE = {"A": 0.9, "B": 0.7, "C": 0.6}


@dataclass
class RawRecord:
    source: str
    source_record_id: str
    source_url: str
    title: str = ""
    company_name: str = ""
    company_url: str = ""
    company_logo: str = ""
    employment_type: str = ""
    industry: str = ""
    description: str = ""
    requirements: str = ""
    benefits: str = ""
    work_hours: str = ""
    salary_min: Optional[int] = None
    salary_max: Optional[int] = None
    salary_text: str = ""
    locations: List[str] = field(default_factory=list)
    location_summary: str = ""
    labels: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    date_posted: str = ""
    date_expires: str = ""
    date_updated: str = ""
    is_active: bool = True
    budget_rank: str = ""
    rank_confidence: Optional[float] = None
    # Built from the listing card alone; detail-only fields are unknown, not empty.
    partial: bool = False

    @property
    def identity(self) -> Tuple[str, str]:
        return (Source.parse(self.source).value, self.source_record_id)

    @property
    def record_id(self) -> str:
        return make_record_id(self.source, self.source_record_id)


@dataclass
class JobRecord(RawRecord):
    id: str = ""
    scraped_at: str = ""
    last_checked_at: str = ""
    ng_keyword_matches: List[str] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: RawRecord, **extra: Any) -> "JobRecord":
        data = {f.name: getattr(raw, f.name) for f in fields(RawRecord)}
        data.update(extra)
        data.setdefault("id", raw.record_id)
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def make_record_id(source: Any, source_record_id: str) -> str:
    return f"{Source.parse(source).value}_{source_record_id}"


# Fields an UPDATED reconciliation may rewrite. Identity and scraped_at never change.
MUTABLE_FIELDS = tuple(
    f.name for f in fields(RawRecord) if f.name not in ("source", "source_record_id", "partial")
)


@dataclass
class NgKeyword:
    keyword: str
    category: str = ""  # company | title | description | "" (all)
    is_regex: bool = False


@dataclass
class RatePolicy:
    min_interval_sec: float = 3.0
    jitter_sec: float = 1.0
    max_concurrent: int = 1


@dataclass
class RunLogEntry:
    source: str
    target_url: str
    status: str
    jobs_found: int = 0
    new_jobs: int = 0
    updated_jobs: int = 0
    touched_jobs: int = 0
    errors: int = 0
    error_message: Optional[str] = None
    stop_reason: str = ""
    duration_ms: int = 0
    scraped_at: str = ""
    scrape_type: str = "full"
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
