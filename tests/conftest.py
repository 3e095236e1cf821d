from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from leadscout.core.db import Database
from leadscout.core.models import RawRecord

FIXTURES = Path(__file__).parent / "fixtures"


def read_fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


def make_raw(source: str = "mynavi", record_id: str = "1", **fields: Any) -> RawRecord:
    data: Dict[str, Any] = {
        "title": f"求人 {record_id}",
        "company_name": "株式会社テスト",
        "description": "法人営業のお仕事です",
        "date_posted": "2026-02-02",
    }
    data.update(fields)
    return RawRecord(
        source=source,
        source_record_id=record_id,
        source_url=f"https://example.test/{source}/{record_id}/",
        **data,
    )


class FakeStrategy:
    """Strategy stand-in: yields the given records, then optionally raises."""

    def __init__(
        self,
        records: List[RawRecord],
        *,
        fail: Optional[Exception] = None,
        before_yield: Optional[Callable[[int], None]] = None,
        total: Optional[int] = None,
    ) -> None:
        self.records = records
        self.fail = fail
        self.before_yield = before_yield
        self.search_url = "https://example.test/search"
        self.total_count = total if total is not None else len(records)
        self.yielded = 0

    def extract(self, search):
        for i, record in enumerate(self.records):
            if self.before_yield is not None:
                self.before_yield(i)
            self.yielded += 1
            yield record
        if self.fail is not None:
            raise self.fail


class FakeFactory:
    def __init__(self, strategies: Dict[str, FakeStrategy]) -> None:
        self.strategies = strategies
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def __call__(self, source, config, limiter) -> FakeStrategy:
        with self._lock:
            self.calls.append(source.value)
        return self.strategies[source.value]


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "leads.db"))
    yield database
    database.close()


@pytest.fixture
def raw():
    return make_raw
