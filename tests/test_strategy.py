import pytest
import requests

from conftest import read_fixture
from leadscout.core.errors import ExtractionError
from leadscout.core.models import RatePolicy
from leadscout.engine.rate_limiter import RateLimiter
from leadscout.adapters.sites import doda
from leadscout.engine.strategy import SearchConfig, SiteStrategy, build_raw_record, merge_card_detail

LIST_URL = "https://tenshoku.mynavi.jp/list/?searchKeyword=%E5%96%B6%E6%A5%AD"
JOB_1 = "https://tenshoku.mynavi.jp/jobinfo-143434-1-104-1/"
JOB_2 = "https://tenshoku.mynavi.jp/jobinfo-200000-5-1-1/"


class FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text
        self.encoding = "utf-8"
        self.apparent_encoding = "utf-8"


class FakeHttp:
    def __init__(self, pages):
        self.pages = pages
        self.requested = []

    def get(self, url, *, headers=None):
        self.requested.append(url)
        page = self.pages.get(url)
        if isinstance(page, Exception):
            raise page
        if page is None:
            return FakeResponse(404, "<html><title>404 Not Found</title></html>")
        if isinstance(page, tuple):
            return FakeResponse(*page)
        return FakeResponse(200, page)


def _strategy(pages, **kwargs):
    limiter = RateLimiter({"mynavi": RatePolicy(0, 0, 1)}, jitter=lambda j: 0.0)
    kwargs.setdefault("page_interval_sec", 0)
    return SiteStrategy("mynavi", http=FakeHttp(pages), limiter=limiter, **kwargs)


def test_extract_merges_listing_and_detail():
    strategy = _strategy(
        {
            LIST_URL: read_fixture("mynavi_list.html"),
            JOB_1: read_fixture("mynavi_detail.html"),
        }
    )

    records = list(strategy.extract(SearchConfig(keyword="営業")))

    assert strategy.search_url == LIST_URL
    assert strategy.total_count == 1234
    assert [r.source_record_id for r in records] == ["143434-1-104-1", "200000-5-1-1"]

    first = records[0]
    assert first.title == "法人営業（未経験歓迎）"
    assert first.company_name == "株式会社テスト商事"
    assert first.company_url == "https://www.test-shoji.example.co.jp/"
    assert first.company_logo == "https://example.com/logo.png"
    assert (first.salary_min, first.salary_max) == (3000000, 4200000)
    assert first.locations == ["東京都港区"]
    assert first.location_summary == "東京都港区芝浦1-1-1"
    assert first.date_posted == "2026-02-02"
    assert first.date_expires == "2099-03-31"
    assert first.labels == ["未経験OK", "転勤なし"]
    assert first.keywords == ["営業"]
    assert first.is_active is True

    # detail page answered 404: card data kept, posting marked inactive
    second = records[1]
    assert second.title == "Webエンジニア"
    assert second.is_active is False
    assert (second.salary_min, second.salary_max) == (4000000, 6000000)


def test_listing_only_mode_skips_detail_pages():
    strategy = _strategy({LIST_URL: read_fixture("mynavi_list.html")}, fetch_details=False)

    records = list(strategy.extract(SearchConfig(keyword="営業")))

    assert len(records) == 2
    assert strategy.http.requested == [LIST_URL]
    assert records[0].locations == ["東京都港区", "大阪府大阪市"]


def test_blocked_listing_raises_blocked():
    strategy = _strategy({LIST_URL: (403, "Forbidden")})

    with pytest.raises(ExtractionError) as exc:
        list(strategy.extract(SearchConfig(keyword="営業")))

    assert exc.value.kind == "blocked"


def test_captcha_page_raises_blocked():
    html = "<html><head><title>Access Denied</title></head><body>reCAPTCHA</body></html>"
    strategy = _strategy({LIST_URL: html})

    with pytest.raises(ExtractionError) as exc:
        list(strategy.extract(SearchConfig(keyword="営業")))

    assert exc.value.kind == "blocked"


def test_timeout_maps_to_timeout_kind():
    strategy = _strategy({LIST_URL: requests.Timeout("read timed out")})

    with pytest.raises(ExtractionError) as exc:
        list(strategy.extract(SearchConfig(keyword="営業")))

    assert exc.value.kind == "timeout"


def test_unrecognized_listing_raises_parse():
    strategy = _strategy({LIST_URL: "<html><body><p>メンテナンス中</p></body></html>"})

    with pytest.raises(ExtractionError) as exc:
        list(strategy.extract(SearchConfig(keyword="営業")))

    assert exc.value.kind == "parse"


def test_empty_result_is_exhaustion():
    html = '<html><body><div class="result__num"><em>0</em>件</div></body></html>'
    strategy = _strategy({LIST_URL: html})

    assert list(strategy.extract(SearchConfig(keyword="営業"))) == []
    assert strategy.total_count == 0


def test_detail_failure_falls_back_to_card():
    strategy = _strategy(
        {
            LIST_URL: read_fixture("mynavi_list.html"),
            JOB_1: (500, "error"),
            JOB_2: requests.ConnectionError("reset"),
        }
    )

    records = list(strategy.extract(SearchConfig(keyword="営業")))

    assert [r.title for r in records] == ["法人営業（未経験歓迎）", "Webエンジニア"]
    assert strategy.detail_failures == 2


def test_blocked_detail_propagates_after_earlier_records():
    strategy = _strategy(
        {
            LIST_URL: read_fixture("mynavi_list.html"),
            JOB_1: read_fixture("mynavi_detail.html"),
            JOB_2: (429, "Too Many Requests"),
        }
    )
    produced = []

    with pytest.raises(ExtractionError) as exc:
        for record in strategy.extract(SearchConfig(keyword="営業")):
            produced.append(record)

    assert exc.value.kind == "blocked"
    assert [r.source_record_id for r in produced] == ["143434-1-104-1"]


def test_follows_next_page_until_max_pages():
    page1 = read_fixture("mynavi_list.html").replace(
        "</body>", '<div class="pager__next"><a href="/list/pg2/">次へ</a></div></body>'
    )
    page2 = page1.replace("jobinfo-", "jobinfo-9")
    strategy = _strategy(
        {LIST_URL: page1, "https://tenshoku.mynavi.jp/list/pg2/": page2},
        fetch_details=False,
        max_pages=2,
    )

    records = list(strategy.extract(SearchConfig(keyword="営業")))

    assert len(records) == 4
    assert strategy.pages_fetched == 2


def test_card_title_wins_over_detail():
    merged = merge_card_detail(
        {"title": "カード", "company_name": "", "salary_text": "月給20万円"},
        {"title": "詳細", "company_name": "株式会社X", "salary_text": "月給25万円", "removed": False},
    )

    assert merged["title"] == "カード"
    assert merged["company_name"] == "株式会社X"
    assert merged["salary_text"] == "月給25万円"


def test_build_raw_record_marks_expired_inactive():
    record = build_raw_record(
        "doda",
        "1",
        "https://doda.jp/x/j_jid__1/",
        {"title": "経理", "date_expires": "2020/1/31", "salary_text": "年収300万円以上"},
    )

    assert record.is_active is False
    assert (record.salary_min, record.salary_max) == (3000000, None)


def test_records_without_detail_data_are_partial():
    full = _strategy({LIST_URL: read_fixture("mynavi_list.html"), JOB_1: read_fixture("mynavi_detail.html")})
    failed = _strategy({LIST_URL: read_fixture("mynavi_list.html"), JOB_1: (500, "error"), JOB_2: (500, "error")})
    cards_only = _strategy({LIST_URL: read_fixture("mynavi_list.html")}, fetch_details=False)

    assert [r.partial for r in full.extract(SearchConfig(keyword="営業"))] == [False, True]
    assert [r.partial for r in failed.extract(SearchConfig(keyword="営業"))] == [True, True]
    assert [r.partial for r in cards_only.extract(SearchConfig(keyword="営業"))] == [True, True]


def test_records_carry_budget_rank():
    strategy = _strategy({LIST_URL: read_fixture("mynavi_list.html")}, fetch_details=False)

    records = list(strategy.extract(SearchConfig(keyword="営業")))

    assert [(r.budget_rank, r.rank_confidence) for r in records] == [("B", 0.7), ("B", 0.7)]


def test_rank_filter_skips_cards_before_detail_fetch():
    strategy = _strategy(
        {LIST_URL: read_fixture("mynavi_list.html"), JOB_1: read_fixture("mynavi_detail.html")},
        rank_filter=["a"],
    )

    assert list(strategy.extract(SearchConfig(keyword="営業"))) == []
    assert strategy.rank_filtered == 2
    assert strategy.http.requested == [LIST_URL]


def test_doda_pr_card_ranks_first():
    url = doda.build_search_url()
    limiter = RateLimiter({"doda": RatePolicy(0, 0, 1)}, jitter=lambda j: 0.0)
    strategy = SiteStrategy(
        "doda",
        http=FakeHttp({url: read_fixture("doda_list.html")}),
        limiter=limiter,
        fetch_details=False,
        max_pages=1,
        page_interval_sec=0,
        rank_filter=["A"],
    )

    records = list(strategy.extract(SearchConfig()))

    assert [(r.source_record_id, r.budget_rank, r.rank_confidence) for r in records] == [
        ("3012345678", "A", 0.95),
        ("3099999999", "A", 0.9),
    ]
    assert strategy.rank_filtered == 0
