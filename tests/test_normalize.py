from datetime import date

import pytest

from leadscout.core.normalize import (
    clean_company_name,
    is_expired,
    normalize_address,
    normalize_area,
    normalize_date,
    normalize_industry,
    parse_locations,
    parse_salary,
)
from leadscout.core.utils import canonicalize_url, to_halfwidth


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("株式会社テスト | 【プライム市場】", "株式会社テスト"),
        ("【急募】株式会社サンプル（サンプルグループ）", "株式会社サンプル"),
        ("ＡＢＣ株式会社", "ABC株式会社"),
        ("", ""),
    ],
)
def test_clean_company_name(raw, expected):
    assert clean_company_name(raw) == expected


@pytest.mark.parametrize(
    "text, expected",
    [
        ("年収400万円～600万円", (4000000, 6000000)),
        ("年収４００万～６００万円", (4000000, 6000000)),
        ("月給25万円～35万円", (3000000, 4200000)),
        ("年収300万円以上", (3000000, None)),
        ("月給22万円～", (2640000, None)),
        ("時給1,200円", (2304000, 2304000)),
        ("年収500万円", (5000000, 5000000)),
        ("経験・能力を考慮の上、当社規定により決定", (None, None)),
        ("", (None, None)),
    ],
)
def test_parse_salary(text, expected):
    assert parse_salary(text) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2026/2/2（月）", "2026-02-02"),
        ("2026年2月2日", "2026-02-02"),
        ("２０２６/０２/０２", "2026-02-02"),
        ("2026-02-02T09:00:00+09:00", "2026-02-02"),
        ("随時", ""),
        ("2026/13/40", ""),
    ],
)
def test_normalize_date(raw, expected):
    assert normalize_date(raw) == expected


def test_parse_locations():
    assert parse_locations("東京都港区、大阪府大阪市北区") == ["東京都港区", "大阪府大阪市"]
    assert parse_locations("東京都（リモート可）") == ["東京都"]
    assert parse_locations("大阪") == ["大阪府"]
    assert parse_locations("全国各地") == []


def test_normalize_address_strips_postal_code():
    assert normalize_address("〒105-0023 東京都港区芝浦1-1-1") == "東京都港区芝浦1-1-1"
    assert normalize_address("本社：〒530-0001 大阪府大阪市北区梅田1") == "大阪府大阪市北区梅田1"


def test_normalize_area():
    assert normalize_area("東京") == "東京都"
    assert normalize_area("神奈川県横浜市") == "神奈川県"
    assert normalize_area("北海道") == "北海道"


def test_normalize_industry():
    assert normalize_industry("ソフトウェア開発・SaaS") == "IT・通信"
    assert normalize_industry("") == ""


def test_is_expired():
    today = date(2026, 2, 10)
    assert is_expired("2026-02-09", today=today)
    assert not is_expired("2026-02-10", today=today)
    assert not is_expired("", today=today)


def test_to_halfwidth_keeps_kana():
    assert to_halfwidth("ＡＢＣ　テスト１２３") == "ABC テスト123"


def test_canonicalize_url_drops_tracking():
    url = "http://doda.jp/x/?utm_source=a&kw=1#top"
    assert canonicalize_url(url) == "https://doda.jp/x/?kw=1"
