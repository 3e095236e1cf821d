from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlencode, urlparse, urlunparse

from ...core.extract import fetch_content_smart
from ...core.normalize import PREFECTURES, normalize_area
from ...core.utils import sha1_hex
from .common import (
    _text,
    absolute_url,
    first_text,
    jsonld_fields,
    jsonld_jobposting,
    label_map,
    looks_removed,
    pick,
    soupify,
    total_count_from,
)

SOURCE = "doda"
BASE_URL = "https://doda.jp"
SEARCH_URL = f"{BASE_URL}/DodaFront/View/JobSearchList/"
MAX_PAGES = 50
PAGE_INTERVAL_SEC = 2.0

# JIS prefecture codes: 北海道=01 ... 沖縄県=47
PREFECTURE_CODES = {pref: f"{i:02d}" for i, pref in enumerate(PREFECTURES, start=1)}

TOTAL_SELECTORS = [".search-sidebar__total-count__number", "[class*=totalCount]"]
DESCRIPTION_SELECTORS = [
    ".jobSearchDetail-jobDescription",
    "[class*=jobDescription]",
    "[class*=jobSearchDetail-contents]",
]

JOB_ID_RE = re.compile(r"j_jid__(\d+)")
PERIOD_RE = re.compile(
    r"掲載予定期間[：:]\s*(\d{4}/\d{1,2}/\d{1,2})(?:[（(][^）)]*[）)])?\s*[～〜ー\-~]\s*(\d{4}/\d{1,2}/\d{1,2})"
)
UPDATED_RE = re.compile(r"更新日[：:]\s*(\d{4}/\d{1,2}/\d{1,2})")


def build_search_url(keyword: str = "", location: str = "") -> str:
    url = SEARCH_URL
    code = PREFECTURE_CODES.get(normalize_area(location)) if location else None
    if code:
        url += f"j_pr__{code}/"
    if keyword:
        url += f"?kw={quote(keyword)}"
    return url


def parse_job_id(url: str) -> str:
    m = JOB_ID_RE.search(url or "")
    return m.group(1) if m else sha1_hex(url or "")[:16]


def _card_info(card: Any) -> Dict[str, str]:
    rows = []
    for dt in card.select("dl.jobCard-info dt.jobCard-info__title, dl.jobCard-info dt"):
        rows.append((dt, dt.find_next_sibling("dd")))
    return label_map(rows)


def fetch_list(url: str, html: str, *, limit: int = 100) -> List[Dict[str, Any]]:
    """doda search result cards (.jobCard-card)."""
    soup = soupify(html)
    items: List[Dict[str, Any]] = []
    seen: set[str] = set()
    for card in soup.select(".jobCard-card"):
        link = card.select_one("a.jobCard-header__link") or card.select_one('a[href*="j_jid__"]')
        if not link:
            continue
        href = absolute_url(BASE_URL + "/", link.get("href") or "")
        if not href or href in seen:
            continue
        seen.add(href)
        info = _card_info(card)
        labels = [_text(t) for t in card.select(".jobCard-tag, [class*=jobCard-tags] li") if _text(t)]
        if "-tab__pr/" in href:
            labels.insert(0, "PR")
        items.append(
            {
                "url": href,
                "company_name": _text(link.select_one("h2")),
                "title": _text(link.select_one("p")),
                "salary_text": pick(info, "給与", "年収"),
                "location_text": pick(info, "勤務地"),
                "industry": pick(info, "事業"),
                "description": pick(info, "仕事内容"),
                "requirements": pick(info, "対象"),
                "labels": labels,
                "promoted": "-tab__pr/" in href,
            }
        )
        if len(items) >= limit:
            break
    return items


def parse_total_count(html: str) -> Optional[int]:
    return total_count_from(soupify(html), TOTAL_SELECTORS)


def next_page_url(url: str, html: str, page_no: int) -> Optional[str]:
    soup = soupify(html)
    node = soup.select_one('a[rel="next"]') or soup.select_one(".pagination__next a")
    if node is None:
        return None
    href = (node.get("href") or "").strip()
    if href and not href.startswith("javascript:"):
        return absolute_url(url, href)
    # script-driven pager: fall back to ?page=N
    p = urlparse(url)
    q = dict(parse_qsl(p.query, keep_blank_values=True))
    q["page"] = str(page_no + 1)
    return urlunparse(p._replace(query=urlencode(q)))


def classify_rank(card: Dict[str, Any], position: int) -> Tuple[str, float]:
    # PR slots are paid placements; display order tracks plan tier.
    if card.get("promoted"):
        return "A", 0.95
    if position < 20:
        return "A", 0.9
    if position < 100:
        return "B", 0.7
    return "C", 0.5


def parse_dates(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    m = PERIOD_RE.search(text or "")
    if m:
        out["date_posted"], out["date_expires"] = m.group(1), m.group(2)
    m = UPDATED_RE.search(text or "")
    if m:
        out["date_updated"] = m.group(1)
    return out


def enrich_detail(detail_html: str, *, url: str = "") -> Dict[str, Any]:
    soup = soupify(detail_html)
    if looks_removed(detail_html):
        return {"removed": True}

    rows = []
    for dt in soup.select("dt"):
        rows.append((dt, dt.find_next_sibling("dd")))
    for th in soup.select("table th"):
        rows.append((th, th.find_next_sibling("td")))
    info = label_map(rows)

    company_url = ""
    link = soup.select_one("a.jobSearchDetail-companyOverview__link")
    if link and (link.get("href") or "").startswith("http"):
        company_url = link["href"]
    if not company_url:
        company_url = pick(info, "企業URL", "ホームページ")

    description = fetch_content_smart(detail_html, selectors=DESCRIPTION_SELECTORS).text
    if not description:
        description = pick(info, "仕事内容")

    out: Dict[str, Any] = {
        "title": first_text(soup, [".jobSearchDetail-heading__title", "h1"]),
        "company_name": first_text(soup, [".jobSearchDetail-heading__companyName", "h1 + p"]),
        "company_url": company_url,
        "employment_type": pick(info, "雇用形態"),
        "industry": pick(info, "事業概要", "事業内容"),
        "description": description,
        "requirements": pick(info, "対象となる方", "応募資格"),
        "benefits": pick(info, "待遇・福利厚生", "福利厚生"),
        "work_hours": pick(info, "勤務時間"),
        "salary_text": pick(info, "給与", "年収"),
        "address": pick(info, "本社所在地", "所在地", "勤務地"),
        "location_text": pick(info, "勤務地"),
    }
    date_text = first_text(
        soup, [".jobSearchDetail-heading__publishingDate", "[class*=publishingDate]", ".detailPublish"]
    )
    out.update(parse_dates(date_text))
    for key, value in jsonld_fields(jsonld_jobposting(soup)).items():
        if value and not out.get(key):
            out[key] = value
    return out
