from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from ...core.extract import fetch_content_smart
from ...core.models import RANK_CONFIDENCE
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
    select_first,
    soupify,
    total_count_from,
)

SOURCE = "mynavi"
BASE_URL = "https://tenshoku.mynavi.jp"
SEARCH_URL = f"{BASE_URL}/list/"
MAX_PAGES = 10
PAGE_SIZE = 50
PAGE_INTERVAL_SEC = 5.0

CARD_SELECTORS = [
    ".cassetteRecruitRecommend__content, .cassetteRecruit__content",
    ".cassetteRecruit",
    "article[class*=recruit]",
]
LINK_SELECTORS = [
    'a[href*="/jobinfo-"]',
    "a.linkArrowS",
    "a.js__ga--setCookieOccName",
    'a[href*="/msg/"]',
]
COMPANY_SELECTORS = [
    "h3.cassetteRecruitRecommend__name",
    ".cassetteRecruitRecommend__name",
    ".cassetteRecruit__name",
    ".companyName",
]
TITLE_SELECTORS = [
    ".cassetteRecruitRecommend__copy a",
    "p.cassetteRecruitRecommend__copy a",
    ".cassetteRecruit__copy a",
    ".cassetteRecruit__heading",
]
TOTAL_SELECTORS = [".result__num em", ".result__num", "[class*=searchResultNum]"]
NEXT_SELECTORS = [".pager__next a", 'a[rel="next"]', "a.next"]
DESCRIPTION_SELECTORS = [
    ".jobDescriptionText",
    ".recruitContents",
    "[class*=jobPointArea]",
    "[class*=job-detail]",
]

JOB_ID_RE = re.compile(r"/jobinfo-([^/]+)/")
RECOMMEND_CLASS_RE = re.compile("Recommend")


def build_search_url(keyword: str = "", location: str = "") -> str:
    params = {}
    if keyword:
        params["searchKeyword"] = keyword
    if location:
        params["locationCodes"] = location
    return SEARCH_URL + (f"?{urlencode(params)}" if params else "")


def parse_job_id(url: str) -> str:
    m = JOB_ID_RE.search(url or "")
    return m.group(1) if m else sha1_hex(url or "")[:16]


def _normalize_job_url(href: str) -> str:
    url = absolute_url(BASE_URL + "/", href)
    if "mynavi.jp" not in url:
        return ""
    # /jobinfo-143434-1-104-1/msg/ -> /jobinfo-143434-1-104-1/
    return re.sub(r"/msg/?$", "/", url.split("?")[0].split("#")[0])


def _card_table(card: Any) -> Dict[str, str]:
    rows = []
    for th in card.select("table th, dl dt"):
        rows.append((th, th.find_next_sibling(["td", "dd"])))
    return label_map(rows)


def _is_promoted(card: Any) -> bool:
    # paid slots render inside .cassetteRecruitRecommend
    if "Recommend" in " ".join(card.get("class") or []):
        return True
    return card.find_parent(class_=RECOMMEND_CLASS_RE) is not None


def classify_rank(card: Dict[str, Any], position: int) -> Tuple[str, float]:
    """Recommend slot: A. First results page: B. Deeper: C."""
    if card.get("promoted"):
        return "A", RANK_CONFIDENCE["A"]
    if position < PAGE_SIZE:
        return "B", RANK_CONFIDENCE["B"]
    return "C", RANK_CONFIDENCE["C"]


def fetch_list(url: str, html: str, *, limit: int = 100) -> List[Dict[str, Any]]:
    """Mynavi search result cards."""
    soup = soupify(html)
    cards: List[Any] = []
    for sel in CARD_SELECTORS:
        cards = soup.select(sel)
        if cards:
            break

    items: List[Dict[str, Any]] = []
    seen: set[str] = set()
    for card in cards:
        link = select_first(card, LINK_SELECTORS) or card.select_one("a[href]")
        if not link:
            continue
        job_url = _normalize_job_url(link.get("href") or "")
        if not job_url or job_url in seen:
            continue
        seen.add(job_url)
        info = _card_table(card)
        items.append(
            {
                "url": job_url,
                "title": first_text(card, TITLE_SELECTORS),
                "company_name": first_text(card, COMPANY_SELECTORS),
                "salary_text": pick(info, "給与", "初年度年収"),
                "location_text": pick(info, "勤務地"),
                "description": pick(info, "仕事内容"),
                "requirements": pick(info, "対象となる方"),
                "labels": [_text(li) for li in card.select("ul.labelCondition li") if _text(li)],
                "promoted": _is_promoted(card),
            }
        )
        if len(items) >= limit:
            break
    return items


def parse_total_count(html: str) -> Optional[int]:
    return total_count_from(soupify(html), TOTAL_SELECTORS)


def next_page_url(url: str, html: str, page_no: int) -> Optional[str]:
    soup = soupify(html)
    node = select_first(soup, NEXT_SELECTORS)
    if node is None:
        node = soup.find("a", string=re.compile("次へ"))
    if node is None:
        return None
    href = absolute_url(url, node.get("href") or "")
    return href or None


def enrich_detail(detail_html: str, *, url: str = "") -> Dict[str, Any]:
    soup = soupify(detail_html)
    if looks_removed(detail_html):
        return {"removed": True}

    rows = []
    for th in soup.select("th.jobOfferTable__head"):
        td = th.find_next_sibling("td")
        value = td.select_one(".text") if td else None
        rows.append((th, value or td))
    for th in soup.select("table.jobOfferTable th, .companyTable th"):
        rows.append((th, th.find_next_sibling("td")))
    info = label_map(rows)

    company_url = ""
    for a in soup.select('a[href^="http"]'):
        label = _text(a)
        href = a.get("href") or ""
        if "mynavi.jp" in href:
            continue
        if "ホームページ" in label or "企業HP" in label or "採用サイト" in label:
            company_url = href
            break
    if not company_url:
        company_url = pick(info, "企業ホームページ", "ホームページ")

    description = fetch_content_smart(detail_html, selectors=DESCRIPTION_SELECTORS).text
    if not description:
        description = pick(info, "仕事内容")

    out: Dict[str, Any] = {
        "title": first_text(soup, ["h1 .occName", ".occName", "h1"]),
        "company_name": first_text(soup, [".companyName", "h1 .companyName", ".recruiter"]),
        "company_url": company_url,
        "employment_type": pick(info, "雇用形態"),
        "industry": pick(info, "事業内容", "業種"),
        "description": description,
        "requirements": pick(info, "対象となる方", "応募資格"),
        "benefits": pick(info, "福利厚生", "待遇・福利厚生"),
        "work_hours": pick(info, "勤務時間"),
        "salary_text": pick(info, "給与", "年収", "想定年収"),
        "address": pick(info, "本社所在地", "勤務地", "所在地"),
        "location_text": pick(info, "勤務地"),
    }
    period = first_text(soup, [".dateInfo", "[class*=publishDate]", "[class*=period]"])
    if period:
        m = re.search(r"(\d{4}/\d{1,2}/\d{1,2})[^\d]+(\d{4}/\d{1,2}/\d{1,2})", period)
        if m:
            out["date_posted"], out["date_expires"] = m.group(1), m.group(2)
    for key, value in jsonld_fields(jsonld_jobposting(soup)).items():
        if value and not out.get(key):
            out[key] = value
    return out
