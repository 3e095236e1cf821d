from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from ...core.extract import fetch_content_smart
from ...core.models import RANK_CONFIDENCE
from ...core.normalize import date_from_epoch_ms, normalize_area
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

SOURCE = "rikunabi"
BASE_URL = "https://next.rikunabi.com"
SEARCH_URL = f"{BASE_URL}/job_search/"
MAX_PAGES = 50
PAGE_INTERVAL_SEC = 5.0

PREFECTURE_SLUGS = {
    "北海道": "hokkaido",
    "青森県": "aomori",
    "岩手県": "iwate",
    "宮城県": "miyagi",
    "秋田県": "akita",
    "山形県": "yamagata",
    "福島県": "fukushima",
    "茨城県": "ibaraki",
    "栃木県": "tochigi",
    "群馬県": "gunma",
    "埼玉県": "saitama",
    "千葉県": "chiba",
    "東京都": "tokyo",
    "神奈川県": "kanagawa",
    "新潟県": "niigata",
    "富山県": "toyama",
    "石川県": "ishikawa",
    "福井県": "fukui",
    "山梨県": "yamanashi",
    "長野県": "nagano",
    "岐阜県": "gifu",
    "静岡県": "shizuoka",
    "愛知県": "aichi",
    "三重県": "mie",
    "滋賀県": "shiga",
    "京都府": "kyoto",
    "大阪府": "osaka",
    "兵庫県": "hyogo",
    "奈良県": "nara",
    "和歌山県": "wakayama",
    "鳥取県": "tottori",
    "島根県": "shimane",
    "岡山県": "okayama",
    "広島県": "hiroshima",
    "山口県": "yamaguchi",
    "徳島県": "tokushima",
    "香川県": "kagawa",
    "愛媛県": "ehime",
    "高知県": "kochi",
    "福岡県": "fukuoka",
    "佐賀県": "saga",
    "長崎県": "nagasaki",
    "熊本県": "kumamoto",
    "大分県": "oita",
    "宮崎県": "miyazaki",
    "鹿児島県": "kagoshima",
    "沖縄県": "okinawa",
}

CARD_SELECTOR = 'a[class*="styles_bigCard"]'
FLAIR_SELECTOR = '[class*="flair"], [class*="Flair"], [class*="premium"], [class*="sponsored"]'
FLAIR_CLASS_RE = re.compile(r"flair|premium|sponsored", re.IGNORECASE)
TOTAL_SELECTORS = ['[class*="styles_totalNumber"]', '[class*="styles_resultCount"]']
DESCRIPTION_SELECTORS = ['[class*="styles_jobDescription"]', '[class*="styles_catchCopy"]']
COMPANY_HP_LABELS = ("企業HP", "ホームページ", "HP", "企業ホームページ", "WEBサイト", "Webサイト", "公式サイト")

JOB_ID_RE = re.compile(r"/viewjob/([^/?#]+)")
COMPANY_ID_RE = re.compile(r"/company/([^/?#]+)/")


def build_search_url(keyword: str = "", location: str = "") -> str:
    url = SEARCH_URL
    slug = PREFECTURE_SLUGS.get(normalize_area(location)) if location else None
    if slug:
        url += f"area-{slug}/"
    if keyword:
        url += f"?kw={quote(keyword)}"
    return url


def parse_job_id(url: str) -> str:
    m = JOB_ID_RE.search(url or "") or COMPANY_ID_RE.search(url or "")
    return m.group(1) if m else sha1_hex(url or "")[:16]


def _is_flair(card: Any) -> bool:
    if FLAIR_CLASS_RE.search(" ".join(card.get("class") or [])):
        return True
    return card.select_one(FLAIR_SELECTOR) is not None


def classify_rank(card: Dict[str, Any], position: int) -> Tuple[str, float]:
    """Flair or sponsored badge: A. First hundred results: B. Rest: C."""
    if card.get("promoted"):
        return "A", RANK_CONFIDENCE["A"]
    if position < 100:
        return "B", RANK_CONFIDENCE["B"]
    return "C", RANK_CONFIDENCE["C"]


def fetch_list(url: str, html: str, *, limit: int = 100) -> List[Dict[str, Any]]:
    soup = soupify(html)
    items: List[Dict[str, Any]] = []
    seen: set[str] = set()
    for card in soup.select(CARD_SELECTOR):
        href = card.get("href") or ""
        if "/viewjob/" not in href:
            continue
        job_url = absolute_url(BASE_URL + "/", href).split("?")[0]
        if job_url in seen:
            continue
        seen.add(job_url)
        items.append(
            {
                "url": job_url,
                "title": first_text(card, ['[class*="styles_title"]', "h2", "h3"]),
                "company_name": first_text(card, ['[class*="styles_employerName"]', '[class*="styles_companyName"]']),
                "salary_text": first_text(card, ['[class*="styles_salary"]']),
                "location_text": first_text(card, ['[class*="styles_workLocation"]', '[class*="styles_location"]']),
                "labels": [_text(t) for t in card.select('[class*="styles_tag"]') if _text(t)],
                "promoted": _is_flair(card),
            }
        )
        if len(items) >= limit:
            break
    return items


def parse_total_count(html: str) -> Optional[int]:
    return total_count_from(soupify(html), TOTAL_SELECTORS)


def next_page_url(url: str, html: str, page_no: int) -> Optional[str]:
    node = soupify(html).select_one('a[aria-label="次へ"]')
    if node is None or node.get("aria-disabled") == "true":
        return None
    href = absolute_url(url, node.get("href") or "")
    return href or None


def next_data_date_published(soup: Any) -> str:
    """datePublished (epoch ms) from the Next.js __NEXT_DATA__ payload."""
    script = soup.find("script", id="__NEXT_DATA__")
    if not script:
        return ""
    try:
        data = json.loads(script.string or script.get_text() or "")
    except ValueError:
        return ""
    if not isinstance(data, dict):
        return ""
    job = ((data.get("props") or {}).get("pageProps") or {}).get("job") or {}
    base = ((job.get("lettice") or {}).get("letticeLogBase") or {}).get("datePublished")
    if base is None:
        base = job.get("datePublished")
    if isinstance(base, (int, float)):
        return date_from_epoch_ms(base)
    return str(base or "")


def enrich_detail(detail_html: str, *, url: str = "") -> Dict[str, Any]:
    soup = soupify(detail_html)
    if looks_removed(detail_html):
        return {"removed": True}

    job_rows = []
    for tr in soup.select('table[class*="styles_tableAboutApplication"] tr'):
        job_rows.append((tr.select_one("th"), tr.select_one('td[class*="styles_content"]') or tr.select_one("td")))
    job_info = label_map(job_rows)

    company_rows = []
    for tr in soup.select('tbody[class*="styles_companyInfo"] tr'):
        company_rows.append((tr.select_one("th"), tr.select_one("td")))
    company_info = label_map(company_rows)

    company_url = pick(company_info, *COMPANY_HP_LABELS)
    if company_url and not company_url.startswith("http"):
        m = re.search(r"https?://\S+", company_url)
        company_url = m.group(0) if m else ""

    description = fetch_content_smart(detail_html, selectors=DESCRIPTION_SELECTORS).text
    if not description:
        description = pick(job_info, "仕事内容")

    out: Dict[str, Any] = {
        "title": first_text(soup, ['h1[class*="styles_heading"]', 'h2[class*="styles_title"]']),
        "company_name": first_text(soup, ['a[class*="styles_linkTextCompany"]', '[class*="styles_employerName"]']),
        "company_url": company_url,
        "employment_type": pick(job_info, "雇用形態"),
        "industry": pick(company_info, "事業内容"),
        "description": description,
        "requirements": pick(job_info, "求めている人材", "応募資格", "対象となる方"),
        "benefits": pick(job_info, "待遇・福利厚生", "福利厚生"),
        "work_hours": pick(job_info, "勤務時間"),
        "salary_text": pick(job_info, "給与"),
        "address": pick(company_info, "本社所在地") or pick(job_info, "勤務地"),
        "location_text": pick(job_info, "勤務地"),
        "date_posted": next_data_date_published(soup),
    }
    for key, value in jsonld_fields(jsonld_jobposting(soup)).items():
        if value and not out.get(key):
            out[key] = value
    return out
