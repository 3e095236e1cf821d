from __future__ import annotations

import html as htmlmod
import json
import re
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ...core.utils import normalize_whitespace, to_halfwidth

BLOCKED_MARKERS = (
    "captcha",
    "recaptcha",
    "access denied",
    "アクセスが集中",
    "アクセスが制限",
    "ロボットではありません",
    "不正なアクセス",
)

REMOVED_MARKERS = (
    "掲載が終了",
    "掲載を終了",
    "ページが見つかりません",
    "お探しのページは見つかりません",
    "求人情報は存在しません",
)

_COUNT_RE = re.compile(r"([0-9][0-9,]*)")
_COUNT_IN_TEXT_RE = re.compile(r"(\d{1,3}(?:,\d{3})+|\d+)\s*件")


def _text(node: Any) -> str:
    if not node:
        return ""
    return normalize_whitespace(node.get_text(" ", strip=True))


def soupify(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def select_first(root: Any, selectors: Iterable[str]) -> Any:
    for sel in selectors:
        node = root.select_one(sel)
        if node:
            return node
    return None


def first_text(root: Any, selectors: Iterable[str]) -> str:
    for sel in selectors:
        t = _text(root.select_one(sel))
        if t:
            return t
    return ""


def absolute_url(base: str, href: str) -> str:
    href = (href or "").strip()
    if not href or href.startswith("javascript:"):
        return ""
    if href.startswith("//"):
        return "https:" + href
    return urljoin(base, href)


def _visible_head(html: str, limit: int = 1500) -> tuple:
    soup = soupify(html)
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    title = _text(soup.title)
    return title, soup.get_text(" ", strip=True)[:limit]


def looks_blocked(html: str) -> bool:
    title, body = _visible_head(html)
    hay = f"{title} {body}".lower()
    return any(m in hay for m in BLOCKED_MARKERS)


def looks_removed(html: str) -> bool:
    title, body = _visible_head(html)
    hay = f"{title} {body}"
    return any(m in hay for m in REMOVED_MARKERS) or title.startswith("404")


def total_count_from(soup: BeautifulSoup, selectors: Iterable[str]) -> Optional[int]:
    """Listing total from a header node, falling back to the first "N件" in the page."""
    for sel in selectors:
        node = soup.select_one(sel)
        if not node:
            continue
        m = _COUNT_RE.search(to_halfwidth(_text(node)))
        if m:
            return int(m.group(1).replace(",", ""))
    m = _COUNT_IN_TEXT_RE.search(to_halfwidth(soup.get_text(" ", strip=True)))
    if m:
        return int(m.group(1).replace(",", ""))
    return None


def label_map(pairs: Iterable[tuple]) -> Dict[str, str]:
    """Label -> value for (label_node, value_node) pairs; first label wins."""
    out: Dict[str, str] = {}
    for label_node, value_node in pairs:
        key = _text(label_node)
        if key and value_node is not None and key not in out:
            out[key] = _text(value_node)
    return out


def pick(info: Dict[str, str], *labels: str) -> str:
    """Value for the first label present; a label also matches as a prefix (給与 -> 給与・待遇)."""
    for label in labels:
        if info.get(label):
            return info[label]
    for label in labels:
        for key, value in info.items():
            if key.startswith(label) and value:
                return value
    return ""


def _iter_jsonld_objects(raw: Any) -> Iterable[Dict[str, Any]]:
    if isinstance(raw, dict):
        if "@graph" in raw and isinstance(raw["@graph"], list):
            for n in raw["@graph"]:
                if isinstance(n, dict):
                    yield n
            return
        yield raw
        return
    if isinstance(raw, list):
        for n in raw:
            if isinstance(n, dict):
                yield n


def jsonld_jobposting(soup: BeautifulSoup) -> Dict[str, Any]:
    for s in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = s.string or s.get_text() or ""
        if not raw.strip():
            continue
        try:
            data = json.loads(htmlmod.unescape(raw))
        except ValueError:
            continue
        for obj in _iter_jsonld_objects(data):
            t = obj.get("@type") or obj.get("type")
            if isinstance(t, list):
                is_job = any(str(x).lower() == "jobposting" for x in t)
            else:
                is_job = str(t or "").lower() == "jobposting"
            if is_job:
                return obj
    return {}


def jsonld_fields(job: Dict[str, Any]) -> Dict[str, Any]:
    """Fields of a schema.org JobPosting in the shared detail shape."""
    if not job:
        return {}
    out: Dict[str, Any] = {}
    title = normalize_whitespace(str(job.get("title") or job.get("name") or ""))
    if title:
        out["title"] = title
    hiring = job.get("hiringOrganization") or {}
    if isinstance(hiring, list) and hiring:
        hiring = hiring[0]
    if isinstance(hiring, dict):
        if hiring.get("name"):
            out["company_name"] = normalize_whitespace(str(hiring["name"]))
        if hiring.get("sameAs"):
            out["company_url"] = str(hiring["sameAs"]).strip()
        if hiring.get("logo"):
            logo = hiring["logo"]
            out["company_logo"] = str(logo.get("url") if isinstance(logo, dict) else logo)
    raw_desc = job.get("description") or ""
    if raw_desc:
        out["description"] = normalize_whitespace(soupify(str(raw_desc)).get_text(" ", strip=True))
    emp = job.get("employmentType")
    if isinstance(emp, list):
        emp = "、".join(str(x) for x in emp)
    if emp:
        out["employment_type"] = str(emp)
    for src_key, dst_key in (
        ("datePosted", "date_posted"),
        ("validThrough", "date_expires"),
    ):
        if job.get(src_key):
            out[dst_key] = str(job[src_key])
    loc = job.get("jobLocation") or {}
    if isinstance(loc, list) and loc:
        loc = loc[0]
    if isinstance(loc, dict):
        addr = loc.get("address") or {}
        if isinstance(addr, dict):
            parts = [
                addr.get("addressRegion", ""),
                addr.get("addressLocality", ""),
                addr.get("streetAddress", ""),
            ]
            joined = "".join(str(p) for p in parts if p)
            if joined:
                out["address"] = joined
        elif isinstance(addr, str) and addr:
            out["address"] = addr
    return out


def split_labels(text: str) -> List[str]:
    parts = re.split(r"[、,，/／・\s]+", text or "")
    return [p for p in dict.fromkeys(x.strip() for x in parts) if p]
