from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

import trafilatura
from bs4 import BeautifulSoup


@dataclass
class ExtractResult:
    text: str
    method: str  # selector | trafilatura | selector_short | empty
    warnings: list[str]


def extract_by_selector(html: str, selectors: Iterable[str]) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for selector in selectors:
        node = soup.select_one(selector)
        if node:
            text = " ".join(node.get_text(" ", strip=True).split())
            if text:
                return text
    return ""


def fetch_content_smart(
    html: str,
    selectors: Optional[Iterable[str]] = None,
    min_len: int = 80,
    enable_fallback: bool = True,
) -> ExtractResult:
    """Job description text: site selectors first, then trafilatura. Never whole-page text."""
    warnings: list[str] = []
    selected = ""

    # 1) precise selector
    if selectors:
        selected = extract_by_selector(html, selectors)
        if len(selected) >= min_len:
            return ExtractResult(text=selected, method="selector", warnings=warnings)
        warnings.append("selector_too_short_or_failed")

    # 2) trafilatura fallback
    if enable_fallback:
        extracted = trafilatura.extract(
            html,
            output_format="txt",
            include_comments=False,
            include_tables=True,
        )
        if extracted and len(extracted.strip()) >= min_len:
            return ExtractResult(
                text=" ".join(extracted.split()),
                method="trafilatura",
                warnings=warnings + ["fallback_used"],
            )
        warnings.append("trafilatura_failed_or_too_short")

    if selected:
        return ExtractResult(text=selected, method="selector_short", warnings=warnings)
    return ExtractResult(text="", method="empty", warnings=warnings + ["empty"])
