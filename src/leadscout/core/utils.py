from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_QUERY_KEYS = {
    "gclid",
    "fbclid",
    "yclid",
    "msclkid",
    "_ga",
    "_gl",
    "ref",
    "fl",
    "src",
}
TRACKING_QUERY_PREFIXES = ("utm_", "pk_")


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def sha1_hex(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def normalize_whitespace(text: str) -> str:
    return " ".join((text or "").split()).strip()


def to_halfwidth(text: str) -> str:
    """Fold full-width ASCII (Ａ１－) to half-width. Kana is left alone."""
    if not text:
        return ""
    out = []
    for ch in text:
        code = ord(ch)
        if 0xFF01 <= code <= 0xFF5E:
            out.append(chr(code - 0xFEE0))
        elif ch == "　":
            out.append(" ")
        else:
            out.append(ch)
    return "".join(out)


def _is_tracking_param(key: str) -> bool:
    if not key:
        return False
    k = key.lower()
    if k in TRACKING_QUERY_KEYS:
        return True
    return any(k.startswith(prefix) for prefix in TRACKING_QUERY_PREFIXES)


def canonicalize_url(url: str) -> str:
    """Normalize URL for identity: force https, strip tracking params and fragments."""
    if not url:
        return ""
    url = url.strip()
    if url.startswith("//"):
        url = "https:" + url
    try:
        p = urlparse(url)
        query_pairs = [
            (k, v)
            for k, v in parse_qsl(p.query, keep_blank_values=True)
            if not _is_tracking_param(k)
        ]
        scheme = "https" if p.scheme in ("http", "https") else p.scheme
        np = p._replace(scheme=scheme, query=urlencode(query_pairs), fragment="")
        return urlunparse(np)
    except ValueError:
        return url
