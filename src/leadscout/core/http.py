from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry


@dataclass
class HttpClient:
    user_agent: str
    timeout_sec: int = 30
    retries: int = 2

    _browser_headers = {
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "Accept-Language": "ja,en-US;q=0.9,en;q=0.8",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
        "Upgrade-Insecure-Requests": "1",
    }

    def __post_init__(self) -> None:
        self.session = requests.Session()
        # 403/429 are left to the caller: they mean we are being blocked.
        retry = Retry(
            total=self.retries,
            read=self.retries,
            connect=self.retries,
            backoff_factor=0.8,
            status_forcelist=(500, 502, 503, 504),
            allowed_methods=("GET", "HEAD"),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def get(self, url: str, *, headers: Optional[dict] = None) -> requests.Response:
        h = {"User-Agent": self.user_agent, **self._browser_headers}
        if headers:
            h.update(headers)
        return self.session.get(url, headers=h, timeout=self.timeout_sec)

    def close(self) -> None:
        self.session.close()


def decode_text(resp: requests.Response) -> str:
    # requests falls back to latin-1 for text/* without a charset
    if not resp.encoding or resp.encoding.lower() == "iso-8859-1":
        resp.encoding = resp.apparent_encoding or "utf-8"
    return resp.text
