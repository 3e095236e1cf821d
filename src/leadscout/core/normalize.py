from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import List, Optional, Tuple

from dateutil import parser as date_parser

from .utils import normalize_whitespace, to_halfwidth

PREFECTURES = (
    "北海道",
    "青森県",
    "岩手県",
    "宮城県",
    "秋田県",
    "山形県",
    "福島県",
    "茨城県",
    "栃木県",
    "群馬県",
    "埼玉県",
    "千葉県",
    "東京都",
    "神奈川県",
    "新潟県",
    "富山県",
    "石川県",
    "福井県",
    "山梨県",
    "長野県",
    "岐阜県",
    "静岡県",
    "愛知県",
    "三重県",
    "滋賀県",
    "京都府",
    "大阪府",
    "兵庫県",
    "奈良県",
    "和歌山県",
    "鳥取県",
    "島根県",
    "岡山県",
    "広島県",
    "山口県",
    "徳島県",
    "香川県",
    "愛媛県",
    "高知県",
    "福岡県",
    "佐賀県",
    "長崎県",
    "熊本県",
    "大分県",
    "宮崎県",
    "鹿児島県",
    "沖縄県",
)

PREFECTURE_ALIASES = {
    "東京": "東京都",
    "大阪": "大阪府",
    "京都": "京都府",
    "神奈川": "神奈川県",
    "埼玉": "埼玉県",
    "千葉": "千葉県",
    "愛知": "愛知県",
    "福岡": "福岡県",
    "兵庫": "兵庫県",
    "広島": "広島県",
    "宮城": "宮城県",
}

INDUSTRY_CATEGORIES = (
    ("IT・通信", ("IT", "システム", "ソフトウェア", "Web", "インターネット", "情報処理", "SaaS", "クラウド", "アプリ", "ネットワーク", "通信", "セキュリティ", "AI", "人工知能", "DX")),
    ("メーカー・製造", ("製造", "メーカー", "機械", "電機", "電子", "部品", "素材", "化学", "鉄鋼", "金属", "自動車", "食品", "医薬品", "化粧品", "繊維", "アパレル")),
    ("商社・流通・小売", ("商社", "卸売", "小売", "流通", "百貨店", "スーパー", "コンビニ", "EC", "通販", "専門店", "量販店")),
    ("金融・保険", ("銀行", "証券", "保険", "金融", "ファイナンス", "信用金庫", "信託", "投資", "リース", "クレジット", "カード")),
    ("不動産・建設", ("不動産", "建設", "建築", "ゼネコン", "ハウス", "住宅", "マンション", "ビル", "土木", "設計", "施工", "デベロッパー")),
    ("広告・マスコミ・エンタメ", ("広告", "マスコミ", "メディア", "放送", "出版", "印刷", "新聞", "テレビ", "ラジオ", "映像", "エンタメ", "ゲーム", "音楽", "芸能", "イベント")),
    ("コンサルティング", ("コンサル", "シンクタンク", "調査", "リサーチ", "経営", "戦略", "会計", "監査", "税理士", "弁護士", "士業")),
    ("人材・教育", ("人材", "派遣", "紹介", "採用", "研修", "教育", "学校", "塾", "予備校", "スクール", "資格", "eラーニング")),
    ("医療・福祉・介護", ("医療", "病院", "クリニック", "福祉", "介護", "薬局", "調剤", "ヘルスケア", "健康", "歯科", "看護")),
    ("サービス・飲食・レジャー", ("サービス", "飲食", "レストラン", "ホテル", "旅行", "観光", "レジャー", "アミューズメント", "美容", "エステ", "ブライダル", "葬儀", "清掃")),
    ("物流・運輸", ("物流", "運輸", "運送", "倉庫", "配送", "宅配", "貨物", "海運", "航空", "鉄道", "タクシー", "バス")),
    ("エネルギー・インフラ", ("電力", "ガス", "石油", "エネルギー", "水道", "インフラ", "再生可能", "太陽光", "風力", "原子力")),
    ("官公庁・団体", ("官公庁", "公務員", "自治体", "団体", "協会", "組合", "NPO", "NGO", "財団", "社団")),
)

COMPANY_PROMO_TAGS = re.compile(
    r"【(?:プライム市場|スタンダード市場|グロース市場|東証一部|東証二部|TOKYO PRO Market上場|急募|未経験歓迎)】"
)
COMPANY_GROUP_NOTE = re.compile(r"[（(][^（）()]*グループ[^（）()]*[）)]")
POSTAL_CODE_RE = re.compile(r"〒?\s*\d{3}-?\d{4}\s*")

_SALARY_SEP = r"[〜~～\-－ー―]+"
_SALARY_UNIT = r"(万円|万|円)"
SALARY_RANGE_RE = re.compile(
    r"(\d+(?:\.\d+)?)\s*" + _SALARY_UNIT + r"?\s*" + _SALARY_SEP + r"\s*(\d+(?:\.\d+)?)\s*" + _SALARY_UNIT
)
SALARY_OPEN_RE = re.compile(
    r"(\d+(?:\.\d+)?)\s*" + _SALARY_UNIT + r"\s*" + _SALARY_SEP + r"(?!\s*\d)"
)
SALARY_MIN_ONLY_RE = re.compile(r"(\d+(?:\.\d+)?)\s*" + _SALARY_UNIT + r"\s*以上")
SALARY_SINGLE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*" + _SALARY_UNIT)
_DIGIT_COMMA_RE = re.compile(r"(?<=\d),(?=\d{3})")

HOURS_PER_YEAR = 8 * 20 * 12
DAYS_PER_YEAR = 20 * 12

_JP_WEEKDAY_RE = re.compile(r"[（(][月火水木金土日祝・]+[）)]")
_YMD_RE = re.compile(r"(\d{4})\s*[/.\-年]\s*(\d{1,2})\s*[/.\-月]\s*(\d{1,2})")
_DATE_SKIP_TOKENS = ("随時", "未定", "なし", "-")


def clean_company_name(name: str) -> str:
    if not name:
        return ""
    text = re.split(r"[|｜]", name)[0]
    text = COMPANY_PROMO_TAGS.sub("", text)
    text = COMPANY_GROUP_NOTE.sub("", text)
    text = to_halfwidth(text)
    return normalize_whitespace(text)


def find_prefecture(text: str) -> str:
    if not text:
        return ""
    for pref in PREFECTURES:
        if pref in text:
            return pref
    return ""


def normalize_area(area: str) -> str:
    """Map free-form area text (東京, 東京都港区...) to a prefecture name."""
    text = (area or "").strip()
    if not text:
        return ""
    if text in PREFECTURES:
        return text
    if text in PREFECTURE_ALIASES:
        return PREFECTURE_ALIASES[text]
    pref = find_prefecture(text)
    if pref:
        return pref
    for alias, full in PREFECTURE_ALIASES.items():
        if alias in text:
            return full
    return text


def normalize_address(address: str) -> str:
    """Strip postal code and start the address at the prefecture."""
    if not address:
        return ""
    text = POSTAL_CODE_RE.sub("", address)
    text = normalize_whitespace(text)
    for pref in PREFECTURES:
        idx = text.find(pref)
        if idx != -1:
            return text[idx:]
    return text


def parse_locations(text: str) -> List[str]:
    """Prefecture + locality strings found in a location text, in order, unique."""
    text = normalize_whitespace(text)
    if not text:
        return []
    found: List[str] = []
    for m in re.finditer("|".join(PREFECTURES), text):
        pref = m.group(0)
        rest = text[m.end() :]
        loc = re.match(r"([^、,，/／\s（(]+?[市区町村郡])", rest)
        value = pref + loc.group(1) if loc else pref
        if value not in found:
            found.append(value)
    if not found:
        area = normalize_area(text.split("、")[0])
        if area in PREFECTURES:
            found.append(area)
    return found


def normalize_industry(industry: str) -> str:
    if not industry:
        return ""
    low = industry.lower()
    for category, keywords in INDUSTRY_CATEGORIES:
        for kw in keywords:
            if kw.lower() in low:
                return category
    head = re.split(r"[、,・/]", normalize_whitespace(industry))[0].strip()
    return head[:20] + "..." if len(head) > 20 else head


def _salary_amount(num: str, unit: Optional[str], fallback_unit: Optional[str] = None) -> float:
    value = float(num)
    u = unit or fallback_unit or ""
    if u.startswith("万"):
        value *= 10000
    return value


def _salary_in_segment(text: str) -> Tuple[Optional[float], Optional[float]]:
    m = SALARY_RANGE_RE.search(text)
    if m:
        lo = _salary_amount(m.group(1), m.group(2), m.group(4))
        hi = _salary_amount(m.group(3), m.group(4))
        return lo, hi
    m = SALARY_MIN_ONLY_RE.search(text) or SALARY_OPEN_RE.search(text)
    if m:
        return _salary_amount(m.group(1), m.group(2)), None
    m = SALARY_SINGLE_RE.search(text)
    if m:
        v = _salary_amount(m.group(1), m.group(2))
        return v, v
    return None, None


def parse_salary(text: str) -> Tuple[Optional[int], Optional[int]]:
    """Annual salary range in yen from Japanese salary text.

    年収 amounts are taken as-is, 月給/月収 are multiplied by 12, 日給 by
    20 days x 12 and 時給 by 8h x 20 days x 12. Returns (None, None) when no
    amount with a 円/万 unit is present.
    """
    if not text:
        return None, None
    t = _DIGIT_COMMA_RE.sub("", to_halfwidth(text))

    segments = (
        ("年収", 1),
        ("月給", 12),
        ("月収", 12),
        ("日給", DAYS_PER_YEAR),
        ("時給", HOURS_PER_YEAR),
    )
    for marker, multiplier in segments:
        idx = t.find(marker)
        if idx == -1:
            continue
        lo, hi = _salary_in_segment(t[idx:])
        if lo is not None:
            return _scaled(lo, multiplier), _scaled(hi, multiplier)

    lo, hi = _salary_in_segment(t)
    return _scaled(lo, 1), _scaled(hi, 1)


def _scaled(value: Optional[float], multiplier: int) -> Optional[int]:
    if value is None:
        return None
    return int(round(value * multiplier))


def normalize_date(raw: str) -> str:
    """ISO date (YYYY-MM-DD) from 2026/2/2（月）, 2026年2月2日, ISO strings..."""
    raw = normalize_whitespace(to_halfwidth(raw or ""))
    if not raw or raw in _DATE_SKIP_TOKENS:
        return ""
    m = _YMD_RE.search(raw)
    if m:
        try:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3))).isoformat()
        except ValueError:
            return ""
    text = _JP_WEEKDAY_RE.sub(" ", raw)
    try:
        dt = date_parser.parse(text, fuzzy=True)
    except (ValueError, OverflowError):
        return ""
    return dt.date().isoformat()


def date_from_epoch_ms(value) -> str:
    try:
        ms = float(value)
    except (TypeError, ValueError):
        return ""
    if ms <= 0:
        return ""
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).date().isoformat()


def is_expired(date_expires: str, *, today: Optional[date] = None) -> bool:
    if not date_expires:
        return False
    try:
        d = date.fromisoformat(date_expires[:10])
    except ValueError:
        return False
    today = today or datetime.now(timezone.utc).date()
    return d < today
