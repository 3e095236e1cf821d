from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from .models import BUDGET_RANKS, NgKeyword, RatePolicy, Source

DEFAULT_RATE_LIMITS: Dict[str, Dict[str, float]] = {
    "mynavi": {"min_interval_sec": 3.0},
    "doda": {"min_interval_sec": 1.5},
    "rikunabi": {"min_interval_sec": 3.0},
}


class ConfigError(RuntimeError):
    pass


@dataclass
class RunConfig:
    sources: List[Source]
    keyword: str = ""
    location: str = ""
    max_duration_minutes: float = 0.0
    dedup_threshold: int = 50
    smart_stop_enabled: bool = True
    rate_limits: Dict[str, RatePolicy] = field(default_factory=dict)
    max_concurrency: int = 0
    max_pages: int = 0
    fetch_details: bool = True
    scrape_type: str = "full"
    progress_interval_sec: float = 0.0
    rank_filter: List[str] = field(default_factory=list)

    @property
    def concurrency_cap(self) -> int:
        if self.max_concurrency and self.max_concurrency > 0:
            return min(self.max_concurrency, len(self.sources))
        return len(self.sources)


def _require(d: Dict[str, Any], key: str, path: str) -> Any:
    if key not in d:
        raise ConfigError(f"Missing required config: {path}.{key}")
    return d[key]


def load_config(path: str | Path = "config.yaml") -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(
            f"Config file not found: {p.resolve()}\n\nTip: copy config.example.yaml -> config.yaml"
        )
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as ex:
        raise ConfigError(f"Invalid YAML in {p}: {ex}") from ex
    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping: {p}")
    validate_config(data)
    return data


def validate_config(cfg: Dict[str, Any]) -> None:
    # Fill defaults; value checks happen in build_run_config.
    cfg.setdefault("run", {})
    run = cfg["run"]
    run.setdefault("sources", [s.value for s in Source])
    run.setdefault("keyword", "")
    run.setdefault("location", "")
    run.setdefault("max_duration_minutes", 60)
    run.setdefault("dedup_threshold", 50)
    run.setdefault("smart_stop", True)
    run.setdefault("max_concurrency", 0)
    run.setdefault("max_pages", 0)
    run.setdefault("fetch_details", True)
    run.setdefault("scrape_type", "full")
    run.setdefault("progress_interval_sec", 0)
    run.setdefault("rank_filter", [])

    cfg.setdefault("rate_limit", {})
    cfg["rate_limit"].setdefault("default", {})
    cfg["rate_limit"]["default"].setdefault("min_interval_sec", 3.0)
    cfg["rate_limit"]["default"].setdefault("jitter_sec", 1.0)
    cfg["rate_limit"]["default"].setdefault("max_concurrent", 1)
    for name, defaults in DEFAULT_RATE_LIMITS.items():
        cfg["rate_limit"].setdefault(name, {})
        for k, v in defaults.items():
            cfg["rate_limit"][name].setdefault(k, v)

    cfg.setdefault("ng_keywords", [])

    cfg.setdefault("runtime", {})
    cfg["runtime"].setdefault("env", "dev")
    cfg["runtime"].setdefault("timezone", "Asia/Tokyo")
    cfg["runtime"].setdefault("http_timeout_sec", 30)
    cfg["runtime"].setdefault("http_retries", 2)
    cfg["runtime"].setdefault(
        "user_agent",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    )
    cfg["runtime"].setdefault("state_db_path", "state/leads.db")
    cfg["runtime"].setdefault("log_dir", "logs")
    cfg["runtime"].setdefault("log_level", "INFO")
    cfg["runtime"].setdefault("stale_after_days", 30)


def _number(value: Any, path: str, *, minimum: float = 0.0) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid value for {path}: {value!r}")
    try:
        num = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {path}: {value!r}") from None
    if num < minimum:
        raise ConfigError(f"Invalid value for {path}: {value!r} (must be >= {minimum:g})")
    return num


def parse_rate_policy(raw: Dict[str, Any], *, base: RatePolicy, path: str) -> RatePolicy:
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid rate limit for {path}: expected a mapping")
    policy = RatePolicy(
        min_interval_sec=_number(raw.get("min_interval_sec", base.min_interval_sec), f"{path}.min_interval_sec"),
        jitter_sec=_number(raw.get("jitter_sec", base.jitter_sec), f"{path}.jitter_sec"),
        max_concurrent=int(
            _number(raw.get("max_concurrent", base.max_concurrent), f"{path}.max_concurrent", minimum=1)
        ),
    )
    return policy


def parse_sources(raw: Any) -> List[Source]:
    if isinstance(raw, str):
        raw = [s for s in raw.replace(",", " ").split() if s]
    sources: List[Source] = []
    for item in raw or []:
        try:
            src = Source.parse(item)
        except ValueError as ex:
            raise ConfigError(str(ex)) from None
        if src not in sources:
            sources.append(src)
    if not sources:
        raise ConfigError("No sources selected")
    return sources


def parse_rank_filter(raw: Any) -> List[str]:
    """Budget ranks to keep; empty keeps every rank."""
    if isinstance(raw, str):
        raw = [r for r in raw.replace(",", " ").split() if r]
    ranks: List[str] = []
    for item in raw or []:
        rank = str(item).strip().upper()
        if rank not in BUDGET_RANKS:
            raise ConfigError(
                f"Invalid value for run.rank_filter: {item!r} (expected one of {', '.join(BUDGET_RANKS)})"
            )
        if rank not in ranks:
            ranks.append(rank)
    return ranks


def build_run_config(cfg: Dict[str, Any], **overrides: Any) -> RunConfig:
    """Validated RunConfig from a loaded config dict plus CLI overrides (None = keep)."""
    validate_config(cfg)
    run = dict(cfg["run"])
    for k, v in overrides.items():
        if v is not None:
            run[k] = v

    sources = parse_sources(run.get("sources"))

    rl_cfg = cfg.get("rate_limit") or {}
    default_policy = parse_rate_policy(
        rl_cfg.get("default") or {}, base=RatePolicy(), path="rate_limit.default"
    )
    rate_limits: Dict[str, RatePolicy] = {}
    for src in sources:
        rate_limits[src.value] = parse_rate_policy(
            rl_cfg.get(src.value) or {}, base=default_policy, path=f"rate_limit.{src.value}"
        )

    threshold = int(_number(run.get("dedup_threshold"), "run.dedup_threshold", minimum=1))
    max_concurrency = int(_number(run.get("max_concurrency") or 0, "run.max_concurrency"))

    return RunConfig(
        sources=sources,
        keyword=str(run.get("keyword") or "").strip(),
        location=str(run.get("location") or "").strip(),
        max_duration_minutes=_number(run.get("max_duration_minutes") or 0, "run.max_duration_minutes"),
        dedup_threshold=threshold,
        smart_stop_enabled=bool(run.get("smart_stop", True)),
        rate_limits=rate_limits,
        max_concurrency=max_concurrency,
        max_pages=int(_number(run.get("max_pages") or 0, "run.max_pages")),
        fetch_details=bool(run.get("fetch_details", True)),
        scrape_type=str(run.get("scrape_type") or "full"),
        progress_interval_sec=_number(run.get("progress_interval_sec") or 0, "run.progress_interval_sec"),
        rank_filter=parse_rank_filter(run.get("rank_filter")),
    )


def validate_run_config(rc: RunConfig) -> None:
    if not rc.sources:
        raise ConfigError("No sources selected")
    if rc.dedup_threshold < 1:
        raise ConfigError(f"Invalid value for run.dedup_threshold: {rc.dedup_threshold}")
    if rc.max_concurrency < 0:
        raise ConfigError(f"Invalid value for run.max_concurrency: {rc.max_concurrency}")
    for name, policy in rc.rate_limits.items():
        if policy.min_interval_sec < 0 or policy.jitter_sec < 0:
            raise ConfigError(f"Invalid rate limit for {name}: negative interval")
        if policy.max_concurrent < 1:
            raise ConfigError(f"Invalid rate limit for {name}: max_concurrent must be >= 1")
    for rank in rc.rank_filter:
        if rank not in BUDGET_RANKS:
            raise ConfigError(f"Invalid value for run.rank_filter: {rank!r}")


def parse_ng_keywords(raw: Any) -> List[NgKeyword]:
    out: List[NgKeyword] = []
    for item in raw or []:
        if isinstance(item, str):
            item = {"keyword": item}
        if not isinstance(item, dict) or not str(item.get("keyword") or "").strip():
            raise ConfigError(f"Invalid ng_keywords entry: {item!r}")
        category = str(item.get("category") or "").strip().lower()
        if category not in ("", "company", "title", "description"):
            raise ConfigError(f"Invalid ng_keywords category: {category!r}")
        out.append(
            NgKeyword(
                keyword=str(item["keyword"]).strip(),
                category=category,
                is_regex=bool(item.get("is_regex", False)),
            )
        )
    return out
