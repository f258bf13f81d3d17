"""Configuration utilities shared by the discovery and enrichment cycles."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import urlparse

DEFAULT_API_BASE_URL = "https://tokapi-mobile-version.p.rapidapi.com"
DEFAULT_STORAGE_ROOT = Path("storage")
DEFAULT_LOG_DIR = DEFAULT_STORAGE_ROOT / "logs"
DEFAULT_REGION = "US"


@dataclass(slots=True)
class ApiConfig:
    base_url: str = DEFAULT_API_BASE_URL
    api_key: Optional[str] = None
    api_host: Optional[str] = None
    region: str = DEFAULT_REGION

    def host_header(self) -> str:
        if self.api_host:
            return self.api_host
        return urlparse(self.base_url).netloc

    def auth_headers(self) -> dict[str, str]:
        return {
            "X-RapidAPI-Key": self.api_key or "",
            "X-RapidAPI-Host": self.host_header(),
        }


@dataclass(slots=True)
class RateLimitConfig:
    requests_per_second: float = 15.0
    max_workers: int = 10

    @property
    def min_interval(self) -> float:
        if self.requests_per_second <= 0:
            return 0.0
        return 1.0 / self.requests_per_second


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 3
    min_delay: float = 1.0
    max_delay: float = 5.0
    rate_limit_backoff: float = 30.0


def page_retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=3, min_delay=1.0, max_delay=5.0)


def product_retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=10, min_delay=0.3, max_delay=0.5)


@dataclass(slots=True)
class TimeoutConfig:
    request_timeout: float = 10.0


@dataclass(slots=True)
class PaginationConfig:
    page_size: int = 20
    hashtag_max_pages: int = 1000
    handle_max_pages: int = 50
    max_consecutive_failures: int = 5


@dataclass(slots=True)
class HandlePolicyConfig:
    """Thresholds driving automatic handle removal."""

    no_posts_threshold: int = 7
    no_shop_threshold: int = 14
    min_shop_ratio: float = 0.1
    min_videos_for_ratio: int = 50
    recent_post_window: float = 24 * 60 * 60.0
    discovery_batch_size: int = 1000


@dataclass(slots=True)
class ScheduleConfig:
    discovery_interval: float = 60 * 60.0
    cycle_error_sleep: float = 5 * 60.0
    enrichment_batch_size: int = 500
    enrichment_idle_sleep: float = 30.0
    enrichment_error_sleep: float = 5.0


@dataclass(slots=True)
class HarvestConfig:
    db_url: Optional[str] = None
    storage_root: Path = DEFAULT_STORAGE_ROOT
    log_dir: Path = DEFAULT_LOG_DIR
    raw_payload_cache_enabled: bool = True
    api: ApiConfig = field(default_factory=ApiConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    page_retry: RetryConfig = field(default_factory=page_retry_config)
    product_retry: RetryConfig = field(default_factory=product_retry_config)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    pagination: PaginationConfig = field(default_factory=PaginationConfig)
    handles: HandlePolicyConfig = field(default_factory=HandlePolicyConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)

    def ensure_directories(self) -> None:
        self.storage_root.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def raw_payload_path(self, kind: str, source_id: str) -> Path:
        safe_id = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in source_id)
        return self.storage_root / "raw" / f"{kind}_{safe_id}.json"


def _env_value(env: Mapping[str, str], *names: str) -> str | None:
    for name in names:
        value = env.get(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = _env_value(env, name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer (got {value!r})") from exc


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = _env_value(env, name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number (got {value!r})") from exc


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = _env_value(env, name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def load_config_from_env(env: Mapping[str, str] | None = None) -> HarvestConfig:
    """Build a :class:`HarvestConfig` from process environment variables."""

    if env is None:
        env = os.environ

    config = HarvestConfig()
    config.db_url = _env_value(env, "HARVESTER_DATABASE_URL", "DATABASE_URL")

    storage_root = _env_value(env, "HARVESTER_STORAGE_ROOT")
    if storage_root:
        config.storage_root = Path(storage_root).expanduser()
        config.log_dir = config.storage_root / "logs"
    config.raw_payload_cache_enabled = _env_bool(env, "HARVESTER_RAW_PAYLOADS", True)

    config.api.base_url = _env_value(env, "HARVESTER_API_BASE_URL") or DEFAULT_API_BASE_URL
    config.api.api_key = _env_value(env, "RAPIDAPI_KEY", "TOKAPI_KEY")
    config.api.api_host = _env_value(env, "HARVESTER_API_HOST")
    config.api.region = _env_value(env, "HARVESTER_REGION") or DEFAULT_REGION

    config.rate_limit.requests_per_second = _env_float(
        env, "HARVESTER_REQUESTS_PER_SECOND", config.rate_limit.requests_per_second
    )
    config.rate_limit.max_workers = max(1, _env_int(env, "HARVESTER_MAX_WORKERS", config.rate_limit.max_workers))
    config.timeout.request_timeout = _env_float(env, "HARVESTER_REQUEST_TIMEOUT", config.timeout.request_timeout)

    config.pagination.hashtag_max_pages = _env_int(
        env, "HARVESTER_HASHTAG_MAX_PAGES", config.pagination.hashtag_max_pages
    )
    config.pagination.handle_max_pages = _env_int(
        env, "HARVESTER_HANDLE_MAX_PAGES", config.pagination.handle_max_pages
    )

    config.schedule.discovery_interval = _env_float(
        env, "HARVESTER_DISCOVERY_INTERVAL", config.schedule.discovery_interval
    )
    config.schedule.enrichment_batch_size = _env_int(
        env, "HARVESTER_ENRICHMENT_BATCH_SIZE", config.schedule.enrichment_batch_size
    )
    return config


__all__ = [
    "ApiConfig",
    "HandlePolicyConfig",
    "HarvestConfig",
    "PaginationConfig",
    "RateLimitConfig",
    "RetryConfig",
    "ScheduleConfig",
    "TimeoutConfig",
    "load_config_from_env",
    "page_retry_config",
    "product_retry_config",
]
