import os
from dataclasses import dataclass, field
from typing import Mapping


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    return int(raw) if raw else default

def _page_cap(env: Mapping[str, str], name: str, default: int) -> int:
    value = _int(env, name, default)
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got {value}")
    return value

def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    return float(raw) if raw else default

def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = (env.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"true", "1", "yes", "on"}

def _csv(env: Mapping[str, str], name: str) -> list[str]:
    return [p.strip() for p in (env.get(name) or "").split(",") if p.strip()]


@dataclass
class IngestionConfig:
    """Every option the ingestion pipeline reads, loaded from the environment."""

    # catalog provider
    catalog_base_url: str = "https://apis.justwatch.com/content"
    catalog_region: str = "en_IN"
    catalog_requests_per_second: float = 2
    catalog_timeout: float = 15

    # metadata provider
    tmdb_base_url: str = "https://api.themoviedb.org/3"
    tmdb_api_key: str | None = None
    tmdb_token: str | None = None
    tmdb_requests_per_second: float = 4
    tmdb_timeout: float = 10

    # retries
    max_retries: int = 3
    retry_delay_ms: int = 1000

    # scheduling
    cron_schedule: str = "0 */6 * * *"
    schedule_enabled: bool = True
    bootstrap_on_start: bool = False
    bootstrap_platforms: list[str] = field(default_factory=list)

    # run sizes
    bootstrap_max_pages: int = 20
    update_max_pages: int = 5
    bootstrap_enrich_limit: int = 100
    update_enrich_limit: int = 50
    enrich_batch_size: int = 10

    # courtesy delays between pages / platforms / enrichment batches
    page_delay_ms: int = 500
    platform_delay_ms: int = 1000
    batch_delay_ms: int = 1000

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "IngestionConfig":
        env = os.environ if env is None else env
        d = cls()
        return cls(
            catalog_base_url=env.get("CATALOG_BASE_URL") or d.catalog_base_url,
            catalog_region=env.get("CATALOG_REGION") or d.catalog_region,
            catalog_requests_per_second=_float(env, "CATALOG_REQUESTS_PER_SECOND", d.catalog_requests_per_second),
            catalog_timeout=_float(env, "CATALOG_TIMEOUT", d.catalog_timeout),
            tmdb_base_url=env.get("TMDB_BASE_URL") or d.tmdb_base_url,
            tmdb_api_key=env.get("TMDB_API_KEY") or None,
            tmdb_token=env.get("TMDB_TOKEN") or None,
            tmdb_requests_per_second=_float(env, "TMDB_REQUESTS_PER_SECOND", d.tmdb_requests_per_second),
            tmdb_timeout=_float(env, "TMDB_TIMEOUT", d.tmdb_timeout),
            max_retries=_int(env, "MAX_RETRIES", d.max_retries),
            retry_delay_ms=_int(env, "RETRY_DELAY_MS", d.retry_delay_ms),
            cron_schedule=(env.get("INGESTION_CRON_SCHEDULE") or d.cron_schedule).strip(),
            schedule_enabled=_bool(env, "INGESTION_SCHEDULE_ENABLED", d.schedule_enabled),
            bootstrap_on_start=_bool(env, "BOOTSTRAP_ON_START", d.bootstrap_on_start),
            bootstrap_platforms=_csv(env, "BOOTSTRAP_PLATFORMS"),
            bootstrap_max_pages=_page_cap(env, "BOOTSTRAP_MAX_PAGES", d.bootstrap_max_pages),
            update_max_pages=_page_cap(env, "UPDATE_MAX_PAGES", d.update_max_pages),
            bootstrap_enrich_limit=_int(env, "BOOTSTRAP_ENRICH_LIMIT", d.bootstrap_enrich_limit),
            update_enrich_limit=_int(env, "UPDATE_ENRICH_LIMIT", d.update_enrich_limit),
            enrich_batch_size=_int(env, "ENRICH_BATCH_SIZE", d.enrich_batch_size),
            page_delay_ms=_int(env, "PAGE_DELAY_MS", d.page_delay_ms),
            platform_delay_ms=_int(env, "PLATFORM_DELAY_MS", d.platform_delay_ms),
            batch_delay_ms=_int(env, "BATCH_DELAY_MS", d.batch_delay_ms),
            log_level=(env.get("LOG_LEVEL") or d.log_level).upper(),
        )
