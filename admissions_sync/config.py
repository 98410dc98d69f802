from dataclasses import dataclass
import os

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    input_dir: str
    output_dir: str
    cache_host: str
    cache_port: int
    cache_password: str | None
    cache_db: int
    cache_key_root: str
    sub_batch_size: int
    purge_chunk_size: int
    scan_page_size: int
    max_call_retries: int
    retry_backoff_seconds: float
    call_timeout_seconds: float
    max_workers: int
    max_rejected_ratio: float | None
    max_failed_batch_ratio: float | None
    schedule_hour_utc: int
    schedule_minute_utc: int


def _optional_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    return float(raw)


def get_settings() -> Settings:
    load_dotenv()
    return Settings(
        app_name=os.getenv("APP_NAME", "admissions-sync"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./admissions.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        input_dir=os.getenv("INPUT_DIR", "./data/input"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        cache_host=os.getenv("REDIS_HOST", "localhost"),
        cache_port=int(os.getenv("REDIS_PORT", "6379")),
        cache_password=os.getenv("REDIS_PASSWORD") or None,
        cache_db=int(os.getenv("REDIS_DB", "0")),
        cache_key_root=os.getenv("CACHE_KEY_ROOT", ""),
        sub_batch_size=int(os.getenv("SUB_BATCH_SIZE", "500")),
        purge_chunk_size=int(os.getenv("PURGE_CHUNK_SIZE", "500")),
        scan_page_size=int(os.getenv("SCAN_PAGE_SIZE", "1000")),
        max_call_retries=int(os.getenv("MAX_CALL_RETRIES", "3")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "0.5")),
        call_timeout_seconds=float(os.getenv("CALL_TIMEOUT_SECONDS", "30")),
        max_workers=int(os.getenv("MAX_WORKERS", "4")),
        max_rejected_ratio=_optional_float("MAX_REJECTED_RATIO"),
        max_failed_batch_ratio=_optional_float("MAX_FAILED_BATCH_RATIO"),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "2")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "0")),
    )
