import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        log_level: str,
        max_upload_bytes: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.log_level = log_level
        self.max_upload_bytes = max_upload_bytes


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUCKETS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "buckets.db"
    database_url = os.getenv("BUCKETS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUCKETS_TIMEZONE", "Europe/Berlin")
    csrf_secret = os.getenv(
        "BUCKETS_CSRF_SECRET",
        "5f0c2d9b8e41a7c3d6f1e2b4a9087c65d3e1f0a2b4c6d8e9f1a3b5c7d9e0f2a4",
    )
    log_level = os.getenv("BUCKETS_LOG_LEVEL", "INFO").upper()
    max_upload_bytes = int(os.getenv("BUCKETS_MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        log_level=log_level,
        max_upload_bytes=max_upload_bytes,
    )
