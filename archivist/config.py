import logging
import sys
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", frozen=True
    )

    app_name: str = "Archivist"
    base_storage_dir: str = "./data"
    storage_backend: Literal["local", "supabase"] = "local"

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""        # service_role key, storage needs write access
    supabase_bucket: str = "archives"

    # Fetching
    request_timeout: float = 30.0
    max_redirects: int = 10
    max_resource_bytes: int = 10 * 1024 * 1024
    max_resources: int = 100
    max_concurrent_fetches: int = 4
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/122.0.0.0 Safari/537.36"
    )

    # Orchestration
    download_timeout: float = 120.0
    generation_timeout: float = 60.0    # per derived artifact, after the archive is committed
    single_flight_policy: Literal["wait", "reject"] = "wait"

    # Thumbnails
    render_thumbnails: bool = True
    playwright_timeout_ms: int = 30000
    thumbnail_width: int = 800
    thumbnail_height: int = 600
    thumbnail_quality: int = 85

    log_level: str = "INFO"


def load_settings(**overrides) -> Settings:
    """Build the process configuration once; it is read-only afterwards."""
    return Settings(**overrides)


def configure_logging(settings: Settings) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | [%(name)s] %(message)s", datefmt="%H:%M:%S")
    )
    root = logging.getLogger("archivist")
    root.handlers = [handler]
    root.setLevel(settings.log_level.upper())
