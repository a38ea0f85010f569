from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite+aiosqlite:///./data/noteshelf.db"
    data_dir: str = "./data"

    # App settings
    app_name: str = "Noteshelf"
    debug: bool = False
    log_level: str = "INFO"

    # Remote catalog
    catalog_url: str = ""
    catalog_token: str = ""
    request_timeout_seconds: float = 60.0

    # Snapshot freshness and refresh
    freshness_window_seconds: float = 300.0
    fetch_timeout_seconds: float = 10.0

    # Enrichment
    enrichment_batch_size: int = 5
    partial_fetch_bytes: int = 200_000
    thumbnail_width: int = 200
    thumbnail_height: int = 280

    # Thumbnail cache limits
    thumbnail_cache_count: int = 100
    thumbnail_cache_bytes: int = 50 * 1024 * 1024

    previously_opened_limit: int = 5

    class Config:
        env_file = ".env"
        env_prefix = "NOTESHELF_"
        extra = "allow"


settings = Settings()
