from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Persistence
    HISTORY_PATH: str = "/data/history.json"
    SETTINGS_PATH: str = "/data/settings.json"
    STATE_PATH: str = "/data/state.json"
    PERSIST_ENABLED: bool = True

    # Sync
    SYNC_ON_START: bool = True
    REQUEST_TIMEOUT_SECONDS: int = 30

    # Release mirrors
    MIRROR_PRIMARY_URL: str = "https://raw.githubusercontent.com/Tosencen/XMBOX-Release/main"
    MIRROR_ALTERNATE_URL: str = "https://gitee.com/ochenoktochen/XMBOX-Release/raw/main"
    MIRROR_PROBE_TIMEOUT_SECONDS: float = 5.0
    MIRROR_CACHE_SECONDS: int = 86400  # 24h
    RELEASE_CHANNEL_DEV: bool = False
    RELEASE_NAME: str = "mobile-arm64_v8a"
    UPDATE_CHECK_ENABLED: bool = False
    UPDATE_AUTO_DOWNLOAD: bool = False

    # Downloads
    DOWNLOAD_DIR: str = "/data/downloads"
    FETCH_MAX_RETRIES: int = 3
    FETCH_RETRY_DELAY_SECONDS: float = 0.5

    # System
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
