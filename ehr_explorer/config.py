import os
from typing import Optional
from dataclasses import dataclass
from functools import lru_cache

@dataclass
class DatabaseConfig:
    """Database configuration settings"""
    path: str = "ehr_explorer.db"
    busy_timeout_ms: int = 5000

@dataclass
class RetryConfig:
    """Retry settings for contended statements"""
    max_attempts: int = 3
    delay_seconds: float = 1.0
    backoff: float = 1.0  # 1.0 keeps the delay fixed

@dataclass
class IngestConfig:
    """Bundle ingestion configuration"""
    data_dir: str = os.path.join("data", "synthea")
    file_suffix: str = ".json"
    poll_interval: float = 1.0  # seconds
    stability_threshold: float = 2.0  # seconds a file must stay unchanged
    watch_on_startup: bool = True

@dataclass
class NotifyConfig:
    """Change notification configuration"""
    url: Optional[str] = None
    timeout: float = 5.0

@dataclass
class AppConfig:
    """Main application configuration"""
    debug: bool = False
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
    log_file: Optional[str] = None
    cors_origins: list = None

    def __post_init__(self):
        if self.cors_origins is None:
            self.cors_origins = ["*"]

@dataclass
class Config:
    """Complete application configuration"""
    app: AppConfig
    database: DatabaseConfig
    retry: RetryConfig
    ingest: IngestConfig
    notify: NotifyConfig

    @classmethod
    def from_env(cls) -> 'Config':
        """Create configuration from environment variables"""
        return cls(
            app=AppConfig(
                debug=os.getenv("DEBUG", "false").lower() == "true",
                host=os.getenv("HOST", "127.0.0.1"),
                port=int(os.getenv("PORT", "8000")),
                log_level=os.getenv("LOG_LEVEL", "INFO"),
                log_file=os.getenv("LOG_FILE") or None
            ),
            database=DatabaseConfig(
                path=os.getenv("EHR_DB_PATH", "ehr_explorer.db"),
                busy_timeout_ms=int(os.getenv("DB_BUSY_TIMEOUT_MS", "5000"))
            ),
            retry=RetryConfig(
                max_attempts=int(os.getenv("DB_RETRY_MAX_ATTEMPTS", "3")),
                delay_seconds=float(os.getenv("DB_RETRY_DELAY", "1.0")),
                backoff=float(os.getenv("DB_RETRY_BACKOFF", "1.0"))
            ),
            ingest=IngestConfig(
                data_dir=os.getenv("SYNTHEA_DATA_DIR", os.path.join("data", "synthea")),
                poll_interval=float(os.getenv("WATCH_POLL_INTERVAL", "1.0")),
                stability_threshold=float(os.getenv("WATCH_STABILITY_THRESHOLD", "2.0")),
                watch_on_startup=os.getenv("WATCH_ON_STARTUP", "true").lower() == "true"
            ),
            notify=NotifyConfig(
                url=os.getenv("NOTIFY_URL") or None,
                timeout=float(os.getenv("NOTIFY_TIMEOUT", "5.0"))
            )
        )

@lru_cache()
def get_config() -> Config:
    """Get cached configuration instance"""
    return Config.from_env()

def is_test_environment() -> bool:
    """Check if running in test environment"""
    return (
        'pytest' in __import__('sys').modules or
        bool(os.getenv("PYTEST_CURRENT_TEST") or os.getenv("PYTEST_ADDOPTS") or os.getenv("PYTEST_RUNNING"))
    )
