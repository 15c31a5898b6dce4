# keyfleet/config.py
"""
keyfleet settings
Every knob is an environment variable (or a line in .env) of the same name
"""

import socket
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Engine, API and SSH transport settings"""

    # === Application ===
    APP_NAME: str = "keyfleet"
    APP_VERSION: str = "1.0.0"
    ENV: str = "development"  # development, staging, production
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # === API ===
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    API_PREFIX: str = "/api/v1"
    ADMIN_SECRET: str = "change-me"  # X-Admin-Token value

    # === Database ===
    DATABASE_URL: str = "sqlite:///./keyfleet.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # === Fleet Run ===
    MAX_CONCURRENCY: int = 8
    OPERATION_TIMEOUT: float = 30.0  # seconds, per store read / transport call
    RETRY_ATTEMPTS: int = 3  # attempts for stage and verify, including the first
    RETRY_BACKOFF_SECONDS: float = 1.0
    RETRY_BACKOFF_MAX_SECONDS: float = 10.0

    # Lockout guard: a replacement leaving fewer lines than this is held
    # for manual review on hosts with admin grants or a larger deployed file
    MANUAL_REVIEW_MIN_LINES: int = 1

    # === Deployment Leases ===
    ENGINE_ID: str = socket.gethostname()
    LEASE_TTL_SECONDS: int = 300

    # === Remote Layout ===
    AUTHORIZED_KEYS_PATH: str = ".ssh/authorized_keys"  # relative to login home
    KNOWN_HOSTS_REMOTE_PATH: Optional[str] = None  # deploy known_hosts when set
    ALLOW_EMPTY_KNOWN_HOSTS: bool = False

    # === SSH Transport ===
    SSH_BINARY: str = "ssh"
    SSH_IDENTITY_FILE: Optional[str] = None
    SSH_PROXY_JUMP: Optional[str] = None
    SSH_CONNECT_TIMEOUT: int = 10
    SSH_STRICT_HOST_KEY_CHECKING: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def is_development(self) -> bool:
        return self.ENV.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process"""
    return Settings()


settings = get_settings()
