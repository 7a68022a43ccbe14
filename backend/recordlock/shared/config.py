from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[2]  # backend/
(BASE_DIR / "_data").mkdir(exist_ok=True)

SWEEP_INTERVALS = (1, 5, 10, 15, 30, 60)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_ENV: str = "dev"
    API_PREFIX: str = "/api"
    DATABASE_URL: str = "sqlite:///./_data/dev.db"
    # per-tenant databases, e.g. "sqlite:///./_data/tenant_{tenant}.db"
    TENANT_DATABASE_URL: str = ""
    CORS_ORIGINS: str = "http://localhost:5173,http://127.0.0.1:5173"
    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"
    LOG_LEVEL: str = "INFO"

    # minutes until a lock expires on its own
    LOCKING_TIMEOUT: int = 5
    # minutes between two sweeps
    LOCKING_INTERVAL: int = 5
    LOCKING_QUEUE: str = "locking"
    LOCKING_TENANCY: bool = False
    # echo lock events back to the connection that caused them
    LOCKING_BROADCAST_SELF: bool = False
    LOCKING_DEFAULT_DOMAIN: str = "default"
    LOCKING_SWEEP_ENABLED: bool = True
    LOCKING_SWEEP_LOCK_FILE: str = str(BASE_DIR / "_data" / "locking-sweep.lock")
    # service recordlock-sweep asks to run the sweep
    LOCKING_SERVICE_URL: str = "http://127.0.0.1:8000"
    # bearer token for that call; empty = mint an admin token with JWT_SECRET
    LOCKING_SERVICE_TOKEN: str = ""

    @field_validator("LOCKING_TIMEOUT")
    @classmethod
    def _positive_timeout(cls, v: int) -> int:
        if v < 1:
            raise ValueError("LOCKING_TIMEOUT must be at least 1 minute")
        return v

    @field_validator("LOCKING_INTERVAL")
    @classmethod
    def _known_interval(cls, v: int) -> int:
        if v not in SWEEP_INTERVALS:
            raise ValueError(f"LOCKING_INTERVAL must be one of {SWEEP_INTERVALS}")
        return v

    @model_validator(mode="after")
    def _tenant_databases(self) -> "Settings":
        # edit_locks has no tenant column; tenants must not share a database
        if self.LOCKING_TENANCY and "{tenant}" not in self.TENANT_DATABASE_URL:
            raise ValueError("LOCKING_TENANCY needs TENANT_DATABASE_URL with a {tenant} placeholder")
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    def tenant_database_url(self, tenant_id: str) -> str:
        if not self.TENANT_DATABASE_URL:
            return self.DATABASE_URL
        return self.TENANT_DATABASE_URL.format(tenant=tenant_id)


settings = Settings()
