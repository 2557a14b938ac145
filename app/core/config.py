from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pydantic import field_validator


def _parse_bool(v) -> bool:
    if isinstance(v, str):
        return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
    return bool(v)


class Settings(BaseSettings):
    # Database settings (source of approved financial reports)
    POSTGRES_USER: str = 'koperasi_user'
    POSTGRES_PASSWORD: str = 'koperasi_pass'
    POSTGRES_DB: str = 'koperasi_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432

    # Redis settings (Celery broker and result backend)
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # MinIO settings (artifact store)
    MINIO_HOST: str = 'minio'
    MINIO_PORT: int = 9000
    MINIO_ACCESS_KEY: str = 'minioadmin'
    MINIO_SECRET_KEY: str = 'minioadmin'
    MINIO_BUCKET_NAME: str = 'koperasi-exports'
    MINIO_USE_SSL: bool = False

    # Export engine
    EXPORT_MAX_WORKERS: int = 4
    EXPORT_RETENTION_DAYS: int = 30
    EXPORT_QUEUE: str = 'exports'
    EXPORT_UNIQUE_SUFFIX: bool = False
    EXPORT_DOWNLOAD_URL_EXPIRE_MINUTES: int = 60
    EXPORT_DEFAULT_PAPER_SIZE: str = 'a4'
    EXPORT_DEFAULT_ORIENTATION: str = 'portrait'
    EXPORT_DEFAULT_FONT: str = 'Arial'
    EXPORT_COMPARISON_YEARS: int = 2

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def minio_endpoint(self) -> str:
        return f"{self.MINIO_HOST}:{self.MINIO_PORT}"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", "MINIO_USE_SSL", "EXPORT_UNIQUE_SUFFIX", mode="before")
    @classmethod
    def parse_flags(cls, v):
        return _parse_bool(v)

    @field_validator("EXPORT_MAX_WORKERS")
    @classmethod
    def validate_workers(cls, v):
        if v < 1:
            raise ValueError("EXPORT_MAX_WORKERS must be at least 1")
        return v


settings = Settings()
