from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Local mirror store (PostgreSQL). DATABASE_URL overrides the parts below.
    database_url: Optional[str] = None
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "mirrorsync"
    postgres_user: str = "mirrorsync"
    postgres_password: str = ""

    # Optional JSON list of backends registered at startup
    backends_file: Optional[str] = None

    # Root folder for mirrored bucket files; one sub-folder per backend
    backup_files_path: str = "./backups/files"

    # Job tracking
    job_retention_days: int = 7
    job_sweep_interval_hours: int = 24

    # Replication tuning
    source_page_size: int = 1000
    upload_batch_size: int = 100
    http_timeout_seconds: float = 10.0

    # Automatic backups (crontab syntax)
    auto_backup_database_enabled: bool = False
    auto_backup_database_schedule: str = "0 2 * * *"
    auto_backup_files_enabled: bool = False
    auto_backup_files_schedule: str = "0 3 * * *"
    scheduler_timezone: str = "UTC"

    # CORS
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def mirror_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


settings = Settings()
