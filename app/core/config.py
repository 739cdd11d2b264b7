from typing import Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./dealership_imports.db"
    debug: bool = True
    log_level: str = "INFO"
    import_log_level: Optional[str] = None  # Overrides log_level for the import pipeline

    # Authentication
    secret_key: str = "your-secret-key-change-in-production"

    # Uploads
    upload_dir: str = "uploads/imports"
    upload_max_file_size_mb: int = 10

    # Import pipeline
    import_batch_size: int = 500
    import_error_preview_limit: int = 50  # Field errors returned by preview
    import_preview_row_limit: int = 100   # Valid rows echoed back by preview
    import_job_error_page_size: int = 100

    # Job queue: "inline" runs the processor inside add(), "thread" uses a worker pool
    import_queue_backend: str = "inline"
    import_queue_max_workers: int = 4
    import_queue_attempts: int = 1
    import_queue_backoff_seconds: float = 2.0
    import_queue_keep_completed: Optional[int] = 1000  # Finished jobs kept for polling; None keeps all
    import_queue_keep_failed: Optional[int] = 1000

    model_config = ConfigDict(env_file=".env", extra="ignore")

    @property
    def upload_max_file_size_bytes(self) -> int:
        return self.upload_max_file_size_mb * 1024 * 1024


settings = Settings()
