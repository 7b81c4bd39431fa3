from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "splitrender"
    app_version: str = "0.1.0"  # Stamped on metadata and optimization profiles
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # Google Cloud Storage
    gcs_bucket_name: str = "splitrender-renders"
    gcs_project_id: str = ""
    # Owner guard: when set, writes verify the bucket belongs to this project number
    expected_bucket_owner: str = ""

    # Local storage for development (when GCS is not configured)
    use_local_storage: bool = True  # Set to False in production
    local_storage_path: str = "/tmp/splitrender-storage"

    # Execution environment of the orchestrator
    region: str = "local"
    memory_size_mb: int = 2048

    # Celery (invocation platform)
    redis_url: str = "redis://localhost:6379/0"
    launch_task_name: str = "splitrender.launch"
    fire_task_name: str = "splitrender.fire_group"
    render_task_name: str = "splitrender.render_chunk"
    render_queue: str = "render"
    # Broker publish attempts per submission (Celery retry_policy) before the launch is failed
    dispatch_submit_attempts: int = 3
    dispatch_retry_interval_s: float = 0.2

    # Frame planning
    min_frames_per_chunk: int = 1

    # Chunk optimization
    optimization_iterations: int = 400
    # Refuse to persist a profile whose makespan is worse than the measured one
    optimization_regression_guard: bool = False

    # Progress reporting (fraction of total frames between two writes)
    progress_threshold: float = 0.1

    # Concatenation
    concat_timeout_s: float = 840.0
    concat_poll_interval_s: float = 0.5
    ffmpeg_path: str = "ffmpeg"


@lru_cache
def get_settings() -> Settings:
    return Settings()
