from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env(name: str) -> AliasChoices:
    return AliasChoices(name, f"REELFORGE_{name}")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "reelforge"
    environment: str = Field(default="local", validation_alias=_env("ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/reelforge",
        validation_alias=_env("DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=_env("REDIS_URL"))

    # Blob store (MinIO / any S3-compatible endpoint)
    minio_endpoint: str = Field(default="http://minio:9000", validation_alias=_env("MINIO_ENDPOINT"))
    minio_access_key: str = Field(default="minioadmin", validation_alias=_env("MINIO_ACCESS_KEY"))
    minio_secret_key: str = Field(default="minioadmin", validation_alias=_env("MINIO_SECRET_KEY"))
    minio_bucket: str = Field(default="reelforge", validation_alias=_env("MINIO_BUCKET"))
    minio_region: str = Field(default="us-east-1", validation_alias=_env("MINIO_REGION"))
    presign_expiry_sec: int = Field(default=3600, validation_alias=_env("PRESIGN_EXPIRY_SEC"))

    # Vision / generation model (OpenAI-compatible chat completions)
    openai_api_key: str | None = Field(default=None, validation_alias=_env("OPENAI_API_KEY"))
    openai_base_url: str = Field(default="https://api.openai.com/v1", validation_alias=_env("OPENAI_BASE_URL"))
    openai_model: str = Field(default="gpt-4o", validation_alias=_env("OPENAI_MODEL"))
    openai_timeout_sec: int = Field(default=120, validation_alias=_env("OPENAI_TIMEOUT_SEC"))

    # Social platforms
    instagram_graph_url: str = Field(default="https://graph.instagram.com", validation_alias=_env("INSTAGRAM_GRAPH_URL"))
    instagram_api_version: str = Field(default="v18.0", validation_alias=_env("INSTAGRAM_API_VERSION"))
    instagram_poll_interval_sec: float = Field(default=10.0, validation_alias=_env("INSTAGRAM_POLL_INTERVAL_SEC"))
    instagram_poll_attempts: int = Field(default=30, validation_alias=_env("INSTAGRAM_POLL_ATTEMPTS"))
    tiktok_api_url: str = Field(default="https://open.tiktokapis.com", validation_alias=_env("TIKTOK_API_URL"))
    tiktok_client_key: str | None = Field(default=None, validation_alias=_env("TIKTOK_CLIENT_KEY"))
    tiktok_client_secret: str | None = Field(default=None, validation_alias=_env("TIKTOK_CLIENT_SECRET"))
    tiktok_chunk_size_bytes: int = Field(default=5 * 1024 * 1024, validation_alias=_env("TIKTOK_CHUNK_SIZE_BYTES"))
    token_encryption_key: str | None = Field(default=None, validation_alias=_env("TOKEN_ENCRYPTION_KEY"))
    token_refresh_margin_sec: int = Field(default=3600, validation_alias=_env("TOKEN_REFRESH_MARGIN_SEC"))

    # Intake
    intake_rate_window_ms: int = Field(default=3000, validation_alias=_env("INTAKE_RATE_WINDOW_MS"))
    ytdlp_binary: str = Field(default="yt-dlp", validation_alias=_env("YTDLP_BINARY"))

    # Analysis
    analysis_max_frames: int = Field(default=20, validation_alias=_env("ANALYSIS_MAX_FRAMES"))
    analysis_frame_retries: int = Field(default=3, validation_alias=_env("ANALYSIS_FRAME_RETRIES"))

    # Render
    render_command: str = Field(default="npx remotion render", validation_alias=_env("RENDER_COMMAND"))
    render_entry_point: str = Field(default="src/video/src/Root.tsx", validation_alias=_env("RENDER_ENTRY_POINT"))
    render_cwd: str | None = Field(default=None, validation_alias=_env("RENDER_CWD"))
    render_cli_timeout_sec: int = Field(default=600, validation_alias=_env("RENDER_CLI_TIMEOUT_SEC"))
    render_kill_timeout_sec: int = Field(default=610, validation_alias=_env("RENDER_KILL_TIMEOUT_SEC"))
    render_default_fps: int = Field(default=30, validation_alias=_env("RENDER_DEFAULT_FPS"))
    work_dir: str = Field(default="/tmp/reelforge", validation_alias=_env("WORK_DIR"))

    # Lane concurrency (applied via `celery worker -Q <lane> -c <n>`)
    intake_concurrency: int = Field(default=3, validation_alias=_env("INTAKE_CONCURRENCY"))
    analysis_concurrency: int = Field(default=2, validation_alias=_env("ANALYSIS_CONCURRENCY"))
    extraction_concurrency: int = Field(default=2, validation_alias=_env("EXTRACTION_CONCURRENCY"))
    render_concurrency: int = Field(default=1, validation_alias=_env("RENDER_CONCURRENCY"))
    publish_concurrency: int = Field(default=2, validation_alias=_env("PUBLISH_CONCURRENCY"))

    # Retry policy per lane: attempts x initial exponential backoff
    intake_attempts: int = Field(default=3, validation_alias=_env("INTAKE_ATTEMPTS"))
    intake_backoff_ms: int = Field(default=3000, validation_alias=_env("INTAKE_BACKOFF_MS"))
    analysis_attempts: int = Field(default=2, validation_alias=_env("ANALYSIS_ATTEMPTS"))
    analysis_backoff_ms: int = Field(default=5000, validation_alias=_env("ANALYSIS_BACKOFF_MS"))
    extraction_attempts: int = Field(default=1, validation_alias=_env("EXTRACTION_ATTEMPTS"))
    extraction_backoff_ms: int = Field(default=0, validation_alias=_env("EXTRACTION_BACKOFF_MS"))
    render_attempts: int = Field(default=3, validation_alias=_env("RENDER_ATTEMPTS"))
    render_backoff_ms: int = Field(default=5000, validation_alias=_env("RENDER_BACKOFF_MS"))
    publish_attempts: int = Field(default=3, validation_alias=_env("PUBLISH_ATTEMPTS"))
    publish_backoff_ms: int = Field(default=2000, validation_alias=_env("PUBLISH_BACKOFF_MS"))

    # Redis semaphore / rate limiter
    redis_semaphore_ttl_sec: int = Field(default=7200, validation_alias=_env("REDIS_SEMAPHORE_TTL_SEC"))
    semaphore_wait_timeout_sec: int = Field(default=1200, validation_alias=_env("SEMAPHORE_WAIT_TIMEOUT_SEC"))
    # render slot expiry; covers render_kill_timeout_sec plus the upload
    render_semaphore_ttl_sec: int = Field(default=900, validation_alias=_env("RENDER_SEMAPHORE_TTL_SEC"))

    # Watchdog
    watchdog_enabled: bool = Field(default=True, validation_alias=_env("WATCHDOG_ENABLED"))
    watchdog_interval_minutes: int = Field(default=5, validation_alias=_env("WATCHDOG_INTERVAL_MINUTES"))
    stuck_fetching_minutes: int = Field(default=30, validation_alias=_env("STUCK_FETCHING_MINUTES"))
    stuck_analyzing_minutes: int = Field(default=60, validation_alias=_env("STUCK_ANALYZING_MINUTES"))
    stuck_extracting_minutes: int = Field(default=30, validation_alias=_env("STUCK_EXTRACTING_MINUTES"))
    stuck_processing_minutes: int = Field(default=90, validation_alias=_env("STUCK_PROCESSING_MINUTES"))
    stuck_uploading_minutes: int = Field(default=30, validation_alias=_env("STUCK_UPLOADING_MINUTES"))
    stuck_pending_minutes: int = Field(default=120, validation_alias=_env("STUCK_PENDING_MINUTES"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
