"""Application configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./mailmirror.db"

    # SQLAlchemy pooling (Postgres only)
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    # Google OAuth client used to refresh per-user Gmail tokens.
    # Token acquisition (sign-in) happens elsewhere; we only read and refresh them.
    google_client_id: str = ""
    google_client_secret: str = ""
    google_token_uri: str = "https://oauth2.googleapis.com/token"

    # Gmail paging. 500 is the API maximum for threads.list and history.list.
    gmail_sync_page_size: int = 500
    gmail_history_max_results: int = 500
    # Retries on HTTP 429 only; everything else surfaces to the caller.
    gmail_rate_limit_retries: int = 3

    # Push notifications (Gmail watch -> Pub/Sub topic)
    pubsub_project_id: str = ""
    pubsub_topic_name: str = ""
    gmail_watch_label_ids: list[str] = ["INBOX"]
    # Renew watches expiring within this many hours (Gmail watches last ~7 days)
    gmail_watch_renew_before_hours: int = 24

    # Blob store for message bodies. S3 when s3_bucket_name is set, else files under blob_dir.
    s3_bucket_name: Optional[str] = None
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    s3_endpoint_url: Optional[str] = None  # e.g. http://localhost:9000 for MinIO
    blob_dir: str = "blobs"

    # Scheduled trigger auth: POST /api/sync/cron with "Authorization: Bearer <cron_secret>"
    cron_secret: str = ""

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Redis (for Celery)
    redis_url: str = "redis://localhost:6379/0"

    # Celery
    celery_broker_url: Optional[str] = None  # defaults to redis_url if not set
    backfill_interval_s: int = 60

    # Per-user lease held by triggers while they mutate a user's mirror
    user_lease_ttl_s: int = 300

    # Auth for the mail read API - JWT or API key
    secret_key: str = ""  # for JWT signing; set SECRET_KEY in .env
    api_key_header: str = "X-API-Key"
    api_key: str = ""
    api_key_user_id: Optional[int] = None  # API key maps to this user
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24 * 7  # 7 days

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url

    @property
    def pubsub_topic(self) -> str:
        return f"projects/{self.pubsub_project_id}/topics/{self.pubsub_topic_name}"


settings = Settings()
