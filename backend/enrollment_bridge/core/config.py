from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Enrollment Bridge"
    app_env: str = "development"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "enrollment_bridge"
    postgres_user: str = "enrollment_bridge"
    postgres_password: str = "enrollment_bridge"

    redis_host: str = "localhost"
    redis_port: int = 6379

    database_url: str | None = None
    redis_url: str | None = None
    worker_heartbeat_key: str = "worker:heartbeat"
    worker_heartbeat_ttl_seconds: int = 45

    medusa_webhook_secret: str | None = None

    moodle_url: str | None = None
    moodle_token: str | None = None
    moodle_timeout_seconds: float = 30.0
    moodle_default_course_id: int = 2
    moodle_default_role_id: int = 5
    moodle_user_cache_ttl_seconds: int = 3600
    moodle_user_lang: str = "es"
    moodle_user_timezone: str = "America/Guayaquil"
    moodle_user_city: str = "Loja"
    moodle_user_country: str = "EC"

    moodle_rate_limit_enabled: bool = True
    moodle_rate_limit_max_attempts: int = 60
    moodle_rate_limit_decay_seconds: int = 60

    order_dedup_window_hours: int = 24
    compensation_pending_ttl_hours: int = 24
    compensation_completed_ttl_hours: int = 168
    compensation_failed_ttl_hours: int = 720

    enrollment_max_attempts: int = 3
    enrollment_retry_backoff_seconds: str = "60,300,900"
    enrollment_job_time_limit_seconds: int = 120
    enrollment_dispatch_delay_seconds: int = 5
    enroll_existing_customers: bool = False

    failed_enrollment_retry_days: int = 7
    failed_enrollment_sweep_interval_seconds: float = 3600.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def enrollment_retry_backoff(self) -> list[int]:
        values = [int(value.strip()) for value in self.enrollment_retry_backoff_seconds.split(",") if value.strip()]
        return values or [60]

    def retry_countdown(self, attempt: int) -> int:
        """Delay before the attempt following ``attempt`` (1-based)."""
        schedule = self.enrollment_retry_backoff
        index = min(max(1, attempt), len(schedule)) - 1
        return schedule[index]

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def cache_redis_url(self) -> str:
        if self.redis_url:
            return self.redis_url
        return f"redis://{self.redis_host}:{self.redis_port}/0"


settings = Settings()
