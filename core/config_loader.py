import yaml
import os
from typing import Optional, Dict, Literal
from pydantic import BaseModel, Field

from notification.models import NotificationPriority


class DatabaseConfig(BaseModel):
    url: str = "sqlite:///:memory:"
    echo: bool = False
    pool_size: int = 5
    create_schema: bool = False  # create_all on startup (dev / tests)


class QueueConfig(BaseModel):
    """Transport settings; 'memory' runs everything in one process."""
    backend: Literal["rq", "memory"] = "rq"
    redis_url: str = "redis://localhost:6379/0"
    destination: str = "notifications"
    dead_letter_destination: str = "notifications.dead_letter"
    message_ttl_seconds: int = 86400  # 24h
    max_length: int = 10000
    prefetch_count: int = 10
    job_timeout_seconds: int = 60


class RateLimitConfig(BaseModel):
    """Per-user notification creation quota."""
    backend: Literal["redis", "memory"] = "redis"
    points: int = 100
    duration_seconds: int = 60


class RetryPolicyConfig(BaseModel):
    max_attempts: int
    backoff_interval_ms: int
    priority: NotificationPriority = NotificationPriority.NORMAL


class CircuitBreakerConfig(BaseModel):
    error_threshold_percentage: float = 50.0
    reset_timeout_seconds: float = 30.0
    rolling_window_seconds: float = 10.0
    rolling_buckets: int = 10
    volume_threshold: int = 5
    call_timeout_seconds: float = 10.0  # provider request timeout


class SmtpConfig(BaseModel):
    server: str = "localhost"
    port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = True


class SendGridConfig(BaseModel):
    api_key: Optional[str] = None


class EmailConfig(BaseModel):
    """
    Configuration for the email channel.

    provider selects the downstream API; dry_run logs instead of sending.
    """
    provider: Literal["smtp", "sendgrid", "dry_run"] = "smtp"
    from_email: str = "noreply@taskmanager.com"
    rate_limit_per_second: int = 10
    smtp: SmtpConfig = SmtpConfig()
    sendgrid: SendGridConfig = SendGridConfig()
    circuit_breaker: CircuitBreakerConfig = CircuitBreakerConfig()


class AppConfig(BaseModel):
    database: DatabaseConfig = DatabaseConfig()
    queue: QueueConfig = QueueConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    retry_policies: Dict[str, RetryPolicyConfig] = Field(default_factory=dict)
    email: EmailConfig = EmailConfig()


def load_config(config_path: str = "config.yaml") -> AppConfig:
    # If not found at relative path (e.g. running from root), try the repo root
    if not os.path.exists(config_path):
        base_dir = os.path.dirname(os.path.abspath(__file__))
        config_path = os.path.join(base_dir, "..", "config.yaml")

    data = {}
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}

    apply_env_overrides(data)
    return AppConfig(**data)


def apply_env_overrides(data: dict) -> dict:
    """Overlay environment variables onto raw config data in place."""
    env_db_url = os.environ.get("DATABASE_URL")
    if env_db_url:
        data.setdefault('database', {})['url'] = env_db_url

    env_redis_url = os.environ.get("REDIS_URL")
    if env_redis_url:
        data.setdefault('queue', {})['redis_url'] = env_redis_url

    email = data.get('email') or {}

    env_from_email = os.environ.get("FROM_EMAIL")
    if env_from_email:
        email['from_email'] = env_from_email

    env_sendgrid_key = os.environ.get("SENDGRID_API_KEY")
    if env_sendgrid_key:
        email.setdefault('sendgrid', {})['api_key'] = env_sendgrid_key

    # SMTP_SERVER, SMTP_PORT, SMTP_USERNAME, SMTP_PASSWORD
    for field in ('server', 'port', 'username', 'password'):
        value = os.environ.get(f"SMTP_{field.upper()}")
        if value:
            email.setdefault('smtp', {})[field] = value

    if os.environ.get('NOTIFICATION_DRY_RUN', '').lower() in ('true', '1', 'yes'):
        email['provider'] = 'dry_run'

    if email:
        data['email'] = email
    return data
