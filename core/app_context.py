import logging
import os
import threading
from dataclasses import dataclass
from typing import Optional

from redis import Redis

from core.config_loader import AppConfig, EmailConfig, load_config
from database.database import create_db_engine, make_session_factory, init_schema
from notification.channels import (
    ChannelRegistry,
    EmailChannel,
    EmailProvider,
    SmtpEmailProvider,
    SendGridEmailProvider,
    DryRunEmailProvider,
)
from notification.circuit_breaker import CircuitBreaker
from notification.rate_limiter import RateLimiter, SlidingWindowRateLimiter, RedisRateLimiter
from notification.retry_policy import RetryPolicyResolver
from notification.scheduler import DelayScheduler
from notification.rq_transport import RqTransport, connect_redis
from notification.service import NotificationOrchestrator
from notification.store import NotificationStore, SqlNotificationStore
from notification.transport import QueueTransport, InMemoryTransport

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Application context container that holds all wired dependencies.

    Single source of truth for building the orchestrator and its
    collaborators; the worker and any in-process caller share it.
    """
    config: AppConfig
    store: NotificationStore
    transport: QueueTransport
    rate_limiter: RateLimiter
    channels: ChannelRegistry
    orchestrator: NotificationOrchestrator
    redis_conn: Optional[Redis] = None

    @classmethod
    def build(cls, config: AppConfig, redis_conn: Optional[Redis] = None) -> "AppContext":
        """Build an AppContext from config.

        Args:
            config: Loaded application configuration
            redis_conn: Existing connection to reuse (connects from
                config.queue.redis_url when a Redis backend needs one)

        Returns:
            Fully wired AppContext instance
        """
        needs_redis = config.queue.backend == "rq" or config.rate_limit.backend == "redis"
        if needs_redis and redis_conn is None:
            redis_conn = connect_redis(config.queue.redis_url)

        store = cls._build_store(config)
        transport = cls._build_transport(config, redis_conn)
        rate_limiter = cls._build_rate_limiter(config, redis_conn)

        channels = ChannelRegistry()
        channels.register(cls._build_email_channel(config.email, transport))
        channels.load_from_env()

        orchestrator = NotificationOrchestrator(
            store=store,
            transport=transport,
            rate_limiter=rate_limiter,
            retry_policies=RetryPolicyResolver.from_config(config.retry_policies),
            channels=channels,
            destination=config.queue.destination,
        )

        return cls(
            config=config,
            store=store,
            transport=transport,
            rate_limiter=rate_limiter,
            channels=channels,
            orchestrator=orchestrator,
            redis_conn=redis_conn,
        )

    @staticmethod
    def _build_store(config: AppConfig) -> NotificationStore:
        db = config.database
        engine = create_db_engine(db.url, echo=db.echo, pool_size=db.pool_size)
        if db.create_schema:
            init_schema(engine)
        return SqlNotificationStore(make_session_factory(engine))

    @staticmethod
    def _build_transport(config: AppConfig, redis_conn: Optional[Redis]) -> QueueTransport:
        queue = config.queue
        kwargs = dict(
            dead_letter_destination=queue.dead_letter_destination,
            message_ttl_seconds=queue.message_ttl_seconds,
            max_length=queue.max_length,
        )
        if queue.backend == "memory":
            logger.info("Using in-memory queue transport")
            return InMemoryTransport(prefetch_count=queue.prefetch_count, scheduler=DelayScheduler(), **kwargs)
        # RQ workers take one job at a time, so prefetch does not apply
        return RqTransport(redis_conn=redis_conn, job_timeout_seconds=queue.job_timeout_seconds, **kwargs)

    @staticmethod
    def _build_rate_limiter(config: AppConfig, redis_conn: Optional[Redis]) -> RateLimiter:
        rate_limit = config.rate_limit
        if rate_limit.backend == "memory":
            return SlidingWindowRateLimiter(rate_limit.points, rate_limit.duration_seconds)
        return RedisRateLimiter(
            config.queue.redis_url,
            rate_limit.points,
            rate_limit.duration_seconds,
            connection_pool=redis_conn.connection_pool if redis_conn is not None else None,
        )

    @staticmethod
    def _build_email_provider(email: EmailConfig) -> EmailProvider:
        timeout = email.circuit_breaker.call_timeout_seconds
        if email.provider == "dry_run":
            logger.info("Email provider: dry run (log only)")
            return DryRunEmailProvider()
        if email.provider == "sendgrid":
            return SendGridEmailProvider(api_key=email.sendgrid.api_key, timeout_seconds=timeout)
        smtp = email.smtp
        return SmtpEmailProvider(
            server=smtp.server,
            port=smtp.port,
            username=smtp.username,
            password=smtp.password,
            timeout_seconds=timeout,
            use_tls=smtp.use_tls,
        )

    @classmethod
    def _build_email_channel(cls, email: EmailConfig, transport: QueueTransport) -> EmailChannel:
        breaker_config = email.circuit_breaker
        breaker = CircuitBreaker(
            name="email",
            error_threshold_percentage=breaker_config.error_threshold_percentage,
            reset_timeout_seconds=breaker_config.reset_timeout_seconds,
            rolling_window_seconds=breaker_config.rolling_window_seconds,
            rolling_buckets=breaker_config.rolling_buckets,
            volume_threshold=breaker_config.volume_threshold,
        )
        return EmailChannel(
            provider=cls._build_email_provider(email),
            breaker=breaker,
            outbound_limiter=SlidingWindowRateLimiter(email.rate_limit_per_second, 1.0),
            from_email=email.from_email,
            bounce_transport=transport,
        )


_context: Optional[AppContext] = None
_context_lock = threading.Lock()


def get_app_context(config_path: Optional[str] = None) -> AppContext:
    """Process-wide context, built from config on first use.

    The config path defaults to $NOTIFICATION_CONFIG, then config.yaml.
    """
    global _context
    with _context_lock:
        if _context is None:
            path = config_path or os.environ.get("NOTIFICATION_CONFIG", "config.yaml")
            _context = AppContext.build(load_config(path))
        return _context


def set_app_context(context: Optional[AppContext]) -> None:
    global _context
    with _context_lock:
        _context = context
