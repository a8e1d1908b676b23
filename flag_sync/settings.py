import enum
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from yarl import URL


class LogLevel(str, enum.Enum):
    """Possible log levels."""

    NOTSET = "NOTSET"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    FATAL = "FATAL"


class Settings(BaseSettings):
    """
    Application settings.

    These parameters can be configured
    with environment variables.
    """

    host: str = "127.0.0.1"
    port: int = 8000
    # quantity of workers for uvicorn
    workers_count: int = 1
    # Enable uvicorn reloading
    reload: bool = False

    # Current environment
    environment: str = "dev"

    log_level: LogLevel = LogLevel.INFO

    # Variables for the database
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "flag_sync"
    db_pass: str = "flag_sync"
    db_base: str = "flag_sync"
    db_echo: bool = False
    # Full SQLAlchemy URL, takes precedence over the db_* parts when set
    db_dsn: Optional[str] = None

    # Variables for Redis
    redis_host: str = "flag_sync-redis"
    redis_port: int = 6379
    redis_user: Optional[str] = None
    redis_pass: Optional[str] = None
    redis_base: Optional[int] = None

    # Variables for RabbitMQ
    rabbit_host: str = "flag_sync-rmq"
    rabbit_port: int = 5672
    rabbit_user: str = "guest"
    rabbit_pass: str = "guest"
    rabbit_vhost: str = "/"

    rabbit_pool_size: int = 2
    rabbit_channel_pool_size: int = 10

    # Shared secret for the admin endpoints; admin API is disabled when empty
    admin_secret: Optional[str] = None

    # Feature flag synchronisation
    flags_feed_backend: Literal["memory", "redis", "rabbit"] = "memory"
    flags_change_topic: str = "feature_flags.changes"
    flags_exchange_name: str = "feature_flags.events"
    flags_channel_prefix: str = "feature-flags-changes"
    flags_settle_delay: float = 0.2
    flags_debounce_delay: float = 0.5
    # Wait before reopening a subscription the feed reported as lost
    flags_resubscribe_delay: float = 1.0
    # Notifications discarded at the start of every subscription. None derives
    # it from the feed: 1 when it confirms new subscriptions (redis), otherwise
    # 0 (memory, rabbit). FlagStore itself defaults to 1.
    flags_skip_events: Optional[int] = None

    @property
    def db_url(self) -> URL:
        """
        Assemble database URL from settings.

        :return: database URL.
        """
        return URL.build(
            scheme="postgresql+asyncpg",
            host=self.db_host,
            port=self.db_port,
            user=self.db_user,
            password=self.db_pass,
            path=f"/{self.db_base}",
        )

    @property
    def sqlalchemy_url(self) -> str:
        """Database URL handed to SQLAlchemy, preferring an explicit DSN."""
        return self.db_dsn or str(self.db_url)

    @property
    def redis_url(self) -> URL:
        """
        Assemble REDIS URL from settings.

        :return: redis URL.
        """
        path = ""
        if self.redis_base is not None:
            path = f"/{self.redis_base}"
        return URL.build(
            scheme="redis",
            host=self.redis_host,
            port=self.redis_port,
            user=self.redis_user,
            password=self.redis_pass,
            path=path,
        )

    @property
    def rabbit_url(self) -> URL:
        """
        Assemble RabbitMQ URL from settings.

        :return: rabbit URL.
        """
        return URL.build(
            scheme="amqp",
            host=self.rabbit_host,
            port=self.rabbit_port,
            user=self.rabbit_user,
            password=self.rabbit_pass,
            path=self.rabbit_vhost,
        )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="FLAG_SYNC_",
        env_file_encoding="utf-8",
    )


settings = Settings()
