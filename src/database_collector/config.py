"""Configuration management for the database collector."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from .credentials import DEFAULT_CACHE_TTL, DEFAULT_TAG_KEY, DEFAULT_TAG_VALUE
from .encoder import DEFAULT_JOB
from .engines import EngineOptions
from .errors import ConfigError
from .schedule import Schedule

DEFAULT_SCHEDULE = "@every 5m"


@dataclass
class RemoteWriteConfig:
    """Prometheus remote-write endpoint configuration."""

    url: str = ""
    region: str = ""
    service: str = "aps"
    timeout: float = 30
    role_arn: Optional[str] = None  # assumed for cross-account writes


@dataclass
class DiscoveryConfig:
    """Where database credentials come from."""

    source: str = "secretsmanager"  # or "static"
    tag_key: str = DEFAULT_TAG_KEY
    tag_value: str = DEFAULT_TAG_VALUE
    refetch_credentials: bool = False
    cache_ttl: int = DEFAULT_CACHE_TTL  # seconds a fetched secret is reused
    # Static credentials: id -> {engine, host, port, username, password, dbname}
    databases: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass
class ScheduleConfig:
    """When and how cycles are triggered."""

    cron: str = DEFAULT_SCHEDULE  # "@every <duration>", seconds, or a cron expression
    run_mode: str = "CRON"  # CRON or LAMBDA


@dataclass
class AgentConfig:
    """Main collector configuration."""

    remote_write: RemoteWriteConfig = field(default_factory=RemoteWriteConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)

    # Collection settings
    concurrency: int = 10
    job: str = DEFAULT_JOB
    account_id: str = ""
    query_timeout: int = 10  # seconds
    connect_timeout: int = 10  # seconds
    custom_metrics: Optional[str] = None
    # Driver-specific settings passed to every engine, e.g. {"sslmode": "require"}
    engine_extra: dict[str, Any] = field(default_factory=dict)

    # Process settings
    metrics_port: Optional[int] = None
    log_level: str = "INFO"

    @classmethod
    def from_file(cls, path: str | Path) -> "AgentConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: dict) -> "AgentConfig":
        """Create config from dictionary, then apply environment overrides."""
        config = cls()

        if "remote_write" in data:
            rw = data["remote_write"] or {}
            config.remote_write = RemoteWriteConfig(
                url=rw.get("url", config.remote_write.url),
                region=rw.get("region", config.remote_write.region),
                service=rw.get("service", config.remote_write.service),
                timeout=rw.get("timeout", config.remote_write.timeout),
                role_arn=rw.get("role_arn"),
            )

        if "discovery" in data:
            disc = data["discovery"] or {}
            config.discovery = DiscoveryConfig(
                source=disc.get("source", config.discovery.source),
                tag_key=disc.get("tag_key", config.discovery.tag_key),
                tag_value=str(disc.get("tag_value", config.discovery.tag_value)),
                refetch_credentials=bool(disc.get("refetch_credentials", False)),
                cache_ttl=int(disc.get("cache_ttl", config.discovery.cache_ttl)),
                databases=dict(disc.get("databases") or {}),
            )

        if "schedule" in data:
            sched = data["schedule"] or {}
            if isinstance(sched, str):
                sched = {"cron": sched}
            config.schedule = ScheduleConfig(
                cron=str(sched.get("cron", config.schedule.cron)),
                run_mode=str(sched.get("run_mode", config.schedule.run_mode)).upper(),
            )

        config.concurrency = data.get("concurrency", config.concurrency)
        config.job = data.get("job", config.job)
        config.account_id = str(data.get("account_id", config.account_id))
        config.query_timeout = data.get("query_timeout", config.query_timeout)
        config.connect_timeout = data.get("connect_timeout", config.connect_timeout)
        config.custom_metrics = data.get("custom_metrics", config.custom_metrics)
        config.engine_extra = dict(data.get("engine_options") or {})
        config.metrics_port = data.get("metrics_port", config.metrics_port)
        config.log_level = data.get("log_level", config.log_level)

        config.apply_env()
        return config

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Create config from environment variables."""
        config = cls()
        config.apply_env()
        return config

    def apply_env(self):
        """Override settings from environment variables."""
        env = os.environ

        if env.get("PROMETHEUS_REMOTE_WRITE_URL"):
            self.remote_write.url = env["PROMETHEUS_REMOTE_WRITE_URL"]
        if env.get("AWS_REGION"):
            self.remote_write.region = env["AWS_REGION"]
        elif not self.remote_write.region and env.get("AWS_DEFAULT_REGION"):
            self.remote_write.region = env["AWS_DEFAULT_REGION"]
        if env.get("ASSUME_ROLE_ARN"):
            self.remote_write.role_arn = env["ASSUME_ROLE_ARN"]
        if env.get("AWS_ACCOUNT_ID"):
            self.account_id = env["AWS_ACCOUNT_ID"]

        if env.get("SECRET_TAG_KEY"):
            self.discovery.tag_key = env["SECRET_TAG_KEY"]
        if env.get("CRON_SCHEDULE"):
            self.schedule.cron = env["CRON_SCHEDULE"]
        if env.get("RUN_MODE"):
            self.schedule.run_mode = env["RUN_MODE"].upper()
        if env.get("LOG_LEVEL"):
            self.log_level = env["LOG_LEVEL"].upper()
        if env.get("CUSTOM_METRICS"):
            self.custom_metrics = env["CUSTOM_METRICS"]

        try:
            if env.get("COLLECTOR_CONCURRENCY"):
                self.concurrency = int(env["COLLECTOR_CONCURRENCY"])
            if env.get("QUERY_TIMEOUT"):
                self.query_timeout = int(env["QUERY_TIMEOUT"])
            if env.get("METRICS_PORT"):
                self.metrics_port = int(env["METRICS_PORT"])
        except ValueError as e:
            raise ConfigError(f"Invalid numeric environment setting: {e}") from e

    def validate(self):
        """
        Check settings that must be right before any cycle runs.

        Raises:
            ConfigError: On a missing remote-write URL or region, an invalid
                schedule, or a non-positive concurrency
        """
        if not self.remote_write.url:
            raise ConfigError("PROMETHEUS_REMOTE_WRITE_URL is not set")
        if not self.remote_write.region:
            raise ConfigError("AWS_REGION is not set")
        if not isinstance(self.concurrency, int) or self.concurrency < 1:
            raise ConfigError(f"concurrency must be a positive integer, got {self.concurrency!r}")
        if self.discovery.cache_ttl < 0:
            raise ConfigError(f"discovery.cache_ttl must not be negative, got {self.discovery.cache_ttl}")
        if self.discovery.source not in ("secretsmanager", "static"):
            raise ConfigError(f"Unknown discovery source: {self.discovery.source}")
        if self.schedule.run_mode not in ("CRON", "LAMBDA"):
            raise ConfigError("Invalid RUN_MODE. Set RUN_MODE to either 'LAMBDA' or 'CRON'")
        Schedule.parse(self.schedule.cron)

    def engine_options(self) -> EngineOptions:
        return EngineOptions(
            query_timeout=self.query_timeout,
            connect_timeout=self.connect_timeout,
            custom_metrics_file=self.custom_metrics,
            extra=dict(self.engine_extra),
        )


def load_config(config_path: Optional[str] = None) -> AgentConfig:
    """Load configuration from file or environment."""
    # Try config file first
    if config_path and Path(config_path).exists():
        return AgentConfig.from_file(config_path)

    # Try default locations
    default_paths = [
        Path("database-collector.yaml"),
        Path("database-collector.yml"),
        Path.home() / ".database-collector" / "config.yaml",
        Path("/etc/database-collector/config.yaml"),
    ]

    for path in default_paths:
        if path.exists():
            return AgentConfig.from_file(path)

    # Fall back to environment
    return AgentConfig.from_env()
