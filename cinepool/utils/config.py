"""
Configuration management for the task execution service.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, field


START_METHODS = ('spawn', 'fork', 'forkserver')


@dataclass
class ServerConfig:
    """Configuration for the HTTP front end."""
    host: str = '0.0.0.0'
    port: int = 5000


@dataclass
class PoolConfig:
    """Configuration for one persistent worker pool."""
    size: int
    site: str
    task_timeout: float = 30.0
    max_queue_wait: Optional[float] = None


@dataclass
class SpawnerConfig:
    """Configuration for one-off worker processes."""
    sites: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None


@dataclass
class ExecutionConfig:
    """Configuration for worker processes."""
    start_method: str
    movie_pool: PoolConfig
    tv_pool: PoolConfig
    spawner: SpawnerConfig


@dataclass
class FetchConfig:
    """Configuration for upstream fetches made by workers."""
    timeout: float = 8.0
    max_retries: int = 2
    backoff: float = 1.0
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class SiteConfig:
    """URL templates and selectors for one upstream site."""
    base_url: str
    urls: Dict[str, str] = field(default_factory=dict)
    selectors: Dict[str, str] = field(default_factory=dict)
    host_rewrites: Dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            'base_url': self.base_url,
            'urls': dict(self.urls),
            'selectors': dict(self.selectors),
            'host_rewrites': dict(self.host_rewrites),
        }


@dataclass
class RedisConfig:
    """Configuration for Redis."""
    host: str
    port: int
    db: int
    password: Optional[str]
    cache_prefix: str = 'cinepool:cache:'
    cache_ttl: int = 1800
    enabled: bool = True


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str
    file: str
    format: str
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int
    metrics_enabled: bool


@dataclass
class Config:
    """Main configuration class."""
    server: ServerConfig
    execution: ExecutionConfig
    fetch: FetchConfig
    sites: Dict[str, SiteConfig]
    redis: RedisConfig
    logging: LoggingConfig
    monitoring: MonitoringConfig


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            config_data = yaml.safe_load(file)

        self._config = self.from_dict(config_data)
        self._validate_config()
        return self._config

    @staticmethod
    def from_dict(config_data: Dict[str, Any]) -> Config:
        """Build a Config from already-parsed YAML data."""
        execution_data = dict(config_data['execution'])
        execution_config = ExecutionConfig(
            start_method=execution_data.get('start_method', 'spawn'),
            movie_pool=PoolConfig(**execution_data['movie_pool']),
            tv_pool=PoolConfig(**execution_data['tv_pool']),
            spawner=SpawnerConfig(**execution_data.get('spawner', {}))
        )

        sites = {
            name: SiteConfig(**site_data)
            for name, site_data in (config_data.get('sites') or {}).items()
        }

        return Config(
            server=ServerConfig(**config_data.get('server', {})),
            execution=execution_config,
            fetch=FetchConfig(**config_data.get('fetch', {})),
            sites=sites,
            redis=RedisConfig(**config_data['redis']),
            logging=LoggingConfig(**config_data['logging']),
            monitoring=MonitoringConfig(**config_data['monitoring'])
        )

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ValueError("Configuration not loaded")
        validate_config(self._config)
        logging.info("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


def validate_config(config: Config):
    """Raise ValueError if any configured value is unusable."""
    execution = config.execution
    if execution.start_method not in START_METHODS:
        raise ValueError(f"start_method must be one of {', '.join(START_METHODS)}")

    for name, pool in (('movie_pool', execution.movie_pool), ('tv_pool', execution.tv_pool)):
        if pool.size < 1:
            raise ValueError(f"{name}.size must be at least 1")
        if pool.task_timeout <= 0:
            raise ValueError(f"{name}.task_timeout must be positive")
        if pool.max_queue_wait is not None and pool.max_queue_wait <= 0:
            raise ValueError(f"{name}.max_queue_wait must be positive when set")
        if pool.site not in config.sites:
            raise ValueError(f"{name}.site refers to unknown site '{pool.site}'")

    if execution.spawner.timeout is not None and execution.spawner.timeout <= 0:
        raise ValueError("spawner.timeout must be positive when set")
    for job_name, site_name in execution.spawner.sites.items():
        if site_name not in config.sites:
            raise ValueError(f"spawner site for '{job_name}' refers to unknown site '{site_name}'")

    if config.fetch.timeout <= 0:
        raise ValueError("fetch.timeout must be positive")
    if config.fetch.max_retries < 0:
        raise ValueError("fetch.max_retries must be non-negative")
    if config.fetch.backoff < 0:
        raise ValueError("fetch.backoff must be non-negative")


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    return ConfigManager(config_path).load_config()
