"""
Logging for the service process and its worker processes.

The service logs to the console, a rotating log file and a separate error
file. Workers started with `spawn` or `forkserver` inherit none of that, so
`setup_logging` also exports the level and format to the environment and
`configure_worker_logging` rebuilds a stderr handler from them in the child.
"""

import logging
import logging.handlers
import json
import os
import sys
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime, timezone

from .config import LoggingConfig


LEVEL_ENV = 'CINEPOOL_LOG_LEVEL'
FORMAT_ENV = 'CINEPOOL_LOG_FORMAT'
JSON_ENV = 'CINEPOOL_LOG_JSON'

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

QUIET_LOGGERS = {
    'aiohttp': logging.WARNING,
    'redis': logging.WARNING,
    'asyncio': logging.WARNING,
}


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'process': record.process,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        # Context attached by WorkerLogAdapter
        for key in ('job', 'unit', 'task_id', 'event_type'):
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class WorkerLogAdapter(logging.LoggerAdapter):
    """Logger adapter that tags records with worker context."""

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        """Add extra context to log messages."""
        if 'extra' not in kwargs:
            kwargs['extra'] = {}

        kwargs['extra'].update(self.extra)

        return msg, kwargs

    def log_task_event(self, level: int, task_id: Any, message: str, **kwargs):
        """Log task-specific events."""
        extra = kwargs.get('extra', {})
        extra['task_id'] = task_id
        extra['event_type'] = 'task_event'
        kwargs['extra'] = extra
        self.log(level, message, **kwargs)


class NoiseFilter(logging.Filter):
    """Filter to suppress noisy third-party logs."""

    def __init__(self, suppress_modules: Optional[list] = None):
        super().__init__()
        self.suppress_modules = suppress_modules or [
            'aiohttp.access',
            'urllib3.connectionpool',
        ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Filter out noisy log records."""
        if any(record.name.startswith(module) for module in self.suppress_modules):
            return False

        if record.levelno == logging.DEBUG:
            if 'connection pool' in record.getMessage().lower():
                return False

        return True



def _formatter(fmt: Optional[str], as_json: bool) -> logging.Formatter:
    if as_json:
        return JSONFormatter()
    return logging.Formatter(fmt or DEFAULT_FORMAT)


def _rotating_file(path: Path, level: int, max_bytes: int, backups: int,
                   formatter: logging.Formatter,
                   noise_filter: Optional[logging.Filter] = None) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backups, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    if noise_filter:
        handler.addFilter(noise_filter)
    return handler


def setup_logging(config: LoggingConfig, enable_noise_filtering: bool = True) -> logging.Logger:
    """
    Configure the root logger of the service process.

    The console gets INFO and above, the log file everything, and
    errors.log beside it ERROR and above.

    Args:
        config: Logging section of the service configuration
        enable_noise_filtering: Drop access-log and connection-pool chatter

    Returns:
        Configured root logger
    """
    log_file = Path(config.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    error_log_file = log_file.parent / 'errors.log'

    formatter = _formatter(config.format, config.json)
    noise_filter = NoiseFilter() if enable_noise_filtering else None

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    if noise_filter:
        console_handler.addFilter(noise_filter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(_rotating_file(log_file, logging.DEBUG, 50 * 1024 * 1024, 5,
                                          formatter, noise_filter))
    root_logger.addHandler(_rotating_file(error_log_file, logging.ERROR, 10 * 1024 * 1024, 3,
                                          formatter))

    for logger_name, level in QUIET_LOGGERS.items():
        logging.getLogger(logger_name).setLevel(level)

    os.environ[LEVEL_ENV] = config.level.upper()
    os.environ[FORMAT_ENV] = config.format or DEFAULT_FORMAT
    os.environ[JSON_ENV] = '1' if config.json else '0'

    root_logger.info(f"Logging to {log_file} (errors to {error_log_file}), "
                     f"level {config.level}, json={config.json}")
    return root_logger


def configure_worker_logging():
    """
    Give a freshly started worker process a stderr handler matching the service.

    Forked workers already carry the parent's handlers and are left alone,
    as are processes whose parent never configured logging.
    """
    root_logger = logging.getLogger()
    level = os.environ.get(LEVEL_ENV)
    if root_logger.handlers or level is None:
        return

    # Rotating files belong to the service process; workers write to stderr.
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_formatter(os.environ.get(FORMAT_ENV), os.environ.get(JSON_ENV) == '1'))
    handler.addFilter(NoiseFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    for logger_name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(logger_name).setLevel(quiet_level)


def get_worker_logger(name: str, **extra_context) -> WorkerLogAdapter:
    """Get a logger that tags every record with worker context (job kind, unit name)."""
    return WorkerLogAdapter(logging.getLogger(name), extra_context)


def log_system_info():
    """Log host information once at start-up."""
    import platform
    import psutil

    logger = logging.getLogger(__name__)

    logger.info("=== SYSTEM INFORMATION ===")
    logger.info(f"Platform: {platform.platform()}")
    logger.info(f"Python version: {sys.version.split()[0]}")
    logger.info(f"CPU cores: {psutil.cpu_count()}")
    logger.info(f"Memory: {psutil.virtual_memory().total / 1024**3:.1f} GB total, "
                f"{psutil.virtual_memory().available / 1024**3:.1f} GB available")
