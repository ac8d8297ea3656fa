from __future__ import annotations

import copy
from typing import Any, Dict

import pytest

from cinepool.utils.config import Config, ConfigManager


BASE_CONFIG: Dict[str, Any] = {
    "server": {"host": "127.0.0.1", "port": 5000},
    "execution": {
        "start_method": "fork",
        "movie_pool": {"size": 1, "site": "movies", "task_timeout": 5},
        "tv_pool": {"size": 1, "site": "shows", "task_timeout": 5},
        "spawner": {
            "timeout": None,
            "sites": {
                "movie_search": "movies",
                "category_listing": "shows",
                "watch_page": "shows",
            },
        },
    },
    "fetch": {"timeout": 2, "max_retries": 0, "backoff": 0, "headers": {}},
    "sites": {
        "movies": {"base_url": "http://movies.test", "urls": {"search": "{base_url}/search/{query}"}},
        "shows": {"base_url": "http://shows.test", "urls": {"search": "{base_url}/search/{query}"}},
    },
    "redis": {"enabled": False, "host": "localhost", "port": 6379, "db": 0, "password": None},
    "logging": {"level": "DEBUG", "file": "logs/test.log", "format": "%(message)s"},
    "monitoring": {"prometheus_port": 8000, "metrics_enabled": False},
}


@pytest.fixture
def config_data() -> Dict[str, Any]:
    return copy.deepcopy(BASE_CONFIG)


@pytest.fixture
def config(config_data: Dict[str, Any]) -> Config:
    return ConfigManager.from_dict(config_data)
