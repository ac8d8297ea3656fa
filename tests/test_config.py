"""
Tests for configuration loading and validation.
"""

from pathlib import Path

import pytest
import yaml

from cinepool.utils.config import ConfigManager, load_config, validate_config


REPO_ROOT = Path(__file__).resolve().parent.parent


def write_config(tmp_path, data):
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump(data, allow_unicode=True), encoding='utf-8')
    return path


class TestLoadConfig:

    def test_shipped_config_is_valid(self):
        config = load_config(str(REPO_ROOT / 'config.yaml'))
        assert config.execution.movie_pool.size == 4
        assert config.execution.tv_pool.task_timeout == 30
        assert config.execution.spawner.sites['watch_page'] == 'rikatv'
        assert config.fetch.timeout == 8
        assert config.fetch.max_retries == 2
        assert 'mycima.tv' in config.sites['mycima'].host_rewrites.values()

    def test_round_trip_from_file(self, tmp_path, config_data):
        config = load_config(str(write_config(tmp_path, config_data)))
        assert config.execution.start_method == 'fork'
        assert config.execution.movie_pool.site == 'movies'
        assert config.execution.movie_pool.max_queue_wait is None
        assert config.redis.enabled is False
        assert config.logging.json is False

    def test_defaults(self, config_data):
        del config_data['server']
        del config_data['fetch']
        config_data['execution'].pop('spawner')
        config = ConfigManager.from_dict(config_data)
        assert config.server.port == 5000
        assert config.fetch.timeout == 8.0
        assert config.fetch.backoff == 1.0
        assert config.execution.spawner.timeout is None
        assert config.execution.spawner.sites == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / 'absent.yaml'))

    def test_manager_requires_load(self):
        with pytest.raises(ValueError):
            ConfigManager('unused.yaml').config

    def test_site_payload_is_plain_data(self, config):
        payload = config.sites['movies'].to_payload()
        assert payload == {
            'base_url': 'http://movies.test',
            'urls': {'search': '{base_url}/search/{query}'},
            'selectors': {},
            'host_rewrites': {},
        }


class TestValidation:

    @pytest.mark.parametrize('mutate, message', [
        (lambda d: d['execution'].update(start_method='threads'), 'start_method'),
        (lambda d: d['execution']['movie_pool'].update(size=0), 'movie_pool.size'),
        (lambda d: d['execution']['tv_pool'].update(task_timeout=0), 'tv_pool.task_timeout'),
        (lambda d: d['execution']['tv_pool'].update(max_queue_wait=-1), 'tv_pool.max_queue_wait'),
        (lambda d: d['execution']['movie_pool'].update(site='nowhere'), 'unknown site'),
        (lambda d: d['execution']['spawner'].update(timeout=0), 'spawner.timeout'),
        (lambda d: d['execution']['spawner']['sites'].update(watch_page='nowhere'), 'watch_page'),
        (lambda d: d['fetch'].update(timeout=0), 'fetch.timeout'),
        (lambda d: d['fetch'].update(max_retries=-1), 'fetch.max_retries'),
        (lambda d: d['fetch'].update(backoff=-0.5), 'fetch.backoff'),
    ])
    def test_rejects(self, config_data, mutate, message):
        mutate(config_data)
        with pytest.raises(ValueError, match=message):
            validate_config(ConfigManager.from_dict(config_data))

    def test_load_validates(self, tmp_path, config_data):
        config_data['execution']['movie_pool']['size'] = 0
        with pytest.raises(ValueError):
            load_config(str(write_config(tmp_path, config_data)))
