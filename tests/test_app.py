"""
Tests for the HTTP routes with forked worker pools and a fake cache.
"""

import os

import pytest

from cinepool.execution import WorkerPool, WorkerSpawner
from cinepool.jobs import JobKind, registry
from cinepool.utils.config import ConfigManager
from cinepool.web import CONTEXT_KEY, create_app


def movie_entry(payload):
    return {
        'name': payload['name'],
        'runtime': payload['runtime'],
        'site': payload['site']['base_url'],
        'fetch_timeout': payload['fetch']['timeout'],
    }


def tv_entry(payload):
    if payload['series_name'] == 'broken':
        raise ValueError("layout changed")
    return {
        'data': f"{payload['series_name']} S{payload['season']}E{payload['episode']}",
        'pid': os.getpid(),
    }


def search_entry(payload):
    return {'data': {'query': payload['query'], 'site': payload['site']['base_url']}}


def watch_entry(payload):
    return {'data': {'id': payload['id'], 'ep': payload['ep']}}


def crashing_entry(payload):
    os._exit(3)


class FakeCache:
    """In-memory stand-in for ResponseCache."""

    def __init__(self):
        self.store = {}
        self.stats = {'hits': 0, 'misses': 0, 'errors': 0}
        self.closed = False

    async def get(self, key):
        if key in self.store:
            self.stats['hits'] += 1
            return self.store[key]
        self.stats['misses'] += 1
        return None

    async def set(self, key, value, ttl=None):
        self.store[key] = value

    async def close(self):
        self.closed = True


def build_app(config, cache=None):
    return create_app(
        config,
        movie_pool=WorkerPool(movie_entry, 1, start_method='fork', name='movie'),
        tv_pool=WorkerPool(tv_entry, 1, start_method='fork', name='tv'),
        spawner=WorkerSpawner(start_method='fork'),
        cache=cache,
    )


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
async def client(aiohttp_client, config, cache):
    return await aiohttp_client(build_app(config, cache))


class TestPooledRoutes:
    """Routes served by the persistent pools."""

    @pytest.mark.asyncio
    async def test_movie_files(self, client):
        resp = await client.get('/movie/files/Inception/148')
        assert resp.status == 200
        assert await resp.json() == {
            'name': 'Inception', 'runtime': '148',
            'site': 'http://movies.test', 'fetch_timeout': 2,
        }

    @pytest.mark.asyncio
    async def test_tv_files(self, client):
        resp = await client.get('/tv/files/Dark/2/5')
        assert resp.status == 200
        assert (await resp.json())['data'] == 'Dark S2E5'

    @pytest.mark.asyncio
    @pytest.mark.parametrize('path, message', [
        ('/tv/files/%20/1/1', 'Series name is required'),
        ('/tv/files/Dark/0/1', 'Invalid season number'),
        ('/tv/files/Dark/abc/1', 'Invalid season number'),
        ('/tv/files/Dark/1/-2', 'Invalid episode number'),
    ])
    async def test_tv_files_validation(self, client, path, message):
        resp = await client.get(path)
        assert resp.status == 400
        assert await resp.json() == {'error': message}

    @pytest.mark.asyncio
    async def test_job_failure_is_500(self, client):
        resp = await client.get('/tv/files/broken/1/1')
        assert resp.status == 500
        assert await resp.json() == {'error': 'Failed to fetch TV show data'}

    @pytest.mark.asyncio
    async def test_closed_pool(self, client):
        await client.app[CONTEXT_KEY].movie_pool.close()
        resp = await client.get('/movie/files/Inception/148')
        assert resp.status == 500
        assert await resp.json() == {'error': 'Worker pool not initialized'}


class TestCachedRoute:
    """/tv-show responses are cached."""

    @pytest.mark.asyncio
    async def test_second_request_is_served_from_cache(self, client, cache):
        first = await client.get('/tv-show/Dark/1/2')
        assert first.status == 200
        body = await first.json()

        second = await client.get('/tv-show/Dark/1/2')
        assert await second.json() == body
        assert cache.stats['hits'] == 1
        assert client.app[CONTEXT_KEY].tv_pool.stats['submitted'] == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, client, cache):
        resp = await client.get('/tv-show/broken/1/1')
        assert resp.status == 500
        assert cache.store == {}

    @pytest.mark.asyncio
    async def test_validation(self, client):
        resp = await client.get('/tv-show/Dark/x/1')
        assert resp.status == 400
        assert await resp.json() == {'error': 'name needed'}

    @pytest.mark.asyncio
    async def test_works_without_cache(self, aiohttp_client, config):
        client = await aiohttp_client(build_app(config))
        resp = await client.get('/tv-show/Dark/1/1')
        assert resp.status == 200


class TestSpawnedRoutes:
    """Routes that run a one-off worker per request."""

    @pytest.mark.asyncio
    async def test_movie_scraper(self, client, monkeypatch):
        monkeypatch.setitem(registry.JOB_REGISTRY, JobKind.MOVIE_SEARCH, search_entry)
        resp = await client.get('/movie-scraper/Inception')
        assert resp.status == 200
        assert await resp.json() == {'data': {'query': 'Inception', 'site': 'http://movies.test'}}

    @pytest.mark.asyncio
    async def test_watch_scraper(self, client, monkeypatch):
        monkeypatch.setitem(registry.JOB_REGISTRY, JobKind.WATCH_PAGE, watch_entry)
        resp = await client.get('/tv/ramadan-scraper/watch/77/4')
        assert resp.status == 200
        assert await resp.json() == {'data': {'id': '77', 'ep': '4'}}

    @pytest.mark.asyncio
    async def test_worker_exit_is_500(self, client, monkeypatch):
        monkeypatch.setitem(registry.JOB_REGISTRY, JobKind.CATEGORY_LISTING, crashing_entry)
        resp = await client.get('/tv/ramadan-scraper')
        assert resp.status == 500
        assert await resp.json() == {'error': 'Worker stopped with exit code 3'}

    @pytest.mark.asyncio
    async def test_unconfigured_site(self, aiohttp_client, config_data):
        del config_data['execution']['spawner']['sites']['category_listing']
        client = await aiohttp_client(build_app(ConfigManager.from_dict(config_data)))
        resp = await client.get('/tv/ramadan-scraper')
        assert resp.status == 500
        assert await resp.json() == {'error': 'No site configured for category_listing'}


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client, cache):
        await client.get('/movie/files/Inception/148')
        resp = await client.get('/health')
        assert resp.status == 200
        body = await resp.json()
        assert body['movie_pool']['completed'] == 1
        assert body['movie_pool']['roster'] == 1
        assert body['tv_pool']['size'] == 1
        assert body['spawner'] == {'spawned': 0, 'succeeded': 0, 'failed': 0}
        assert body['cache'] == cache.stats

    @pytest.mark.asyncio
    async def test_cleanup_closes_pools(self, aiohttp_client, config, cache):
        app = build_app(config, cache)
        client = await aiohttp_client(app)
        context = client.app[CONTEXT_KEY]
        assert context.movie_pool.started
        await client.close()
        assert context.movie_pool.closed
        assert context.tv_pool.closed
        assert cache.closed
