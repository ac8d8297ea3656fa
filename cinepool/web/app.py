"""
HTTP front end: turns requests into job payloads and worker results into responses.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from aiohttp import web

from ..execution import PoolError, SpawnError, WorkerPool, WorkerSpawner
from ..jobs import JobKind
from ..utils.config import Config
from ..utils.monitoring import PoolMonitor
from .cache import ResponseCache


logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything the handlers share, owned by one application instance."""
    config: Config
    movie_pool: Optional[WorkerPool] = None
    tv_pool: Optional[WorkerPool] = None
    spawner: Optional[WorkerSpawner] = None
    cache: Optional[ResponseCache] = None
    monitor: Optional[PoolMonitor] = None

    def build_payload(self, site_name: str, **fields) -> Dict[str, Any]:
        """Job input: request fields plus the site and fetch settings workers need."""
        fetch = self.config.fetch
        payload = dict(fields)
        payload['site'] = self.config.sites[site_name].to_payload()
        payload['fetch'] = {
            'timeout': fetch.timeout,
            'max_retries': fetch.max_retries,
            'backoff': fetch.backoff,
            'headers': dict(fetch.headers),
        }
        return payload


CONTEXT_KEY = web.AppKey('context', AppContext)

routes = web.RouteTableDef()


def _error(message: str, status: int = 500) -> web.Response:
    return web.json_response({'error': message}, status=status)


def _parse_positive(value: str) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


async def _run_pooled(pool: Optional[WorkerPool], payload: Dict[str, Any],
                      failure_message: str) -> web.Response:
    if pool is None or not pool.started or pool.closed:
        return _error('Worker pool not initialized')
    try:
        result = await pool.run_task(payload)
    except PoolError as e:
        logger.error(f"Pool {pool.name} task failed: {type(e).__name__}: {e}")
        return _error(failure_message)
    return web.json_response(result)


async def _run_spawned(context: AppContext, kind: JobKind, **fields) -> web.Response:
    if context.spawner is None:
        return _error('Worker spawner not initialized')
    site_name = context.config.execution.spawner.sites.get(kind.value)
    if site_name is None:
        return _error(f"No site configured for {kind.value}")
    payload = context.build_payload(site_name, **fields)
    try:
        result = await context.spawner.spawn(kind, payload)
    except SpawnError as e:
        return _error(str(e))
    return web.json_response(result)


@routes.get('/movie/files/{name}/{runtime}')
async def movie_files(request: web.Request) -> web.Response:
    context = request.app[CONTEXT_KEY]
    payload = context.build_payload(
        context.config.execution.movie_pool.site,
        name=request.match_info['name'],
        runtime=request.match_info['runtime']
    )
    return await _run_pooled(context.movie_pool, payload, 'Failed to fetch movie data')


@routes.get('/tv/files/{name}/{season}/{episode}')
async def tv_files(request: web.Request) -> web.Response:
    context = request.app[CONTEXT_KEY]
    name = request.match_info['name'].strip()
    if not name:
        return _error('Series name is required', status=400)

    season = _parse_positive(request.match_info['season'])
    if season is None:
        return _error('Invalid season number', status=400)

    episode = _parse_positive(request.match_info['episode'])
    if episode is None:
        return _error('Invalid episode number', status=400)

    payload = context.build_payload(
        context.config.execution.tv_pool.site,
        series_name=name, season=season, episode=episode
    )
    return await _run_pooled(context.tv_pool, payload, 'Failed to fetch TV show data')


@routes.get('/tv-show/{name}/{season}/{episode}')
async def tv_show(request: web.Request) -> web.Response:
    context = request.app[CONTEXT_KEY]
    name = request.match_info['name'].strip()
    season = _parse_positive(request.match_info['season'])
    episode = _parse_positive(request.match_info['episode'])
    if not name or season is None or episode is None:
        return _error('name needed', status=400)

    cache_key = request.path_qs
    if context.cache is not None:
        cached = await context.cache.get(cache_key)
        if cached is not None:
            return web.json_response(cached)

    payload = context.build_payload(
        context.config.execution.tv_pool.site,
        series_name=name, season=season, episode=episode
    )
    response = await _run_pooled(context.tv_pool, payload, 'Failed to fetch TV show data')
    if response.status == 200 and context.cache is not None:
        await context.cache.set(cache_key, _json_body(response))
    return response


def _json_body(response: web.Response) -> Any:
    return json.loads(response.text)


@routes.get('/movie-scraper/{movie_name}')
async def movie_scraper(request: web.Request) -> web.Response:
    movie_name = request.match_info['movie_name'].strip()
    if not movie_name:
        return _error('movie name needed', status=400)
    return await _run_spawned(request.app[CONTEXT_KEY], JobKind.MOVIE_SEARCH, query=movie_name)


@routes.get('/tv/ramadan-scraper')
async def category_scraper(request: web.Request) -> web.Response:
    return await _run_spawned(request.app[CONTEXT_KEY], JobKind.CATEGORY_LISTING)


@routes.get('/tv/ramadan-scraper/watch/{id}/{ep}')
async def watch_scraper(request: web.Request) -> web.Response:
    return await _run_spawned(
        request.app[CONTEXT_KEY], JobKind.WATCH_PAGE,
        id=request.match_info['id'], ep=request.match_info['ep']
    )


@routes.get('/health')
async def health(request: web.Request) -> web.Response:
    context = request.app[CONTEXT_KEY]
    body = {
        'movie_pool': context.movie_pool.get_stats() if context.movie_pool else None,
        'tv_pool': context.tv_pool.get_stats() if context.tv_pool else None,
        'spawner': context.spawner.get_stats() if context.spawner else None,
        'cache': context.cache.stats if context.cache else None,
    }
    return web.json_response(body)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Render unexpected handler failures as JSON 500s."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(f"Unhandled error on {request.path}: {e}", exc_info=True)
        return _error('Internal server error')


def build_pools(config: Config, monitor: Optional[PoolMonitor] = None):
    """Create (but do not start) the movie and TV pools described by config."""
    execution = config.execution
    pools = []
    for kind, pool_config in ((JobKind.MOVIE_SERVERS, execution.movie_pool),
                              (JobKind.TV_EPISODE, execution.tv_pool)):
        pools.append(WorkerPool.for_job(
            kind,
            pool_config.size,
            task_timeout=pool_config.task_timeout,
            max_queue_wait=pool_config.max_queue_wait,
            start_method=execution.start_method,
            monitor=monitor
        ))
    return tuple(pools)


def create_app(config: Config, *,
               movie_pool: Optional[WorkerPool] = None,
               tv_pool: Optional[WorkerPool] = None,
               spawner: Optional[WorkerSpawner] = None,
               cache: Optional[ResponseCache] = None,
               monitor: Optional[PoolMonitor] = None) -> web.Application:
    """
    Build the application. Components not passed in are created from config.

    Pools are started on application startup and closed on cleanup.
    """
    if movie_pool is None or tv_pool is None:
        default_movie, default_tv = build_pools(config, monitor)
        movie_pool = movie_pool or default_movie
        tv_pool = tv_pool or default_tv
    if spawner is None:
        spawner = WorkerSpawner(
            start_method=config.execution.start_method,
            timeout=config.execution.spawner.timeout,
            monitor=monitor
        )
    if cache is None and config.redis.enabled:
        cache = ResponseCache.from_config(config.redis)

    app = web.Application(middlewares=[error_middleware])
    app[CONTEXT_KEY] = AppContext(
        config=config,
        movie_pool=movie_pool,
        tv_pool=tv_pool,
        spawner=spawner,
        cache=cache,
        monitor=monitor
    )
    app.add_routes(routes)
    app.on_startup.append(_start_workers)
    app.on_cleanup.append(_stop_workers)
    return app


async def _start_workers(app: web.Application):
    context = app[CONTEXT_KEY]
    for pool in (context.movie_pool, context.tv_pool):
        await pool.start()
    logger.info("Worker pools ready")


async def _stop_workers(app: web.Application):
    context = app[CONTEXT_KEY]
    for pool in (context.movie_pool, context.tv_pool):
        await pool.close()
    if context.cache is not None:
        await context.cache.close()
    logger.info("Worker pools stopped")
