"""
Scraping jobs run inside worker processes.

Every job takes one payload dict and returns one JSON-serialisable
result. The payload carries the `site` settings (URL templates,
selectors, host rewrites) and optional `fetch` settings, so a job needs
nothing from the parent process beyond its input.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from ..fetching.fetcher import UpstreamFetcher
from .parser import PageParser, SitePage, normalize_query


NOT_FOUND = 'Not Found'
EPISODE_NOT_FOUND = 'Episode Not Found'
SEASON_NOT_FOUND = 'Season Not Found'
NO_SEASON_DOWNLOADS = "We Don't Have Download All The Season Of This TV Show Yet"

logger = logging.getLogger(__name__)


def _fetcher(payload: Dict[str, Any]) -> UpstreamFetcher:
    settings = payload.get('fetch') or {}
    return UpstreamFetcher(
        timeout=settings.get('timeout', 8.0),
        max_retries=settings.get('max_retries', 2),
        backoff=settings.get('backoff', 1.0),
        headers=settings.get('headers')
    )


async def _page(fetcher: UpstreamFetcher, url: str) -> PageParser:
    result = await fetcher.retry_fetch(url)
    return PageParser(result.content)


def _positive_int(value: Any, field: str) -> int:
    number = int(value)
    if number <= 0:
        raise ValueError(f"{field} must be positive")
    return number


async def movie_search(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Search a site for a movie and collect watch servers and download links of the top hit."""
    query = normalize_query(payload.get('query'))
    if not query:
        raise ValueError("No movie name provided")

    site = SitePage(payload['site'])
    exclude = site.selectors.get('item_exclude_text')

    async with _fetcher(payload) as fetcher:
        search = await _page(fetcher, site.url('search', query=quote(query)))

        links = []
        for item in search.select(site.selector('item')):
            label = PageParser.text_of(item, site.selectors.get('item_label'))
            if exclude and exclude in label:
                continue
            link = site.rewrite(PageParser.attr_of(item, site.selector('item_link', 'a'), 'href'))
            if link:
                links.append(link)

        if not links:
            return {'data': NOT_FOUND}

        movie = await _page(fetcher, links[0])

    servers = []
    for entry in movie.select(site.selector('watch_servers')):
        server_url = site.rewrite(PageParser.attr_of(
            entry, site.selectors.get('server_url'), site.selectors.get('server_url_attr', 'data-url')))
        if not server_url:
            continue
        servers.append({
            'server_name': PageParser.text_of(entry, site.selectors.get('server_name')),
            'server_url': server_url,
        })

    return {
        'data': {
            'watch_servers': servers,
            'download_links': movie.download_links(site.selector('downloads')),
        }
    }


async def movie_servers(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Find a movie by name and list the streaming servers on its page."""
    name = normalize_query(payload.get('name'))
    if not name:
        raise ValueError("No movie name provided")

    site = SitePage(payload['site'])
    wanted_type = site.selectors.get('item_type_value', 'movie')

    async with _fetcher(payload) as fetcher:
        search = await _page(fetcher, site.url('search', query=quote(name)))

        movies: List[Dict[str, Optional[str]]] = []
        for item in search.select(site.selector('item')):
            item_type = PageParser.text_of(item, site.selectors.get('item_type')).lower()
            if site.selectors.get('item_type') and item_type != wanted_type:
                continue
            movies.append({
                'title': PageParser.text_of(item, site.selector('item_title')),
                'url': site.rewrite(PageParser.attr_of(item, site.selector('item_title'), 'href')),
                'poster_url': PageParser.attr_of(item, site.selectors.get('item_poster'),
                                                 site.selectors.get('item_poster_attr', 'src')),
                'quality': PageParser.text_of(item, site.selectors.get('item_quality')),
            })

        if not movies:
            return {'results': []}

        top = movies[0]
        if not top['url']:
            return {'results': movies}

        logger.info(f"Found movie '{top['title']}', fetching servers")
        page = await _page(fetcher, top['url'])

    servers = []
    for entry in page.select(site.selector('servers')):
        server_name = PageParser.text_of(entry)
        server_id = PageParser.attr_of(entry, None, site.selectors.get('server_id_attr', 'data-id'))
        if server_name and server_id:
            servers.append({'name': server_name, 'id': server_id})

    result = dict(top)
    result['runtime'] = payload.get('runtime')
    result['servers'] = servers
    return {'results': [result]}


async def tv_episode(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Locate one episode of a series and return its watch link and download links."""
    series_name = (payload.get('series_name') or '').strip()
    if not series_name:
        raise ValueError("Series name is required")
    season = _positive_int(payload.get('season'), 'season')
    episode = _positive_int(payload.get('episode'), 'episode')

    site = SitePage(payload['site'])

    async with _fetcher(payload) as fetcher:
        search = await _page(fetcher, site.url('search', query=quote(series_name)))
        results = search.select(site.selector('item'))
        if not results:
            return {'data': NOT_FOUND}

        series_link = site.rewrite(PageParser.attr_of(results[0], site.selector('item_link', 'a'), 'href'))
        if not series_link:
            return {'data': NOT_FOUND}

        series = await _page(fetcher, series_link)
        seasons = series.first(site.selector('seasons'))

        if seasons is None:
            # Single-season layout lists episodes directly on the series page.
            episodes_list = series.first(site.selector('single_season_episodes'))
            episode_page_url = _episode_link(site, episodes_list, episode)
        else:
            season_links = seasons.select('a')
            if season > len(season_links):
                return {'data': SEASON_NOT_FOUND}
            season_link = site.rewrite(season_links[season - 1].get('href'))
            if not season_link:
                return {'data': SEASON_NOT_FOUND}

            season_page = await _page(fetcher, season_link)
            episodes_list = season_page.first(site.selector('episodes'))
            episode_page_url = _episode_link(site, episodes_list, episode)

        if not episode_page_url:
            return {'data': EPISODE_NOT_FOUND}

        episode_page = await _page(fetcher, episode_page_url)

    watch = episode_page.first(site.selector('watch_frame'))
    season_downloads = episode_page.download_links(site.selector('season_downloads'))
    return {
        'data': PageParser.attr_of(watch, None, site.selectors.get('watch_frame_attr', 'src')),
        'download_ep_links': episode_page.download_links(site.selector('episode_downloads')),
        'download_season_links': season_downloads or NO_SEASON_DOWNLOADS,
    }


def _episode_link(site: SitePage, episodes_list, episode: int) -> Optional[str]:
    """Episodes are listed newest first, so episode n sits n places from the end."""
    if episodes_list is None:
        return None
    links = episodes_list.select('a')
    if not links or episode > len(links):
        return None
    return site.rewrite(links[len(links) - episode].get('href'))


async def category_listing(payload: Dict[str, Any]) -> Dict[str, Any]:
    """List the shows on a category page."""
    site = SitePage(payload['site'])

    async with _fetcher(payload) as fetcher:
        page = await _page(fetcher, site.url('listing'))

    shows = []
    for article in page.select(site.selector('item')):
        link = site.rewrite(PageParser.attr_of(article, site.selector('item_link', 'a'), 'href'))
        title = PageParser.text_of(article, site.selector('item_title'))
        if not (link and title):
            continue
        shows.append({
            'link': link,
            'image': PageParser.attr_of(article, site.selectors.get('item_image', 'img'), 'src'),
            'title': title,
            'episode': PageParser.text_of(article, site.selectors.get('item_episode')),
        })

    if not shows:
        return {'data': 'No shows found'}
    return {'data': shows}


async def watch_page(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Read the embedded player source and episode count from a watch page."""
    site = SitePage(payload['site'])
    url = site.url('watch', id=quote(str(payload.get('id', ''))), ep=quote(str(payload.get('ep', ''))))

    async with _fetcher(payload) as fetcher:
        result = await fetcher.retry_fetch(url)

    if result.status_code != 200:
        return {'data': 'Error'}

    page = PageParser(result.content)
    return {
        'data': {
            'iframe_src': PageParser.attr_of(page.first(site.selector('player')), None, 'src'),
            'episode_count': len(page.select(site.selector('episodes'))),
        }
    }
