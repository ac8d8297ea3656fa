"""
Closed set of job kinds and the entry function registered for each.
"""

from enum import Enum
from typing import Callable, Dict, Union

from ..execution.errors import UnknownJobError
from . import scrapers


class JobKind(Enum):
    """Jobs a worker process can run."""
    MOVIE_SERVERS = "movie_servers"
    TV_EPISODE = "tv_episode"
    MOVIE_SEARCH = "movie_search"
    CATEGORY_LISTING = "category_listing"
    WATCH_PAGE = "watch_page"


JOB_REGISTRY: Dict[JobKind, Callable] = {
    JobKind.MOVIE_SERVERS: scrapers.movie_servers,
    JobKind.TV_EPISODE: scrapers.tv_episode,
    JobKind.MOVIE_SEARCH: scrapers.movie_search,
    JobKind.CATEGORY_LISTING: scrapers.category_listing,
    JobKind.WATCH_PAGE: scrapers.watch_page,
}


def resolve_job(kind: Union[JobKind, str]) -> Callable:
    """Return the entry function for a job kind or raise UnknownJobError."""
    if not isinstance(kind, JobKind):
        try:
            kind = JobKind(kind)
        except ValueError:
            raise UnknownJobError(f"Unknown job kind: {kind!r}") from None

    try:
        return JOB_REGISTRY[kind]
    except KeyError:
        raise UnknownJobError(f"No entry function registered for {kind.value}") from None
