"""
Tests for job kind resolution.
"""

import pytest

from cinepool.execution import UnknownJobError
from cinepool.jobs import JOB_REGISTRY, JobKind, resolve_job, scrapers


class TestResolveJob:

    def test_every_kind_is_registered(self):
        assert set(JOB_REGISTRY) == set(JobKind)

    @pytest.mark.parametrize('kind, entry', [
        (JobKind.MOVIE_SERVERS, scrapers.movie_servers),
        (JobKind.TV_EPISODE, scrapers.tv_episode),
        (JobKind.MOVIE_SEARCH, scrapers.movie_search),
        (JobKind.CATEGORY_LISTING, scrapers.category_listing),
        (JobKind.WATCH_PAGE, scrapers.watch_page),
    ])
    def test_resolves_kind(self, kind, entry):
        assert resolve_job(kind) is entry
        assert resolve_job(kind.value) is entry

    @pytest.mark.parametrize('kind', ['', 'MOVIE_SEARCH', 'scrape_everything', None, 3])
    def test_unknown_kind(self, kind):
        with pytest.raises(UnknownJobError):
            resolve_job(kind)

    def test_unknown_job_is_a_value_error(self):
        with pytest.raises(ValueError):
            resolve_job('nope')

    def test_unregistered_kind(self, monkeypatch):
        monkeypatch.delitem(JOB_REGISTRY, JobKind.WATCH_PAGE)
        with pytest.raises(UnknownJobError, match='watch_page'):
            resolve_job(JobKind.WATCH_PAGE)
