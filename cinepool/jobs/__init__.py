"""
Scraping jobs and the registry that maps job kinds to them.
"""

from .registry import JobKind, JOB_REGISTRY, resolve_job
from .parser import PageParser, SitePage, normalize_query

__all__ = ['JobKind', 'JOB_REGISTRY', 'resolve_job', 'PageParser', 'SitePage', 'normalize_query']
