"""
HTML helpers shared by the scraping jobs.
"""

import re
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlparse, urlunparse
from bs4 import BeautifulSoup, Tag


class SitePage:
    """
    URL templates, selectors and host rewrites for one upstream site.

    Wraps the plain `site` mapping carried in a job payload so it can be
    sent to worker processes as copied data.
    """

    def __init__(self, site: Dict[str, Any]):
        self.base_url = site['base_url'].rstrip('/')
        self.urls: Dict[str, str] = site.get('urls', {})
        self.selectors: Dict[str, str] = site.get('selectors', {})
        self.host_rewrites: Dict[str, str] = site.get('host_rewrites', {})

    def url(self, name: str, **params) -> str:
        template = self.urls.get(name)
        if template is None:
            raise KeyError(f"Site has no '{name}' URL template")
        return template.format(base_url=self.base_url, **params)

    def selector(self, name: str, default: Optional[str] = None) -> str:
        value = self.selectors.get(name, default)
        if value is None:
            raise KeyError(f"Site has no '{name}' selector")
        return value

    def rewrite(self, url: Optional[str]) -> Optional[str]:
        """Swap mirror hostnames for the canonical one and resolve relative links."""
        if not url:
            return url
        url = urljoin(self.base_url + '/', url)
        parsed = urlparse(url)
        host = self.host_rewrites.get(parsed.netloc)
        if host:
            url = urlunparse(parsed._replace(netloc=host))
        return url


class PageParser:
    """Thin BeautifulSoup wrapper with the lookups the jobs need."""

    whitespace_pattern = re.compile(r'\s+')

    def __init__(self, html: Optional[str]):
        self.logger = logging.getLogger(__name__)
        self.soup = BeautifulSoup(html or '', 'lxml')

    def select(self, selector: str) -> List[Tag]:
        return self.soup.select(selector)

    def first(self, selector: str) -> Optional[Tag]:
        return self.soup.select_one(selector)

    @classmethod
    def clean_text(cls, text: Optional[str]) -> str:
        if not text:
            return ''
        return cls.whitespace_pattern.sub(' ', text).strip()

    @classmethod
    def text_of(cls, element: Optional[Tag], selector: Optional[str] = None) -> str:
        if element is None:
            return ''
        target = element.select_one(selector) if selector else element
        return cls.clean_text(target.get_text()) if target is not None else ''

    @staticmethod
    def attr_of(element: Optional[Tag], selector: Optional[str], attr: str) -> Optional[str]:
        if element is None:
            return None
        target = element.select_one(selector) if selector else element
        if target is None:
            return None
        value = target.get(attr)
        if isinstance(value, list):
            value = ' '.join(value)
        return value or None

    def download_links(self, selector: str) -> List[Dict[str, str]]:
        """Collect {download_url, quality, resolution} from the list items under selector."""
        links = []
        for item in self.select(f"{selector} li"):
            download_url = self.attr_of(item, 'a', 'href')
            if not download_url:
                continue
            links.append({
                'download_url': download_url,
                'quality': self.text_of(item, 'a quality'),
                'resolution': self.text_of(item, 'a resolution'),
            })
        return links


def normalize_query(query: Optional[str]) -> str:
    """Lower-case, replace anything but ASCII letters and digits with spaces, trim."""
    if not query:
        return ''
    return re.sub(r'[^0-9a-z]', ' ', query.strip().lower()).strip()
