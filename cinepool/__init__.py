"""
Movie Catalog Task Execution

Bounded worker pools and one-off worker processes for the scraping jobs
behind a movie-catalog web front end.
"""

__version__ = "1.0.0"
__author__ = "Alex Nguyen"
__description__ = "Supervised worker pools for slow and untrusted scraping jobs"
