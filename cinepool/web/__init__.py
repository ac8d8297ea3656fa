"""
HTTP front end for the worker pools.
"""

from .app import AppContext, CONTEXT_KEY, create_app, build_pools
from .cache import ResponseCache

__all__ = ['AppContext', 'CONTEXT_KEY', 'create_app', 'build_pools', 'ResponseCache']
