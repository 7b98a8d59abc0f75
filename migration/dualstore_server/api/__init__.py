"""
HTTP API for DualStore (FastAPI).
"""

from .app import create_app
from .routes import clamp_limit, parse_filter_value
from .settings import HttpSettings

__all__ = ["HttpSettings", "clamp_limit", "create_app", "parse_filter_value"]
