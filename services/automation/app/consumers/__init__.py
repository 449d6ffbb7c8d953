"""Initialize consumers package."""

from .domain_events import ROUTES, build_stream_handlers

__all__ = [
    "ROUTES",
    "build_stream_handlers",
]
