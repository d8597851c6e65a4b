"""
Router initialization module.

Exports the API routers of the read-only HTTP surface.
"""
from raas.server.routers import instances, system

__all__ = [
    "instances",
    "system",
]
