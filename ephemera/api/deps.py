"""
Shared FastAPI dependencies.

Per-application collaborators (change feed, clock, object store) live on
``app.state`` and are overridable in tests through ``dependency_overrides``.
"""
from fastapi import HTTPException, Request

from ephemera.core.clock import Clock
from ephemera.core.errors import ProcedureError
from ephemera.core.feed import ChangeFeed
from ephemera.core.object_store import LocalObjectStore


def get_feed(request: Request) -> ChangeFeed:
    """Dependency to get the application's change feed."""
    return request.app.state.feed


def get_clock(request: Request) -> Clock:
    """Dependency to get the application's clock."""
    return request.app.state.clock


def get_object_store(request: Request) -> LocalObjectStore:
    """Dependency to get the application's object store."""
    return request.app.state.object_store


def http_error(exc: ProcedureError) -> HTTPException:
    """Translate a rejected procedure into an HTTP error response."""
    return HTTPException(status_code=exc.status_code, detail=exc.detail)
