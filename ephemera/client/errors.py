"""
Client-side error taxonomy.

Backend failures are caught at the pipeline boundaries and turned into
user-visible notices; none of these reach the rendering layer.
"""
from typing import Optional


class EphemeraError(Exception):
    """Base class for client core errors."""


class TransientNetworkError(EphemeraError):
    """The backend could not be reached or failed server-side. Retrying is safe."""


class BackendRejected(EphemeraError):
    """The backend answered and refused the request (4xx)."""

    def __init__(self, status_code: int, detail: Optional[str] = None):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class MalformedRecord(EphemeraError):
    """A row from the backend failed validation and was dropped."""
