"""
Errors raised by the server-side procedures.

Each carries the HTTP status the API layer answers with.
"""


class ProcedureError(Exception):
    """Base class for rejected backend operations."""

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ConversationNotFound(ProcedureError):
    status_code = 404


class MessageNotFound(ProcedureError):
    status_code = 404


class NotAParticipant(ProcedureError):
    status_code = 403


class InvalidMessage(ProcedureError):
    status_code = 422
