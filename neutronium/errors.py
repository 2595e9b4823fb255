"""
Error taxonomy for the session engine and its collaborators.
Each error carries the HTTP status the API layer renders it with.
"""


class NeutroniumError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(NeutroniumError):
    """A field was missing or malformed."""
    status_code = 400


class NotFound(NeutroniumError):
    status_code = 404


class Conflict(NeutroniumError):
    status_code = 409


class NotActive(NeutroniumError):
    """The session exists but no longer accepts changes."""
    status_code = 400


class UpstreamFailure(NeutroniumError):
    """The store or the email provider failed."""
    status_code = 500
