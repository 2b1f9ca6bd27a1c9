"""
Domain errors raised by the session services.

The exception handler in main turns these into JSON responses; nothing here
is fatal.
"""


class ClassvoteError(Exception):
    """Base class for all expected failures."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SessionNotFound(ClassvoteError):
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class ValidationFailed(ClassvoteError):
    """Input rejected before any store write."""


class NicknameTaken(ValidationFailed):
    status_code = 409


class ActionInProgress(ClassvoteError):
    """The same admin action is already running for this session."""

    status_code = 409


class VoteRejected(ClassvoteError):
    status_code = 409

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class StoreUnavailable(ClassvoteError):
    """Read or write against the session store failed."""

    status_code = 503


class ResultsHidden(ClassvoteError):
    status_code = 403
