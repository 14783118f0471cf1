"""
Failure taxonomy for the sync engine.

Transport, protocol, application and data-shape failures all describe one
failed round trip and are retried by the query runner. Once the retry budget
is spent the runner raises QueryFailedError, which the update job turns into
WaveFailedError.
"""


class SyncError(Exception):
    """Base class for every error raised by trailer_sync."""


class QueryAttemptError(SyncError):
    """One attempt of a query failed; the message is what the user sees."""

    kind: str = "attempt"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TransportError(QueryAttemptError):
    kind = "transport"


class ProtocolError(QueryAttemptError):
    kind = "protocol"


class ApplicationError(QueryAttemptError):
    """Well formed response whose body reports a server side error."""

    kind = "application"


class DataShapeError(QueryAttemptError):
    kind = "data-shape"


class QueryFailedError(SyncError):
    def __init__(self, query_name: str, message: str, attempts: int):
        self.query_name = query_name
        self.message = message
        self.attempts = attempts
        super().__init__(f"[{query_name}] {message} (after {attempts} attempts)")


class WaveFailedError(SyncError):
    def __init__(self, wave: str, message: str):
        self.wave = wave
        self.message = message
        super().__init__(f"{wave} failed: {message}")


class NothingToUpdateError(SyncError):
    def __init__(self):
        super().__init__("This combination of parameters will not cause anything to be updated")
