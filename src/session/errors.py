# ==============================================================================
# Session Errors
# ==============================================================================
#
# Exception hierarchy surfaced by the session client. Every failure raised
# from a Session method is a SessionError subclass; the original cause is
# chained (raise ... from err) so the Ray / pydantic / MLflow traceback
# stays available.
#
#   SessionError
#   ├── ConnectionError   cluster unreachable or connection dropped mid-call
#   ├── ValidationError   malformed configuration or request
#   ├── NotFoundError     referenced path or handle does not exist
#   ├── StateError        handle in an incompatible state / schema mismatch
#   ├── TimeoutError      request exceeded the configured duration
#   └── TrainingError     remote training job failed after submission
#
# ConnectionError and TimeoutError shadow the builtin names. Import the
# module (``from src.session import errors``) to keep them apart.
#
# ==============================================================================


class SessionError(Exception):
    """Base class for all session client errors."""


class ConnectionError(SessionError):
    """The Ray cluster could not be reached or dropped the connection."""


class ValidationError(SessionError):
    """A request or model configuration is malformed."""


class NotFoundError(SessionError):
    """A path, dataset or model does not exist."""


class StateError(SessionError):
    """A handle cannot be used for the requested operation."""


class TimeoutError(SessionError):
    """A remote request exceeded the caller-configured duration."""


class TrainingError(SessionError):
    """A training job was accepted by the cluster but failed."""
