"""Operator exception hierarchy.

User-input rejections (not logged in, not in a voice channel, party already
running) are not exceptions; they are replies. Everything here is an
infrastructure fault that handlers log without replying.
"""


class OperatorError(Exception):
    """Base exception for operator failures."""

    pass


class StateStoreError(OperatorError):
    """Raised when the Redis state store is unreachable or not connected."""

    pass


class CredentialRelayError(OperatorError):
    """Raised when the credential service returns non-2xx or cannot be reached."""

    pass


class TemplateError(OperatorError):
    """Raised when the worker specification cannot be loaded or rendered."""

    pass


class WorkerSubmissionError(OperatorError):
    """Raised when the scheduler rejects a worker pod submission."""

    pass


class WorkerAlreadyExistsError(WorkerSubmissionError):
    """Raised when a pod with the derived worker name already exists (HTTP 409)."""

    pass
