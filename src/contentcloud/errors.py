"""Exception hierarchy for the ContentCloud operator.

Three families matter to the reconcile loop:

- ConfigurationError and its subclasses describe a problem with the
  custom resource or operator settings. They are written to
  ``status.errorMessage`` and the pass is retried with framework backoff.
- TransientClusterError wraps API server failures that are expected to
  heal on their own (conflicts, not-found races, 5xx, timeouts). They are
  never persisted as a status error.
- InvariantViolation signals a broken internal contract and aborts the pass
  immediately.
"""

from __future__ import annotations


class OperatorError(Exception):
    """Base class for all operator errors."""

    pass


class ConfigurationError(OperatorError):
    """Raised when configuration validation fails."""

    pass


class UnknownComponentTypeError(ConfigurationError):
    """Raised when a component spec names a type with no registered factory."""

    pass


class NoSuchComponentError(ConfigurationError):
    """Raised when a registry lookup finds no matching component."""

    pass


class MissingCapabilityError(ConfigurationError):
    """Raised when a component was found but does not offer a capability."""

    pass


class MissingSecretError(ConfigurationError):
    """Raised when a client secret is needed but cannot be provisioned."""

    pass


class TransientClusterError(OperatorError):
    """Raised when a cluster API call fails in a way that may heal itself.

    Attributes:
        status: HTTP status code returned by the API server, if any.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ClusterRequestError(OperatorError):
    """Raised when the API server rejects a request permanently (4xx)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class InvariantViolation(OperatorError):
    """Raised when an internal invariant is broken."""

    pass


class ConvergenceError(InvariantViolation):
    """Raised when the convergence loop does not reach a fixed point."""

    pass
