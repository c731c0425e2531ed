"""
Error taxonomy for the reconciliation engine.

Every error carries the resource id and kind it relates to (when known)
and a one-line cause, so failures can be recorded as data in a RunReport.
"""

from typing import Optional


class ReconcileError(Exception):
    """Base class for all engine errors."""

    code = "ReconcileError"

    def __init__(self, message: str, resource_id: Optional[str] = None,
                 kind: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.resource_id = resource_id
        self.kind = kind

    def bind(self, resource_id: str, kind: str) -> "ReconcileError":
        """Attach resource context if it is not already set."""
        if self.resource_id is None:
            self.resource_id = resource_id
        if self.kind is None:
            self.kind = kind
        return self

    def __str__(self) -> str:
        prefix = self.code
        if self.kind:
            prefix += f" [{self.kind}]"
        if self.resource_id:
            prefix += f" {self.resource_id}"
        return f"{prefix}: {self.message}"


class SchemaError(ReconcileError):
    """Policy document is malformed. Raised at load time only."""

    code = "SchemaError"


class ProbeError(ReconcileError):
    """Current state of a host object could not be read."""

    code = "ProbeError"


class MutationError(ReconcileError):
    """A mutation was rejected or did not converge on re-probe."""

    code = "MutationError"


class OperationTimeoutError(ReconcileError, TimeoutError):
    """A probe, mutation or handler exceeded its time budget."""

    code = "TimeoutError"


class AssertionFailure(ReconcileError):
    """A command assertion reported a violated precondition."""

    code = "AssertionFailure"


class HandlerError(ReconcileError):
    """A deferred handler action failed."""

    code = "HandlerError"


class HostError(Exception):
    """
    Raised by Host implementations when an operation fails on the host.

    Host backends know nothing about resources; the probe layer and the
    reconciler translate this into ProbeError or MutationError.
    """

    def __init__(self, message: str, exit_code: Optional[int] = None,
                 stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr
