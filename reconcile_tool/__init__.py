"""
Host-State Reconciliation Engine

Converges Linux hosts to declarative hardening policies (package, service,
file attribute, config line, mount, sysctl and assertion resources) with
idempotent, ordered, auditable runs.
"""

__version__ = "1.0.0"

from .core.coordinator import RunCoordinator
from .core.models import ExecutionResult, PolicyDocument, RunReport
from .policy.loader import PolicyLoader

__all__ = ["RunCoordinator", "PolicyLoader", "PolicyDocument", "ExecutionResult", "RunReport"]
