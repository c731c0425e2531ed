"""
Reconciler: converge one resource from its current state to its desired state.

If the current state already satisfies the resource nothing is touched.
Otherwise the minimal kind-specific mutation is applied and the object is
re-probed; a re-probe that still disagrees is a failure.
"""

import logging
import re
import time
from typing import Any, Dict, Optional

from . import lineinfile
from .errors import (
    AssertionFailure, HostError, MutationError, ProbeError, ReconcileError
)
from .models import (
    CurrentState, ErrorDetail, ExecutionResult, LineState, PackageTarget,
    ResourceKind, ResultStatus
)
from .probes import probe
from ..hosts.base import Host

logger = logging.getLogger(__name__)

# Attributes too bulky to carry into results
_HIDDEN_ATTRIBUTES = ("content", "persisted")


def _sysctl_pattern(key: str) -> str:
    return rf"^\s*{re.escape(key)}\s*="


def _sysctl_line(key: str, value: str) -> str:
    return f"{key} = {value}"


def _normalize(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return " ".join(value.split())


class Reconciler:
    """
    Applies resources to a single host.

    Every host call receives the same per-operation timeout. In dry-run
    mode divergent resources are reported as changed without mutating.
    """

    def __init__(self, host: Host, timeout: float = 30.0, dry_run: bool = False):
        """
        Initialize reconciler.

        Args:
            host: Host collaborator to reconcile against
            timeout: Per-operation time budget in seconds
            dry_run: Report what would change without mutating
        """
        self.host = host
        self.timeout = timeout
        self.dry_run = dry_run

    def check(self, resource) -> ExecutionResult:
        """
        Probe and reconcile a resource. Never raises.

        Returns:
            ExecutionResult: Outcome, with errors represented as data
        """
        start = time.monotonic()
        try:
            current = probe(resource, self.host, self.timeout)
        except ReconcileError as e:
            return self._failed(resource, e.bind(resource.id, resource.kind), start)
        except Exception as e:
            logger.exception("Unexpected error probing %s", resource.id)
            return self._failed(resource, ProbeError(f"unexpected error: {e}", resource.id,
                                                     resource.kind), start)

        try:
            return self.reconcile(resource, current)
        except Exception as e:
            logger.exception("Unexpected error reconciling %s", resource.id)
            error = MutationError(f"unexpected error: {e}", resource.id, resource.kind)
            return self._failed(resource, error, start, before=current)

    def reconcile(self, resource, current: CurrentState) -> ExecutionResult:
        """
        Converge a resource given its probed state.

        Args:
            resource: Resource to converge
            current: State returned by the probe layer

        Returns:
            ExecutionResult: unchanged, changed, skipped or failed
        """
        start = time.monotonic()

        if resource.kind == ResourceKind.COMMAND_ASSERTION:
            return self._assert(resource, current, start)

        if not current.found and getattr(resource.params, "skip_if_absent", False):
            return self._result(resource, ResultStatus.SKIPPED, start, before=current,
                                message="target is absent, skipped")

        if self.converged(resource, current):
            return self._result(resource, ResultStatus.UNCHANGED, start, before=current)

        if self.dry_run:
            return self._result(resource, ResultStatus.CHANGED, start, before=current,
                                message="would change (dry run)")

        try:
            self._mutate(resource, current)
            after = probe(resource, self.host, self.timeout)
        except ReconcileError as e:
            return self._failed(resource, e.bind(resource.id, resource.kind), start, before=current)
        except (HostError, OSError) as e:
            error = MutationError(str(e), resource.id, resource.kind)
            return self._failed(resource, error, start, before=current)

        if not self.converged(resource, after):
            error = MutationError("state did not converge after mutation",
                                  resource.id, resource.kind)
            return self._failed(resource, error, start, before=current, after=after)

        logger.info("Changed %s %s on %s", resource.kind, resource.id, self.host.name)
        return self._result(resource, ResultStatus.CHANGED, start, before=current, after=after)

    def converged(self, resource, current: CurrentState) -> bool:
        """Kind-specific equality between desired and current state."""
        kind = resource.kind
        desired = resource.desired
        attrs = current.attributes

        if kind == ResourceKind.PACKAGE_STATE:
            installed = attrs.get('installed')
            if desired.state == PackageTarget.ABSENT:
                return installed is None
            if installed is None:
                return False
            if desired.state == PackageTarget.LATEST:
                candidate = attrs.get('candidate')
                return candidate is None or installed == candidate
            return desired.version is None or installed == desired.version

        if kind == ResourceKind.SERVICE_STATE:
            if not current.found:
                return False
            if desired.running is not None and attrs.get('running') != desired.running:
                return False
            if desired.enabled is not None and attrs.get('enabled') != desired.enabled:
                return False
            return True

        if kind == ResourceKind.FILE_ATTRIBUTES:
            if not current.found:
                return False
            if desired.owner is not None and attrs.get('owner') != desired.owner:
                return False
            if desired.group is not None and attrs.get('group') != desired.group:
                return False
            if desired.mode is not None and int(attrs.get('mode', '0'), 8) != int(desired.mode, 8):
                return False
            return True

        if kind == ResourceKind.LINE_IN_FILE:
            present = desired.state == LineState.PRESENT
            if not current.found:
                return not present
            return lineinfile.is_converged(attrs.get('content', ''), resource.params.match,
                                           desired.line, present)

        if kind == ResourceKind.MOUNT_OPTION:
            if not current.found:
                return False
            return set(desired.options) <= set(attrs.get('options', []))

        if kind == ResourceKind.SYSCTL_VALUE:
            if not current.found:
                return False
            if _normalize(attrs.get('value')) != _normalize(desired.value):
                return False
            if resource.params.persist_file:
                return lineinfile.is_converged(
                    attrs.get('persisted', ''),
                    _sysctl_pattern(resource.params.key),
                    _sysctl_line(resource.params.key, desired.value),
                    True,
                )
            return True

        if kind == ResourceKind.COMMAND_ASSERTION:
            return attrs.get('exit_code') == desired.exit_code

        raise ValueError(f"Unsupported resource kind: {kind}")

    def _mutate(self, resource, current: CurrentState) -> None:
        """Apply the minimal mutation for a divergent resource."""
        kind = resource.kind
        params = resource.params
        desired = resource.desired
        attrs = current.attributes
        timeout = self.timeout

        if kind == ResourceKind.PACKAGE_STATE:
            self.host.set_package_state(params.name, desired.state.value, desired.version, timeout)

        elif kind == ResourceKind.SERVICE_STATE:
            if not current.found:
                raise MutationError(f"service {params.name} not found")
            if desired.enabled is not None and attrs.get('enabled') != desired.enabled:
                self.host.service_set_state(
                    params.name, "enabled" if desired.enabled else "disabled", timeout
                )
            if desired.running is not None and attrs.get('running') != desired.running:
                self.host.service_set_state(
                    params.name, "started" if desired.running else "stopped", timeout
                )

        elif kind == ResourceKind.FILE_ATTRIBUTES:
            if not current.found:
                raise MutationError(f"path {params.path} does not exist")
            owner = desired.owner if desired.owner not in (None, attrs.get('owner')) else None
            group = desired.group if desired.group not in (None, attrs.get('group')) else None
            mode = None
            if desired.mode is not None and int(attrs.get('mode', '0'), 8) != int(desired.mode, 8):
                mode = desired.mode
            self.host.set_owner_mode(params.path, owner, group, mode, timeout)

        elif kind == ResourceKind.LINE_IN_FILE:
            if not current.found and not params.create:
                raise MutationError(f"file {params.path} does not exist and create is false")
            content = lineinfile.apply_line(
                attrs.get('content', ''), params.match, desired.line,
                desired.state == LineState.PRESENT,
            )
            self.host.write_file(params.path, content, timeout)

        elif kind == ResourceKind.MOUNT_OPTION:
            if not current.found:
                raise MutationError(f"{params.mount_point} is not mounted")
            self.host.remount(params.mount_point, list(desired.options), timeout)

        elif kind == ResourceKind.SYSCTL_VALUE:
            if not current.found:
                raise MutationError(f"unknown sysctl key {params.key}")
            if _normalize(attrs.get('value')) != _normalize(desired.value):
                self.host.set_sysctl(params.key, desired.value, timeout)
            if params.persist_file:
                pattern = _sysctl_pattern(params.key)
                line = _sysctl_line(params.key, desired.value)
                persisted = attrs.get('persisted', '')
                if not lineinfile.is_converged(persisted, pattern, line, True):
                    self.host.write_file(
                        params.persist_file,
                        lineinfile.apply_line(persisted, pattern, line, True),
                        timeout,
                    )

        else:
            raise ValueError(f"Unsupported resource kind: {kind}")

    def _assert(self, resource, current: CurrentState, start: float) -> ExecutionResult:
        """Command assertions never mutate: they pass or fail."""
        if self.converged(resource, current):
            return self._result(resource, ResultStatus.UNCHANGED, start, before=current,
                                message="assertion holds")

        stderr = (current.attributes.get('stderr') or '').strip()
        cause = (f"expected exit code {resource.desired.exit_code}, "
                 f"got {current.attributes.get('exit_code')}")
        if stderr:
            cause += f": {stderr.splitlines()[-1]}"
        error = AssertionFailure(cause, resource.id, resource.kind)
        return self._failed(resource, error, start, before=current)

    def _failed(self, resource, error: ReconcileError, start: float,
                before: Optional[CurrentState] = None,
                after: Optional[CurrentState] = None) -> ExecutionResult:
        logger.warning("%s", error)
        return self._result(
            resource, ResultStatus.FAILED, start, before=before, after=after,
            message=error.message,
            error=ErrorDetail(type=error.code, message=error.message),
        )

    def _result(self, resource, status: ResultStatus, start: float,
                before: Optional[CurrentState] = None,
                after: Optional[CurrentState] = None,
                message: Optional[str] = None,
                error: Optional[ErrorDetail] = None) -> ExecutionResult:
        return ExecutionResult(
            resource_id=resource.id,
            kind=resource.kind,
            status=status,
            message=message,
            error=error,
            before=_describe(before),
            after=_describe(after),
            execution_time_ms=int((time.monotonic() - start) * 1000),
        )


def _describe(state: Optional[CurrentState]) -> Optional[Dict[str, Any]]:
    """Compact view of a state for reports."""
    if state is None:
        return None
    view = {'found': state.found}
    for key, value in state.attributes.items():
        if key not in _HIDDEN_ATTRIBUTES:
            view[key] = value
    return view
