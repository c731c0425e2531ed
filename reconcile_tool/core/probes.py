"""
Probe layer: read-only snapshots of host objects, one prober per kind.

A probe never mutates the host. An absent object is a valid state
(``found=False``); an unreadable one raises ProbeError.
"""

import logging
from typing import Callable, Dict

from .errors import HostError, OperationTimeoutError, ProbeError
from .lineinfile import last_match, split_lines
from .models import CurrentState, ResourceKind
from ..hosts.base import Host

logger = logging.getLogger(__name__)


def _probe_package(resource, host: Host, timeout: float) -> CurrentState:
    status = host.package_status(resource.params.name, timeout)
    return CurrentState(
        kind=resource.kind,
        found=status.get('installed') is not None,
        attributes={'installed': status.get('installed'), 'candidate': status.get('candidate')},
    )


def _probe_service(resource, host: Host, timeout: float) -> CurrentState:
    status = host.service_status(resource.params.name, timeout)
    return CurrentState(
        kind=resource.kind,
        found=bool(status.get('found', True)),
        attributes={'running': bool(status.get('running')), 'enabled': bool(status.get('enabled'))},
    )


def _probe_file(resource, host: Host, timeout: float) -> CurrentState:
    info = host.stat_file(resource.params.path, timeout)
    if info is None:
        return CurrentState(kind=resource.kind, found=False)
    return CurrentState(kind=resource.kind, attributes=dict(info))


def _probe_line(resource, host: Host, timeout: float) -> CurrentState:
    try:
        content = host.read_file(resource.params.path, timeout)
    except FileNotFoundError:
        return CurrentState(kind=resource.kind, found=False, attributes={'content': ""})

    lines = split_lines(content)
    index = last_match(lines, resource.params.match)
    return CurrentState(
        kind=resource.kind,
        attributes={
            'content': content,
            'matched_line': lines[index] if index is not None else None,
        },
    )


def _probe_mount(resource, host: Host, timeout: float) -> CurrentState:
    options = host.mount_options(resource.params.mount_point, timeout)
    if options is None:
        return CurrentState(kind=resource.kind, found=False)
    return CurrentState(kind=resource.kind, attributes={'options': list(options)})


def _probe_sysctl(resource, host: Host, timeout: float) -> CurrentState:
    value = host.get_sysctl(resource.params.key, timeout)
    attributes = {'value': value}
    if resource.params.persist_file:
        try:
            attributes['persisted'] = host.read_file(resource.params.persist_file, timeout)
        except FileNotFoundError:
            attributes['persisted'] = ""
    return CurrentState(kind=resource.kind, found=value is not None, attributes=attributes)


def _probe_command(resource, host: Host, timeout: float) -> CurrentState:
    result = host.run_command(list(resource.params.command), timeout)
    return CurrentState(
        kind=resource.kind,
        attributes={
            'exit_code': result['exit_code'],
            'stdout': result.get('stdout', ''),
            'stderr': result.get('stderr', ''),
        },
    )


_PROBES: Dict[str, Callable] = {
    ResourceKind.PACKAGE_STATE.value: _probe_package,
    ResourceKind.SERVICE_STATE.value: _probe_service,
    ResourceKind.FILE_ATTRIBUTES.value: _probe_file,
    ResourceKind.LINE_IN_FILE.value: _probe_line,
    ResourceKind.MOUNT_OPTION.value: _probe_mount,
    ResourceKind.SYSCTL_VALUE.value: _probe_sysctl,
    ResourceKind.COMMAND_ASSERTION.value: _probe_command,
}


def probe(resource, host: Host, timeout: float) -> CurrentState:
    """
    Determine the current state of a resource's host object.

    Args:
        resource: Resource to inspect
        host: Host collaborator to query
        timeout: Time budget in seconds

    Returns:
        CurrentState: Kind-specific snapshot

    Raises:
        ProbeError: If the host object cannot be read
        OperationTimeoutError: If the host exceeds the timeout
    """
    prober = _PROBES[resource.kind]
    logger.debug("Probing %s %s on %s", resource.kind, resource.id, host.name)
    try:
        return prober(resource, host, timeout)
    except OperationTimeoutError as e:
        raise e.bind(resource.id, resource.kind)
    except (HostError, OSError) as e:
        raise ProbeError(str(e), resource.id, resource.kind) from e
