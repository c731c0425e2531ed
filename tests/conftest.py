"""
Test fixtures and utilities for the reconcile tool test suite.

Provides an in-memory Host double that records every mutating call, plus
helpers for building policy documents.
"""

import pytest
import yaml
from typing import Any, Dict, List, Optional

from reconcile_tool.core.errors import HostError, OperationTimeoutError
from reconcile_tool.database.manager import HistoryStore
from reconcile_tool.hosts.base import Host
from reconcile_tool.policy.loader import PolicyLoader


class InMemoryHost(Host):
    """
    Host double backed by plain dicts.

    ``mutations`` lists every state-changing call as ``(operation, args)``;
    ``timeouts`` and ``failures`` name operations that should raise.
    """

    def __init__(self, name: str = "test-host"):
        super().__init__(name)
        self.files: Dict[str, str] = {}
        self.attributes: Dict[str, Dict[str, str]] = {}
        self.services: Dict[str, Dict[str, bool]] = {}
        self.sysctls: Dict[str, str] = {}
        self.mounts: Dict[str, List[str]] = {}
        self.packages: Dict[str, Dict[str, Optional[str]]] = {}
        self.commands: Dict[tuple, Dict[str, Any]] = {}
        self.mutations: List[tuple] = []
        self.commands_run: List[List[str]] = []
        self.timeouts = set()
        self.failures = set()
        self.ignore_mutations = False

    def _check(self, operation: str):
        if operation in self.timeouts:
            raise OperationTimeoutError(f"{operation} timed out")
        if operation in self.failures:
            raise HostError(f"{operation} rejected by host")

    def _mutated(self, operation: str, *args) -> bool:
        self._check(operation)
        self.mutations.append((operation, args))
        return not self.ignore_mutations

    @property
    def mutation_count(self) -> int:
        return len(self.mutations)

    # Files

    def read_file(self, path, timeout):
        self._check("read_file")
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def write_file(self, path, content, timeout):
        if self._mutated("write_file", path, content):
            self.files[path] = content
            self.attributes.setdefault(path, {'owner': 'root', 'group': 'root', 'mode': '0644'})

    def stat_file(self, path, timeout):
        self._check("stat_file")
        if path not in self.attributes:
            return None
        return dict(self.attributes[path])

    def set_owner_mode(self, path, owner, group, mode, timeout):
        if self._mutated("set_owner_mode", path, owner, group, mode):
            attrs = self.attributes[path]
            if owner is not None:
                attrs['owner'] = owner
            if group is not None:
                attrs['group'] = group
            if mode is not None:
                attrs['mode'] = mode.zfill(4)

    # Services

    def service_status(self, name, timeout):
        self._check("service_status")
        if name not in self.services:
            return {'found': False, 'running': False, 'enabled': False}
        return dict(self.services[name], found=True)

    def service_set_state(self, name, state, timeout):
        if self._mutated("service_set_state", name, state):
            if name not in self.services:
                raise HostError(f"unit {name} not found")
            service = self.services[name]
            if state in ("started", "restarted", "reloaded"):
                service['running'] = True
            elif state == "stopped":
                service['running'] = False
            elif state == "enabled":
                service['enabled'] = True
            elif state == "disabled":
                service['enabled'] = False

    # Commands

    def run_command(self, argv, timeout):
        self._check("run_command")
        self.commands_run.append(list(argv))
        return dict(self.commands.get(tuple(argv), {'exit_code': 0, 'stdout': '', 'stderr': ''}))

    # Kernel parameters

    def get_sysctl(self, key, timeout):
        self._check("get_sysctl")
        return self.sysctls.get(key)

    def set_sysctl(self, key, value, timeout):
        if self._mutated("set_sysctl", key, value):
            self.sysctls[key] = value

    # Mounts

    def mount_options(self, mount_point, timeout):
        self._check("mount_options")
        options = self.mounts.get(mount_point)
        return list(options) if options is not None else None

    def remount(self, mount_point, options, timeout):
        if self._mutated("remount", mount_point, tuple(options)):
            current = self.mounts[mount_point]
            self.mounts[mount_point] = current + [o for o in options if o not in current]

    # Packages

    def package_status(self, name, timeout):
        self._check("package_status")
        return dict(self.packages.get(name, {'installed': None, 'candidate': None}))

    def set_package_state(self, name, state, version, timeout):
        if self._mutated("set_package_state", name, state, version):
            package = self.packages.setdefault(name, {'installed': None, 'candidate': '1.0'})
            if state == "absent":
                package['installed'] = None
            elif state == "latest":
                package['installed'] = package['candidate']
            else:
                package['installed'] = version or package['installed'] or package['candidate']


@pytest.fixture
def host():
    """Create an empty in-memory host."""
    return InMemoryHost()


@pytest.fixture
def hardened_host():
    """Create an in-memory host that needs a typical set of CIS changes."""
    host = InMemoryHost("web-01")
    host.files[SSHD_CONFIG] = SAMPLE_SSHD_CONFIG
    host.attributes[SSHD_CONFIG] = {'owner': 'root', 'group': 'root', 'mode': '0644'}
    host.services['sshd'] = {'running': True, 'enabled': True}
    host.services['cups'] = {'running': True, 'enabled': True}
    host.sysctls['net.ipv4.ip_forward'] = '1'
    host.mounts['/tmp'] = ['rw', 'relatime']
    host.packages['telnet'] = {'installed': '0.17-44', 'candidate': '0.17-44'}
    return host


@pytest.fixture
def host_class():
    """The in-memory host class, for registering with HostFactory."""
    return InMemoryHost


@pytest.fixture
def loader():
    return PolicyLoader()


@pytest.fixture
def temp_store(tmp_path):
    """Create a temporary history store."""
    store = HistoryStore(str(tmp_path / "history.db"))
    store.initialize()
    return store


@pytest.fixture
def policy_file(tmp_path):
    """Write a policy document to a temporary file and return its path."""
    def _write(content: str, name: str = "policy.yaml") -> str:
        path = tmp_path / name
        path.write_text(content)
        return str(path)
    return _write


def resource(kind: str, resource_id: str, params: Dict[str, Any],
             desired: Optional[Dict[str, Any]] = None, **extra) -> Dict[str, Any]:
    """Helper function to build a raw resource declaration."""
    data = {'id': resource_id, 'kind': kind, 'params': params}
    if desired is not None:
        data['desired'] = desired
    data.update(extra)
    return data


@pytest.fixture
def make_resource():
    return resource


# Test data constants
SSHD_CONFIG = "/etc/ssh/sshd_config"

SAMPLE_SSHD_CONFIG = """\
Port 22
#PermitRootLogin prohibit-password
PasswordAuthentication no
X11Forwarding yes
UsePAM yes
"""

BASELINE_POLICY = """\
name: baseline
vars:
  disabled_services: [cups]
handlers:
  - name: restart sshd
    action: restart
    service: sshd
resources:
  - id: sshd-permit-root-login
    kind: line_in_file
    params:
      path: /etc/ssh/sshd_config
      match: '^#?\\s*PermitRootLogin\\s'
    desired: {line: PermitRootLogin no}
    notify: [restart sshd]
  - id: sshd-x11-forwarding
    kind: line_in_file
    params:
      path: /etc/ssh/sshd_config
      match: '^#?\\s*X11Forwarding\\s'
    desired: {line: X11Forwarding no}
    notify: [restart sshd]
  - id: sshd-config-perms
    kind: file_attributes
    params: {path: /etc/ssh/sshd_config}
    desired: {owner: root, group: root, mode: "0600"}
  - id: "disable-{{ item }}"
    kind: service_state
    loop: disabled_services
    params: {name: "{{ item }}"}
    desired: {running: false, enabled: false}
  - id: ip-forward-off
    kind: sysctl_value
    params: {key: net.ipv4.ip_forward}
    desired: {value: 0}
  - id: tmp-noexec
    kind: mount_option
    params: {mount_point: /tmp}
    desired: {options: [nodev, nosuid, noexec]}
  - id: telnet-absent
    kind: package_state
    params: {name: telnet}
    desired: {state: absent}
"""


@pytest.fixture
def baseline_yaml():
    return BASELINE_POLICY


@pytest.fixture
def baseline(loader, baseline_yaml):
    """The baseline policy as a validated document."""
    return loader.load_data(yaml.safe_load(baseline_yaml))
