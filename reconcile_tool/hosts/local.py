"""
Local host implementation for Linux systems.

Backs the Host interface with local OS calls: file syscalls, systemctl or
SysV service tools, sysctl, findmnt/mount and apt/dnf/yum.
"""

import grp
import logging
import os
import pwd
import shutil
import stat
import subprocess
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.errors import HostError, OperationTimeoutError
from .base import Host

logger = logging.getLogger(__name__)

# File syscalls run here so a hung filesystem cannot outlast the timeout
_file_io = ThreadPoolExecutor(max_workers=4, thread_name_prefix="local-file-io")


class LocalHost(Host):
    """
    Host handler for the machine the engine runs on.

    Detects the service manager and package manager once at construction
    and dispatches to the matching command line tools.
    """

    def __init__(self, name: str = "localhost", backup: bool = True):
        """
        Initialize local host handler.

        Args:
            name: Name reported for this host
            backup: Keep a timestamped copy of files before rewriting them
        """
        super().__init__(name)
        self.backup = backup
        self.service_manager = self._detect_service_manager()
        self.package_manager = self._detect_package_manager()

    def execute_command(self, argv: List[str], timeout: float,
                        env: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Execute a command with timeout.

        Returns:
            Dict[str, Any]: Execution result with stdout, stderr and exit code

        Raises:
            OperationTimeoutError: If the command exceeds the timeout
            HostError: If the command cannot be started
        """
        logger.debug("Running %s (timeout %ss)", argv, timeout)
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
                env=env,
            )
        except subprocess.TimeoutExpired:
            raise OperationTimeoutError(
                f"command {' '.join(argv)!r} timed out after {timeout} seconds"
            )
        except OSError as e:
            raise HostError(f"cannot execute {argv[0]}: {e}")

        return {
            'exit_code': result.returncode,
            'stdout': result.stdout,
            'stderr': result.stderr,
        }

    def _check_command(self, argv: List[str], timeout: float,
                       env: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Execute a command and raise HostError on non-zero exit."""
        result = self.execute_command(argv, timeout, env=env)
        if result['exit_code'] != 0:
            raise HostError(
                f"{' '.join(argv)} exited with {result['exit_code']}: {result['stderr'].strip()}",
                exit_code=result['exit_code'],
                stderr=result['stderr'],
            )
        return result

    # Files

    def _bounded(self, operation: str, timeout: float, func, *args):
        """
        Run a blocking file call, giving up after timeout seconds.

        Raises:
            OperationTimeoutError: If the call does not return in time
        """
        future = _file_io.submit(func, *args)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError:
            future.cancel()
            raise OperationTimeoutError(f"{operation} timed out after {timeout} seconds")

    def read_file(self, path: str, timeout: float) -> str:
        return self._bounded(f"read of {path}", timeout, self._read, path)

    def _read(self, path: str) -> str:
        with open(path, 'r') as f:
            return f.read()

    def write_file(self, path: str, content: str, timeout: float) -> None:
        self._bounded(f"write of {path}", timeout, self._write, path, content)

    def _write(self, path: str, content: str) -> None:
        if self.backup and Path(path).exists():
            self.backup_file(path)
        with open(path, 'w') as f:
            f.write(content)

    def backup_file(self, path: str) -> str:
        """Create a timestamped backup of a file."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = f"{path}.backup_{timestamp}"
        try:
            shutil.copy2(path, backup_path)
        except OSError as e:
            raise HostError(f"failed to backup {path}: {e}")
        logger.debug("Backed up %s to %s", path, backup_path)
        return backup_path

    def stat_file(self, path: str, timeout: float) -> Optional[Dict[str, Any]]:
        return self._bounded(f"stat of {path}", timeout, self._stat, path)

    def _stat(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return None

        try:
            owner = pwd.getpwuid(st.st_uid).pw_name
        except KeyError:
            owner = str(st.st_uid)
        try:
            group = grp.getgrgid(st.st_gid).gr_name
        except KeyError:
            group = str(st.st_gid)

        return {
            'owner': owner,
            'group': group,
            'mode': "%04o" % stat.S_IMODE(st.st_mode),
        }

    def set_owner_mode(self, path: str, owner: Optional[str], group: Optional[str],
                       mode: Optional[str], timeout: float) -> None:
        self._bounded(f"chown/chmod of {path}", timeout,
                      self._chown_chmod, path, owner, group, mode)

    def _chown_chmod(self, path: str, owner: Optional[str], group: Optional[str],
                     mode: Optional[str]) -> None:
        if owner is not None or group is not None:
            shutil.chown(path, user=owner, group=group)
        if mode is not None:
            os.chmod(path, int(mode, 8))

    # Services

    def service_status(self, name: str, timeout: float) -> Dict[str, Any]:
        """Get service status using systemctl or the SysV service command."""
        if self.service_manager == "systemctl":
            result = self.execute_command(
                ["systemctl", "show", "--property=LoadState", "--value", name], timeout
            )
            if result['stdout'].strip() == "not-found":
                return {'found': False, 'running': False, 'enabled': False}

            result = self.execute_command(["systemctl", "is-active", name], timeout)
            running = result['stdout'].strip() == "active"

            result = self.execute_command(["systemctl", "is-enabled", name], timeout)
            enabled = result['stdout'].strip() in ("enabled", "enabled-runtime", "alias")

            return {'found': True, 'running': running, 'enabled': enabled}

        if not Path(f"/etc/init.d/{name}").exists():
            return {'found': False, 'running': False, 'enabled': False}

        result = self.execute_command(["service", name, "status"], timeout)
        running = result['exit_code'] == 0

        if self.package_manager == "apt":
            enabled = any(Path("/etc").glob(f"rc[2-5].d/S*{name}"))
        else:
            result = self.execute_command(["chkconfig", "--list", name], timeout)
            enabled = ":on" in result['stdout']

        return {'found': True, 'running': running, 'enabled': enabled}

    def service_set_state(self, name: str, state: str, timeout: float) -> None:
        if self.service_manager == "systemctl":
            verbs = {
                "started": "start",
                "stopped": "stop",
                "restarted": "restart",
                "reloaded": "reload",
                "enabled": "enable",
                "disabled": "disable",
            }
            if state not in verbs:
                raise HostError(f"unsupported service state: {state}")
            self._check_command(["systemctl", verbs[state], name], timeout)
            return

        if state in ("enabled", "disabled"):
            if self.package_manager == "apt":
                argv = ["update-rc.d", name, "enable" if state == "enabled" else "disable"]
            else:
                argv = ["chkconfig", name, "on" if state == "enabled" else "off"]
        else:
            verbs = {"started": "start", "stopped": "stop",
                     "restarted": "restart", "reloaded": "reload"}
            if state not in verbs:
                raise HostError(f"unsupported service state: {state}")
            argv = ["service", name, verbs[state]]
        self._check_command(argv, timeout)

    # Commands

    def run_command(self, argv: List[str], timeout: float) -> Dict[str, Any]:
        return self.execute_command(argv, timeout)

    # Kernel parameters

    def get_sysctl(self, key: str, timeout: float) -> Optional[str]:
        result = self.execute_command(["sysctl", "-n", key], timeout)
        if result['exit_code'] != 0:
            if "cannot stat" in result['stderr'] or "unknown key" in result['stderr']:
                return None
            raise HostError(
                f"sysctl -n {key} exited with {result['exit_code']}: {result['stderr'].strip()}",
                exit_code=result['exit_code'],
                stderr=result['stderr'],
            )
        return result['stdout'].strip()

    def set_sysctl(self, key: str, value: str, timeout: float) -> None:
        self._check_command(["sysctl", "-w", f"{key}={value}"], timeout)

    # Mounts

    def mount_options(self, mount_point: str, timeout: float) -> Optional[List[str]]:
        """Get mount options from findmnt, falling back to /proc/mounts."""
        try:
            result = self.execute_command(
                ["findmnt", "--noheadings", "--output", "OPTIONS", "--mountpoint", mount_point],
                timeout,
            )
        except HostError:
            return self._bounded("read of /proc/mounts", timeout,
                                 self._proc_mount_options, mount_point)

        if result['exit_code'] != 0:
            return None
        lines = result['stdout'].strip().splitlines()
        if not lines:
            return None
        # Overmounted paths list several entries; the last one is active
        return lines[-1].strip().split(',')

    def _proc_mount_options(self, mount_point: str) -> Optional[List[str]]:
        """Parse /proc/mounts for a mount point's options."""
        options = None
        with open('/proc/mounts', 'r') as f:
            for line in f:
                parts = line.strip().split()
                if len(parts) >= 4:
                    target = parts[1].replace('\\040', ' ')
                    if target == mount_point:
                        options = parts[3].split(',')
        return options

    def remount(self, mount_point: str, options: List[str], timeout: float) -> None:
        self._check_command(
            ["mount", "-o", ",".join(["remount"] + list(options)), mount_point], timeout
        )

    # Packages

    def package_status(self, name: str, timeout: float) -> Dict[str, Optional[str]]:
        if self.package_manager == "apt":
            result = self.execute_command(
                ["dpkg-query", "-W", "-f=${Status} ${Version}", name], timeout
            )
            installed = None
            if result['exit_code'] == 0 and result['stdout'].startswith("install ok installed"):
                installed = result['stdout'].split()[-1]

            candidate = None
            result = self.execute_command(["apt-cache", "policy", name], timeout)
            for line in result['stdout'].splitlines():
                line = line.strip()
                if line.startswith("Candidate:"):
                    value = line.split(":", 1)[1].strip()
                    candidate = None if value == "(none)" else value
            return {'installed': installed, 'candidate': candidate}

        if self.package_manager in ("dnf", "yum"):
            result = self.execute_command(
                ["rpm", "-q", "--qf", "%{VERSION}-%{RELEASE}", name], timeout
            )
            installed = result['stdout'].strip() if result['exit_code'] == 0 else None

            query = "dnf" if self.package_manager == "dnf" else "repoquery"
            argv = [query, "-q"] + (["repoquery"] if query == "dnf" else []) + [
                "--latest-limit", "1", "--qf", "%{version}-%{release}", name
            ]
            result = self.execute_command(argv, timeout)
            lines = result['stdout'].strip().splitlines()
            candidate = lines[-1].strip() if result['exit_code'] == 0 and lines else None
            return {'installed': installed, 'candidate': candidate}

        raise HostError(f"no supported package manager found for {name}")

    def set_package_state(self, name: str, state: str, version: Optional[str],
                          timeout: float) -> None:
        if self.package_manager == "apt":
            env = dict(os.environ, DEBIAN_FRONTEND="noninteractive")
            if state == "absent":
                argv = ["apt-get", "remove", "-y", name]
            else:
                target = f"{name}={version}" if version else name
                argv = ["apt-get", "install", "-y", target]
            self._check_command(argv, timeout, env=env)
            return

        if self.package_manager in ("dnf", "yum"):
            manager = self.package_manager
            if state == "absent":
                argv = [manager, "remove", "-y", name]
            elif state == "latest":
                status = self.package_status(name, timeout)
                verb = "upgrade" if status['installed'] else "install"
                argv = [manager, verb, "-y", name]
            else:
                argv = [manager, "install", "-y", f"{name}-{version}" if version else name]
            self._check_command(argv, timeout)
            return

        raise HostError(f"no supported package manager found for {name}")

    def _detect_service_manager(self) -> str:
        """Detect the system service manager."""
        if Path("/bin/systemctl").exists() or Path("/usr/bin/systemctl").exists():
            return "systemctl"
        return "service"

    def _detect_package_manager(self) -> str:
        """Detect the system package manager."""
        if Path("/usr/bin/apt-get").exists():
            return "apt"
        elif Path("/usr/bin/dnf").exists():
            return "dnf"
        elif Path("/usr/bin/yum").exists():
            return "yum"
        return "unknown"
