"""
Base host interface for reconciliation operations.

Defines the narrow capability set the engine needs from a target host.
The engine never talks to the OS directly; a deployment backs this
interface with local OS calls or a remote execution transport.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class Host(ABC):
    """
    Abstract base class for target hosts.

    Every operation takes a ``timeout`` in seconds. Implementations raise
    ``OperationTimeoutError`` when it is exceeded and ``HostError`` (or an
    ``OSError``) when the host rejects the operation.
    """

    def __init__(self, name: str):
        """
        Initialize host handle.

        Args:
            name: Target name used in reports and logs
        """
        self.name = name

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.name!r})"

    # Files

    @abstractmethod
    def read_file(self, path: str, timeout: float) -> str:
        """
        Read a text file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            PermissionError: If access is denied
        """

    @abstractmethod
    def write_file(self, path: str, content: str, timeout: float) -> None:
        """Replace the contents of a text file, creating it if needed."""

    @abstractmethod
    def stat_file(self, path: str, timeout: float) -> Optional[Dict[str, Any]]:
        """
        Get ownership and permissions of a path.

        Returns:
            Optional[Dict[str, Any]]: ``{owner, group, mode}`` with mode as a
            four digit octal string, or None if the path doesn't exist
        """

    @abstractmethod
    def set_owner_mode(self, path: str, owner: Optional[str], group: Optional[str],
                       mode: Optional[str], timeout: float) -> None:
        """Set any of owner, group and mode on an existing path."""

    # Services

    @abstractmethod
    def service_status(self, name: str, timeout: float) -> Dict[str, Any]:
        """
        Get the status of a system service.

        Returns:
            Dict[str, Any]: ``{found, running, enabled}``
        """

    @abstractmethod
    def service_set_state(self, name: str, state: str, timeout: float) -> None:
        """
        Change a service's state.

        Args:
            state: One of started, stopped, restarted, reloaded,
                enabled, disabled
        """

    # Commands

    @abstractmethod
    def run_command(self, argv: List[str], timeout: float) -> Dict[str, Any]:
        """
        Execute a command.

        Returns:
            Dict[str, Any]: ``{exit_code, stdout, stderr}``
        """

    # Kernel parameters

    @abstractmethod
    def get_sysctl(self, key: str, timeout: float) -> Optional[str]:
        """Get a kernel parameter value, or None if the key doesn't exist."""

    @abstractmethod
    def set_sysctl(self, key: str, value: str, timeout: float) -> None:
        """Set a kernel parameter at runtime."""

    # Mounts

    @abstractmethod
    def mount_options(self, mount_point: str, timeout: float) -> Optional[List[str]]:
        """Get active options for a mount point, or None if not mounted."""

    @abstractmethod
    def remount(self, mount_point: str, options: List[str], timeout: float) -> None:
        """Remount a mount point adding the given options."""

    # Packages

    @abstractmethod
    def package_status(self, name: str, timeout: float) -> Dict[str, Optional[str]]:
        """
        Get installed and candidate versions of a package.

        Returns:
            Dict[str, Optional[str]]: ``{installed, candidate}``; installed is
            None when the package is absent
        """

    @abstractmethod
    def set_package_state(self, name: str, state: str, version: Optional[str],
                          timeout: float) -> None:
        """Install, remove or upgrade a package (state: present, absent, latest)."""
