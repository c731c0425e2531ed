"""
Host factory for turning target strings into Host handlers.

Only the local machine ships with the engine; remote transports register
their own Host classes under a target scheme.
"""

from typing import Callable, Dict, List

from .base import Host
from .local import LocalHost


class HostFactory:
    """
    Factory class for creating Host handlers from target strings.

    A target is either a bare registered name (``local``) or
    ``scheme://address``; the scheme selects the Host class and the full
    target string becomes the host name.
    """

    _hosts: Dict[str, Callable[[str], Host]] = {
        "local": LocalHost,
        "localhost": LocalHost,
    }

    @classmethod
    def get_host(cls, target: str) -> Host:
        """
        Get a Host handler for the target.

        Raises:
            ValueError: If no handler is registered for the target
        """
        scheme = target.split("://", 1)[0] if "://" in target else target
        if scheme not in cls._hosts:
            raise ValueError(f"Unsupported host target: {target}")
        return cls._hosts[scheme](target)

    @classmethod
    def get_supported_schemes(cls) -> List[str]:
        return list(cls._hosts.keys())

    @classmethod
    def register_host(cls, scheme: str, host_class: Callable[[str], Host]) -> None:
        """
        Register a Host handler for a target scheme.

        Args:
            scheme: Target scheme (or bare name) to register for
            host_class: Callable taking the target string and returning a Host
        """
        cls._hosts[scheme] = host_class
