"""Hypervisor client interface.

Typed, synchronous operations on the virtualization host's storage pools,
volumes, networks and domains. The orchestrator only talks to this
interface, so it can be exercised against an in-memory implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


class HypervisorError(Exception):
    """A hypervisor operation failed."""


class ResourceNotFound(HypervisorError):
    """The pool, volume, network or domain does not exist."""


@dataclass
class VolumeInfo:
    """A volume registered in a storage pool."""
    name: str
    path: str
    capacity: int = 0  # bytes
    format: str | None = None


@dataclass
class DomainInfo:
    """A domain known to the hypervisor."""
    name: str
    running: bool
    id: int | None = None


class HypervisorClient(ABC):
    """Abstract interface to the virtualization host."""

    @abstractmethod
    def node_info(self) -> dict:
        """Return basic host information; raises if the host is unreachable."""
        ...

    # --- Storage pools ---

    @abstractmethod
    def pool_exists(self, name: str) -> bool:
        ...

    @abstractmethod
    def pool_create(self, name: str, path: str) -> None:
        """Create (and start) a directory-backed pool targeting `path`."""
        ...

    @abstractmethod
    def pool_destroy(self, name: str) -> None:
        """Stop the pool. Raises ResourceNotFound if it does not exist."""
        ...

    @abstractmethod
    def pool_refresh(self, name: str) -> None:
        """Re-scan the pool's backing directory for volume changes."""
        ...

    # --- Volumes ---

    @abstractmethod
    def volume_list(self, pool: str) -> list[VolumeInfo]:
        ...

    @abstractmethod
    def volume_create(
        self,
        pool: str,
        name: str,
        capacity: int,
        *,
        format: str = "qcow2",
        backing_volume: str | None = None,
        backing_format: str | None = None,
    ) -> VolumeInfo:
        """Create a volume, optionally as a copy-on-write overlay of another volume.

        Args:
            pool: Pool to create the volume in
            name: Volume name
            capacity: Size in bytes
            format: On-disk format of the new volume
            backing_volume: Name of a volume in the same pool to back the new one
            backing_format: On-disk format of the backing volume
        """
        ...

    @abstractmethod
    def volume_delete(self, pool: str, name: str) -> None:
        """Delete a volume. Raises ResourceNotFound if it does not exist."""
        ...

    # --- Networks ---

    @abstractmethod
    def network_create(self, xml: str) -> str:
        """Create and start a transient network; returns its name."""
        ...

    @abstractmethod
    def network_destroy(self, name: str) -> None:
        """Destroy a network. Raises ResourceNotFound if it does not exist."""
        ...

    # --- Domains ---

    @abstractmethod
    def domain_create(self, xml: str) -> str:
        """Create and start a transient domain; returns its name."""
        ...

    @abstractmethod
    def domain_destroy(self, name: str) -> None:
        """Forcibly stop a domain. Raises ResourceNotFound if it does not exist."""
        ...

    @abstractmethod
    def domain_list(self, prefix: str = "", active_only: bool = True) -> list[DomainInfo]:
        """List domains whose name starts with `prefix`."""
        ...
