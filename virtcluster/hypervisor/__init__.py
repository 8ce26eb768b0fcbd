"""Hypervisor clients for the virtualization host."""

from virtcluster.hypervisor.base import (
    DomainInfo,
    HypervisorClient,
    HypervisorError,
    ResourceNotFound,
    VolumeInfo,
)

__all__ = [
    "DomainInfo",
    "HypervisorClient",
    "HypervisorError",
    "ResourceNotFound",
    "VolumeInfo",
]
