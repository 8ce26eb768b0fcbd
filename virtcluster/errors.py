"""Error taxonomy for cluster lifecycle operations.

Every error that can end a CLI run derives from ClusterError and carries the
process exit code the CLI should use, so callers can branch on the outcome.
"""

from __future__ import annotations


class ClusterError(Exception):
    """Base class for cluster lifecycle failures."""

    exit_code = 1


class PrerequisiteMissing(ClusterError):
    """Required hypervisor tooling is absent or unreachable."""

    exit_code = 3


class ResourceFetchFailed(ClusterError):
    """A remote resource (base image, discovery token) could not be fetched."""

    exit_code = 4


class ProvisioningFailed(ClusterError):
    """Creating a cluster resource failed; partial state is left for `down`."""

    exit_code = 5

    def __init__(self, message: str, node_name: str | None = None):
        self.node_name = node_name
        super().__init__(message)


class ReadinessTimeout(ClusterError):
    """The cluster did not report the expected number of ready nodes in time."""

    exit_code = 6

    def __init__(self, ready_count: int, expected_count: int, attempts: int):
        self.ready_count = ready_count
        self.expected_count = expected_count
        self.attempts = attempts
        super().__init__(
            f"Cluster not ready after {attempts} attempts: "
            f"{ready_count}/{expected_count} nodes ready"
        )


class ReleaseArtifactMissing(ClusterError):
    """The server release tarball could not be located."""

    exit_code = 7


class ConfigurationError(ClusterError):
    """Cluster configuration is inconsistent."""

    exit_code = 8


class TeardownPartialFailure(ClusterError):
    """One or more best-effort teardown steps failed."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(f"Teardown finished with {len(self.errors)} error(s): {'; '.join(self.errors)}")
