"""Cluster virtual networks.

Two transient networks connect the nodes: `kubernetes_global` carries node
traffic on the public addresses, `kubernetes_pods` carries pod traffic.
"""

from __future__ import annotations

import logging

from virtcluster.config import HostLayout
from virtcluster.errors import ProvisioningFailed
from virtcluster.hypervisor.base import HypervisorClient, HypervisorError
from virtcluster.teardown import TeardownReport

logger = logging.getLogger(__name__)

# (network name, description file in the assets directory)
CLUSTER_NETWORKS = (
    ("kubernetes_global", "network_kubernetes_global.xml"),
    ("kubernetes_pods", "network_kubernetes_pods.xml"),
)


class NetworkManager:
    """Creates and destroys the cluster networks."""

    def __init__(self, client: HypervisorClient, layout: HostLayout):
        self.client = client
        self.layout = layout

    def ensure_networks(self) -> list[str]:
        """Create both networks.

        Not idempotent: a network left over from a previous run makes the
        hypervisor refuse the create, which surfaces as ProvisioningFailed.
        """
        created = []
        for name, filename in CLUSTER_NETWORKS:
            path = self.layout.assets_dir / filename
            try:
                xml = path.read_text()
            except OSError as e:
                raise ProvisioningFailed(f"Cannot read network description {path}: {e}") from e
            try:
                created.append(self.client.network_create(xml))
            except HypervisorError as e:
                raise ProvisioningFailed(f"Cannot create network {name}: {e}") from e
        logger.info(f"Created networks: {', '.join(created)}")
        return created

    def destroy_networks(self) -> TeardownReport:
        """Destroy both networks; a missing network does not stop the other."""
        report = TeardownReport()
        for name, _ in CLUSTER_NETWORKS:
            report.attempt(f"network {name}", self.client.network_destroy, name)
        return report
