"""Per-node VM provisioning.

Node identity is derived purely from the cluster configuration: worker `i`
gets role `minion-<i>` and the i-th configured name and address, and the
control node comes after the last worker. Re-running the derivation always
yields the same nodes, so `up` and `down` agree on names without any saved
state.
"""

from __future__ import annotations

import glob
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

import httpx

from virtcluster.config import ClusterConfig, HostLayout
from virtcluster.errors import ProvisioningFailed, ResourceFetchFailed
from virtcluster.hypervisor.base import HypervisorClient, HypervisorError
from virtcluster.storage import StoragePoolManager
from virtcluster.teardown import TeardownReport
from virtcluster.templates import TemplateError, TemplateRenderer

logger = logging.getLogger(__name__)

CONTROL_ROLE = "master"
USER_DATA_TEMPLATE = "user_data.yml"
DOMAIN_TEMPLATE = "coreos.xml"


@dataclass(frozen=True)
class NodeSpec:
    """Identity of one cluster node."""
    index: int
    role: str
    name: str
    public_ip: str

    @property
    def is_control(self) -> bool:
        return self.role == CONTROL_ROLE

    @property
    def image(self) -> str:
        """Name of the node's overlay volume."""
        return f"{self.name}.img"

    @property
    def config_dir(self) -> str:
        """Name of the node's boot configuration directory in the pool."""
        return f"kubernetes_config_{self.role}"

    @property
    def mac_address(self) -> str:
        """Static MAC of the node's cluster network interface, derived from its index."""
        return f"52:54:00:00:{(self.index >> 8) & 0xff:02x}:{self.index & 0xff:02x}"


def node_for_index(config: ClusterConfig, index: int) -> NodeSpec:
    """Return the node at loop position `index` (0..num_minions inclusive)."""
    if index == config.num_minions:
        return NodeSpec(index=index, role=CONTROL_ROLE, name=config.master_name, public_ip=config.master_ip)
    if not 0 <= index < config.num_minions:
        raise IndexError(f"node index {index} out of range 0..{config.num_minions}")
    return NodeSpec(
        index=index,
        role=f"minion-{index:02d}",
        name=config.minion_names[index],
        public_ip=config.minion_ips[index],
    )


def derive_nodes(config: ClusterConfig) -> list[NodeSpec]:
    """All nodes in provisioning order: workers ascending, then the control node."""
    return [node_for_index(config, i) for i in range(config.num_minions + 1)]


@dataclass(frozen=True)
class BootstrapContext:
    """Cluster-wide values substituted into every node's templates."""
    ssh_keys: str
    discovery: str
    machines: str
    master_name: str
    master_ip: str

    def template_vars(self, node: NodeSpec, layout: HostLayout) -> dict[str, object]:
        return {
            "NAME": node.name,
            "ROLE": node.role,
            "MAC_ADDRESS": node.mac_address,
            "PUBLIC_IP": node.public_ip,
            "IMAGE": node.image,
            "CONFIG_DIR": node.config_dir,
            "POOL_PATH": layout.pool_path,
            "KUBERNETES_DIR": layout.kubernetes_dir,
            "SSH_KEYS": self.ssh_keys,
            "DISCOVERY": self.discovery,
            "MACHINES": self.machines,
            "MASTER_NAME": self.master_name,
            "MASTER_IP": self.master_ip,
        }


def read_ssh_keys(pattern: str = "~/.ssh/id_*.pub") -> str:
    """Collect the user's public keys as a YAML list body (`  - <key>` per line)."""
    lines = []
    for path in sorted(glob.glob(os.path.expanduser(pattern))):
        with open(path) as f:
            lines.extend(f"  - {line.rstrip()}" for line in f if line.strip())
    if not lines:
        logger.warning(f"No SSH public keys matched {pattern}; nodes will not accept SSH logins")
    return "\n".join(lines)


def fetch_discovery_token(http: httpx.Client, url: str) -> str:
    """Obtain a fresh etcd discovery URL for the new cluster."""
    try:
        response = http.get(url)
    except httpx.HTTPError as e:
        raise ResourceFetchFailed(f"Cannot obtain discovery token from {url}: {e}") from e
    if response.status_code != 200:
        raise ResourceFetchFailed(
            f"Cannot obtain discovery token from {url}: HTTP {response.status_code}"
        )
    token = response.text.strip()
    logger.info(f"Obtained discovery token {token}")
    return token


def build_bootstrap_context(
    config: ClusterConfig,
    *,
    ssh_keys: str,
    discovery: str,
) -> BootstrapContext:
    return BootstrapContext(
        ssh_keys=ssh_keys,
        discovery=discovery,
        machines=",".join(config.minion_ips),
        master_name=config.master_name,
        master_ip=config.master_ip,
    )


class DomainProvisioner:
    """Creates and destroys node VMs."""

    def __init__(
        self,
        client: HypervisorClient,
        storage: StoragePoolManager,
        renderer: TemplateRenderer,
        layout: HostLayout,
    ):
        self.client = client
        self.storage = storage
        self.renderer = renderer
        self.layout = layout

    def provision_node(self, node: NodeSpec, context: BootstrapContext) -> str:
        """Create a node's disk and boot config, then start its domain.

        Returns:
            Name of the started domain

        Raises:
            ProvisioningFailed: naming the node whose provisioning failed
        """
        logger.info(f"Provisioning {node.role} {node.name} ({node.public_ip})")
        variables = context.template_vars(node, self.layout)
        try:
            self.storage.create_overlay(node.image)

            user_data = self.renderer.render_file(USER_DATA_TEMPLATE, variables)
            self.storage.write_node_config(node.config_dir, user_data)
            self.storage.refresh()

            domain_xml = self.renderer.render_file(DOMAIN_TEMPLATE, variables)
            return self._create_domain(domain_xml)
        except (ProvisioningFailed, TemplateError, HypervisorError, OSError) as e:
            raise ProvisioningFailed(f"Provisioning {node.name} failed: {e}", node_name=node.name) from e

    def _create_domain(self, domain_xml: str) -> str:
        """Start a domain from a scratch copy of its description. The copy is always removed."""
        fd, scratch = tempfile.mkstemp(prefix="virtcluster-domain-", suffix=".xml")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(domain_xml)
            return self.client.domain_create(Path(scratch).read_text())
        finally:
            os.unlink(scratch)

    def destroy_domains(self, prefix: str) -> TeardownReport:
        """Forcibly stop every running domain whose name starts with `prefix`."""
        report = TeardownReport()
        try:
            domains = self.client.domain_list(prefix=prefix, active_only=True)
        except HypervisorError as e:
            report.errors.append(f"list domains: {e}")
            return report
        for domain in domains:
            report.attempt(f"domain {domain.name}", self.client.domain_destroy, domain.name)
        return report
