"""Cluster lifecycle orchestration.

State lifecycle:
    idle -> pool_ready -> network_ready -> nodes_provisioned -> cluster_ready  (up)
    any -> idle  (down)

`up` fails fast: the first failing step raises and nothing is rolled back;
the operator runs `down` to get back to a clean host. `down` is best-effort:
every stage runs even if an earlier one failed, and failures are collected
into a TeardownReport instead of raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import httpx

from virtcluster.config import ClusterConfig, HostLayout, Settings
from virtcluster.domains import (
    DomainProvisioner,
    build_bootstrap_context,
    derive_nodes,
    fetch_discovery_token,
    read_ssh_keys,
)
from virtcluster.errors import ClusterError, PrerequisiteMissing
from virtcluster.hypervisor.base import HypervisorClient, HypervisorError
from virtcluster.network import NetworkManager
from virtcluster.prereqs import verify_prereqs
from virtcluster.readiness import ReadinessPoller, ReadinessResult
from virtcluster.release import find_release_tar, upload_server_binaries
from virtcluster.storage import StoragePoolManager
from virtcluster.teardown import TeardownReport
from virtcluster.templates import TemplateRenderer

logger = logging.getLogger(__name__)

DEFAULT_USER = "core"


class ClusterState(str, Enum):
    """Orchestrator progress through the `up` sequence."""
    IDLE = "idle"
    POOL_READY = "pool_ready"
    NETWORK_READY = "network_ready"
    NODES_PROVISIONED = "nodes_provisioned"
    CLUSTER_READY = "cluster_ready"


@dataclass
class UpResult:
    """Result of bringing a cluster up."""
    readiness: ReadinessResult
    endpoint: str
    domains: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.readiness.is_ready


@dataclass(frozen=True)
class Credentials:
    """Login identity for cluster nodes. Nodes authenticate by SSH key only."""
    user: str = DEFAULT_USER
    password: str = ""


class ClusterOrchestrator:
    """Sequences pool, network, node and readiness steps for one cluster."""

    def __init__(
        self,
        config: ClusterConfig,
        layout: HostLayout,
        client: HypervisorClient,
        http: httpx.Client,
        *,
        settings: Settings | None = None,
        image_http: httpx.Client | None = None,
        check_prereqs: bool = True,
        sleep: Callable[[float], None] | None = None,
    ):
        self.config = config
        self.layout = layout
        self.client = client
        self.http = http
        self.settings = settings or Settings()
        self.check_prereqs = check_prereqs
        self.state = ClusterState.IDLE

        self.renderer = TemplateRenderer(layout.assets_dir)
        self.storage = StoragePoolManager(
            client,
            layout,
            image_url_template=self.settings.image_url_template,
            http_client=image_http,
            download_timeout=self.settings.image_download_timeout,
            overlay_capacity_gb=self.settings.overlay_capacity_gb,
        )
        self.networks = NetworkManager(client, layout)
        self.provisioner = DomainProvisioner(client, self.storage, self.renderer, layout)
        poller_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.poller = ReadinessPoller(
            http,
            self.settings.status_url_template.format(master_ip=config.master_ip),
            **poller_kwargs,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: HypervisorClient | None = None,
        http: httpx.Client | None = None,
    ) -> "ClusterOrchestrator":
        """Build an orchestrator from settings, connecting to libvirt if no client is given."""
        config = settings.cluster_config()
        if client is None:
            from virtcluster.hypervisor.libvirt import LibvirtClient
            try:
                client = LibvirtClient(settings.libvirt_uri)
            except ImportError as e:
                raise PrerequisiteMissing(str(e)) from e
        if http is None:
            http = httpx.Client(timeout=httpx.Timeout(settings.http_timeout), follow_redirects=True)
        return cls(
            config,
            settings.host_layout(),
            client,
            http,
            settings=settings,
        )

    @property
    def endpoint(self) -> str:
        return f"http://{self.config.master_ip}:8080"

    # -------------------------------------------------------------------------
    # Addressing
    # -------------------------------------------------------------------------

    def detect_master(self) -> tuple[str, str]:
        logger.info(f"Master: {self.config.master_name} ({self.config.master_ip})")
        return self.config.master_name, self.config.master_ip

    def detect_minions(self) -> list[str]:
        ips = list(self.config.minion_ips)
        logger.info(f"Minion IPs: {', '.join(ips)}")
        return ips

    def expected_ready_count(self) -> int:
        """Number of Ready nodes that counts as a ready cluster.

        Only workers register in the node list, so by default the control
        node is not counted.
        """
        if self.settings.readiness_count_control:
            return self.config.num_minions + 1
        return self.config.num_minions

    # -------------------------------------------------------------------------
    # up
    # -------------------------------------------------------------------------

    def initialize_pool(self) -> None:
        """Create the pool and populate it: base image, binaries, add-ons."""
        self.storage.ensure_pool()
        self.storage.ensure_base_image(self.config.coreos_channel)
        self.storage.prepare_shared_dirs()
        self._upload_release()
        self.storage.install_addons(self.config, self.renderer)
        self.storage.refresh()

    def up(self) -> UpResult:
        """Bring the cluster up.

        Returns:
            UpResult; a readiness timeout is reported here, not raised

        Raises:
            ClusterError: any setup step failed; run `down` to clean up
        """
        if self.check_prereqs:
            verify_prereqs(self.client)

        self.detect_master()
        self.detect_minions()

        self.initialize_pool()
        self.state = ClusterState.POOL_READY

        self.networks.ensure_networks()
        self.state = ClusterState.NETWORK_READY

        context = build_bootstrap_context(
            self.config,
            ssh_keys=read_ssh_keys(self.settings.ssh_key_glob),
            discovery=fetch_discovery_token(self.http, self.settings.discovery_url),
        )
        domains = []
        for node in derive_nodes(self.config):
            domains.append(self.provisioner.provision_node(node, context))
        self.state = ClusterState.NODES_PROVISIONED

        readiness = self.poller.wait_ready(
            self.expected_ready_count(),
            poll_interval=self.settings.readiness_poll_interval,
            max_attempts=self.settings.readiness_max_attempts,
        )
        if readiness.is_ready:
            self.state = ClusterState.CLUSTER_READY
            logger.info(f"Cluster is running. The master is running at: {self.endpoint}")
            logger.info(f"You can connect on the master with: 'ssh {DEFAULT_USER}@{self.config.master_ip}'")
        else:
            logger.warning(f"Cluster did not become ready: {readiness.message}")
        return UpResult(readiness=readiness, endpoint=self.endpoint, domains=domains)

    # -------------------------------------------------------------------------
    # down
    # -------------------------------------------------------------------------

    def down(self, keep_base: bool = True) -> TeardownReport:
        """Tear the cluster down; each stage runs regardless of the others.

        Args:
            keep_base: Keep the base image and its pool for the next `up`
        """
        report = TeardownReport()
        stages = (
            ("domains", lambda: self.provisioner.destroy_domains(self.layout.cluster_prefix)),
            ("pool", lambda: self.storage.destroy_pool(keep_base=keep_base)),
            ("networks", self.networks.destroy_networks),
        )
        for name, stage in stages:
            try:
                report.merge(stage())
            except (ClusterError, HypervisorError, OSError) as e:
                logger.warning(f"Teardown stage {name} failed: {e}")
                report.errors.append(f"{name}: {e}")
        self.state = ClusterState.IDLE

        if report.ok:
            logger.info(f"Cluster torn down ({len(report.removed)} resources removed)")
        else:
            logger.warning(f"Cluster torn down with {len(report.errors)} error(s)")
        return report

    def test_teardown(self) -> TeardownReport:
        """Clean up after an end-to-end test run."""
        return self.down()

    # -------------------------------------------------------------------------
    # push
    # -------------------------------------------------------------------------

    def _upload_release(self) -> list[str]:
        tarball = find_release_tar(self.layout.release_root)
        return upload_server_binaries(tarball, self.layout.kubernetes_dir)

    def push(self) -> list[str]:
        """Replace node binaries with the current release without touching VMs."""
        binaries = self._upload_release()
        self.storage.refresh()
        return binaries

    def get_credentials(self) -> Credentials:
        return Credentials()
