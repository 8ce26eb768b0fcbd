"""Cluster configuration.

Settings are read once from the environment (and an optional env file) and
turned into two immutable values that are passed explicitly to every
component: ClusterConfig (what cluster to build) and HostLayout (where its
resources live on the virtualization host).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator
from pydantic_settings import BaseSettings

from virtcluster.errors import ConfigurationError

ASSETS_DIR = Path(__file__).parent / "assets"


def _split_list(value: str) -> tuple[str, ...]:
    """Split a comma or whitespace separated setting into its items."""
    return tuple(item for item in value.replace(",", " ").split() if item)


class ClusterConfig(BaseModel):
    """Immutable description of the cluster to provision."""

    master_name: str
    master_ip: str
    minion_names: tuple[str, ...]
    minion_ips: tuple[str, ...]
    num_minions: int

    enable_node_monitoring: bool = True
    enable_node_logging: bool = False
    logging_destination: Literal["elasticsearch", "gcp"] = "elasticsearch"
    enable_cluster_dns: bool = True
    dns_server_ip: str = "10.11.0.254"
    dns_domain: str = "kubernetes.local"
    dns_replicas: int = 1

    coreos_channel: str = "alpha"

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_minions(self) -> "ClusterConfig":
        if len(self.minion_names) != len(self.minion_ips):
            raise ValueError(
                f"minion_names has {len(self.minion_names)} entries but "
                f"minion_ips has {len(self.minion_ips)}"
            )
        if self.num_minions != len(self.minion_names):
            raise ValueError(
                f"num_minions is {self.num_minions} but "
                f"{len(self.minion_names)} minions are configured"
            )
        return self


@dataclass(frozen=True)
class HostLayout:
    """Where cluster resources live on the virtualization host."""

    root_dir: Path
    pool_name: str = "kubernetes"
    cluster_prefix: str = "kubernetes"
    base_image_name: str = "coreos_base.img"
    release_root: Path = Path(".")
    assets_dir: Path = ASSETS_DIR

    @property
    def pool_path(self) -> Path:
        return self.root_dir / "libvirt_storage_pool"

    @property
    def kubernetes_dir(self) -> Path:
        """Shared directory exported to every node (binaries, manifests, addons)."""
        return self.pool_path / "kubernetes"

    @property
    def manifests_dir(self) -> Path:
        return self.kubernetes_dir / "manifests"

    @property
    def addons_dir(self) -> Path:
        return self.kubernetes_dir / "addons"

    @property
    def bin_dir(self) -> Path:
        return self.kubernetes_dir / "bin"

    @property
    def base_image_path(self) -> Path:
        return self.pool_path / self.base_image_name

    def config_dir(self, dir_name: str) -> Path:
        return self.pool_path / dir_name


class Settings(BaseSettings):
    """Settings loaded from VIRTCLUSTER_* environment variables."""

    # Hypervisor connection
    libvirt_uri: str = "qemu:///system"

    # Host layout
    root_dir: str = "/var/lib/virtcluster"
    release_root: str = "."
    assets_dir: str = str(ASSETS_DIR)
    pool_name: str = "kubernetes"
    cluster_prefix: str = "kubernetes"
    base_image_name: str = "coreos_base.img"

    # Remote endpoints
    image_url_template: str = (
        "http://{channel}.release.core-os.net/amd64-usr/current/"
        "coreos_production_qemu_image.img.bz2"
    )
    discovery_url: str = "https://discovery.etcd.io/new"
    status_url_template: str = "http://{master_ip}:8080/api/v1beta1/minions"
    http_timeout: float = 30.0  # seconds
    image_download_timeout: float = 600.0  # seconds

    # Readiness polling
    readiness_max_attempts: int = 50
    readiness_poll_interval: float = 0.5  # seconds
    readiness_count_control: bool = False

    # Node resources
    overlay_capacity_gb: int = 10
    ssh_key_glob: str = "~/.ssh/id_*.pub"

    # Cluster topology
    master_name: str = "kubernetes_master"
    master_ip: str = "192.168.10.1"
    minion_names: str = "kubernetes_minion-01,kubernetes_minion-02,kubernetes_minion-03"
    minion_ips: str = "192.168.10.2,192.168.10.3,192.168.10.4"
    num_minions: int = 3

    # Optional add-ons
    enable_node_monitoring: bool = True
    enable_node_logging: bool = False
    logging_destination: str = "elasticsearch"
    enable_cluster_dns: bool = True
    dns_server_ip: str = "10.11.0.254"
    dns_domain: str = "kubernetes.local"
    dns_replicas: int = 1

    coreos_channel: str = "alpha"

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    class Config:
        env_prefix = "VIRTCLUSTER_"
        extra = "ignore"

    def cluster_config(self) -> ClusterConfig:
        """Build the immutable ClusterConfig, rejecting inconsistent topologies."""
        try:
            return ClusterConfig(
                master_name=self.master_name,
                master_ip=self.master_ip,
                minion_names=_split_list(self.minion_names),
                minion_ips=_split_list(self.minion_ips),
                num_minions=self.num_minions,
                enable_node_monitoring=self.enable_node_monitoring,
                enable_node_logging=self.enable_node_logging,
                logging_destination=self.logging_destination,
                enable_cluster_dns=self.enable_cluster_dns,
                dns_server_ip=self.dns_server_ip,
                dns_domain=self.dns_domain,
                dns_replicas=self.dns_replicas,
                coreos_channel=self.coreos_channel,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid cluster configuration: {e}") from e

    def host_layout(self) -> HostLayout:
        return HostLayout(
            root_dir=Path(self.root_dir).expanduser().absolute(),
            pool_name=self.pool_name,
            cluster_prefix=self.cluster_prefix,
            base_image_name=self.base_image_name,
            release_root=Path(self.release_root).expanduser().absolute(),
            assets_dir=Path(self.assets_dir).expanduser(),
        )


def load_settings(env_file: str | Path | None = None) -> Settings:
    """Load settings from the environment, optionally layered over an env file.

    Raises:
        ConfigurationError: if `env_file` is given but is not a readable file
    """
    if env_file is not None:
        if not Path(env_file).is_file():
            raise ConfigurationError(f"Config file not found: {env_file}")
        return Settings(_env_file=str(env_file))
    return Settings()
