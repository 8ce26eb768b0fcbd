"""Storage pool management.

Owns the cluster's libvirt storage pool and everything that lives in its
backing directory:

- the CoreOS base image, fetched from the release channel feed and used as
  the copy-on-write backing store of every node disk
- one overlay volume per node
- one boot configuration directory per node (kubernetes_config_<role>)
- the shared `kubernetes/` directory exported to nodes (binaries, manifests,
  add-ons)

Teardown can keep the base image (and the pool holding it) so the next `up`
does not re-download several gigabytes.
"""

from __future__ import annotations

import bz2
import logging
import os
import shutil
from email.utils import formatdate, parsedate_to_datetime
from pathlib import Path

import httpx

from virtcluster.config import ClusterConfig, HostLayout
from virtcluster.errors import ProvisioningFailed, ResourceFetchFailed
from virtcluster.hypervisor.base import (
    HypervisorClient,
    HypervisorError,
    ResourceNotFound,
    VolumeInfo,
)
from virtcluster.teardown import TeardownReport
from virtcluster.templates import TemplateError, TemplateRenderer

logger = logging.getLogger(__name__)

GIB = 1024 ** 3

# Add-on manifests shipped in the release tree, relative to release_root
CADVISOR_MANIFEST = "cluster/saltbase/salt/cadvisor/cadvisor.manifest"
FLUENTD_MANIFESTS = {
    "elasticsearch": "cluster/saltbase/salt/fluentd-es/fluentd-es.manifest",
    "gcp": "cluster/saltbase/salt/fluentd-gcp/fluentd-gcp.manifest",
}
DNS_ADDON_TEMPLATES = ("skydns-svc.yaml", "skydns-rc.yaml")


class StoragePoolManager:
    """Creates, populates and destroys the cluster storage pool."""

    def __init__(
        self,
        client: HypervisorClient,
        layout: HostLayout,
        *,
        image_url_template: str,
        http_client: httpx.Client | None = None,
        download_timeout: float = 600.0,
        overlay_capacity_gb: int = 10,
    ):
        self.client = client
        self.layout = layout
        self.image_url_template = image_url_template
        self._http = http_client
        self.download_timeout = download_timeout
        self.overlay_capacity = overlay_capacity_gb * GIB

    # -------------------------------------------------------------------------
    # Pool
    # -------------------------------------------------------------------------

    def ensure_pool(self) -> bool:
        """Create the pool if the hypervisor does not know it.

        Returns:
            True if the pool was created, False if it already existed
        """
        try:
            self.layout.pool_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProvisioningFailed(f"Cannot create pool directory {self.layout.pool_path}: {e}") from e
        try:
            if self.client.pool_exists(self.layout.pool_name):
                logger.debug(f"Storage pool {self.layout.pool_name} already exists")
                return False
            self.client.pool_create(self.layout.pool_name, str(self.layout.pool_path))
        except HypervisorError as e:
            raise ProvisioningFailed(f"Cannot create storage pool {self.layout.pool_name}: {e}") from e
        logger.info(f"Created storage pool {self.layout.pool_name} at {self.layout.pool_path}")
        return True

    def refresh(self) -> None:
        """Make the hypervisor re-scan the pool directory."""
        try:
            self.client.pool_refresh(self.layout.pool_name)
        except HypervisorError as e:
            raise ProvisioningFailed(f"Cannot refresh storage pool {self.layout.pool_name}: {e}") from e

    # -------------------------------------------------------------------------
    # Base image
    # -------------------------------------------------------------------------

    def image_url(self, channel: str) -> str:
        return self.image_url_template.format(channel=channel)

    def image_archive_path(self, channel: str) -> Path:
        """Local cache location of the compressed image for `channel`."""
        name = self.image_url(channel).rstrip("/").rsplit("/", 1)[-1]
        return self.layout.root_dir / name

    def ensure_base_image(self, channel: str) -> bool:
        """Install the channel's current image as the pool's base image.

        The compressed image is only downloaded when the remote copy is newer
        than the cached archive. The base image is only replaced when the
        archive is newer than it.

        Returns:
            True if a new base image was installed

        Raises:
            ResourceFetchFailed: if the image cannot be downloaded
            ProvisioningFailed: if the image cannot be installed into the pool
        """
        archive = self.image_archive_path(channel)
        self._fetch_if_newer(self.image_url(channel), archive)

        base = self.layout.base_image_path
        if base.exists() and archive.stat().st_mtime <= base.stat().st_mtime:
            logger.info(f"Base image {base.name} is up to date")
            return False

        logger.info(f"Installing {archive.name} as base image {base.name}")
        image = archive.with_suffix("")
        self._decompress(archive, image)
        try:
            self.client.volume_delete(self.layout.pool_name, self.layout.base_image_name)
            logger.info(f"Deleted stale base image volume {self.layout.base_image_name}")
        except ResourceNotFound:
            pass
        except HypervisorError as e:
            raise ProvisioningFailed(f"Cannot delete stale base image: {e}") from e
        try:
            shutil.move(str(image), str(base))
        except OSError as e:
            raise ProvisioningFailed(f"Cannot install base image {base}: {e}") from e
        return True

    def _http_client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(
                timeout=httpx.Timeout(self.download_timeout),
                follow_redirects=True,
            )
        return self._http

    def _fetch_if_newer(self, url: str, dest: Path) -> bool:
        """Conditional GET of `url` into `dest`, keyed on the file's mtime.

        The downloaded file's mtime is set from the Last-Modified header so
        the next run can ask the server whether anything changed. The
        `.part` file is removed unless the download completed.
        """
        headers = {}
        if dest.exists():
            headers["If-Modified-Since"] = formatdate(dest.stat().st_mtime, usegmt=True)

        partial = dest.with_name(dest.name + ".part")
        logger.info(f"Checking {url} for a newer image")
        completed = False
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with self._http_client().stream("GET", url, headers=headers) as response:
                if response.status_code == 304:
                    logger.info(f"{dest.name} not modified on server")
                    return False
                if response.status_code != 200:
                    raise ResourceFetchFailed(f"Download of {url} failed: HTTP {response.status_code}")

                bytes_written = 0
                with open(partial, "wb") as f:
                    for chunk in response.iter_bytes(chunk_size=1024 * 1024):
                        f.write(chunk)
                        bytes_written += len(chunk)
                last_modified = response.headers.get("last-modified")
            partial.replace(dest)
            completed = True
        except httpx.HTTPError as e:
            raise ResourceFetchFailed(f"Download of {url} failed: {e}") from e
        except OSError as e:
            raise ResourceFetchFailed(f"Cannot store download of {url}: {e}") from e
        finally:
            if not completed:
                _discard(partial)

        if last_modified:
            try:
                ts = parsedate_to_datetime(last_modified).timestamp()
                os.utime(dest, (ts, ts))
            except (TypeError, ValueError):
                logger.debug(f"Ignoring unparseable Last-Modified: {last_modified}")
        logger.info(f"Downloaded {dest.name} ({bytes_written} bytes)")
        return True

    @staticmethod
    def _decompress(archive: Path, dest: Path) -> None:
        try:
            with bz2.open(archive, "rb") as src, open(dest, "wb") as out:
                shutil.copyfileobj(src, out, length=1024 * 1024)
        except (OSError, EOFError) as e:
            dest.unlink(missing_ok=True)
            raise ResourceFetchFailed(f"Cannot decompress {archive.name}: {e}") from e

    # -------------------------------------------------------------------------
    # Shared directories and add-ons
    # -------------------------------------------------------------------------

    def prepare_shared_dirs(self) -> None:
        for path in (self.layout.kubernetes_dir, self.layout.manifests_dir, self.layout.addons_dir):
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ProvisioningFailed(f"Cannot create shared directory {path}: {e}") from e

    def install_addons(self, config: ClusterConfig, renderer: TemplateRenderer) -> list[str]:
        """Copy or render the optional add-ons enabled in `config`.

        Returns:
            Names of the files installed
        """
        self.prepare_shared_dirs()
        installed = []

        manifests = []
        if config.enable_node_monitoring:
            manifests.append(CADVISOR_MANIFEST)
        if config.enable_node_logging:
            manifests.append(FLUENTD_MANIFESTS[config.logging_destination])
        for rel_path in manifests:
            src = self.layout.release_root / rel_path
            if not src.is_file():
                raise ProvisioningFailed(f"Add-on manifest not found: {src}")
            try:
                shutil.copy(src, self.layout.manifests_dir / src.name)
            except OSError as e:
                raise ProvisioningFailed(f"Cannot install add-on manifest {src.name}: {e}") from e
            installed.append(src.name)

        if config.enable_cluster_dns:
            context = {
                "DNS_SERVER_IP": config.dns_server_ip,
                "DNS_DOMAIN": config.dns_domain,
                "DNS_REPLICAS": config.dns_replicas,
            }
            for name in DNS_ADDON_TEMPLATES:
                try:
                    rendered = renderer.render_file(name, context)
                except TemplateError as e:
                    raise ProvisioningFailed(f"Cannot render add-on {name}: {e}") from e
                try:
                    (self.layout.addons_dir / name).write_text(rendered)
                except OSError as e:
                    raise ProvisioningFailed(f"Cannot write add-on {name}: {e}") from e
                installed.append(name)

        if installed:
            logger.info(f"Installed add-ons: {', '.join(installed)}")
        return installed

    # -------------------------------------------------------------------------
    # Per-node resources
    # -------------------------------------------------------------------------

    def create_overlay(self, image_name: str) -> VolumeInfo:
        """Create a qcow2 overlay volume backed by the base image."""
        try:
            return self.client.volume_create(
                self.layout.pool_name,
                image_name,
                self.overlay_capacity,
                format="qcow2",
                backing_volume=self.layout.base_image_name,
                backing_format="qcow2",
            )
        except HypervisorError as e:
            raise ProvisioningFailed(f"Cannot create overlay volume {image_name}: {e}") from e

    def write_node_config(self, config_dir: str, user_data: str) -> Path:
        """Write a node's boot metadata where the config-drive layout expects it."""
        target = self.layout.config_dir(config_dir) / "openstack" / "latest"
        target.mkdir(parents=True, exist_ok=True)
        path = target / "user_data"
        path.write_text(user_data)
        return path

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def destroy_pool(self, keep_base: bool = True) -> TeardownReport:
        """Remove node volumes and config directories, and optionally the pool.

        Args:
            keep_base: Keep the base image volume and the pool itself

        Returns:
            TeardownReport; individual failures never stop the pass
        """
        report = TeardownReport()
        pool = self.layout.pool_name
        try:
            if not self.client.pool_exists(pool):
                logger.info(f"Storage pool {pool} does not exist, nothing to destroy")
                return report
        except HypervisorError as e:
            report.errors.append(f"pool {pool}: {e}")
            return report

        for directory in self._shared_dirs():
            try:
                entries = sorted(directory.iterdir())
            except OSError as e:
                logger.warning(f"Cannot list {directory}: {e}")
                report.errors.append(f"list {directory}: {e}")
                continue
            for entry in entries:
                report.attempt(f"file {entry}", _remove_path, entry)

        try:
            volumes = self.client.volume_list(pool)
        except HypervisorError as e:
            report.errors.append(f"list volumes in {pool}: {e}")
            volumes = []
        for vol in volumes:
            if vol.name.startswith(self.layout.cluster_prefix):
                report.attempt(f"volume {vol.name}", self.client.volume_delete, pool, vol.name)

        if keep_base:
            return report

        report.attempt(
            f"volume {self.layout.base_image_name}",
            self.client.volume_delete, pool, self.layout.base_image_name,
        )
        report.attempt(f"pool {pool}", self.client.pool_destroy, pool)
        for directory in self._shared_dirs():
            report.attempt(f"directory {directory}", _remove_path, directory)
        report.attempt(f"directory {self.layout.pool_path}", self.layout.pool_path.rmdir)
        return report

    def _shared_dirs(self) -> list[Path]:
        """The shared kubernetes directory and every node config directory."""
        pool_path = self.layout.pool_path
        if not pool_path.is_dir():
            return []
        dirs = [pool_path / "kubernetes"]
        dirs.extend(sorted(pool_path.glob("kubernetes_config*")))
        return [d for d in dirs if d.is_dir()]


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Cannot remove partial download {path}: {e}")
