"""Tests for StoragePoolManager: pool lifecycle, base image, add-ons, teardown."""

from __future__ import annotations

import bz2
import os
from pathlib import Path

import httpx
import pytest
from conftest import IMAGE_BYTES, LAST_MODIFIED, image_transport

from virtcluster.config import ASSETS_DIR
from virtcluster.errors import ProvisioningFailed, ResourceFetchFailed
from virtcluster.hypervisor.base import HypervisorError
from virtcluster.storage import GIB, StoragePoolManager
from virtcluster.templates import TemplateRenderer

IMAGE_URL = "http://{channel}.release.core-os.net/amd64-usr/current/coreos_production_qemu_image.img.bz2"


def _manager(client, layout, transport=None) -> StoragePoolManager:
    http = httpx.Client(transport=transport or image_transport())
    return StoragePoolManager(client, layout, image_url_template=IMAGE_URL, http_client=http)


# --- Pool ---

class TestEnsurePool:
    def test_creates_directory_and_pool(self, fake_client, layout):
        manager = _manager(fake_client, layout)
        assert manager.ensure_pool() is True
        assert layout.pool_path.is_dir()
        assert fake_client.pools == {"kubernetes": layout.pool_path}

    def test_idempotent(self, fake_client, layout):
        manager = _manager(fake_client, layout)
        manager.ensure_pool()
        assert manager.ensure_pool() is False
        assert len(fake_client.calls_named("pool_create")) == 1

    def test_hypervisor_failure(self, fake_client, layout):
        fake_client.fail["pool_create"] = HypervisorError("permission denied")
        with pytest.raises(ProvisioningFailed, match="permission denied"):
            _manager(fake_client, layout).ensure_pool()

    def test_directory_failure(self, fake_client, layout):
        layout.root_dir.parent.mkdir(parents=True, exist_ok=True)
        layout.root_dir.write_text("not a directory")
        with pytest.raises(ProvisioningFailed, match="pool directory"):
            _manager(fake_client, layout).ensure_pool()
        assert fake_client.calls_named("pool_create") == []


# --- Base image ---

class TestEnsureBaseImage:
    def test_downloads_and_installs(self, fake_client, layout):
        manager = _manager(fake_client, layout)
        manager.ensure_pool()

        assert manager.ensure_base_image("alpha") is True
        assert layout.base_image_path.read_bytes() == IMAGE_BYTES
        archive = manager.image_archive_path("alpha")
        assert archive.name == "coreos_production_qemu_image.img.bz2"
        assert bz2.decompress(archive.read_bytes()) == IMAGE_BYTES
        assert not archive.with_suffix("").exists()

    def test_channel_in_url(self, fake_client, layout):
        requests = []
        manager = _manager(fake_client, layout, image_transport(requests))
        manager.ensure_pool()
        manager.ensure_base_image("beta")
        assert requests[0].url.host == "beta.release.core-os.net"

    def test_not_modified_skips_download_and_install(self, fake_client, layout):
        requests = []
        manager = _manager(fake_client, layout, image_transport(requests))
        manager.ensure_pool()
        manager.ensure_base_image("alpha")

        assert manager.ensure_base_image("alpha") is False
        assert requests[1].headers["if-modified-since"] == LAST_MODIFIED
        assert layout.base_image_path.read_bytes() == IMAGE_BYTES

    def test_stale_volume_replaced(self, fake_client, layout):
        manager = _manager(fake_client, layout)
        manager.ensure_pool()
        layout.base_image_path.write_bytes(b"old")
        fake_client.pool_refresh("kubernetes")
        # Older than the archive's Last-Modified date
        os.utime(layout.base_image_path, (0, 0))

        assert manager.ensure_base_image("alpha") is True
        assert ("volume_delete", "kubernetes", "coreos_base.img") in fake_client.calls
        assert layout.base_image_path.read_bytes() == IMAGE_BYTES

    def test_http_error_status(self, fake_client, layout):
        manager = _manager(fake_client, layout, image_transport(status=503))
        manager.ensure_pool()
        with pytest.raises(ResourceFetchFailed, match="HTTP 503"):
            manager.ensure_base_image("alpha")
        assert not manager.image_archive_path("alpha").exists()

    def test_network_error(self, fake_client, layout):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        manager = _manager(fake_client, layout, httpx.MockTransport(handler))
        manager.ensure_pool()
        with pytest.raises(ResourceFetchFailed, match="connection refused"):
            manager.ensure_base_image("alpha")

    def test_corrupt_archive(self, fake_client, layout):
        def handler(request):
            return httpx.Response(200, content=b"not bzip2")

        manager = _manager(fake_client, layout, httpx.MockTransport(handler))
        manager.ensure_pool()
        with pytest.raises(ResourceFetchFailed, match="decompress"):
            manager.ensure_base_image("alpha")
        assert not layout.base_image_path.exists()

    def test_unwritable_partial_file(self, fake_client, layout):
        manager = _manager(fake_client, layout)
        manager.ensure_pool()
        archive = manager.image_archive_path("alpha")
        archive.with_name(archive.name + ".part").mkdir(parents=True)

        with pytest.raises(ResourceFetchFailed, match="Cannot store download"):
            manager.ensure_base_image("alpha")
        assert not archive.exists()
        assert not layout.base_image_path.exists()

    def test_disk_error_removes_partial_file(self, fake_client, layout, monkeypatch):
        def no_space(self, target):
            raise OSError(28, "No space left on device")

        manager = _manager(fake_client, layout)
        manager.ensure_pool()
        archive = manager.image_archive_path("alpha")
        monkeypatch.setattr(Path, "replace", no_space)

        with pytest.raises(ResourceFetchFailed, match="No space left on device"):
            manager.ensure_base_image("alpha")
        assert not archive.with_name(archive.name + ".part").exists()
        assert not archive.exists()


# --- Add-ons ---

class TestInstallAddons:
    def test_monitoring_and_dns(self, fake_client, layout, cluster_config):
        manager = _manager(fake_client, layout)
        installed = manager.install_addons(cluster_config, TemplateRenderer(ASSETS_DIR))

        assert installed == ["cadvisor.manifest", "skydns-svc.yaml", "skydns-rc.yaml"]
        assert (layout.manifests_dir / "cadvisor.manifest").is_file()
        assert "10.11.0.254" in (layout.addons_dir / "skydns-svc.yaml").read_text()

    def test_nothing_enabled(self, fake_client, layout, cluster_config):
        config = cluster_config.model_copy(
            update={"enable_node_monitoring": False, "enable_cluster_dns": False}
        )
        assert _manager(fake_client, layout).install_addons(config, TemplateRenderer(ASSETS_DIR)) == []
        assert layout.manifests_dir.is_dir()
        assert layout.addons_dir.is_dir()

    def test_logging_manifest_missing(self, fake_client, layout, cluster_config):
        config = cluster_config.model_copy(
            update={"enable_node_logging": True, "logging_destination": "gcp"}
        )
        with pytest.raises(ProvisioningFailed, match="fluentd-gcp"):
            _manager(fake_client, layout).install_addons(config, TemplateRenderer(ASSETS_DIR))

    def test_shared_directory_blocked(self, fake_client, layout, cluster_config):
        layout.kubernetes_dir.mkdir(parents=True)
        layout.addons_dir.write_text("not a directory")
        with pytest.raises(ProvisioningFailed, match="shared directory"):
            _manager(fake_client, layout).install_addons(cluster_config, TemplateRenderer(ASSETS_DIR))

    def test_addon_write_failure(self, fake_client, layout, cluster_config):
        (layout.addons_dir / "skydns-svc.yaml").mkdir(parents=True)
        with pytest.raises(ProvisioningFailed, match="skydns-svc.yaml"):
            _manager(fake_client, layout).install_addons(cluster_config, TemplateRenderer(ASSETS_DIR))


# --- Per-node resources ---

class TestNodeResources:
    def test_overlay_backed_by_base_image(self, fake_client, layout):
        manager = _manager(fake_client, layout)
        manager.ensure_pool()
        vol = manager.create_overlay("kubernetes_master.img")

        assert vol.capacity == 10 * GIB
        assert fake_client.calls_named("volume_create") == [
            ("volume_create", "kubernetes", "kubernetes_master.img", 10 * GIB, "qcow2", "coreos_base.img", "qcow2"),
        ]

    def test_overlay_failure(self, fake_client, layout):
        manager = _manager(fake_client, layout)
        manager.ensure_pool()
        manager.create_overlay("kubernetes_master.img")
        with pytest.raises(ProvisioningFailed, match="kubernetes_master.img"):
            manager.create_overlay("kubernetes_master.img")

    def test_write_node_config(self, fake_client, layout):
        path = _manager(fake_client, layout).write_node_config("kubernetes_config_master", "#cloud-config\n")
        assert path == layout.pool_path / "kubernetes_config_master" / "openstack" / "latest" / "user_data"
        assert path.read_text() == "#cloud-config\n"


# --- Teardown ---

class TestDestroyPool:
    def _populate(self, fake_client, layout) -> StoragePoolManager:
        manager = _manager(fake_client, layout)
        manager.ensure_pool()
        manager.ensure_base_image("alpha")
        manager.prepare_shared_dirs()
        (layout.manifests_dir / "cadvisor.manifest").write_text("x")
        manager.write_node_config("kubernetes_config_master", "a")
        manager.write_node_config("kubernetes_config_minion-00", "b")
        manager.create_overlay("kubernetes_master.img")
        manager.create_overlay("kubernetes_minion-01.img")
        manager.refresh()
        return manager

    def test_absent_pool_is_noop(self, fake_client, layout):
        report = _manager(fake_client, layout).destroy_pool()
        assert report.ok
        assert report.removed == []
        assert fake_client.calls_named("volume_list") == []

    def test_keep_base(self, fake_client, layout):
        manager = self._populate(fake_client, layout)

        report = manager.destroy_pool(keep_base=True)

        assert report.ok
        assert set(fake_client.volumes["kubernetes"]) == {"coreos_base.img"}
        assert "kubernetes" in fake_client.pools
        assert list(layout.kubernetes_dir.iterdir()) == []
        assert list(layout.config_dir("kubernetes_config_master").iterdir()) == []
        assert layout.base_image_path.exists()

    def test_purge(self, fake_client, layout):
        manager = self._populate(fake_client, layout)

        report = manager.destroy_pool(keep_base=False)

        assert report.ok, report.errors
        assert fake_client.pools == {}
        assert not layout.pool_path.exists()

    def test_twice_is_harmless(self, fake_client, layout):
        manager = self._populate(fake_client, layout)
        manager.destroy_pool()
        report = manager.destroy_pool()
        assert report.ok
        assert report.removed == []

    def test_volume_errors_do_not_stop_pass(self, fake_client, layout):
        manager = self._populate(fake_client, layout)
        fake_client.fail["volume_delete"] = HypervisorError("volume busy")

        report = manager.destroy_pool()

        assert not report.ok
        assert len(report.errors) == 2
        assert list(layout.kubernetes_dir.iterdir()) == []

    def test_unreadable_directory_does_not_stop_pass(self, fake_client, layout, monkeypatch):
        manager = self._populate(fake_client, layout)
        real_iterdir = Path.iterdir

        def iterdir(self):
            if self.name == "kubernetes_config_master":
                raise PermissionError(13, "Permission denied")
            return real_iterdir(self)

        monkeypatch.setattr(Path, "iterdir", iterdir)
        report = manager.destroy_pool()

        assert len(report.errors) == 1
        assert report.errors[0].startswith("list ")
        assert "Permission denied" in report.errors[0]
        assert set(fake_client.volumes["kubernetes"]) == {"coreos_base.img"}
        assert list(real_iterdir(layout.config_dir("kubernetes_config_minion-00"))) == []
        assert list(real_iterdir(layout.kubernetes_dir)) == []
