from __future__ import annotations

import bz2
import io
import os
import tarfile
import xml.etree.ElementTree as ET
from pathlib import Path

import httpx
import pytest

from virtcluster.config import ClusterConfig, HostLayout, Settings
from virtcluster.hypervisor.base import (
    DomainInfo,
    HypervisorClient,
    HypervisorError,
    ResourceNotFound,
    VolumeInfo,
)
from virtcluster.release import SERVER_TARBALL
from virtcluster.storage import CADVISOR_MANIFEST

IMAGE_BYTES = b"QFI\xfb" + b"\x00" * 4096
LAST_MODIFIED = "Tue, 03 Mar 2015 10:00:00 GMT"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the developer's VIRTCLUSTER_* variables out of unit tests."""
    for key in list(os.environ):
        if key.startswith("VIRTCLUSTER_"):
            monkeypatch.delenv(key)
    yield


# ---------------------------------------------------------------------------
# In-memory hypervisor
# ---------------------------------------------------------------------------

def _xml_name(xml: str) -> str:
    return ET.fromstring(xml).findtext("name")


class FakeHypervisor(HypervisorClient):
    """Records every call and keeps pools, volumes, networks and domains in dicts.

    Volumes are mirrored as files in the pool directory, the way a dir pool
    behaves, so pool refreshes pick up files placed there directly.
    """

    def __init__(self):
        self.calls: list[tuple] = []
        self.pools: dict[str, Path] = {}
        self.volumes: dict[str, dict[str, VolumeInfo]] = {}
        self.networks: dict[str, str] = {}
        self.domains: dict[str, str] = {}
        self.fail: dict[str, Exception] = {}

    def _call(self, op: str, *args):
        self.calls.append((op, *args))
        if op in self.fail:
            raise self.fail[op]

    def calls_named(self, op: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == op]

    def node_info(self) -> dict:
        self._call("node_info")
        return {"model": "x86_64", "memory_mb": 16384, "cpus": 8}

    # --- Storage pools ---

    def pool_exists(self, name: str) -> bool:
        self._call("pool_exists", name)
        return name in self.pools

    def pool_create(self, name: str, path: str) -> None:
        self._call("pool_create", name, path)
        if name in self.pools:
            raise HypervisorError(f"pool {name} already exists")
        self.pools[name] = Path(path)
        self.volumes[name] = {}

    def pool_destroy(self, name: str) -> None:
        self._call("pool_destroy", name)
        if name not in self.pools:
            raise ResourceNotFound(f"pool {name}: not found")
        del self.pools[name]
        del self.volumes[name]

    def pool_refresh(self, name: str) -> None:
        self._call("pool_refresh", name)
        if name not in self.pools:
            raise ResourceNotFound(f"pool {name}: not found")
        path = self.pools[name]
        self.volumes[name] = {
            p.name: self.volumes[name].get(p.name) or VolumeInfo(name=p.name, path=str(p))
            for p in path.iterdir()
            if p.is_file()
        }

    # --- Volumes ---

    def volume_list(self, pool: str) -> list[VolumeInfo]:
        self._call("volume_list", pool)
        if pool not in self.pools:
            raise ResourceNotFound(f"pool {pool}: not found")
        return list(self.volumes[pool].values())

    def volume_create(self, pool, name, capacity, *, format="qcow2", backing_volume=None, backing_format=None):
        self._call("volume_create", pool, name, capacity, format, backing_volume, backing_format)
        if pool not in self.pools:
            raise ResourceNotFound(f"pool {pool}: not found")
        if name in self.volumes[pool]:
            raise HypervisorError(f"volume {name} already exists")
        path = self.pools[pool] / name
        path.write_bytes(b"")
        vol = VolumeInfo(name=name, path=str(path), capacity=capacity, format=format)
        self.volumes[pool][name] = vol
        return vol

    def volume_delete(self, pool: str, name: str) -> None:
        self._call("volume_delete", pool, name)
        if pool not in self.pools or name not in self.volumes[pool]:
            raise ResourceNotFound(f"volume {name}: not found")
        vol = self.volumes[pool].pop(name)
        Path(vol.path).unlink(missing_ok=True)

    # --- Networks ---

    def network_create(self, xml: str) -> str:
        name = _xml_name(xml)
        self._call("network_create", name)
        if name in self.networks:
            raise HypervisorError(f"network '{name}' already exists")
        self.networks[name] = xml
        return name

    def network_destroy(self, name: str) -> None:
        self._call("network_destroy", name)
        if name not in self.networks:
            raise ResourceNotFound(f"network {name}: not found")
        del self.networks[name]

    # --- Domains ---

    def domain_create(self, xml: str) -> str:
        name = _xml_name(xml)
        self._call("domain_create", name)
        if name in self.domains:
            raise HypervisorError(f"domain '{name}' already exists")
        self.domains[name] = xml
        return name

    def domain_destroy(self, name: str) -> None:
        self._call("domain_destroy", name)
        if name not in self.domains:
            raise ResourceNotFound(f"domain {name}: not found")
        del self.domains[name]

    def domain_list(self, prefix: str = "", active_only: bool = True) -> list[DomainInfo]:
        self._call("domain_list", prefix)
        return [
            DomainInfo(name=name, running=True, id=i + 1)
            for i, name in enumerate(self.domains)
            if name.startswith(prefix)
        ]


@pytest.fixture
def fake_client() -> FakeHypervisor:
    return FakeHypervisor()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@pytest.fixture
def cluster_config() -> ClusterConfig:
    """Two workers plus the control node."""
    return ClusterConfig(
        master_name="kubernetes_master",
        master_ip="192.168.10.1",
        minion_names=("kubernetes_minion-01", "kubernetes_minion-02"),
        minion_ips=("192.168.10.2", "192.168.10.3"),
        num_minions=2,
        enable_node_monitoring=True,
        enable_node_logging=False,
        enable_cluster_dns=True,
    )


@pytest.fixture
def release_root(tmp_path) -> Path:
    """A release tree with a server tarball and the cAdvisor manifest."""
    root = tmp_path / "release"
    tarball = root / "server" / SERVER_TARBALL
    tarball.parent.mkdir(parents=True)
    with tarfile.open(tarball, "w:gz") as tar:
        for name in ("kube-apiserver", "kubelet", "kube-proxy"):
            data = f"#!/bin/sh\necho {name}\n".encode()
            info = tarfile.TarInfo(f"kubernetes/server/bin/{name}")
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))
        readme = b"release notes\n"
        info = tarfile.TarInfo("kubernetes/README.md")
        info.size = len(readme)
        tar.addfile(info, io.BytesIO(readme))

    manifest = root / CADVISOR_MANIFEST
    manifest.parent.mkdir(parents=True)
    manifest.write_text("version: v1beta2\nid: cadvisor-agent\n")
    return root


@pytest.fixture
def layout(tmp_path, release_root) -> HostLayout:
    return HostLayout(root_dir=tmp_path / "root", release_root=release_root)


@pytest.fixture
def ssh_key_glob(tmp_path) -> str:
    keys = tmp_path / "ssh"
    keys.mkdir()
    (keys / "id_ed25519.pub").write_text("ssh-ed25519 AAAAC3Nza test@host\n")
    return str(keys / "id_*.pub")


@pytest.fixture
def settings(tmp_path, release_root, ssh_key_glob) -> Settings:
    return Settings(
        root_dir=str(tmp_path / "root"),
        release_root=str(release_root),
        ssh_key_glob=ssh_key_glob,
        minion_names="kubernetes_minion-01,kubernetes_minion-02",
        minion_ips="192.168.10.2,192.168.10.3",
        num_minions=2,
        readiness_max_attempts=5,
        readiness_poll_interval=0,
    )


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

def compressed_image() -> bytes:
    return bz2.compress(IMAGE_BYTES)


def image_transport(requests: list[httpx.Request] | None = None, status: int = 200) -> httpx.MockTransport:
    """Serve the compressed base image, honouring If-Modified-Since."""

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        if status != 200:
            return httpx.Response(status)
        if request.headers.get("if-modified-since") == LAST_MODIFIED:
            return httpx.Response(304)
        return httpx.Response(200, content=compressed_image(), headers={"Last-Modified": LAST_MODIFIED})

    return httpx.MockTransport(handler)


def ready_payload(count: int) -> dict:
    return {"items": [{"status": {"conditions": [{"kind": "Ready"}]}} for _ in range(count)]}


def cluster_transport(ready_counts: list[int], discovery: str = "https://discovery.etcd.io/abc123"):
    """Answer discovery requests and node-status polls.

    Each status poll pops the next ready count; the last one repeats.
    """
    counts = list(ready_counts)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "discovery.etcd.io":
            return httpx.Response(200, text=discovery + "\n")
        if request.url.path == "/api/v1beta1/minions":
            count = counts.pop(0) if len(counts) > 1 else counts[0]
            return httpx.Response(200, json=ready_payload(count))
        return httpx.Response(404)

    return httpx.MockTransport(handler)
