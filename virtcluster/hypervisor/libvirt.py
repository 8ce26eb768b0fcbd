"""Libvirt implementation of the hypervisor client.

Talks to libvirtd through the libvirt-python bindings instead of shelling out
to virsh. Pools, networks and domains are created transient (create rather
than define) so that destroying them removes them from the host entirely.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET

from virtcluster.hypervisor.base import (
    DomainInfo,
    HypervisorClient,
    HypervisorError,
    ResourceNotFound,
    VolumeInfo,
)

logger = logging.getLogger(__name__)

# Try to import libvirt - it's optional
try:
    import libvirt
    LIBVIRT_AVAILABLE = True
except ImportError:
    libvirt = None
    LIBVIRT_AVAILABLE = False


# libvirt error codes (virErrorNumber) for missing objects
VIR_ERR_NO_DOMAIN = 42
VIR_ERR_NO_NETWORK = 43
VIR_ERR_NO_STORAGE_POOL = 49
VIR_ERR_NO_STORAGE_VOL = 50

_NOT_FOUND_CODES = {
    VIR_ERR_NO_DOMAIN,
    VIR_ERR_NO_NETWORK,
    VIR_ERR_NO_STORAGE_POOL,
    VIR_ERR_NO_STORAGE_VOL,
}


def _wrap_error(e: Exception, what: str) -> HypervisorError:
    """Translate a libvirtError into the client's exception hierarchy."""
    code = e.get_error_code() if hasattr(e, "get_error_code") else None
    if code in _NOT_FOUND_CODES:
        return ResourceNotFound(f"{what}: not found")
    return HypervisorError(f"{what}: {e}")


def pool_xml(name: str, path: str) -> str:
    """Build the XML description of a directory-backed storage pool."""
    pool = ET.Element("pool", type="dir")
    ET.SubElement(pool, "name").text = name
    target = ET.SubElement(pool, "target")
    ET.SubElement(target, "path").text = path
    return ET.tostring(pool, encoding="unicode")


def volume_xml(
    name: str,
    capacity: int,
    format: str,
    backing_path: str | None = None,
    backing_format: str | None = None,
) -> str:
    """Build the XML description of a volume, optionally with a backing store."""
    vol = ET.Element("volume")
    ET.SubElement(vol, "name").text = name
    ET.SubElement(vol, "capacity", unit="bytes").text = str(capacity)
    target = ET.SubElement(vol, "target")
    ET.SubElement(target, "format", type=format)
    if backing_path:
        backing = ET.SubElement(vol, "backingStore")
        ET.SubElement(backing, "path").text = backing_path
        ET.SubElement(backing, "format", type=backing_format or format)
    return ET.tostring(vol, encoding="unicode")


def _volume_format(vol) -> str | None:
    try:
        root = ET.fromstring(vol.XMLDesc(0))
    except ET.ParseError:
        return None
    fmt = root.find("./target/format")
    return fmt.get("type") if fmt is not None else None


class LibvirtClient(HypervisorClient):
    """Hypervisor client backed by a libvirt connection."""

    def __init__(self, uri: str = "qemu:///system"):
        if not LIBVIRT_AVAILABLE:
            raise ImportError("libvirt-python package is not installed")
        self._uri = uri
        self._conn = None

    @property
    def conn(self):
        """Lazy-initialize libvirt connection."""
        if self._conn is None or not self._conn.isAlive():
            try:
                self._conn = libvirt.open(self._uri)
            except libvirt.libvirtError as e:
                raise HypervisorError(f"Failed to connect to libvirt at {self._uri}: {e}") from e
            if self._conn is None:
                raise HypervisorError(f"Failed to connect to libvirt at {self._uri}")
        return self._conn

    def node_info(self) -> dict:
        try:
            info = self.conn.getInfo()
        except libvirt.libvirtError as e:
            raise _wrap_error(e, "node info") from e
        # getInfo() -> [model, memory_mb, cpus, mhz, nodes, sockets, cores, threads]
        return {"model": info[0], "memory_mb": info[1], "cpus": info[2]}

    # --- Storage pools ---

    def _pool(self, name: str):
        try:
            return self.conn.storagePoolLookupByName(name)
        except libvirt.libvirtError as e:
            raise _wrap_error(e, f"pool {name}") from e

    def pool_exists(self, name: str) -> bool:
        try:
            self._pool(name)
        except ResourceNotFound:
            return False
        return True

    def pool_create(self, name: str, path: str) -> None:
        try:
            self.conn.storagePoolCreateXML(pool_xml(name, path), 0)
        except libvirt.libvirtError as e:
            raise _wrap_error(e, f"create pool {name}") from e
        logger.info(f"Created storage pool {name} at {path}")

    def pool_destroy(self, name: str) -> None:
        pool = self._pool(name)
        try:
            pool.destroy()
        except libvirt.libvirtError as e:
            raise _wrap_error(e, f"destroy pool {name}") from e
        logger.info(f"Destroyed storage pool {name}")

    def pool_refresh(self, name: str) -> None:
        pool = self._pool(name)
        try:
            pool.refresh(0)
        except libvirt.libvirtError as e:
            raise _wrap_error(e, f"refresh pool {name}") from e

    # --- Volumes ---

    def volume_list(self, pool: str) -> list[VolumeInfo]:
        p = self._pool(pool)
        try:
            volumes = p.listAllVolumes(0)
            result = []
            for vol in volumes:
                # info() -> [type, capacity, allocation]
                info = vol.info()
                result.append(VolumeInfo(
                    name=vol.name(),
                    path=vol.path(),
                    capacity=info[1],
                    format=_volume_format(vol),
                ))
            return result
        except libvirt.libvirtError as e:
            raise _wrap_error(e, f"list volumes in {pool}") from e

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
        p = self._pool(pool)
        backing_path = None
        if backing_volume:
            try:
                backing_path = p.storageVolLookupByName(backing_volume).path()
            except libvirt.libvirtError as e:
                raise _wrap_error(e, f"backing volume {backing_volume}") from e
        xml = volume_xml(name, capacity, format, backing_path, backing_format)
        try:
            vol = p.createXML(xml, 0)
        except libvirt.libvirtError as e:
            raise _wrap_error(e, f"create volume {name}") from e
        logger.info(f"Created volume {name} in pool {pool}")
        return VolumeInfo(name=name, path=vol.path(), capacity=capacity, format=format)

    def volume_delete(self, pool: str, name: str) -> None:
        p = self._pool(pool)
        try:
            p.storageVolLookupByName(name).delete(0)
        except libvirt.libvirtError as e:
            raise _wrap_error(e, f"volume {name}") from e
        logger.info(f"Deleted volume {name} from pool {pool}")

    # --- Networks ---

    def network_create(self, xml: str) -> str:
        try:
            net = self.conn.networkCreateXML(xml)
        except libvirt.libvirtError as e:
            raise _wrap_error(e, "create network") from e
        logger.info(f"Created network {net.name()}")
        return net.name()

    def network_destroy(self, name: str) -> None:
        try:
            self.conn.networkLookupByName(name).destroy()
        except libvirt.libvirtError as e:
            raise _wrap_error(e, f"network {name}") from e
        logger.info(f"Destroyed network {name}")

    # --- Domains ---

    def domain_create(self, xml: str) -> str:
        try:
            domain = self.conn.createXML(xml, 0)
        except libvirt.libvirtError as e:
            raise _wrap_error(e, "create domain") from e
        logger.info(f"Started domain {domain.name()}")
        return domain.name()

    def domain_destroy(self, name: str) -> None:
        try:
            self.conn.lookupByName(name).destroy()
        except libvirt.libvirtError as e:
            raise _wrap_error(e, f"domain {name}") from e
        logger.info(f"Destroyed domain {name}")

    def domain_list(self, prefix: str = "", active_only: bool = True) -> list[DomainInfo]:
        flags = libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE if active_only else 0
        try:
            domains = self.conn.listAllDomains(flags)
            result = []
            for domain in domains:
                name = domain.name()
                if not name.startswith(prefix):
                    continue
                running = bool(domain.isActive())
                result.append(DomainInfo(
                    name=name,
                    running=running,
                    id=domain.ID() if running else None,
                ))
            return result
        except libvirt.libvirtError as e:
            raise _wrap_error(e, "list domains") from e
