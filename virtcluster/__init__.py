"""virtcluster: provision and tear down a multi-node cluster on a local libvirt host."""

__version__ = "0.1.0"
