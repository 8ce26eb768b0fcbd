"""Release artifacts.

Node software is not baked into the base image: the server binaries from the
release tarball are unpacked into the pool's shared `kubernetes/bin`
directory, which every node mounts. Pushing a new release therefore only
means replacing that directory.
"""

from __future__ import annotations

import logging
import shutil
import tarfile
import tempfile
from pathlib import Path

from virtcluster.errors import ReleaseArtifactMissing

logger = logging.getLogger(__name__)

SERVER_TARBALL = "kubernetes-server-linux-amd64.tar.gz"
SERVER_BIN_PREFIX = "kubernetes/server/bin/"

# Searched in order, relative to the release root
TARBALL_LOCATIONS = (
    Path("server") / SERVER_TARBALL,
    Path("_output") / "release-tars" / SERVER_TARBALL,
)


def find_release_tar(release_root: Path) -> Path:
    """Locate the server release tarball.

    Raises:
        ReleaseArtifactMissing: if no candidate location holds the tarball
    """
    for rel in TARBALL_LOCATIONS:
        candidate = Path(release_root) / rel
        if candidate.is_file():
            logger.debug(f"Found release tarball {candidate}")
            return candidate
    raise ReleaseArtifactMissing(f"Cannot find {SERVER_TARBALL} under {release_root}")


def upload_server_binaries(tarball: Path, kubernetes_dir: Path) -> list[str]:
    """Replace `<kubernetes_dir>/bin` with the server binaries from `tarball`.

    Returns:
        Names of the installed binaries
    """
    kubernetes_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(tarball, "r:*") as tar:
            members = [
                m for m in tar.getmembers()
                if m.name.startswith(SERVER_BIN_PREFIX) and m.name != SERVER_BIN_PREFIX
            ]
            if not members:
                raise ReleaseArtifactMissing(f"{tarball} contains no {SERVER_BIN_PREFIX} entries")
            with tempfile.TemporaryDirectory(dir=kubernetes_dir, prefix=".release-") as staging:
                tar.extractall(staging, members=members, filter="data")
                bin_dir = kubernetes_dir / "bin"
                if bin_dir.exists():
                    shutil.rmtree(bin_dir)
                shutil.move(str(Path(staging) / SERVER_BIN_PREFIX), str(bin_dir))
    except (tarfile.TarError, OSError) as e:
        raise ReleaseArtifactMissing(f"Cannot extract {tarball}: {e}") from e

    binaries = sorted(p.name for p in bin_dir.iterdir())
    logger.info(f"Installed {len(binaries)} server binaries into {bin_dir}")
    return binaries
