"""Host prerequisite checks, run before any resource is touched."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from virtcluster.errors import PrerequisiteMissing
from virtcluster.hypervisor.base import HypervisorClient, HypervisorError

logger = logging.getLogger(__name__)

KSM_RUN_PATH = Path("/sys/kernel/mm/ksm/run")


def verify_prereqs(client: HypervisorClient, ksm_path: Path = KSM_RUN_PATH) -> None:
    """Check that the virtualization tooling is present and the host answers.

    Raises:
        PrerequisiteMissing: if virsh is not on PATH or the hypervisor is unreachable
    """
    if shutil.which("virsh") is None:
        raise PrerequisiteMissing("Can't find virsh in PATH, please fix and retry.")
    try:
        info = client.node_info()
    except HypervisorError as e:
        raise PrerequisiteMissing(f"Cannot query the hypervisor: {e}") from e
    logger.debug(f"Hypervisor host: {info}")
    check_ksm(ksm_path)


def check_ksm(ksm_path: Path = KSM_RUN_PATH) -> bool:
    """Warn when kernel same-page merging is off. Returns True if it is on."""
    try:
        enabled = ksm_path.read_text().strip() == "1"
    except OSError:
        return False
    if not enabled:
        logger.warning(
            "KSM is not enabled. Enabling it would reduce the memory footprint "
            f"of large clusters: echo 1 > {ksm_path} (as root)"
        )
    return enabled
