"""Cluster readiness polling.

After the node VMs are started, the control plane takes a while to see the
workers register. The poller queries the control node's node-status API and
counts nodes reporting a `Ready` condition until the expected number is
reached or the attempt budget runs out.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 50
DEFAULT_POLL_INTERVAL = 0.5  # seconds


@dataclass
class ReadinessResult:
    """Outcome of a readiness wait."""

    is_ready: bool
    ready_count: int
    expected_count: int
    attempts: int
    message: str = ""


def count_ready_nodes(payload: Any) -> int:
    """Count nodes with a condition of kind `Ready` in a node-list document.

    Expected shape: {"items": [{"status": {"conditions": [{"kind": "Ready"}]}}]}.
    Anything else counts as zero.
    """
    if not isinstance(payload, dict):
        return 0
    items = payload.get("items") or []
    if not isinstance(items, list):
        return 0
    ready = 0
    for item in items:
        if not isinstance(item, dict):
            continue
        status = item.get("status")
        if not isinstance(status, dict):
            continue
        conditions = status.get("conditions")
        if not isinstance(conditions, list):
            continue
        if any(isinstance(c, dict) and c.get("kind") == "Ready" for c in conditions):
            ready += 1
    return ready


class ReadinessPoller:
    """Polls the cluster status endpoint until enough nodes are ready."""

    def __init__(
        self,
        http: httpx.Client,
        status_url: str,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.http = http
        self.status_url = status_url
        self._sleep = sleep

    def query_ready_count(self) -> int:
        """One poll. An unreachable or malformed endpoint reports zero."""
        try:
            response = self.http.get(self.status_url)
            if response.status_code != 200:
                logger.debug(f"Status endpoint returned HTTP {response.status_code}")
                return 0
            return count_ready_nodes(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Status query failed: {e}")
            return 0

    def wait_ready(
        self,
        expected_count: int,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> ReadinessResult:
        """Poll until `expected_count` nodes are ready or attempts run out.

        Never raises on timeout; the caller decides whether a cluster that is
        not (yet) ready is fatal.
        """
        logger.info("Waiting for cluster readiness")
        ready = 0
        for attempt in range(1, max_attempts + 1):
            ready = self.query_ready_count()
            logger.info(f"Ready nodes: {ready} / {expected_count}")
            if ready == expected_count:
                return ReadinessResult(
                    is_ready=True,
                    ready_count=ready,
                    expected_count=expected_count,
                    attempts=attempt,
                    message="Cluster is ready",
                )
            if attempt < max_attempts:
                self._sleep(poll_interval)

        return ReadinessResult(
            is_ready=False,
            ready_count=ready,
            expected_count=expected_count,
            attempts=max_attempts,
            message=f"Timed out with {ready}/{expected_count} nodes ready",
        )
