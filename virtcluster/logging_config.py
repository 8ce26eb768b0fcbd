"""Logging setup for virtcluster.

Provides a JSON formatter for machine consumption and a compact text
formatter for interactive use. Both tag records with the cluster prefix so
logs from several clusters on one host can be told apart.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

# Attributes present on every LogRecord; anything else was passed via `extra`.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


def _record_extras(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class ClusterJSONFormatter(logging.Formatter):
    """Format log records as single-line JSON documents."""

    def __init__(self, cluster: str = ""):
        super().__init__()
        self.cluster = cluster

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": "virtcluster",
            "cluster": self.cluster,
            "message": record.getMessage(),
        }
        extras = _record_extras(record)
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ClusterTextFormatter(logging.Formatter):
    """Human readable formatter: time, level, cluster, logger, message."""

    def __init__(self, cluster: str = ""):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s [%(cluster)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        self.cluster = cluster

    def format(self, record: logging.LogRecord) -> str:
        record.cluster = self.cluster[:16]
        return super().format(record)


def setup_logging(level: str = "INFO", fmt: str = "text", cluster: str = "") -> None:
    """Configure the root logger to write to stderr.

    Replaces any handlers installed by a previous call so repeated setup
    (tests, re-entrant CLI invocations) does not duplicate output.
    """
    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(ClusterJSONFormatter(cluster=cluster))
    else:
        handler.setFormatter(ClusterTextFormatter(cluster=cluster))

    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, "_virtcluster", False):
            root.removeHandler(existing)
    handler._virtcluster = True
    root.addHandler(handler)
    root.setLevel(level.upper())

    # httpx logs every request at INFO; the readiness poll would flood output.
    logging.getLogger("httpx").setLevel(logging.WARNING)
