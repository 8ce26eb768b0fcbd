"""Command line interface: virtcluster up | down | push | test-teardown | credentials."""

from __future__ import annotations

import argparse
import json
import logging
import sys

from pydantic import ValidationError

from virtcluster.config import load_settings
from virtcluster.errors import ClusterError, ConfigurationError, ReadinessTimeout
from virtcluster.logging_config import setup_logging
from virtcluster.orchestrator import ClusterOrchestrator, Credentials

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="virtcluster",
        description="Provision a multi-node cluster on a local libvirt host.",
    )
    parser.add_argument("--config", "-c", help="Env file with VIRTCLUSTER_* settings")
    parser.add_argument("--log-level", help="Override VIRTCLUSTER_LOG_LEVEL")
    parser.add_argument("--log-format", choices=["text", "json"], help="Override VIRTCLUSTER_LOG_FORMAT")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("up", help="Create pool, networks and nodes, then wait for readiness")

    down_p = subparsers.add_parser("down", help="Destroy nodes, pool contents and networks")
    down_p.add_argument(
        "--purge-base-image",
        action="store_true",
        help="Also delete the base image and the storage pool itself",
    )
    down_p.add_argument("--json", action="store_true", help="Print the teardown report as JSON")
    down_p.add_argument(
        "--strict",
        action="store_true",
        help="Exit non-zero if any teardown step failed",
    )

    subparsers.add_parser("push", help="Install the current release binaries without recreating nodes")
    teardown_p = subparsers.add_parser("test-teardown", help="Tear down after an end-to-end test run")
    teardown_p.add_argument("--strict", action="store_true", help="Exit non-zero if any teardown step failed")
    subparsers.add_parser("credentials", help="Print the default node login identity")
    return parser


def run(args: argparse.Namespace, orchestrator: ClusterOrchestrator | None = None) -> int:
    """Execute a parsed command and return the process exit code."""
    try:
        settings = load_settings(args.config)
    except ValidationError as e:
        print(f"!!! Invalid settings: {e}", file=sys.stderr)
        return ConfigurationError.exit_code
    except ConfigurationError as e:
        print(f"!!! {e}", file=sys.stderr)
        return e.exit_code
    setup_logging(
        level=args.log_level or settings.log_level,
        fmt=args.log_format or settings.log_format,
        cluster=settings.cluster_prefix,
    )

    if args.command == "credentials":
        print(f"user: {Credentials().user}")
        return 0

    try:
        if orchestrator is None:
            orchestrator = ClusterOrchestrator.from_settings(settings)

        if args.command == "up":
            result = orchestrator.up()
            if not result.success:
                raise ReadinessTimeout(
                    result.readiness.ready_count,
                    result.readiness.expected_count,
                    result.readiness.attempts,
                )
            print(f"Cluster is running. The master is running at:\n\n  {result.endpoint}\n")
            print(f"You can connect on the master with: 'ssh {orchestrator.get_credentials().user}"
                  f"@{orchestrator.config.master_ip}'")
        elif args.command in ("down", "test-teardown"):
            if args.command == "test-teardown":
                report = orchestrator.test_teardown()
            else:
                report = orchestrator.down(keep_base=not args.purge_base_image)
            if getattr(args, "json", False):
                print(json.dumps(report.to_dict(), indent=2))
            if args.strict:
                report.raise_for_errors()
            for err in report.errors:
                print(f"warning: {err}", file=sys.stderr)
        elif args.command == "push":
            binaries = orchestrator.push()
            print(f"Pushed {len(binaries)} binaries")
    except ClusterError as e:
        logger.error(str(e))
        print(f"!!! {e}", file=sys.stderr)
        return e.exit_code
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
