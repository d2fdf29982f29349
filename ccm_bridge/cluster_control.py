#!/usr/bin/env python3
"""Control CCM test clusters from the command line.

For settings it uses the same env variables as when running the tests.
"""

import argparse
import logging
import sys

from ccm_bridge import exceptions
from ccm_bridge.cluster_management import bridge
from ccm_bridge.utils import helpers

LOGGER = logging.getLogger(__name__)


def get_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Get command line arguments."""
    parser = argparse.ArgumentParser(description=__doc__.split("\n", maxsplit=1)[0])
    subparsers = parser.add_subparsers(dest="action", required=True)

    parser_create = subparsers.add_parser("create", help="Create cluster, or switch to it.")
    parser_create.add_argument(
        "-1",
        "--dc1-nodes",
        type=helpers.check_non_negative_int_arg,
        default=1,
        help="Number of nodes in data center one (default: 1)",
    )
    parser_create.add_argument(
        "-2",
        "--dc2-nodes",
        type=helpers.check_non_negative_int_arg,
        default=0,
        help="Number of nodes in data center two (default: 0)",
    )
    parser_create.add_argument("--ssl", action="store_true", help="Enable SSL.")
    parser_create.add_argument(
        "--client-auth", action="store_true", help="Require client authentication (with SSL)."
    )

    parser_start = subparsers.add_parser("start", help="Start the active cluster.")
    parser_start.add_argument(
        "--jvm-arg",
        action="append",
        default=[],
        help="JVM argument passed to the nodes (can be repeated).",
    )

    parser_stop = subparsers.add_parser("stop", help="Stop the active cluster.")
    parser_stop.add_argument("--kill", action="store_true", help="Kill the nodes (not gently).")

    subparsers.add_parser("status", help="Show status of the active cluster.")

    parser_contact = subparsers.add_parser(
        "contact-points", help="Show contact points of the active cluster."
    )
    parser_contact.add_argument("--up", action="store_true", help="Only nodes that are up.")

    parser_remove = subparsers.add_parser("remove", help="Remove cluster.")
    parser_remove.add_argument("name", nargs="?", help="Cluster name (default: active cluster)")

    parser_remove_all = subparsers.add_parser(
        "remove-all", help="Remove clusters created by the bridge."
    )
    parser_remove_all.add_argument(
        "--all", action="store_true", help="Remove all clusters, regardless of the name prefix."
    )

    return parser.parse_args(argv)


def _activate_current(ccm_bridge: bridge.Bridge) -> None:
    """Activate in the bridge the cluster that `ccm` considers active."""
    __, active_cluster = ccm_bridge.get_available_clusters()
    if not active_cluster:
        msg = "There is no active cluster."
        raise exceptions.NoActiveClusterError(msg)
    ccm_bridge.switch_cluster(active_cluster)


def run_action(ccm_bridge: bridge.Bridge, args: argparse.Namespace) -> int:
    """Run the action selected on the command line, return exit code."""
    if args.action == "create":
        ccm_bridge.create_cluster(
            data_center_one_nodes=args.dc1_nodes,
            data_center_two_nodes=args.dc2_nodes,
            is_ssl=args.ssl,
            is_client_authentication=args.client_auth,
        )
        LOGGER.info(f"Active cluster: '{ccm_bridge.active_cluster_name}'")
        return 0

    if args.action == "remove-all":
        ccm_bridge.remove_all_clusters(is_all=args.all)
        return 0

    if args.action == "remove" and args.name:
        ccm_bridge.remove_cluster(args.name)
        return 0

    _activate_current(ccm_bridge)

    if args.action == "start":
        if not ccm_bridge.start_cluster(jvm_arguments=args.jvm_arg):
            LOGGER.error(f"Cluster '{ccm_bridge.active_cluster_name}' is not up.")
            return 1
    elif args.action == "stop":
        if not ccm_bridge.stop_cluster(is_kill=args.kill):
            LOGGER.error(f"Cluster '{ccm_bridge.active_cluster_name}' is not down.")
            return 1
    elif args.action == "status":
        status = ccm_bridge.cluster_status()
        status_str = "\n".join(f"{n.name}: {n.state} ({n.ip_address})" for n in status.nodes)
        LOGGER.info(f"Cluster '{ccm_bridge.active_cluster_name}':\n{status_str}")
    elif args.action == "contact-points":
        # Printed to stdout so the value can be used in shell scripts
        print(ccm_bridge.cluster_contact_points(is_all=not args.up))
    elif args.action == "remove":
        ccm_bridge.remove_cluster()

    return 0


def get_bridge() -> bridge.Bridge:
    """Return bridge configured from env variables."""
    return bridge.Bridge()


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(format="%(levelname)s:%(message)s", level=logging.INFO)
    args = get_args(argv)

    try:
        with get_bridge() as ccm_bridge:
            return run_action(ccm_bridge=ccm_bridge, args=args)
    except (exceptions.BridgeError, ValueError):
        LOGGER.exception("Failure")
        return 1


if __name__ == "__main__":
    sys.exit(main())
