"""Lifecycle management of CCM test clusters.

This module provides the `Bridge` class, which is the main interface for tests to create, start,
stop and remove clusters of Cassandra (or DSE) nodes. The `Bridge` drives the `ccm` tool through
a `CommandTransport`, so the same operations work whether `ccm` runs on the local machine or on
a remote host reached over SSH.

The `Bridge` keeps its own state about the active cluster and its node slots. Only one cluster is
active at a time, mirroring the `ccm` model.
"""

import dataclasses
import enum
import logging
import shlex
import time
import typing as tp

from ccm_bridge import exceptions
from ccm_bridge.cluster_management import ccm_commands
from ccm_bridge.cluster_management import cluster_status
from ccm_bridge.cluster_management import node_slots
from ccm_bridge.cluster_management import transport as transport_mod
from ccm_bridge.utils import configuration
from ccm_bridge.utils import framework_log
from ccm_bridge.utils import helpers
from ccm_bridge.utils import locking
from ccm_bridge.utils import types as ttypes
from ccm_bridge.utils import versions

LOGGER = logging.getLogger(__name__)


class ClusterLifecycle(enum.StrEnum):
    NONE = "none"
    CREATED = "created"
    CONFIGURED = "configured"
    STARTED = "started"
    STOPPED = "stopped"
    REMOVED = "removed"


@dataclasses.dataclass
class ActiveClusterState:
    """State of the active cluster, owned by a single `Bridge` instance."""

    cassandra_version: versions.EngineVersion
    dse_version: versions.EngineVersion
    cluster_name: str | None = None
    topology: ccm_commands.ClusterTopology | None = None
    lifecycle: ClusterLifecycle = ClusterLifecycle.NONE


_SLOT_STATES: tp.Final[dict[cluster_status.NodeState, node_slots.SlotState]] = {
    cluster_status.NodeState.UP: node_slots.SlotState.STARTED,
    cluster_status.NodeState.DOWN: node_slots.SlotState.STOPPED,
    cluster_status.NodeState.DECOMMISSIONED: node_slots.SlotState.DECOMMISSIONED,
    cluster_status.NodeState.UNINITIALIZED: node_slots.SlotState.ADDED,
}


class Bridge:
    """Set of lifecycle methods for CCM clusters and their nodes."""

    def __init__(
        self,
        config: configuration.BridgeConfig | None = None,
        *,
        transport: transport_mod.CommandTransport | None = None,
        **overrides: tp.Any,
    ) -> None:
        config = config or configuration.BridgeConfig()
        if overrides:
            config = config.replace(**overrides)
        self.config = config

        self.transport = transport or transport_mod.get_transport(config)
        self.ccm = config.ccm_executable
        self.ip_prefix = ccm_commands.get_ip_prefix(config.host)

        dse_version = versions.EngineVersion(config.dse_version)
        cassandra_version = (
            versions.get_dse_cassandra_version(dse_version)
            if config.use_dse
            else versions.EngineVersion(config.cassandra_version)
        )
        self.state = ActiveClusterState(
            cassandra_version=cassandra_version, dse_version=dse_version
        )
        self.node_slots = node_slots.NodeSlots()

    @property
    def active_cluster_name(self) -> str | None:
        return self.state.cluster_name

    @property
    def engine_version(self) -> versions.EngineVersion:
        return self.state.dse_version if self.config.use_dse else self.state.cassandra_version

    def _execute_ccm_command(self, argv: ttypes.ArgvType) -> str:
        """Execute `ccm` command and check its output for reported failures."""
        with locking.ccm_lock(self.config.lock_file):
            output = self.transport.execute(argv)

        failure = ccm_commands.find_tool_failure(output)
        if failure:
            msg = f"Command `{shlex.join(argv)}` failed: {failure}"
            raise exceptions.ToolReportedFailure(msg, argv=argv, output=output)

        return output

    def _require_active_cluster(self) -> str:
        if not self.state.cluster_name:
            msg = "There is no active cluster, create or switch to a cluster first."
            raise exceptions.NoActiveClusterError(msg)
        return self.state.cluster_name

    def _node_ip(self, node: int) -> str:
        return ccm_commands.get_node_ip(self.ip_prefix, ccm_commands.check_node(node))

    def _query_status(self) -> cluster_status.ClusterStatus:
        output = self._execute_ccm_command(ccm_commands.status_command(ccm=self.ccm))
        return cluster_status.parse_cluster_status(output, ip_prefix=self.ip_prefix)

    def _poll_status(
        self, predicate: tp.Callable[[cluster_status.ClusterStatus], bool], description: str
    ) -> bool:
        """Query status until the predicate holds or the retries are exhausted."""
        retries = self.config.retries
        for attempt in range(1, retries + 1):
            if predicate(self._query_status()):
                LOGGER.debug(f"{description}: confirmed on attempt {attempt}.")
                return True
            if attempt < retries:
                time.sleep(self.config.nap_ms / 1000)

        LOGGER.warning(f"{description}: not confirmed after {retries} attempts.")
        framework_log.framework_logger().warning(
            f"Cluster '{self.state.cluster_name}': {description} not confirmed "
            f"after {retries} attempts."
        )
        return False

    def _sync_node_slots(self) -> cluster_status.ClusterStatus:
        """Rebuild node slots bookkeeping from status of the active cluster."""
        status = self._query_status()
        self.node_slots.reset()
        for node_status in status.nodes:
            node_num = cluster_status.get_node_number(node_status.name)
            if node_num is None or not 1 <= node_num <= self.node_slots.limit:
                LOGGER.warning(f"Node '{node_status.name}' doesn't fit into a node slot.")
                continue
            self.node_slots.set_state(node_num, _SLOT_STATES[node_status.state])
        return status

    def _activate(self, cluster_name: str) -> None:
        """Make the cluster active in the bridge state (the cluster is active in `ccm`)."""
        self.state.cluster_name = cluster_name
        self.state.topology = ccm_commands.parse_cluster_name(
            self.config.cluster_prefix, cluster_name
        )

        status = self._sync_node_slots()
        if status.nodes_up:
            self.state.lifecycle = ClusterLifecycle.STARTED
        elif status.node_count == len(status.nodes_uninitialized):
            self.state.lifecycle = ClusterLifecycle.CONFIGURED
        else:
            self.state.lifecycle = ClusterLifecycle.STOPPED

    def _clear_state(self) -> None:
        self.state.cluster_name = None
        self.state.topology = None
        self.state.lifecycle = ClusterLifecycle.REMOVED
        self.node_slots.reset()

    def get_available_clusters(self) -> tuple[list[str], str]:
        """Return list of clusters known to `ccm` and the cluster `ccm` considers active."""
        output = self._execute_ccm_command(ccm_commands.list_clusters_command(ccm=self.ccm))
        return cluster_status.parse_cluster_list(output)

    def get_ip_prefix(self) -> str:
        """Return IP address prefix (e.g. `127.0.0.`) of the cluster nodes."""
        return self.ip_prefix

    def cluster_status(self) -> cluster_status.ClusterStatus:
        """Return status of nodes in the active cluster."""
        self._require_active_cluster()
        return self._query_status()

    def cluster_ip_addresses(self, is_all: bool = True) -> list[str]:
        """Return IP addresses of all nodes (or just `UP` nodes) in the active cluster."""
        status = self.cluster_status()
        return status.all_ip_addresses() if is_all else status.up_ip_addresses()

    def cluster_contact_points(self, is_all: bool = True) -> str:
        """Return comma separated IP addresses of nodes in the active cluster."""
        return ",".join(self.cluster_ip_addresses(is_all=is_all))

    def create_cluster(
        self,
        data_center_one_nodes: int = 1,
        data_center_two_nodes: int = 0,
        is_ssl: bool = False,
        is_client_authentication: bool = False,
    ) -> bool:
        """Create a cluster, or switch to it when it already exists.

        Returns:
            bool: True if the cluster was created or switched to; False if it was already the
                active cluster.
        """
        topology = ccm_commands.ClusterTopology(
            dc1_nodes=data_center_one_nodes,
            dc2_nodes=data_center_two_nodes,
            use_tls=is_ssl,
            use_client_auth=is_client_authentication,
            engine_version=self.engine_version,
        )
        return self.create_cluster_from_topology(topology)

    def create_cluster_from_topology(self, topology: ccm_commands.ClusterTopology) -> bool:
        """Create a cluster with the given topology, or switch to it when it already exists."""
        if topology.engine_version is None:
            topology = dataclasses.replace(topology, engine_version=self.engine_version)
        cluster_name = ccm_commands.generate_cluster_name(self.config.cluster_prefix, topology)

        clusters, active_cluster = self.get_available_clusters()
        if cluster_name in clusters:
            was_active = active_cluster == cluster_name and self.state.cluster_name == cluster_name
            self.switch_cluster(cluster_name)
            self.state.topology = topology
            return not was_active

        # Nodes of all clusters share the same addresses, the running cluster must be stopped
        if active_cluster:
            LOGGER.info(f"Stopping active cluster '{active_cluster}'.")
            self._execute_ccm_command(ccm_commands.stop_cluster_command(ccm=self.ccm))
            self._poll_status(lambda s: s.is_down, f"Cluster '{active_cluster}' down")

        LOGGER.info(f"Creating cluster '{cluster_name}'.")
        self._execute_ccm_command(
            ccm_commands.create_cluster_command(
                ccm=self.ccm,
                cluster_name=cluster_name,
                topology=topology,
                ip_prefix=self.ip_prefix,
                version_arg=ccm_commands.get_version_arg(
                    cassandra_version=self.state.cassandra_version,
                    dse_version=self.state.dse_version,
                    use_git=self.config.use_git,
                    use_dse=self.config.use_dse,
                ),
                use_dse=self.config.use_dse,
                dse_credentials_type=tp.cast(
                    configuration.DseCredentialsType, self.config.dse_credentials_type
                ),
                dse_username=self.config.dse_username,
                dse_password=self.config.dse_password,
                ssl_path=self.config.ssl_path,
            )
        )
        self.state.cluster_name = cluster_name
        self.state.topology = topology
        self.state.lifecycle = ClusterLifecycle.CREATED
        self.node_slots.reset()
        self.node_slots.occupy(range(1, topology.node_count + 1))

        self._execute_ccm_command(
            ccm_commands.create_updateconf_command(
                ccm=self.ccm, cassandra_version=self.state.cassandra_version
            )
        )
        self.state.lifecycle = ClusterLifecycle.CONFIGURED

        framework_log.framework_logger().info(f"Created cluster '{cluster_name}'.")
        return True

    def switch_cluster(self, cluster_name: str) -> bool:
        """Switch to another available cluster.

        Returns:
            bool: True if switched or the cluster is already active; False if the cluster
                doesn't exist.
        """
        clusters, active_cluster = self.get_available_clusters()
        if cluster_name not in clusters:
            LOGGER.warning(f"Cannot switch to unknown cluster '{cluster_name}'.")
            return False

        if cluster_name != active_cluster:
            LOGGER.info(f"Switching to cluster '{cluster_name}'.")
            self._execute_ccm_command(
                ccm_commands.switch_cluster_command(ccm=self.ccm, cluster_name=cluster_name)
            )
            framework_log.framework_logger().info(f"Switched to cluster '{cluster_name}'.")

        self._activate(cluster_name)
        return True

    def update_cluster_configuration(
        self, key_value_pairs: tp.Sequence[str] | tp.Mapping[str, tp.Any], is_dse: bool = False
    ) -> None:
        """Update configuration (`cassandra.yaml`, or `dse.yaml` if `is_dse`) of the cluster."""
        self._require_active_cluster()
        if isinstance(key_value_pairs, tp.Mapping):
            pairs = [f"{k}:{v}" for k, v in key_value_pairs.items()]
        else:
            pairs = list(key_value_pairs)
        self._execute_ccm_command(
            ccm_commands.updateconf_command(ccm=self.ccm, key_value_pairs=pairs, is_dse=is_dse)
        )

    def clear_cluster_data(self) -> None:
        """Clear data of the active cluster; the cluster is stopped as a side effect."""
        cluster_name = self._require_active_cluster()
        LOGGER.info(f"Clearing data of cluster '{cluster_name}'.")
        self._execute_ccm_command(ccm_commands.clear_cluster_command(ccm=self.ccm))
        self.state.lifecycle = ClusterLifecycle.CONFIGURED
        self.node_slots.set_running_state(node_slots.SlotState.ADDED)

    def is_cluster_up(self) -> bool:
        """Check (repeatedly) that all nodes of the active cluster are ready."""
        cluster_name = self._require_active_cluster()
        return self._poll_status(lambda s: s.is_up, f"Cluster '{cluster_name}' up")

    def is_cluster_down(self) -> bool:
        """Check (repeatedly) that no node of the active cluster accepts connections."""
        cluster_name = self._require_active_cluster()
        return self._poll_status(lambda s: s.is_down, f"Cluster '{cluster_name}' down")

    def start_cluster(self, jvm_arguments: ttypes.JvmArgsType = None) -> bool:
        """Start the active cluster and wait for it to be up."""
        cluster_name = self._require_active_cluster()
        LOGGER.info(f"Starting cluster '{cluster_name}'.")
        self._execute_ccm_command(
            ccm_commands.start_cluster_command(
                ccm=self.ccm, jvm_arguments=helpers.as_list(jvm_arguments)
            )
        )

        is_up = self.is_cluster_up()
        if is_up:
            self.state.lifecycle = ClusterLifecycle.STARTED
            self.node_slots.set_running_state(node_slots.SlotState.STARTED)
        return is_up

    def stop_cluster(self, is_kill: bool = False) -> bool:
        """Stop the active cluster and wait for it to be down."""
        cluster_name = self._require_active_cluster()
        LOGGER.info(f"Stopping cluster '{cluster_name}' (kill: {is_kill}).")
        self._execute_ccm_command(ccm_commands.stop_cluster_command(ccm=self.ccm, is_kill=is_kill))

        is_down = self.is_cluster_down()
        if is_down:
            self.state.lifecycle = ClusterLifecycle.STOPPED
            self.node_slots.set_running_state(node_slots.SlotState.STOPPED)
        return is_down

    def kill_cluster(self) -> bool:
        return self.stop_cluster(is_kill=True)

    def remove_cluster(self, cluster_name: str | None = None) -> None:
        """Remove the given cluster, or the active cluster if no name is given."""
        if cluster_name is None:
            cluster_name = self._require_active_cluster()

        LOGGER.info(f"Removing cluster '{cluster_name}'.")
        self._execute_ccm_command(
            ccm_commands.remove_cluster_command(ccm=self.ccm, cluster_name=cluster_name)
        )
        if cluster_name == self.state.cluster_name:
            self._clear_state()
        framework_log.framework_logger().info(f"Removed cluster '{cluster_name}'.")

    def remove_all_clusters(self, is_all: bool = False) -> None:
        """Remove clusters generated by the bridge (all available clusters if `is_all`)."""
        clusters, __ = self.get_available_clusters()
        prefix = f"{self.config.cluster_prefix}_"
        for cluster_name in clusters:
            if is_all or cluster_name.startswith(prefix):
                self.remove_cluster(cluster_name)

    def add_node(self, data_center: str = "") -> int:
        """Add a node to the active cluster.

        Returns:
            int: Node (slot) added to the cluster.
        """
        self._require_active_cluster()
        # Fails without changing any state when there is no free slot
        node = self.node_slots.next_free()
        LOGGER.info(f"Adding node {node} (data center: '{data_center or 'default'}').")
        self._execute_ccm_command(
            ccm_commands.add_node_command(
                ccm=self.ccm,
                node=node,
                ip_prefix=self.ip_prefix,
                data_center=data_center,
                use_dse=self.config.use_dse,
            )
        )
        self.node_slots.set_state(node, node_slots.SlotState.ADDED)
        return node

    def bootstrap_node(self, jvm_argument: str = "", data_center: str = "") -> int:
        """Add a node to the active cluster and start it.

        Returns:
            int: Node (slot) added to the cluster.
        """
        node = self.add_node(data_center=data_center)
        if not self.start_node(node, jvm_arguments=jvm_argument):
            msg = f"Bootstrapped node {node} is not up."
            raise exceptions.NotReadyTimeout(msg)
        return node

    def remove_node(self, node: int) -> None:
        """Remove a node from the active cluster and free its slot."""
        self._require_active_cluster()
        LOGGER.info(f"Removing node {node}.")
        self._execute_ccm_command(
            ccm_commands.node_command(ccm=self.ccm, node=node, args=["remove"])
        )
        self.node_slots.release(node)

    def _update_slot(self, node: int, state: node_slots.SlotState) -> None:
        if self.node_slots.get_state(node) != node_slots.SlotState.FREE:
            self.node_slots.set_state(node, state)

    def start_node(self, node: int, jvm_arguments: ttypes.JvmArgsType = None) -> bool:
        """Start a node of the active cluster and wait for it to be up."""
        self._require_active_cluster()
        LOGGER.info(f"Starting node {node}.")
        self._execute_ccm_command(
            ccm_commands.start_node_command(
                ccm=self.ccm, node=node, jvm_arguments=helpers.as_list(jvm_arguments)
            )
        )
        is_up = self.is_node_up(node)
        if is_up:
            self._update_slot(node, node_slots.SlotState.STARTED)
        return is_up

    def stop_node(self, node: int, is_kill: bool = False) -> bool:
        """Stop a node of the active cluster and wait for it to be down."""
        self._require_active_cluster()
        LOGGER.info(f"Stopping node {node} (kill: {is_kill}).")
        self._execute_ccm_command(
            ccm_commands.stop_node_command(ccm=self.ccm, node=node, is_kill=is_kill)
        )
        is_down = self.is_node_down(node)
        if is_down:
            self._update_slot(node, node_slots.SlotState.STOPPED)
        return is_down

    def kill_node(self, node: int) -> bool:
        return self.stop_node(node, is_kill=True)

    def decommission_node(self, node: int) -> bool:
        """Decommission a node of the active cluster.

        Returns:
            bool: True if the node is reported as decommissioned; False otherwise.
        """
        self._require_active_cluster()
        LOGGER.info(f"Decommissioning node {node}.")
        self._execute_ccm_command(
            ccm_commands.decommission_node_command(
                ccm=self.ccm, node=node, cassandra_version=self.state.cassandra_version
            )
        )
        self._update_slot(node, node_slots.SlotState.DECOMMISSIONED)
        return self.is_node_decommissioned(node)

    def pause_node(self, node: int) -> None:
        self._require_active_cluster()
        self._execute_ccm_command(
            ccm_commands.node_command(ccm=self.ccm, node=node, args=["pause"])
        )

    def resume_node(self, node: int) -> None:
        self._require_active_cluster()
        self._execute_ccm_command(
            ccm_commands.node_command(ccm=self.ccm, node=node, args=["resume"])
        )

    def _nodetool(self, node: int, *nodetool_args: str) -> None:
        self._require_active_cluster()
        self._execute_ccm_command(
            ccm_commands.nodetool_command(ccm=self.ccm, node=node, nodetool_args=nodetool_args)
        )

    def disable_node_binary_protocol(self, node: int) -> None:
        self._nodetool(node, "disablebinary")

    def enable_node_binary_protocol(self, node: int) -> None:
        self._nodetool(node, "enablebinary")

    def disable_node_gossip(self, node: int) -> None:
        self._nodetool(node, "disablegossip")

    def enable_node_gossip(self, node: int) -> None:
        self._nodetool(node, "enablegossip")

    def execute_cql_on_node(self, node: int, cql: str) -> str:
        """Execute CQL statement on the node, return output of `cqlsh`."""
        self._require_active_cluster()
        return self._execute_ccm_command(ccm_commands.cql_command(ccm=self.ccm, node=node, cql=cql))

    def is_node_available(self, node: int) -> bool:
        """Check that native transport port of the node accepts connections."""
        return helpers.is_port_open(
            self._node_ip(node),
            self.config.native_transport_port,
            timeout=self.config.node_check_timeout,
        )

    def is_node_up(self, node: int) -> bool:
        """Check (repeatedly) that the node is ready to accept connections.

        The node must be reported `UP` by `ccm` and its native transport port must be open.
        """
        self._require_active_cluster()
        node_ip = self._node_ip(node)
        return self._poll_status(
            lambda s: node_ip in s.nodes_up and self.is_node_available(node), f"Node {node} up"
        )

    def is_node_down(self, node: int) -> bool:
        """Check (repeatedly) that the node no longer accepts connections."""
        self._require_active_cluster()
        node_ip = self._node_ip(node)
        return self._poll_status(
            lambda s: node_ip not in s.nodes_up and not self.is_node_available(node),
            f"Node {node} down",
        )

    def is_node_decommissioned(self, node: int) -> bool:
        return self._node_ip(node) in self.cluster_status().nodes_decommissioned

    def get_cassandra_version(self) -> versions.EngineVersion:
        """Get Cassandra version from the active cluster."""
        self._require_active_cluster()
        output = self._execute_ccm_command(ccm_commands.cassandra_version_command(ccm=self.ccm))
        cassandra_version = versions.parse_version_output(
            output, markers=(versions.RELEASE_VERSION_MARKER,)
        )
        self.state.cassandra_version = cassandra_version
        return cassandra_version

    def get_dse_version(self) -> versions.EngineVersion:
        """Get DSE version from the active cluster."""
        self._require_active_cluster()
        output = self._execute_ccm_command(ccm_commands.dse_version_command(ccm=self.ccm))
        dse_version = versions.parse_version_output(
            output, markers=(versions.DSE_VERSION_MARKER,)
        )
        self.state.dse_version = dse_version
        return dse_version

    def close(self) -> None:
        """Release the transport (and the SSH session, if any)."""
        self.transport.close()

    def __enter__(self) -> "Bridge":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"<Bridge: cluster={self.state.cluster_name}, "
            f"lifecycle={self.state.lifecycle}, "
            f"engine={self.engine_version}, "
            f"deployment={self.config.deployment_type}>"
        )
