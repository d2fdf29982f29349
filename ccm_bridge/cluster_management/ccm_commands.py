"""Construction of `ccm` commands.

All functions here are pure, they only return argument vectors. The first item of every vector
is the `ccm` executable.
"""

import dataclasses
import typing as tp

from ccm_bridge import exceptions
from ccm_bridge.utils import configuration
from ccm_bridge.utils import helpers
from ccm_bridge.utils import versions

JMX_PORT_BASE = 7000
REMOTE_DEBUG_PORT_BASE = 2000
PORT_STEP = 100

# Version boundaries used in version-dependent commands
VERSION_2_0 = versions.EngineVersion("2.0.0")
VERSION_2_1 = versions.EngineVersion("2.1.0")
VERSION_2_2 = versions.EngineVersion("2.2.0")
VERSION_3_0 = versions.EngineVersion("3.0.0")
VERSION_3_12 = versions.EngineVersion("3.12.0")
VERSION_4_0 = versions.EngineVersion("4.0.0a1")

# Lines in `ccm` output indicating that the command failed
FAILURE_MARKERS: tp.Final[tuple[str, ...]] = (
    "Traceback (most recent call last):",
    "Usage: ccm",
    "ccm: error:",
    "Cannot create existing cluster",
    "Unknown cluster",
    "No current cluster",
)

WAIT_START_ARGS: tp.Final[tuple[str, ...]] = ("--wait-other-notice", "--wait-for-binary-proto")


@dataclasses.dataclass(frozen=True, order=True)
class ClusterTopology:
    """Nodes in each data center, TLS and client authentication of a cluster."""

    dc1_nodes: int = 1
    dc2_nodes: int = 0
    use_tls: bool = False
    use_client_auth: bool = False
    engine_version: versions.EngineVersion | None = dataclasses.field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.dc1_nodes < 1:
            msg = f"Data center one needs at least one node, got {self.dc1_nodes}."
            raise ValueError(msg)
        if self.dc2_nodes < 0:
            msg = f"Invalid number of nodes for data center two: {self.dc2_nodes}."
            raise ValueError(msg)
        if self.node_count > configuration.NODE_LIMIT:
            msg = (
                f"Cluster with {self.node_count} nodes exceeds the node limit "
                f"of {configuration.NODE_LIMIT}."
            )
            raise exceptions.CapacityError(msg)

    @property
    def node_count(self) -> int:
        return self.dc1_nodes + self.dc2_nodes

    @property
    def has_client_auth(self) -> bool:
        """Client authentication is an SSL option, it is ignored without SSL."""
        return self.use_tls and self.use_client_auth


def generate_cluster_name(prefix: str, topology: ClusterTopology) -> str:
    """Generate cluster name, e.g. `cpp-driver_3_2_nodes_ssl_auth`."""
    name = f"{prefix}_{topology.dc1_nodes}_{topology.dc2_nodes}_nodes"
    if topology.use_tls:
        name = f"{name}_ssl"
        if topology.has_client_auth:
            name = f"{name}_auth"
    return name


def generate_cluster_nodes(topology: ClusterTopology) -> str:
    """Generate the nodes parameter of the create command (e.g. `3` or `3:2`)."""
    if topology.dc2_nodes > 0:
        return f"{topology.dc1_nodes}:{topology.dc2_nodes}"
    return str(topology.dc1_nodes)


def check_node(node: int) -> int:
    if not 1 <= node <= configuration.NODE_LIMIT:
        msg = f"Invalid node {node}, must be in range 1 - {configuration.NODE_LIMIT}."
        raise ValueError(msg)
    return node


def generate_node_name(node: int) -> str:
    """Generate name of the node for `ccm` node commands."""
    return f"node{check_node(node)}"


def get_ip_prefix(host: str) -> str:
    """Return IP address prefix of the host, e.g. `127.0.0.` for `127.0.0.1`."""
    return host[: host.rfind(".") + 1]


def get_node_ip(ip_prefix: str, node: int) -> str:
    return f"{ip_prefix}{node}"


def get_version_arg(
    *,
    cassandra_version: versions.EngineVersion,
    dse_version: versions.EngineVersion,
    use_git: bool,
    use_dse: bool,
) -> str:
    """Return value of the `-v` argument of the create command."""
    if use_dse:
        return f"git:{dse_version.parsed.base_version}" if use_git else str(dse_version)
    if use_git:
        return f"git:cassandra-{cassandra_version.parsed.base_version}"
    return str(cassandra_version)


def create_cluster_command(
    *,
    ccm: str,
    cluster_name: str,
    topology: ClusterTopology,
    ip_prefix: str,
    version_arg: str,
    use_dse: bool = False,
    dse_credentials_type: configuration.DseCredentialsType = (
        configuration.DseCredentialsType.USERNAME_PASSWORD
    ),
    dse_username: str = "",
    dse_password: str = "",
    ssl_path: str = configuration.SSL_PATH,
) -> list[str]:
    """Return the cluster create command."""
    cmd = [ccm, "create", "-v", version_arg]

    if use_dse:
        cmd.append("--dse")
        # With INI file credentials, `ccm` reads the credentials from `~/.ccm/.dse.ini`
        if dse_credentials_type == configuration.DseCredentialsType.USERNAME_PASSWORD:
            cmd.extend([f"--dse-username={dse_username}", f"--dse-password={dse_password}"])

    cmd.extend(["-n", generate_cluster_nodes(topology), "-i", ip_prefix, "-b"])

    if topology.use_tls:
        cmd.append(f"--ssl={ssl_path}")
        if topology.has_client_auth:
            cmd.append("--require_client_auth")

    cmd.append(cluster_name)
    return cmd


def updateconf_command(
    *, ccm: str, key_value_pairs: tp.Iterable[str], is_dse: bool = False
) -> list[str]:
    """Return command updating `cassandra.yaml` (or `dse.yaml`) of the active cluster."""
    pairs = [str(p) for p in key_value_pairs]
    for pair in pairs:
        if ":" not in pair:
            msg = f"Invalid configuration pair '{pair}', expected `key:value`."
            raise ValueError(msg)
    return [ccm, "updatedseconf" if is_dse else "updateconf", *pairs]


def get_create_updateconf_pairs(cassandra_version: versions.EngineVersion) -> list[str]:
    """Return configuration suitable for test clusters for the given Cassandra version."""
    pairs = [
        "read_request_timeout_in_ms:10000",
        "write_request_timeout_in_ms:10000",
        "request_timeout_in_ms:10000",
        "phi_convict_threshold:16",
        "hinted_handoff_enabled:false",
        "dynamic_snitch_update_interval_in_ms:1000",
        "native_transport_max_threads:1",
        "concurrent_reads:2",
        "concurrent_writes:2",
        "concurrent_compactors:1",
        "compaction_throughput_mb_per_sec:0",
        "key_cache_size_in_mb:0",
        "key_cache_save_period:0",
        "memtable_flush_writers:1",
        "max_hints_delivery_threads:1",
    ]

    if cassandra_version < VERSION_2_0:
        pairs.extend(
            [
                "reduce_cache_sizes_at:0",
                "reduce_cache_capacity_to:0",
                "flush_largest_memtables_at:0",
                "index_interval:512",
            ]
        )
    else:
        pairs.extend(["cas_contention_timeout_in_ms:10000", "file_cache_size_in_mb:0"])

    if cassandra_version < VERSION_2_1:
        pairs.append("in_memory_compaction_limit_in_mb:1")

    # Thrift was removed in 4.0
    if cassandra_version < VERSION_4_0:
        pairs.extend(["rpc_min_threads:1", "rpc_max_threads:1"])

    if cassandra_version >= VERSION_2_2:
        pairs.append("enable_user_defined_functions:true")
    if VERSION_3_0 <= cassandra_version < VERSION_4_0:
        pairs.append("enable_scripted_user_defined_functions:true")
    if cassandra_version >= VERSION_4_0:
        pairs.append("enable_materialized_views:true")

    return pairs


def create_updateconf_command(
    *, ccm: str, cassandra_version: versions.EngineVersion
) -> list[str]:
    """Return the update configuration command issued after a cluster is created."""
    return updateconf_command(
        ccm=ccm, key_value_pairs=get_create_updateconf_pairs(cassandra_version)
    )


def start_cluster_command(*, ccm: str, jvm_arguments: tp.Iterable[str] = ()) -> list[str]:
    return [ccm, "start", *WAIT_START_ARGS, *helpers.join_flag("--jvm_arg", jvm_arguments)]


def stop_cluster_command(*, ccm: str, is_kill: bool = False) -> list[str]:
    cmd = [ccm, "stop"]
    if is_kill:
        cmd.append("--not-gently")
    return cmd


def clear_cluster_command(*, ccm: str) -> list[str]:
    return [ccm, "clear"]


def list_clusters_command(*, ccm: str) -> list[str]:
    return [ccm, "list"]


def switch_cluster_command(*, ccm: str, cluster_name: str) -> list[str]:
    return [ccm, "switch", cluster_name]


def remove_cluster_command(*, ccm: str, cluster_name: str) -> list[str]:
    return [ccm, "remove", cluster_name]


def status_command(*, ccm: str) -> list[str]:
    return [ccm, "status"]


def add_node_command(
    *,
    ccm: str,
    node: int,
    ip_prefix: str,
    data_center: str = "",
    use_dse: bool = False,
) -> list[str]:
    """Return command adding the node to the active cluster (with auto-bootstrap enabled)."""
    cmd = [
        ccm,
        "add",
        "-b",
        "-i",
        get_node_ip(ip_prefix, node),
        "-j",
        str(JMX_PORT_BASE + PORT_STEP * node),
        "-r",
        str(REMOTE_DEBUG_PORT_BASE + PORT_STEP * node),
    ]
    if data_center:
        cmd.extend(["-d", data_center])
    if use_dse:
        cmd.append("--dse")
    cmd.append(generate_node_name(node))
    return cmd


def node_command(*, ccm: str, node: int, args: tp.Iterable[str]) -> list[str]:
    """Return command for the given node, e.g. `ccm node1 pause`."""
    return [ccm, generate_node_name(node), *args]


def start_node_command(*, ccm: str, node: int, jvm_arguments: tp.Iterable[str] = ()) -> list[str]:
    return node_command(
        ccm=ccm,
        node=node,
        args=["start", *WAIT_START_ARGS, *helpers.join_flag("--jvm_arg", jvm_arguments)],
    )


def stop_node_command(*, ccm: str, node: int, is_kill: bool = False) -> list[str]:
    args = ["stop"]
    if is_kill:
        args.append("--not-gently")
    return node_command(ccm=ccm, node=node, args=args)


def decommission_node_command(
    *, ccm: str, node: int, cassandra_version: versions.EngineVersion
) -> list[str]:
    args = ["decommission"]
    # Newer versions refuse to decommission without `--force` when the RF can't be satisfied
    if cassandra_version >= VERSION_3_12:
        args.append("--force")
    return node_command(ccm=ccm, node=node, args=args)


def nodetool_command(*, ccm: str, node: int, nodetool_args: tp.Iterable[str]) -> list[str]:
    return node_command(ccm=ccm, node=node, args=["nodetool", *nodetool_args])


def cql_command(*, ccm: str, node: int, cql: str) -> list[str]:
    """Return command executing the CQL statement on the node."""
    return node_command(ccm=ccm, node=node, args=["cqlsh", "-x", cql])


def cassandra_version_command(*, ccm: str, node: int = 1) -> list[str]:
    return node_command(ccm=ccm, node=node, args=["versionfrombuild"])


def dse_version_command(*, ccm: str, node: int = 1) -> list[str]:
    return node_command(ccm=ccm, node=node, args=["dse", "-v"])


def find_tool_failure(output: str) -> str:
    """Return the first line of output indicating that `ccm` failed, or empty string."""
    for line in output.splitlines():
        stripped = line.strip()
        if any(stripped.startswith(m) for m in FAILURE_MARKERS):
            return stripped
    return ""


def parse_cluster_name(prefix: str, cluster_name: str) -> ClusterTopology | None:
    """Return topology encoded in the cluster name, or `None` for names not generated here."""
    remainder = cluster_name.removeprefix(f"{prefix}_")
    if remainder == cluster_name:
        return None

    parts = remainder.split("_")
    if len(parts) < 3 or parts[2] != "nodes" or not (parts[0].isdigit() and parts[1].isdigit()):
        return None

    flags = parts[3:]
    if flags not in ([], ["ssl"], ["ssl", "auth"]):
        return None

    try:
        return ClusterTopology(
            dc1_nodes=int(parts[0]),
            dc2_nodes=int(parts[1]),
            use_tls="ssl" in flags,
            use_client_auth="auth" in flags,
        )
    except (ValueError, exceptions.CapacityError):
        return None
