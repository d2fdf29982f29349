"""Parsing of `ccm status` and `ccm list` outputs."""

import dataclasses
import enum
import ipaddress
import logging
import re

from ccm_bridge import exceptions

LOGGER = logging.getLogger(__name__)

# E.g. `node1: UP (127.0.0.1)`, `node2: DOWN (Not initialized)`, `node3: DECOMMISSIONED`
_STATUS_LINE_RE = re.compile(
    r"^\s*(?P<name>[\w.-]+)\s*:\s*(?P<state>[A-Za-z_-]+)\s*(?:\(\s*(?P<detail>[^)]*?)\s*\))?\s*$"
)
_NODE_NUM_RE = re.compile(r"^node(?P<num>\d+)$")
_NOT_INITIALIZED = "not initialized"


class NodeState(enum.StrEnum):
    UP = "up"
    DOWN = "down"
    DECOMMISSIONED = "decommissioned"
    UNINITIALIZED = "uninitialized"


@dataclasses.dataclass(frozen=True, order=True)
class NodeStatus:
    name: str
    state: NodeState
    ip_address: str


@dataclasses.dataclass(frozen=True)
class ClusterStatus:
    """Snapshot of node states in the active cluster."""

    nodes_up: frozenset[str] = frozenset()
    nodes_down: frozenset[str] = frozenset()
    nodes_decommissioned: frozenset[str] = frozenset()
    nodes_uninitialized: frozenset[str] = frozenset()
    node_count: int = 0
    nodes: tuple[NodeStatus, ...] = ()

    def all_ip_addresses(self) -> list[str]:
        """Return IP addresses of all nodes, in the order reported by `ccm`."""
        return [n.ip_address for n in self.nodes]

    def up_ip_addresses(self) -> list[str]:
        """Return IP addresses of `UP` nodes, in the order reported by `ccm`."""
        return [n.ip_address for n in self.nodes if n.state == NodeState.UP]

    @property
    def is_up(self) -> bool:
        """Check that there are nodes and all the not decommissioned nodes are `UP`."""
        expected = self.node_count - len(self.nodes_decommissioned)
        return expected > 0 and len(self.nodes_up) == expected

    @property
    def is_down(self) -> bool:
        """Check that no node is `UP`."""
        return not self.nodes_up


def get_node_number(name: str) -> int | None:
    """Return number of the node from its name (`node3` -> 3)."""
    num_match = _NODE_NUM_RE.match(name)
    if not num_match:
        return None
    return int(num_match.group("num"))


def _get_state(state_token: str, detail: str) -> NodeState:
    state = state_token.lower()
    if state == "up":
        return NodeState.UP
    if state == "decommissioned":
        return NodeState.DECOMMISSIONED
    if state == "down" and detail.lower() != _NOT_INITIALIZED:
        return NodeState.DOWN
    # Unknown states are treated as uninitialized, `ccm` may introduce new states over time
    return NodeState.UNINITIALIZED


def _get_ip_address(name: str, detail: str, ip_prefix: str) -> str:
    if detail:
        try:
            return str(ipaddress.IPv4Address(detail))
        except ValueError:
            pass

    # Derive address from the node number, `ccm` assigns `<prefix><N>` to `node<N>`
    node_num = get_node_number(name)
    if ip_prefix and node_num is not None:
        return f"{ip_prefix}{node_num}"

    return name


def parse_status_line(line: str, *, ip_prefix: str = "") -> NodeStatus | None:
    """Parse single line of `ccm status` output, return `None` if the line is not a node line."""
    match = _STATUS_LINE_RE.match(line)
    if not match:
        return None

    name = match.group("name")
    # Header line like `Cluster: 'name'` has the same shape
    if name.lower() == "cluster":
        return None

    detail = match.group("detail") or ""
    return NodeStatus(
        name=name,
        state=_get_state(match.group("state"), detail),
        ip_address=_get_ip_address(name, detail, ip_prefix),
    )


def parse_cluster_status(text: str, *, ip_prefix: str = "") -> ClusterStatus:
    """Parse output of `ccm status` into structured snapshot."""
    nodes: list[NodeStatus] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        node_status = parse_status_line(line, ip_prefix=ip_prefix)
        if node_status is None:
            LOGGER.debug("Skipping unrecognized status line: %r", line)
            continue
        nodes.append(node_status)

    by_state: dict[NodeState, set[str]] = {s: set() for s in NodeState}
    for node_status in nodes:
        by_state[node_status.state].add(node_status.ip_address)

    status = ClusterStatus(
        nodes_up=frozenset(by_state[NodeState.UP]),
        nodes_down=frozenset(by_state[NodeState.DOWN]),
        nodes_decommissioned=frozenset(by_state[NodeState.DECOMMISSIONED]),
        nodes_uninitialized=frozenset(by_state[NodeState.UNINITIALIZED]),
        node_count=len(nodes),
        nodes=tuple(nodes),
    )

    # Every classified node must be present in exactly one of the sets
    classified = len(set().union(*by_state.values()))
    if classified != status.node_count:
        msg = (
            f"Cluster status mismatch: {status.node_count} nodes parsed, but {classified} "
            f"distinct addresses classified:\n{text}"
        )
        raise exceptions.StatusParseError(msg)

    return status


def parse_cluster_list(text: str) -> tuple[list[str], str]:
    """Parse output of `ccm list`, return available clusters and the active cluster.

    The active cluster is marked with `*`.
    """
    clusters: list[str] = []
    active = ""
    for line in text.splitlines():
        name = line.strip()
        if not name:
            continue
        if name.startswith("*"):
            name = name[1:].strip()
            active = name
        # Cluster names can't contain whitespace, anything else is not a cluster line
        if not name or any(c.isspace() for c in name):
            LOGGER.debug("Skipping unrecognized cluster list line: %r", line)
            continue
        clusters.append(name)
    return clusters, active
