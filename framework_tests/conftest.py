import typing as tp

import pytest

from ccm_bridge.cluster_management import bridge
from ccm_bridge.cluster_management import transport
from ccm_bridge.utils import helpers
from ccm_bridge.utils import types as ttypes

USAGE = "Usage: ccm <cluster_cmd> [options]"

_STATUS_TEXT = {
    "up": "UP",
    "down": "DOWN",
    "uninitialized": "DOWN (Not initialized)",
    "decommissioned": "DECOMMISSIONED",
}


def _get_opt(argv: tp.Sequence[str], opt: str) -> str:
    return argv[argv.index(opt) + 1] if opt in argv else ""


class FakeCcm(transport.CommandTransport):
    """In-memory imitation of the `ccm` tool.

    Clusters are kept as `{cluster name: {node name: (state, ip address)}}`.
    """

    def __init__(self, ip_prefix: str = "127.0.0.") -> None:
        self.ip_prefix = ip_prefix
        self.clusters: dict[str, dict[str, tuple[str, str]]] = {}
        self.active = ""
        self.calls: list[list[str]] = []
        self.cassandra_version = "3.4"
        self.dse_version = "4.8.5"
        # When set, nodes never leave the `up` state on stop
        self.stuck_up = False
        # When set, nodes never come up on start
        self.stuck_down = False
        # Output returned (once) instead of executing the next command
        self.fail_next = ""
        # Native transport port state forced regardless of node state, by IP address
        self.forced_ports: dict[str, bool] = {}
        self.closed = False

    def add_cluster(self, name: str, states: tp.Sequence[str], active: bool = False) -> None:
        self.clusters[name] = {
            f"node{i}": (s, f"{self.ip_prefix}{i}") for i, s in enumerate(states, start=1)
        }
        if active:
            self.active = name

    def count_calls(self, *argv: str) -> int:
        return sum(1 for c in self.calls if c[1:] == list(argv))

    def is_listening(self, ip_address: str) -> bool:
        """Return whether native transport port of the node with the address is open."""
        if ip_address in self.forced_ports:
            return self.forced_ports[ip_address]
        if not self.active:
            return False
        return ("up", ip_address) in self.nodes.values()

    @property
    def nodes(self) -> dict[str, tuple[str, str]]:
        return self.clusters[self.active]

    def _names(self, state: str = "", exclude: str = "") -> list[str]:
        return [
            n for n, (s, __) in self.nodes.items() if (not state or s == state) and s != exclude
        ]

    def _set_states(self, node_names: tp.Iterable[str], state: str) -> None:
        for name in node_names:
            __, ip = self.nodes[name]
            self.nodes[name] = (state, ip)

    def _list(self) -> str:
        return "\n".join(f" *{n}" if n == self.active else f"  {n}" for n in self.clusters)

    def _status(self) -> str:
        lines = [f"Cluster: '{self.active}'", "-" * (len(self.active) + 11)]
        for name, (state, ip) in self.nodes.items():
            if state in ("up", "down"):
                lines.append(f"{name}: {_STATUS_TEXT[state]} ({ip})")
            else:
                lines.append(f"{name}: {_STATUS_TEXT[state]}")
        return "\n".join(lines)

    def _create(self, argv: list[str]) -> str:
        name = argv[-1]
        if name in self.clusters:
            return f"Cannot create existing cluster '{name}'"
        node_count = sum(int(n) for n in _get_opt(argv, "-n").split(":"))
        ip_prefix = _get_opt(argv, "-i")
        self.clusters[name] = {
            f"node{i}": ("uninitialized", f"{ip_prefix}{i}") for i in range(1, node_count + 1)
        }
        self.active = name
        return f"Current cluster is now: {name}"

    def _node_cmd(self, node_name: str, args: list[str]) -> str:
        if node_name not in self.nodes:
            return USAGE

        action = args[0]
        if action == "start":
            if not self.stuck_down:
                self._set_states([node_name], "up")
        elif action == "stop":
            if not self.stuck_up:
                self._set_states([node_name], "down")
        elif action == "decommission":
            self._set_states([node_name], "decommissioned")
        elif action == "remove":
            del self.nodes[node_name]
        elif action == "cqlsh":
            return f"cqlsh on {node_name}: {args[-1]}"
        elif action == "versionfrombuild":
            return f"{self.cassandra_version}\n"
        elif action == "dse":
            return f"{self.dse_version}\n"
        elif action not in ("pause", "resume", "nodetool"):
            return USAGE
        return ""

    def execute(self, argv: ttypes.ArgvType) -> str:
        argv = [str(a) for a in argv]
        self.calls.append(argv)

        if self.fail_next:
            output, self.fail_next = self.fail_next, ""
            return output

        cmd, args = argv[1], argv[2:]
        if cmd == "list":
            return self._list()
        if cmd == "create":
            return self._create(argv)
        if cmd == "switch":
            if args[0] not in self.clusters:
                return f"Unknown cluster '{args[0]}'"
            self.active = args[0]
            return ""
        if cmd == "remove" and args:
            if args[0] not in self.clusters:
                return f"Unknown cluster '{args[0]}'"
            del self.clusters[args[0]]
            if args[0] == self.active:
                self.active = ""
            return ""

        # The rest of commands need an active cluster
        if not self.active:
            return "No current cluster set"
        if cmd == "remove":
            del self.clusters[self.active]
            self.active = ""
        elif cmd in ("updateconf", "updatedseconf"):
            pass
        elif cmd == "status":
            return self._status()
        elif cmd == "start":
            if not self.stuck_down:
                self._set_states(self._names(exclude="decommissioned"), "up")
        elif cmd == "stop":
            if not self.stuck_up:
                self._set_states(self._names(state="up"), "down")
        elif cmd == "clear":
            self._set_states(self._names(exclude="decommissioned"), "uninitialized")
        elif cmd == "add":
            node_name = argv[-1]
            if node_name in self.nodes:
                return USAGE
            self.nodes[node_name] = ("uninitialized", _get_opt(argv, "-i"))
        elif cmd.startswith("node"):
            return self._node_cmd(cmd, args)
        else:
            return USAGE
        return ""

    def close(self) -> None:
        self.closed = True


def make_bridge(ccm_transport: transport.CommandTransport, **overrides: tp.Any) -> bridge.Bridge:
    """Return bridge with settings independent of the environment."""
    settings: dict[str, tp.Any] = {
        "cassandra_version": "3.4",
        "dse_version": "4.8.5",
        "dse_credentials_type": "username_password",
        "use_git": False,
        "use_dse": False,
        "cluster_prefix": "cpp-driver",
        "deployment_type": "local",
        "host": "127.0.0.1",
        "ccm_executable": "ccm",
        "retries": 3,
        "nap_ms": 0,
        "native_transport_port": 9042,
        "lock_file": "",
    }
    settings.update(overrides)
    return bridge.Bridge(transport=ccm_transport, **settings)


@pytest.fixture
def fake_ccm() -> FakeCcm:
    return FakeCcm()


@pytest.fixture
def node_ports(monkeypatch: pytest.MonkeyPatch, fake_ccm: FakeCcm) -> FakeCcm:
    """Answer node availability checks from state of the fake `ccm` nodes."""
    monkeypatch.setattr(
        helpers, "is_port_open", lambda host, port, timeout=1.0: fake_ccm.is_listening(host)
    )
    return fake_ccm


@pytest.fixture
def ccm_bridge(
    fake_ccm: FakeCcm, node_ports: FakeCcm
) -> tp.Generator[bridge.Bridge, None, None]:
    with make_bridge(fake_ccm) as ccm_bridge_obj:
        yield ccm_bridge_obj


@pytest.fixture
def make_ccm_bridge(node_ports: FakeCcm) -> tp.Callable[..., bridge.Bridge]:
    return make_bridge


@pytest.fixture
def fake_ccm_factory() -> type[FakeCcm]:
    return FakeCcm
