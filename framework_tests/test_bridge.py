import shlex

import hypothesis
import hypothesis.strategies as st
import pytest

from ccm_bridge import exceptions
from ccm_bridge.cluster_management import bridge
from ccm_bridge.cluster_management import ccm_commands
from ccm_bridge.cluster_management import node_slots
from ccm_bridge.cluster_management import transport

CLUSTER_1_NODE = "cpp-driver_1_0_nodes"


def _commands(fake_ccm, cmd: str) -> list[list[str]]:
    return [c for c in fake_ccm.calls if c[1] == cmd]


class ShellSession:
    """Session that runs commands on `FakeCcm` after splitting them like a remote shell."""

    def __init__(self, fake_ccm):
        self.fake_ccm = fake_ccm
        self.commands: list[str] = []
        self.closed = False

    def execute(self, command: str) -> str:
        self.commands.append(command)
        return self.fake_ccm.execute(shlex.split(command))

    def close(self) -> None:
        self.closed = True


def test_cluster_lifecycle(ccm_bridge, fake_ccm):
    assert ccm_bridge.create_cluster(1, 0, False, False)
    assert ccm_bridge.active_cluster_name == CLUSTER_1_NODE
    assert ccm_bridge.state.lifecycle == bridge.ClusterLifecycle.CONFIGURED

    status = ccm_bridge.cluster_status()
    assert status.node_count == 1
    assert not status.nodes_up

    assert ccm_bridge.start_cluster()
    assert ccm_bridge.state.lifecycle == bridge.ClusterLifecycle.STARTED
    contact_points = ccm_bridge.cluster_contact_points(is_all=False)
    assert contact_points == "127.0.0.1"
    assert ccm_bridge.cluster_status().nodes_up == {contact_points}

    assert ccm_bridge.stop_cluster()
    assert ccm_bridge.state.lifecycle == bridge.ClusterLifecycle.STOPPED

    ccm_bridge.remove_cluster()
    assert ccm_bridge.active_cluster_name is None
    assert ccm_bridge.state.lifecycle == bridge.ClusterLifecycle.REMOVED
    assert not ccm_bridge.node_slots.occupied
    assert not ccm_bridge.switch_cluster(CLUSTER_1_NODE)
    assert not fake_ccm.clusters


def test_create_commands(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster(2, 1, is_ssl=True, is_client_authentication=True)

    create_cmd = _commands(fake_ccm, "create")[0]
    assert create_cmd == [
        "ccm",
        "create",
        "-v",
        "3.4",
        "-n",
        "2:1",
        "-i",
        "127.0.0.",
        "-b",
        "--ssl=ssl",
        "--require_client_auth",
        "cpp-driver_2_1_nodes_ssl_auth",
    ]
    updateconf_cmd = _commands(fake_ccm, "updateconf")[0]
    assert "enable_user_defined_functions:true" in updateconf_cmd
    assert fake_ccm.calls.index(create_cmd) < fake_ccm.calls.index(updateconf_cmd)
    assert ccm_bridge.node_slots.occupied == [1, 2, 3]


def test_create_existing_active(ccm_bridge, fake_ccm):
    assert ccm_bridge.create_cluster()
    assert not ccm_bridge.create_cluster()
    assert len(_commands(fake_ccm, "create")) == 1


def test_create_stops_active_cluster(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster()
    ccm_bridge.start_cluster()

    assert ccm_bridge.create_cluster(2)
    assert ccm_bridge.active_cluster_name == "cpp-driver_2_0_nodes"
    assert fake_ccm.clusters[CLUSTER_1_NODE]["node1"][0] == "down"

    # Switching back to existing cluster
    assert ccm_bridge.create_cluster(1)
    assert ccm_bridge.active_cluster_name == CLUSTER_1_NODE
    assert _commands(fake_ccm, "switch") == [["ccm", "switch", CLUSTER_1_NODE]]
    assert ccm_bridge.state.lifecycle == bridge.ClusterLifecycle.STOPPED
    assert ccm_bridge.node_slots.occupied == [1]


def test_create_over_limit(ccm_bridge, fake_ccm):
    with pytest.raises(exceptions.CapacityError):
        ccm_bridge.create_cluster(4, 3)
    assert not fake_ccm.calls


@hypothesis.given(dc1=st.integers(min_value=1, max_value=6), dc2=st.integers(0, 5))
@hypothesis.settings(
    deadline=None, suppress_health_check=(hypothesis.HealthCheck.function_scoped_fixture,)
)
def test_created_cluster_not_up(make_ccm_bridge, fake_ccm_factory, dc1: int, dc2: int):
    hypothesis.assume(dc1 + dc2 <= 6)
    ccm_bridge = make_ccm_bridge(fake_ccm_factory())

    ccm_bridge.create_cluster(dc1, dc2)
    status = ccm_bridge.cluster_status()

    assert ccm_bridge.active_cluster_name == f"cpp-driver_{dc1}_{dc2}_nodes"
    assert status.node_count == dc1 + dc2
    assert not status.nodes_up
    assert status.nodes_uninitialized | status.nodes_down == set(status.all_ip_addresses())


def test_switch_cluster_syncs_slots(ccm_bridge, fake_ccm):
    fake_ccm.add_cluster("cpp-driver_3_0_nodes", ["up", "decommissioned", "down"])

    assert ccm_bridge.switch_cluster("cpp-driver_3_0_nodes")
    assert _commands(fake_ccm, "switch") == [["ccm", "switch", "cpp-driver_3_0_nodes"]]
    assert ccm_bridge.node_slots.occupied == [1, 2, 3]
    assert ccm_bridge.node_slots.get_state(1) == node_slots.SlotState.STARTED
    assert ccm_bridge.node_slots.get_state(2) == node_slots.SlotState.DECOMMISSIONED
    assert ccm_bridge.node_slots.get_state(3) == node_slots.SlotState.STOPPED
    assert ccm_bridge.state.lifecycle == bridge.ClusterLifecycle.STARTED
    assert ccm_bridge.state.topology == ccm_commands.ClusterTopology(dc1_nodes=3)


def test_switch_unknown_cluster(ccm_bridge, fake_ccm):
    assert not ccm_bridge.switch_cluster("nonexistent")
    assert not _commands(fake_ccm, "switch")
    assert ccm_bridge.active_cluster_name is None


def test_slot_reuse(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster(3)

    ccm_bridge.remove_node(2)
    assert ccm_bridge.node_slots.occupied == [1, 3]

    assert ccm_bridge.add_node() == 2
    assert _commands(fake_ccm, "add")[-1] == [
        "ccm",
        "add",
        "-b",
        "-i",
        "127.0.0.2",
        "-j",
        "7200",
        "-r",
        "2200",
        "node2",
    ]
    assert ccm_bridge.add_node(data_center="dc2") == 4
    assert _commands(fake_ccm, "add")[-1][-3:] == ["-d", "dc2", "node4"]


def test_add_node_capacity(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster(3, 3)
    calls_num = len(fake_ccm.calls)

    with pytest.raises(exceptions.CapacityError):
        ccm_bridge.add_node()

    assert len(fake_ccm.calls) == calls_num
    assert ccm_bridge.node_slots.occupied == [1, 2, 3, 4, 5, 6]


def test_stop_confirmed_on_first_poll(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster(2)
    ccm_bridge.start_cluster()
    polls_before = fake_ccm.count_calls("status")

    assert ccm_bridge.stop_cluster()
    assert fake_ccm.count_calls("status") - polls_before == 1


def test_stop_not_confirmed(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster(2)
    ccm_bridge.start_cluster()
    fake_ccm.stuck_up = True
    polls_before = fake_ccm.count_calls("status")

    assert not ccm_bridge.stop_cluster()
    assert fake_ccm.count_calls("status") - polls_before == ccm_bridge.config.retries
    assert ccm_bridge.state.lifecycle == bridge.ClusterLifecycle.STARTED


def test_kill_cluster(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster()
    ccm_bridge.start_cluster()

    assert ccm_bridge.kill_cluster()
    assert ["ccm", "stop", "--not-gently"] in fake_ccm.calls


def test_start_cluster_jvm_arguments(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster()

    assert ccm_bridge.start_cluster(jvm_arguments="-Dcassandra.test=true")
    assert _commands(fake_ccm, "start")[-1] == [
        "ccm",
        "start",
        "--wait-other-notice",
        "--wait-for-binary-proto",
        "--jvm_arg=-Dcassandra.test=true",
    ]


def test_clear_cluster_data(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster(2)
    ccm_bridge.start_cluster()

    ccm_bridge.clear_cluster_data()
    assert ccm_bridge.state.lifecycle == bridge.ClusterLifecycle.CONFIGURED
    assert ccm_bridge.is_cluster_down()
    assert len(ccm_bridge.cluster_status().nodes_uninitialized) == 2


def test_bootstrap_node(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster()
    ccm_bridge.start_cluster()

    assert ccm_bridge.bootstrap_node(jvm_argument="-Dfoo=bar") == 2
    assert any(
        c[:3] == ["ccm", "node2", "start"] and "--jvm_arg=-Dfoo=bar" in c for c in fake_ccm.calls
    )
    assert ccm_bridge.node_slots.get_state(2) == node_slots.SlotState.STARTED
    assert ccm_bridge.cluster_ip_addresses(is_all=False) == ["127.0.0.1", "127.0.0.2"]


def test_bootstrap_node_not_up(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster()
    ccm_bridge.start_cluster()
    fake_ccm.stuck_down = True

    with pytest.raises(exceptions.NotReadyTimeout):
        ccm_bridge.bootstrap_node()

    assert ccm_bridge.node_slots.get_state(2) == node_slots.SlotState.ADDED


def test_node_start_stop(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster(2)
    ccm_bridge.start_cluster()

    assert ccm_bridge.stop_node(1)
    assert ccm_bridge.node_slots.get_state(1) == node_slots.SlotState.STOPPED
    assert ccm_bridge.cluster_status().nodes_down == {"127.0.0.1"}
    assert not ccm_bridge.is_node_up(1)

    assert ccm_bridge.start_node(1)
    assert ccm_bridge.node_slots.get_state(1) == node_slots.SlotState.STARTED

    assert ccm_bridge.kill_node(2)
    assert ["ccm", "node2", "stop", "--not-gently"] in fake_ccm.calls


def test_decommission_node(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster(3)
    ccm_bridge.start_cluster()

    assert ccm_bridge.decommission_node(3)
    assert ["ccm", "node3", "decommission"] in fake_ccm.calls
    assert ccm_bridge.node_slots.get_state(3) == node_slots.SlotState.DECOMMISSIONED
    # Decommissioned node keeps its slot
    assert ccm_bridge.node_slots.occupied == [1, 2, 3]
    assert ccm_bridge.is_cluster_up()


def test_decommission_node_force(make_ccm_bridge, fake_ccm):
    ccm_bridge = make_ccm_bridge(fake_ccm, cassandra_version="3.11.4")
    ccm_bridge.create_cluster(2)
    ccm_bridge.decommission_node(2)
    assert ["ccm", "node2", "decommission"] in fake_ccm.calls

    ccm_bridge = make_ccm_bridge(fake_ccm, cassandra_version="3.12")
    ccm_bridge.create_cluster(2)
    ccm_bridge.decommission_node(1)
    assert ["ccm", "node1", "decommission", "--force"] in fake_ccm.calls


def test_node_commands(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster()
    ccm_bridge.start_cluster()

    ccm_bridge.pause_node(1)
    ccm_bridge.resume_node(1)
    ccm_bridge.disable_node_binary_protocol(1)
    ccm_bridge.enable_node_binary_protocol(1)
    ccm_bridge.disable_node_gossip(1)
    ccm_bridge.enable_node_gossip(1)

    node_calls = [c[2:] for c in fake_ccm.calls if c[1] == "node1"]
    assert node_calls == [
        ["pause"],
        ["resume"],
        ["nodetool", "disablebinary"],
        ["nodetool", "enablebinary"],
        ["nodetool", "disablegossip"],
        ["nodetool", "enablegossip"],
    ]


def test_execute_cql_on_node(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster()
    ccm_bridge.start_cluster()

    cql = "SELECT release_version FROM system.local"
    assert ccm_bridge.execute_cql_on_node(1, cql) == f"cqlsh on node1: {cql}"
    assert fake_ccm.calls[-1] == ["ccm", "node1", "cqlsh", "-x", cql]


def test_update_cluster_configuration(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster()

    ccm_bridge.update_cluster_configuration({"batch_size_warn_threshold_in_kb": 10})
    assert fake_ccm.calls[-1] == ["ccm", "updateconf", "batch_size_warn_threshold_in_kb:10"]

    ccm_bridge.update_cluster_configuration(["authorizer:CassandraAuthorizer"], is_dse=True)
    assert fake_ccm.calls[-1] == ["ccm", "updatedseconf", "authorizer:CassandraAuthorizer"]

    with pytest.raises(ValueError):
        ccm_bridge.update_cluster_configuration(["no_separator"])


def test_no_active_cluster(ccm_bridge, fake_ccm):
    with pytest.raises(exceptions.NoActiveClusterError):
        ccm_bridge.start_cluster()
    with pytest.raises(exceptions.NoActiveClusterError):
        ccm_bridge.add_node()
    with pytest.raises(exceptions.NoActiveClusterError):
        ccm_bridge.cluster_status()
    with pytest.raises(exceptions.NoActiveClusterError):
        ccm_bridge.remove_cluster()
    assert not fake_ccm.calls


def test_invalid_node(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster()
    calls_num = len(fake_ccm.calls)

    with pytest.raises(ValueError):
        ccm_bridge.start_node(7)
    with pytest.raises(ValueError):
        ccm_bridge.pause_node(0)
    assert len(fake_ccm.calls) == calls_num


def test_tool_reported_failure(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster()
    fake_ccm.fail_next = "Traceback (most recent call last):\n  File \"ccm\", line 1\nOSError"

    with pytest.raises(exceptions.ToolReportedFailure) as excinfo:
        ccm_bridge.start_cluster()

    assert excinfo.value.argv[:2] == ["ccm", "start"]
    assert "OSError" in excinfo.value.output


def test_remove_all_clusters(ccm_bridge, fake_ccm):
    fake_ccm.add_cluster("other-tests_1_0_nodes", ["down"])
    ccm_bridge.create_cluster(1)
    ccm_bridge.create_cluster(2)

    ccm_bridge.remove_all_clusters()
    assert list(fake_ccm.clusters) == ["other-tests_1_0_nodes"]
    assert ccm_bridge.active_cluster_name is None

    ccm_bridge.remove_all_clusters(is_all=True)
    assert not fake_ccm.clusters


def test_remove_named_cluster(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster(1)
    ccm_bridge.create_cluster(2)

    ccm_bridge.remove_cluster(CLUSTER_1_NODE)
    assert fake_ccm.calls[-1] == ["ccm", "remove", CLUSTER_1_NODE]
    # Removing not active cluster doesn't change the active one
    assert ccm_bridge.active_cluster_name == "cpp-driver_2_0_nodes"


def test_versions(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster()

    assert ccm_bridge.get_cassandra_version() == "3.4"
    assert fake_ccm.calls[-1] == ["ccm", "node1", "versionfrombuild"]

    fake_ccm.cassandra_version = "3.11.4"
    assert ccm_bridge.get_cassandra_version() == "3.11.4"
    assert ccm_bridge.state.cassandra_version == "3.11.4"

    fake_ccm.cassandra_version = "unknown"
    with pytest.raises(exceptions.VersionParseError):
        ccm_bridge.get_cassandra_version()


def test_dse(make_ccm_bridge, fake_ccm):
    ccm_bridge = make_ccm_bridge(
        fake_ccm, use_dse=True, dse_username="user", dse_password="secret"
    )
    assert ccm_bridge.state.cassandra_version == "2.1"

    ccm_bridge.create_cluster()
    assert _commands(fake_ccm, "create")[0][:7] == [
        "ccm",
        "create",
        "-v",
        "4.8.5",
        "--dse",
        "--dse-username=user",
        "--dse-password=secret",
    ]
    assert ccm_bridge.get_dse_version() == "4.8.5"
    assert fake_ccm.calls[-1] == ["ccm", "node1", "dse", "-v"]

    ccm_bridge.add_node()
    assert _commands(fake_ccm, "add")[-1][-2:] == ["--dse", "node2"]


def test_ip_prefix(make_ccm_bridge, fake_ccm):
    ccm_bridge = make_ccm_bridge(fake_ccm, host="192.168.33.11")
    assert ccm_bridge.get_ip_prefix() == "192.168.33."


def test_remote_transport_quoting(make_ccm_bridge, fake_ccm):
    shell = ShellSession(fake_ccm)
    ccm_bridge = make_ccm_bridge(transport.RemoteTransport(shell))

    ccm_bridge.create_cluster()
    assert shell.commands[0] == "ccm list"

    cql = "INSERT INTO ks.t (k, v) VALUES (1, 'it''s; rm -rf /')"
    assert ccm_bridge.execute_cql_on_node(1, cql) == f"cqlsh on node1: {cql}"
    assert shlex.split(shell.commands[-1]) == ["ccm", "node1", "cqlsh", "-x", cql]

    ccm_bridge.close()
    assert shell.closed


def test_lock_file(make_ccm_bridge, fake_ccm, tmp_path):
    ccm_bridge = make_ccm_bridge(fake_ccm, lock_file=str(tmp_path / "ccm.lock"))
    assert ccm_bridge.create_cluster()
    assert ccm_bridge.start_cluster()


def test_context_manager_closes_transport(make_ccm_bridge, fake_ccm):
    with make_ccm_bridge(fake_ccm) as ccm_bridge:
        assert "cluster=None" in repr(ccm_bridge)
    assert fake_ccm.closed


def test_no_current_cluster_in_ccm(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster(2)
    ccm_bridge.start_cluster()
    fake_ccm.active = ""

    with pytest.raises(exceptions.ToolReportedFailure) as excinfo:
        ccm_bridge.is_cluster_down()
    assert excinfo.value.output == "No current cluster set"

    with pytest.raises(exceptions.ToolReportedFailure):
        ccm_bridge.stop_cluster()
    assert ccm_bridge.state.lifecycle == bridge.ClusterLifecycle.STARTED


def test_node_up_requires_open_port(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster(2)
    ccm_bridge.start_cluster()
    fake_ccm.forced_ports["127.0.0.2"] = False

    assert ccm_bridge.is_node_up(1)
    assert ccm_bridge.is_node_available(1)
    assert not ccm_bridge.is_node_up(2)
    assert not ccm_bridge.is_node_available(2)
    # Status was polled on every attempt
    assert fake_ccm.count_calls("status") >= ccm_bridge.config.retries


def test_node_down_requires_closed_port(ccm_bridge, fake_ccm):
    ccm_bridge.create_cluster(2)
    ccm_bridge.start_cluster()
    fake_ccm.forced_ports["127.0.0.1"] = True

    assert not ccm_bridge.stop_node(1)
    assert ccm_bridge.cluster_status().nodes_down == {"127.0.0.1"}
    assert ccm_bridge.node_slots.get_state(1) == node_slots.SlotState.STARTED

    del fake_ccm.forced_ports["127.0.0.1"]
    assert ccm_bridge.is_node_down(1)


def test_remove_cluster_by_name(ccm_bridge, fake_ccm):
    fake_ccm.add_cluster("other-tests_1_0_nodes", ["down"])
    ccm_bridge.create_cluster()
    # Another process switched the `ccm` active cluster
    fake_ccm.active = "other-tests_1_0_nodes"

    ccm_bridge.remove_cluster()
    assert fake_ccm.calls[-1] == ["ccm", "remove", CLUSTER_1_NODE]
    assert list(fake_ccm.clusters) == ["other-tests_1_0_nodes"]
    assert ccm_bridge.active_cluster_name is None
