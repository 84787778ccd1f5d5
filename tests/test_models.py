"""Tests for the NodeInstance lifecycle."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from nodefleet.local.supervisor.errors import InvalidTransitionError
from nodefleet.local.supervisor.models import NodeInstance, NodePorts, NodeState, format_cpu_list


@pytest.fixture
def node(tmp_path: Path) -> NodeInstance:
    return NodeInstance(
        index=1,
        node_id="node-test-1",
        ports=NodePorts(9010, 9011, 9012),
        cpus=(2, 3),
        memory_limit=64 * 1024 ** 2,
        data_dir=tmp_path / "data" / "node-1",
        log_dir=tmp_path / "logs" / "node-1",
    )


def test_new_node_is_pending_without_process(node):
    assert node.state == NodeState.PENDING
    assert node.pid is None
    assert node.name == "node-1"
    assert node.cpu_range_str == "2-3"
    assert node.cpu_list == [2, 3]


def test_full_restart_cycle_is_legal(node, caplog):
    with caplog.at_level(logging.INFO):
        for state in (NodeState.STARTING, NodeState.HEALTHY, NodeState.UNHEALTHY,
                      NodeState.RESTARTING, NodeState.STARTING, NodeState.HEALTHY):
            node.transition(state)

    assert node.state == NodeState.HEALTHY
    assert "node-1: Restarting -> Starting" in caplog.text


def test_stopped_must_pass_through_starting(node):
    node.transition(NodeState.STOPPED)

    with pytest.raises(InvalidTransitionError):
        node.transition(NodeState.HEALTHY)

    node.transition(NodeState.STARTING)
    node.transition(NodeState.HEALTHY)
    assert node.state == NodeState.HEALTHY


@pytest.mark.parametrize("start,target", [
    (NodeState.PENDING, NodeState.HEALTHY),
    (NodeState.HEALTHY, NodeState.RESTARTING),
    (NodeState.UNHEALTHY, NodeState.HEALTHY),
    (NodeState.RESTARTING, NodeState.HEALTHY),
])
def test_illegal_edges_are_rejected(node, start, target):
    node.state = start
    with pytest.raises(InvalidTransitionError):
        node.transition(target)
    assert node.state == start


@pytest.mark.parametrize("start", list(NodeState))
def test_any_state_can_stop(node, start):
    node.state = start
    node.transition(NodeState.STOPPED, "fleet shutdown")
    assert node.state == NodeState.STOPPED


@pytest.mark.parametrize("cpus,expected", [
    ((0, 1, 2, 5), "0-2,5"),
    ((7, 4, 5), "4-5,7"),
    ((3,), "3"),
])
def test_cpu_list_is_rendered_compactly(cpus, expected):
    assert format_cpu_list(cpus) == expected


def test_snapshot_carries_status_fields(node):
    node.restart_count = 4

    snap = node.snapshot()

    assert snap["name"] == "node-1"
    assert snap["state"] == "Pending"
    assert snap["ports"] == {"http": 9010, "rpc": 9011, "metrics": 9012}
    assert snap["cpus"] == "2-3"
    assert snap["restarts"] == 4
    assert snap["pid"] is None
