import threading
from datetime import timedelta

import pytest

from nodeguard.calculator import (
    MAX_TIME_FOR_NO_PEERS_RESPONSE,
    SAFETY_PADDING,
    WORKER_ROLE_LABEL,
    UnsafeRebootTimeError,
    new_agent_safe_time_calculator,
    new_manager_safe_time_calculator,
)
from nodeguard.kube import KubeClient, Node
from nodeguard.watchdog import FAKE_TIMEOUT, FakeWatchdogDriver, SynchronizedWatchdog

HUGE = timedelta(hours=10)
DIAL = timedelta(seconds=2)
REQUEST = timedelta(seconds=4)


def _client(workers, others=0):
    nodes = [Node(f"worker-{i}", labels={WORKER_ROLE_LABEL: ""}) for i in range(workers)]
    nodes += [Node(f"other-{i}") for i in range(others)]
    return KubeClient(nodes=nodes)


def _agent(client, requested=HUGE, watchdog=None, threshold=0):
    return new_agent_safe_time_calculator(
        client, watchdog, threshold, timedelta(seconds=1), timedelta(seconds=1),
        DIAL, REQUEST, requested,
    )


def _min_time(client, **kwargs):
    calc = _agent(client, **kwargs)
    calc.start()
    return calc.min_time_to_assume_node_rebooted


class FailingClient:
    def list_nodes(self, selector=None):
        raise ConnectionError("api server unreachable")


def test_manager_returns_requested_value():
    calc = new_manager_safe_time_calculator(_client(3), timedelta(seconds=5))
    calc.start()
    assert calc.is_agent is False
    assert calc.time_to_assume_node_rebooted == timedelta(seconds=5)
    calc.time_to_assume_node_rebooted = timedelta(minutes=1)
    assert calc.time_to_assume_node_rebooted == timedelta(minutes=1)


def test_agent_minimum_without_anything_to_wait_for():
    assert _min_time(_client(0)) == MAX_TIME_FOR_NO_PEERS_RESPONSE + SAFETY_PADDING


def test_agent_requested_too_low_raises_and_minimum_wins():
    calc = _agent(_client(5), requested=timedelta(seconds=1))
    with pytest.raises(UnsafeRebootTimeError, match="too low"):
        calc.start()
    assert calc.is_agent is True
    assert calc.time_to_assume_node_rebooted == calc.min_time_to_assume_node_rebooted


def test_agent_getter_never_below_minimum():
    calc = _agent(_client(5))
    calc.start()
    assert calc.time_to_assume_node_rebooted == HUGE
    calc.time_to_assume_node_rebooted = timedelta(0)
    assert calc.time_to_assume_node_rebooted == calc.min_time_to_assume_node_rebooted


def test_each_extra_batch_adds_dial_and_request_timeouts():
    three = _min_time(_client(3))
    four = _min_time(_client(4))
    six = _min_time(_client(6))
    assert four - three == DIAL + REQUEST
    assert six == four


def test_only_worker_nodes_count():
    assert _min_time(_client(3, others=20)) == _min_time(_client(3))


def test_batches_are_capped():
    assert _min_time(_client(40)) == _min_time(_client(100))
    assert _min_time(_client(40)) > _min_time(_client(30))


def test_list_failure_assumes_maximum_batches():
    assert _min_time(FailingClient()) == _min_time(_client(100))


def test_highest_batch_number_is_kept():
    client = _client(12)
    calc = _agent(client)
    calc.start()
    first = calc.min_time_to_assume_node_rebooted
    fewer = KubeClient(nodes=client.list_nodes()[:3])
    calc.client = fewer
    calc.start()
    assert calc.min_time_to_assume_node_rebooted == first
    assert first > _min_time(fewer)


def test_error_threshold_adds_check_interval_and_timeout():
    base = _min_time(_client(0))
    with_errors = _min_time(_client(0), threshold=3)
    assert with_errors - base == (timedelta(seconds=1) + timedelta(seconds=1)) * 3


def test_watchdog_timeout_is_added():
    wd = SynchronizedWatchdog(FakeWatchdogDriver(True), environ={})
    stop_event = threading.Event()
    stop_event.set()
    wd.start(stop_event)
    assert wd.timeout == FAKE_TIMEOUT
    assert _min_time(_client(0), watchdog=wd) - _min_time(_client(0)) == FAKE_TIMEOUT