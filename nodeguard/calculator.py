"""Working out how long to wait before a node can be assumed rebooted."""

from __future__ import annotations

import logging
from datetime import timedelta

from nodeguard.kube import KubeClient, Operator, Requirement, Selector
from nodeguard.watchdog import SynchronizedWatchdog

MAX_TIME_FOR_NO_PEERS_RESPONSE = timedelta(seconds=30)
MIN_NODES_NUMBER_IN_BATCH = 3
MAX_BATCHES_AFTER_FIRST = 10
SAFETY_PADDING = timedelta(seconds=15)
WORKER_ROLE_LABEL = "node-role.kubernetes.io/worker"

_log = logging.getLogger("safe-time-calculator")


class UnsafeRebootTimeError(ValueError):
    """Raised when the requested reboot time is below the calculated minimum."""


class SafeTimeCalculator:
    """Holds the time after which an unhealthy node is assumed to be rebooted.

    On an agent the value is never lower than the minimum worked out by ``start``:
    the time a node without API access needs to notice it is unhealthy, ask its
    peers in batches, and let the watchdog fire, plus some padding.
    """

    def __init__(
        self,
        client: KubeClient,
        time_to_assume_node_rebooted: timedelta,
        *,
        is_agent: bool = False,
        watchdog: SynchronizedWatchdog | None = None,
        max_error_threshold: int = 0,
        api_check_interval: timedelta = timedelta(0),
        api_server_timeout: timedelta = timedelta(0),
        peer_dial_timeout: timedelta = timedelta(0),
        peer_request_timeout: timedelta = timedelta(0),
    ) -> None:
        self.client = client
        self.is_agent = is_agent
        self.watchdog = watchdog
        self.max_error_threshold = max_error_threshold
        self.api_check_interval = api_check_interval
        self.api_server_timeout = api_server_timeout
        self.peer_dial_timeout = peer_dial_timeout
        self.peer_request_timeout = peer_request_timeout
        self._requested = time_to_assume_node_rebooted
        self.min_time_to_assume_node_rebooted = timedelta(0)
        self._highest_batch_number = 0

    @property
    def time_to_assume_node_rebooted(self) -> timedelta:
        if not self.is_agent:
            return self._requested
        return max(self._requested, self.min_time_to_assume_node_rebooted)

    @time_to_assume_node_rebooted.setter
    def time_to_assume_node_rebooted(self, value: timedelta) -> None:
        self._requested = value

    def start(self) -> None:
        """Calculate the minimum on an agent; raise if the requested time is lower."""
        if not self.is_agent:
            return
        min_time = (
            self.api_check_interval + self.api_server_timeout
        ) * self.max_error_threshold + MAX_TIME_FOR_NO_PEERS_RESPONSE
        min_time += (self.peer_dial_timeout + self.peer_request_timeout) * self._calc_num_of_batches()
        if self.watchdog is not None:
            min_time += self.watchdog.timeout
        min_time += SAFETY_PADDING
        _log.info("calculated minTimeToAssumeNodeRebooted is: %s", min_time)
        self.min_time_to_assume_node_rebooted = min_time

        if self._requested < min_time:
            message = (
                "snr agent can't start: the requested value for "
                "SafeTimeToAssumeNodeRebootedSeconds is too low"
            )
            _log.error(
                "%s: requested %s, minimal calculated value %s", message, self._requested, min_time
            )
            raise UnsafeRebootTimeError(message)

    def _calc_num_of_batches(self) -> int:
        max_batches = MAX_BATCHES_AFTER_FIRST + 1
        selector = Selector().add(Requirement(WORKER_ROLE_LABEL, Operator.EXISTS))
        try:
            workers = len(self.client.list_nodes(selector))
        except Exception as err:
            _log.error("couldn't fetch worker nodes: %s", err)
            return max_batches

        if workers > max_batches * MIN_NODES_NUMBER_IN_BATCH:
            batches = max_batches
        else:
            batches = -(-workers // MIN_NODES_NUMBER_IN_BATCH)
        # stay on the safe side: keep the largest number ever calculated
        self._highest_batch_number = max(self._highest_batch_number, batches)
        return self._highest_batch_number


def new_agent_safe_time_calculator(
    client: KubeClient,
    watchdog: SynchronizedWatchdog | None,
    max_error_threshold: int,
    api_check_interval: timedelta,
    api_server_timeout: timedelta,
    peer_dial_timeout: timedelta,
    peer_request_timeout: timedelta,
    time_to_assume_node_rebooted: timedelta,
) -> SafeTimeCalculator:
    """Return a calculator for an agent, the pod that reboots its node."""
    return SafeTimeCalculator(
        client,
        time_to_assume_node_rebooted,
        is_agent=True,
        watchdog=watchdog,
        max_error_threshold=max_error_threshold,
        api_check_interval=api_check_interval,
        api_server_timeout=api_server_timeout,
        peer_dial_timeout=peer_dial_timeout,
        peer_request_timeout=peer_request_timeout,
    )


def new_manager_safe_time_calculator(
    client: KubeClient, time_to_assume_node_rebooted: timedelta
) -> SafeTimeCalculator:
    """Return a calculator for the manager, which only passes the value on."""
    return SafeTimeCalculator(client, time_to_assume_node_rebooted, is_agent=False)