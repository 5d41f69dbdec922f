"""Tracking this node's peers and the answers they give about its health."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from datetime import timedelta

from nodeguard.calculator import WORKER_ROLE_LABEL
from nodeguard.kube import (
    KubeClient,
    Node,
    NodeAddress,
    NotFoundError,
    Operator,
    Requirement,
    Selector,
)

HOSTNAME_LABEL_NAME = "kubernetes.io/hostname"
CONTROL_PLANE_ROLE_LABEL = "node-role.kubernetes.io/control-plane"
MASTER_ROLE_LABEL = "node-role.kubernetes.io/master"


class Role(enum.Enum):
    WORKER = 0
    CONTROL_PLANE = 1


class Reason(str, enum.Enum):
    HEALTHY_BECAUSE_CR_NOT_FOUND = "CR Not found, node is considered healthy"
    HEALTHY_BECAUSE_ERRORS_THRESHOLD_NOT_REACHED = (
        "Errors number hasn't reached threshold not querying peers yet, node is considered healthy"
    )
    HEALTHY_BECAUSE_NO_PEERS_RESPONSE_NOT_REACHED_TIMEOUT = (
        "No response from peer. The duration of peer not responding hasn't passed the "
        "threshold so still considered healthy"
    )
    HEALTHY_BECAUSE_NO_PEERS_WERE_FOUND = "No Peers where found, node is considered healthy"
    HEALTHY_BECAUSE_MOST_PEERS_CANT_ACCESS_API_SERVER = (
        "Most peers couldn't access API server, node is considered healthy"
    )
    UNHEALTHY_BECAUSE_PEERS_RESPONSE = "Node is reported unhealthy by it's peers"
    UNHEALTHY_BECAUSE_NODE_IS_ISOLATED = "Node is isolated, node is considered unhealthy"


@dataclass(frozen=True)
class Response:
    is_healthy: bool
    reason: Reason


def create_selector(hostname_to_exclude: str, node_type_label: str) -> Selector:
    """Select nodes carrying ``node_type_label`` other than the named host."""
    return Selector().add(
        Requirement(HOSTNAME_LABEL_NAME, Operator.NOT_EQUALS, (hostname_to_exclude,)),
        Requirement(node_type_label, Operator.EXISTS),
    )


def get_control_plane_label(node: Node) -> str:
    """Return the control plane role label this cluster uses."""
    if CONTROL_PLANE_ROLE_LABEL in node.labels:
        return CONTROL_PLANE_ROLE_LABEL
    return MASTER_ROLE_LABEL


class Peers:
    """Keeps the addresses of worker and control plane peers up to date."""

    def __init__(
        self,
        my_node_name: str,
        peer_update_interval: timedelta,
        client: KubeClient,
        logger: logging.Logger | None = None,
        api_server_timeout: timedelta = timedelta(seconds=5),
    ) -> None:
        self.my_node_name = my_node_name
        self.peer_update_interval = peer_update_interval
        self.client = client
        self.api_server_timeout = api_server_timeout
        self._log = logger or logging.getLogger("peers")
        self._lock = threading.Lock()
        self.worker_selector: Selector | None = None
        self.control_plane_selector: Selector | None = None
        self._worker_addresses: list[list[NodeAddress]] = []
        self._control_plane_addresses: list[list[NodeAddress]] = []

    def start(self, stop_event: threading.Event) -> None:
        """Build the selectors, then refresh the peers until ``stop_event`` is set."""
        try:
            my_node = self.client.get_node(self.my_node_name)
        except NotFoundError:
            self._log.error("failed to get own node")
            raise
        hostname = my_node.labels.get(HOSTNAME_LABEL_NAME)
        if hostname is None:
            message = f"{HOSTNAME_LABEL_NAME} label not set on own node"
            self._log.error("failed to get own hostname: %s", message)
            raise LookupError(message)
        self.worker_selector = create_selector(hostname, WORKER_ROLE_LABEL)
        self.control_plane_selector = create_selector(hostname, get_control_plane_label(my_node))
        self._log.info("peers started")

        while True:
            self.update_peers()
            if stop_event.wait(self.peer_update_interval.total_seconds()):
                return

    def update_peers(self) -> None:
        """Refresh both peer lists from the cluster."""
        self._update(Role.WORKER)
        self._update(Role.CONTROL_PLANE)

    def _update(self, role: Role) -> None:
        selector = self.worker_selector if role is Role.WORKER else self.control_plane_selector
        with self._lock:
            try:
                nodes = self.client.list_nodes(selector)
            except NotFoundError as err:
                # we are the only node at the moment
                self._worker_addresses = []
                self._log.error("failed to update peer list: %s", err)
                return
            except Exception as err:
                self._log.error("failed to update peer list: %s", err)
                return
            addresses = [list(node.addresses) for node in nodes]
            if role is Role.WORKER:
                self._worker_addresses = addresses
            else:
                self._control_plane_addresses = addresses

    def get_peers_addresses(self, role: Role) -> list[list[NodeAddress]]:
        """Return a copy of the addresses of the peers with the given role."""
        with self._lock:
            source = (
                self._worker_addresses if role is Role.WORKER else self._control_plane_addresses
            )
            return [list(addresses) for addresses in source]