"""A small in-memory model of the cluster objects the agent works with."""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping

AGENT_NAME_LABEL = "app.kubernetes.io/name"
AGENT_COMPONENT_LABEL = "app.kubernetes.io/component"
AGENT_NAME = "self-node-remediation"
AGENT_COMPONENT = "agent"


class NotFoundError(LookupError):
    """Raised when a requested object does not exist."""


class AlreadyExistsError(Exception):
    """Raised when an object with the same identity already exists."""


@dataclass
class Taint:
    """A node taint. Two taints match when their key and effect are equal."""

    key: str
    effect: str
    value: str = ""
    time_added: datetime | None = None

    def matches(self, other: Taint) -> bool:
        return self.key == other.key and self.effect == other.effect


@dataclass(frozen=True)
class NodeAddress:
    type: str
    address: str


@dataclass
class Node:
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    taints: list[Taint] = field(default_factory=list)
    addresses: list[NodeAddress] = field(default_factory=list)
    unschedulable: bool = False


@dataclass
class Pod:
    name: str
    namespace: str = "default"
    node_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)


class Operator(enum.Enum):
    EQUALS = "="
    NOT_EQUALS = "!="
    IN = "in"
    NOT_IN = "notin"
    EXISTS = "exists"
    DOES_NOT_EXIST = "!"


_SINGLE_VALUE = {Operator.EQUALS, Operator.NOT_EQUALS}
_MANY_VALUES = {Operator.IN, Operator.NOT_IN}
_NO_VALUES = {Operator.EXISTS, Operator.DOES_NOT_EXIST}


@dataclass(frozen=True)
class Requirement:
    """One condition of a label selector."""

    key: str
    operator: Operator
    values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", tuple(self.values))
        if not self.key:
            raise ValueError("requirement key must not be empty")
        count = len(self.values)
        if self.operator in _SINGLE_VALUE and count != 1:
            raise ValueError(f"operator {self.operator.value!r} needs exactly one value")
        if self.operator in _MANY_VALUES and count == 0:
            raise ValueError(f"operator {self.operator.value!r} needs at least one value")
        if self.operator in _NO_VALUES and count != 0:
            raise ValueError(f"operator {self.operator.value!r} takes no values")

    def matches(self, labels: Mapping[str, str]) -> bool:
        present = self.key in labels
        value = labels.get(self.key)
        op = self.operator
        if op is Operator.EXISTS:
            return present
        if op is Operator.DOES_NOT_EXIST:
            return not present
        if op in (Operator.EQUALS, Operator.IN):
            return present and value in self.values
        return not present or value not in self.values


@dataclass(frozen=True)
class Selector:
    """A conjunction of requirements; an empty selector matches everything."""

    requirements: tuple[Requirement, ...] = ()

    def add(self, *args: Requirement) -> Selector:
        return Selector(self.requirements + tuple(args))

    def matches(self, labels: Mapping[str, str]) -> bool:
        return all(req.matches(labels) for req in self.requirements)


def _matches(selector: Selector | None, labels: Mapping[str, str]) -> bool:
    return selector is None or selector.matches(labels)


class KubeClient:
    """An in-memory store of nodes and pods, handing out copies of its objects."""

    def __init__(self, nodes: Iterable[Node] = (), pods: Iterable[Pod] = ()) -> None:
        self._nodes: dict[str, Node] = {}
        self._pods: dict[tuple[str, str], Pod] = {}
        for node in nodes:
            if node.name in self._nodes:
                raise AlreadyExistsError(f'nodes "{node.name}" already exists')
            self._nodes[node.name] = copy.deepcopy(node)
        for pod in pods:
            key = (pod.namespace, pod.name)
            if key in self._pods:
                raise AlreadyExistsError(f'pods "{pod.name}" already exists')
            self._pods[key] = copy.deepcopy(pod)

    def get_node(self, name: str) -> Node:
        try:
            return copy.deepcopy(self._nodes[name])
        except KeyError:
            raise NotFoundError(f'nodes "{name}" not found') from None

    def update_node(self, node: Node) -> None:
        if node.name not in self._nodes:
            raise NotFoundError(f'nodes "{node.name}" not found')
        self._nodes[node.name] = copy.deepcopy(node)

    def list_nodes(self, selector: Selector | None = None) -> list[Node]:
        return [copy.deepcopy(n) for n in self._nodes.values() if _matches(selector, n.labels)]

    def list_pods(self, selector: Selector | None = None) -> list[Pod]:
        return [copy.deepcopy(p) for p in self._pods.values() if _matches(selector, p.labels)]


def get_self_node_remediation_agent_pod(node_name: str, client: KubeClient) -> Pod:
    """Return the agent pod scheduled on the given node."""
    selector = Selector().add(
        Requirement(AGENT_NAME_LABEL, Operator.EQUALS, (AGENT_NAME,)),
        Requirement(AGENT_COMPONENT_LABEL, Operator.EQUALS, (AGENT_COMPONENT,)),
    )
    for pod in client.list_pods(selector):
        if pod.node_name == node_name:
            return pod
    raise NotFoundError("failed to find self node remediation pod matching the given node")