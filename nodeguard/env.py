"""Environment settings, node annotations and host information."""

from __future__ import annotations

import os
from datetime import timedelta
from typing import Mapping

from nodeguard.kube import KubeClient, NotFoundError

VERSION = "0.0.1"
GIT_COMMIT = "n/a"
BUILD_DATE = "n/a"

IS_REBOOT_CAPABLE_ANNOTATION = "is-reboot-capable.self-node-remediation.medik8s.io"
IS_SOFTWARE_REBOOT_ENABLED_ENV_VAR = "IS_SOFTWARE_REBOOT_ENABLED"
DEPLOYMENT_NAMESPACE_ENV_VAR = "DEPLOYMENT_NAMESPACE"

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def parse_bool(value: str) -> bool:
    """Parse the boolean spellings accepted by the agent's configuration."""
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"invalid boolean syntax: {value!r}")


def get_deployment_namespace(environ: Mapping[str, str] | None = None) -> str:
    """Return the namespace the operator is deployed in."""
    env = os.environ if environ is None else environ
    try:
        return env[DEPLOYMENT_NAMESPACE_ENV_VAR]
    except KeyError:
        raise LookupError(f"{DEPLOYMENT_NAMESPACE_ENV_VAR} must be set") from None


def is_software_reboot_enabled(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    value = env.get(IS_SOFTWARE_REBOOT_ENABLED_ENV_VAR, "")
    try:
        return parse_bool(value)
    except ValueError as err:
        raise ValueError(
            f"failed to convert {IS_SOFTWARE_REBOOT_ENABLED_ENV_VAR} env value to boolean. value is: {value}"
        ) from err


def update_node_with_is_reboot_capable_annotation(
    watchdog_initiated: bool,
    node_name: str,
    client: KubeClient,
    environ: Mapping[str, str] | None = None,
) -> None:
    """Mark the node reboot capable if a watchdog or software reboot is available."""
    try:
        node = client.get_node(node_name)
    except NotFoundError as err:
        raise NotFoundError(f"failed to retrieve my node: {node_name}") from err

    software_reboot = is_software_reboot_enabled(environ)
    capable = watchdog_initiated or software_reboot
    node.annotations[IS_REBOOT_CAPABLE_ANNOTATION] = "true" if capable else "false"

    try:
        client.update_node(node)
    except NotFoundError as err:
        raise NotFoundError(f"failed to add node annotation to node: {node.name}") from err


def get_linux_uptime() -> timedelta:
    """Return the uptime of this Linux host, in whole seconds."""
    with open("/proc/uptime", encoding="ascii") as fh:
        seconds = float(fh.read().split()[0])
    return timedelta(seconds=int(seconds))