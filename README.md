# nodeguard

Building blocks for an agent that keeps a cluster node honest about its own
health. The package feeds a watchdog device and decides how to reboot when the
node must be fenced. It works out how long to wait before a node can be assumed
rebooted, tracks which peers to ask for a second opinion, and renders templated
YAML/JSON manifests.

## What is inside

- `nodeguard.kube` holds small models of the cluster objects the package works
  with: `Node`, `Pod`, `Taint` and `NodeAddress`. It also has label selectors
  (`Requirement`, `Operator`, `Selector`) and `KubeClient`, an in-memory store of
  nodes and pods that hands out copies of its objects. Missing objects raise
  `NotFoundError` and duplicates raise `AlreadyExistsError`.
  `get_self_node_remediation_agent_pod(node_name, client)` finds the agent pod
  on a node. The agent pod is the one labelled
  `app.kubernetes.io/name=self-node-remediation` and
  `app.kubernetes.io/component=agent`.
- `nodeguard.taints` holds `taint_exists`, `delete_taint` and
  `parse_out_of_service_taint_support`. The last one reads a cluster's major and
  minor version strings and returns an `OutOfServiceTaintSupport` whose fields
  are:
  - `supported`: version 1.26 or later.
  - `ga`: version 1.28 or later.
- `nodeguard.env` holds the settings the package reads from the environment:
  - `get_deployment_namespace` reads `DEPLOYMENT_NAMESPACE` and raises
    `LookupError` when it is unset.
  - `is_software_reboot_enabled` reads `IS_SOFTWARE_REBOOT_ENABLED` through
    `parse_bool`.
  - `update_node_with_is_reboot_capable_annotation` sets the node annotation
    `is-reboot-capable.self-node-remediation.medik8s.io`.
  - `get_linux_uptime` reads `/proc/uptime`.
  - The module also holds the constants `VERSION`, `GIT_COMMIT` and
    `BUILD_DATE`.
- `nodeguard.watchdog` holds `SynchronizedWatchdog`. It arms a
  `WatchdogDriver`, feeds it every third of its timeout on a background thread,
  and disarms it when the stop event is set. `new_fake` returns a watchdog
  backed by `FakeWatchdogDriver`, which is meant for tests.
- `nodeguard.linux_watchdog` holds `LinuxWatchdogDriver`, which drives a
  watchdog character device, and `new_linux`, which creates the single Linux
  watchdog allowed per process. `new_linux` takes its device path from
  `WATCHDOG_PATH` unless you pass one. When the device is missing, `new_linux`:
  1. loads the `softdog` module with `enable_softdog`;
  2. picks the newest `/dev/watchdog*` device with `find_last_modified_watchdog`.
- `nodeguard.rebooter` holds `WatchdogRebooter`. It stops feeding an armed
  watchdog to trigger a reboot. It falls back to `software_reboot` (a sysrq
  reboot in the host's mount namespace) when any of these holds:
  - the watchdog is missing;
  - the watchdog is malfunctioning or disarmed;
  - the watchdog was triggered but has not been fed for more than 30 seconds.
- `nodeguard.calculator` holds `SafeTimeCalculator`, which you get from
  `new_agent_safe_time_calculator` or `new_manager_safe_time_calculator`. On an
  agent, `start()` computes the minimal safe time to assume a node was rebooted
  and raises `UnsafeRebootTimeError` when the requested value is lower.
- `nodeguard.peers` holds `Peers`, which refreshes the addresses of worker and
  control-plane peers from a `KubeClient`. It also holds the `Role`, `Reason` and
  `Response` values used to explain a health verdict.
- `nodeguard.render` holds `render_template` and `render_dir` for templated
  manifests, with `RenderData` carrying user functions and data. Failures raise
  `TemplateError`.

## Examples

Watchdog lifecycle with the fake driver:

```python
import threading

from nodeguard.watchdog import WatchdogStatus, new_fake

wd = new_fake(True)
stop_event = threading.Event()
worker = threading.Thread(target=wd.start, args=(stop_event,))
worker.start()

# ... later, to let the watchdog fire:
wd.stop()
assert wd.status is WatchdogStatus.TRIGGERED

stop_event.set()
worker.join()
```

The driver may fail to start. In that case `start` raises `WatchdogStartError`,
unless `IS_SOFTWARE_REBOOT_ENABLED` is true. When it is true, the watchdog is
marked `WatchdogStatus.MALFUNCTION` and `WatchdogRebooter.reboot()` uses a
software reboot instead.

Template helpers:

```python
from nodeguard.render import get_or, is_set

get_or({"name": ""}, "name", "fallback")     # "fallback"
get_or({"name": "pod"}, "name", "fallback")  # "pod"
is_set({}, "replicas")                       # False
is_set({"replicas": 0}, "replicas")          # 0
```

Templates use `{{ ... }}` actions. These actions support:

- field lookups such as `.Namespace`;
- string, number and boolean literals;
- function calls;
- pipelines with `|`;
- the `{{-` and `-}}` trim markers.

Besides the functions in `RenderData.funcs`, templates can call these
functions:

- `getOr`
- `isSet`
- `default`
- `quote`
- `upper`
- `lower`
- `trim`

A template raises `TemplateError` when it calls an unknown function or refers
to a missing key.

Version checks:

```python
from nodeguard.taints import parse_out_of_service_taint_support

support = parse_out_of_service_taint_support("1", "26+")
# OutOfServiceTaintSupport(supported=True, ga=False)
```

A version string raises `ValueError` when its major part is not a number, or
when its minor part does not start with digits.

## What it does not do

This is a library without a command-line entry point. `KubeClient` is an
in-memory store and does not talk to a real API server. The package has:

- no controller loop that remediates nodes;
- no API connectivity checker;
- no network service for asking peers about a node's health.

Those pieces are left to the program that uses these building blocks.

## Requirements

You need Python 3.10 or later and PyYAML. The Linux watchdog driver and the
software reboot also need a Linux host with the privileges to open the watchdog
device and to enter the host's mount namespace.