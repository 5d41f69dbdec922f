"""Rebooting the node through its watchdog, with a software fallback."""

from __future__ import annotations

import logging
import subprocess
from datetime import datetime, timedelta, timezone
from typing import Callable

from nodeguard.watchdog import SynchronizedWatchdog, WatchdogStatus

TIME_TO_ASSUME_REBOOT_HAS_STARTED = timedelta(seconds=30)

SOFTWARE_REBOOT_COMMAND = (
    "/usr/bin/nsenter",
    "-m/proc/1/ns/mnt",
    "/bin/bash",
    "-c",
    "echo b > /proc/sysrq-trigger",
)

_log = logging.getLogger("rebooter")


def software_reboot() -> None:
    """Reboot the host immediately through the sysrq trigger; failures are only logged."""
    _log.info("about to try software reboot")
    # needs a privileged container
    try:
        subprocess.run(list(SOFTWARE_REBOOT_COMMAND), check=True)
    except (OSError, subprocess.SubprocessError) as err:
        _log.error("failed to run reboot command: %s", err)


class WatchdogRebooter:
    """Triggers reboots by starving the watchdog, or by software when it cannot."""

    def __init__(
        self,
        watchdog: SynchronizedWatchdog | None,
        logger: logging.Logger | None = None,
        software_reboot_hook: Callable[[], None] | None = None,
    ) -> None:
        self.watchdog = watchdog
        self._log = logger or _log
        self._software_reboot = software_reboot_hook or software_reboot

    def reboot(self) -> None:
        """Start a reboot of this node."""
        wd = self.watchdog
        if wd is None:
            self._log.info("no watchdog is present on this host, trying software reboot")
            self._software_reboot()
            return

        status = wd.status
        if status is WatchdogStatus.MALFUNCTION:
            self._log.info("watchdog is malfunctioning on this host, trying software reboot")
            self._software_reboot()
        elif status is WatchdogStatus.TRIGGERED:
            self._log.info("watchdog is triggered, waiting for watchdog reboot to commence")
            if self._is_watchdog_reboot_stuck():
                self._software_reboot()
        elif status is WatchdogStatus.DISARMED:
            self._log.info("watchdog failed to start, trying software reboot")
            self._software_reboot()
        elif status is WatchdogStatus.ARMED:
            # no more feeding: the watchdog reboots the node
            wd.stop()
            self._log.info("watchdog feeding has stopped, waiting for reboot to commence")
        else:
            self._log.error("unexpected watchdog status: %r", status)
            raise RuntimeError(f"unexpected watchdog status: {status!r}")

    def _is_watchdog_reboot_stuck(self) -> bool:
        last_food_time = self.watchdog.last_food_time
        if last_food_time is None:
            self._log.info("watchdog reboot is stuck, the watchdog was never fed")
            return True
        elapsed = datetime.now(timezone.utc) - last_food_time
        stuck = elapsed > TIME_TO_ASSUME_REBOOT_HAS_STARTED
        if stuck:
            self._log.info(
                "watchdog reboot is stuck, too long has passed since last feed time: %s", elapsed
            )
        return stuck