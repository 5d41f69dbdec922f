"""A watchdog that is fed in the background and guarded by a lock."""

from __future__ import annotations

import abc
import enum
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Mapping

from nodeguard.env import is_software_reboot_enabled

FAKE_TIMEOUT = timedelta(seconds=1)


class WatchdogStatus(enum.IntEnum):
    DISARMED = 0
    ARMED = 1
    TRIGGERED = 2
    MALFUNCTION = 3


class WatchdogStartError(RuntimeError):
    """Raised when a watchdog cannot be started."""


class WatchdogDriver(abc.ABC):
    """The device specific part of a watchdog."""

    @abc.abstractmethod
    def start(self) -> timedelta:
        """Open the device and return its timeout; raise on failure."""

    @abc.abstractmethod
    def feed(self) -> None:
        """Reset the device's countdown."""

    @abc.abstractmethod
    def disarm(self) -> None:
        """Close the device without triggering a reboot."""


class SynchronizedWatchdog:
    """Runs a driver, feeding it every third of its timeout until stopped.

    ``last_food_time`` is a UTC datetime, or None if the watchdog was never fed.
    """

    def __init__(
        self,
        driver: WatchdogDriver,
        logger: logging.Logger | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.driver = driver
        self._log = logger or logging.getLogger("watchdog")
        self._environ = environ
        self._lock = threading.Lock()
        self._status = WatchdogStatus.DISARMED
        self._timeout = timedelta(0)
        self._last_food_time: datetime | None = None
        self._stop_feeding = threading.Event()

    @property
    def status(self) -> WatchdogStatus:
        with self._lock:
            return self._status

    @property
    def timeout(self) -> timedelta:
        with self._lock:
            return self._timeout

    @property
    def last_food_time(self) -> datetime | None:
        with self._lock:
            return self._last_food_time

    def _software_reboot_enabled(self) -> bool:
        try:
            return is_software_reboot_enabled(self._environ)
        except ValueError:
            return False

    def start(self, stop_event: threading.Event) -> None:
        """Arm the watchdog and block until ``stop_event`` is set, then disarm it."""
        with self._lock:
            if self._status is not WatchdogStatus.DISARMED:
                raise WatchdogStartError(
                    "watchdog was started more than once. This is likely to be caused "
                    "by being added to a manager multiple times"
                )
            try:
                timeout = self.driver.start()
            except Exception as start_err:
                if not self._software_reboot_enabled():
                    raise WatchdogStartError(
                        "failed to start watchdog, can't default to software reboot"
                    ) from start_err
                self._status = WatchdogStatus.MALFUNCTION
                self._log.error(
                    "error while starting watchdog, reverting to software reboot: %s", start_err
                )
                return
            self._timeout = timeout
            self._status = WatchdogStatus.ARMED
            self._log.info("watchdog started")
            self._stop_feeding = threading.Event()
            feeder = threading.Thread(
                target=self._feed_loop,
                args=(self._stop_feeding, timeout.total_seconds() / 3),
                name="watchdog-feeder",
                daemon=True,
            )
            feeder.start()

        stop_event.wait()

        with self._lock:
            if self._status is WatchdogStatus.ARMED:
                try:
                    self.driver.disarm()
                except Exception as err:
                    self._log.error("failed to disarm watchdog: %s", err)
                else:
                    self._log.info("disarmed watchdog")
                    self._stop_feeding.set()
                    self._status = WatchdogStatus.DISARMED

    def _feed_loop(self, stop: threading.Event, period: float) -> None:
        while not stop.is_set():
            began = time.monotonic()
            with self._lock:
                # a disarmed or triggered watchdog must not be fed any more
                if self._status is WatchdogStatus.ARMED and not stop.is_set():
                    try:
                        self.driver.feed()
                    except Exception as err:
                        self._log.error("failed to feed watchdog: %s", err)
                    else:
                        self._last_food_time = datetime.now(timezone.utc)
            stop.wait(max(0.0, period - (time.monotonic() - began)))

    def stop(self) -> None:
        """Stop feeding an armed watchdog, which makes it reboot the node."""
        with self._lock:
            if self._status is WatchdogStatus.ARMED:
                self._stop_feeding.set()
                self._status = WatchdogStatus.TRIGGERED


class FakeWatchdogDriver(WatchdogDriver):
    """A driver for tests that starts or fails on demand and counts what it is asked."""

    def __init__(self, is_start_successful: bool) -> None:
        self.is_start_successful = is_start_successful
        self.feed_count = 0
        self.disarmed = False

    def start(self) -> timedelta:
        if not self.is_start_successful:
            raise WatchdogStartError("fake watchdog crash on start")
        self.disarmed = False
        return FAKE_TIMEOUT

    def feed(self) -> None:
        self.feed_count += 1

    def disarm(self) -> None:
        self.disarmed = True


def new_fake(is_start_successful: bool) -> SynchronizedWatchdog:
    """Return a watchdog backed by a fake driver."""
    return SynchronizedWatchdog(
        FakeWatchdogDriver(is_start_successful), logging.getLogger("fake watchdog")
    )