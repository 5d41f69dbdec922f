import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from nodeguard.watchdog import (
    FAKE_TIMEOUT,
    FakeWatchdogDriver,
    SynchronizedWatchdog,
    WatchdogDriver,
    WatchdogStartError,
    WatchdogStatus,
    new_fake,
)

ENABLED = {"IS_SOFTWARE_REBOOT_ENABLED": "true"}


class RecordingDriver(WatchdogDriver):
    def __init__(self, timeout=timedelta(seconds=0.3), fail_disarm=False):
        self.timeout = timeout
        self.fail_disarm = fail_disarm
        self.feeds = 0
        self.disarms = 0

    def start(self):
        return self.timeout

    def feed(self):
        self.feeds += 1

    def disarm(self):
        self.disarms += 1
        if self.fail_disarm:
            raise OSError("cannot disarm")


def wait_until(predicate, limit=5.0):
    deadline = time.monotonic() + limit
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def run_in_thread(wd, stop_event):
    thread = threading.Thread(target=wd.start, args=(stop_event,), daemon=True)
    thread.start()
    return thread


def test_status_lookup_by_value_follows_declaration_order():
    assert [WatchdogStatus(v) for v in range(4)] == [
        WatchdogStatus.DISARMED,
        WatchdogStatus.ARMED,
        WatchdogStatus.TRIGGERED,
        WatchdogStatus.MALFUNCTION,
    ]


def test_start_failure_without_software_reboot_raises():
    wd = new_fake(False)
    wd._environ = {}
    with pytest.raises(WatchdogStartError, match="failed to start watchdog, can't default to software reboot"):
        wd.start(threading.Event())
    assert wd.status is WatchdogStatus.DISARMED


def test_start_failure_with_software_reboot_false_raises():
    wd = SynchronizedWatchdog(FakeWatchdogDriver(False), environ={"IS_SOFTWARE_REBOOT_ENABLED": "false"})
    with pytest.raises(WatchdogStartError):
        wd.start(threading.Event())
    assert wd.status is WatchdogStatus.DISARMED


def test_start_failure_with_software_reboot_enabled_is_malfunction():
    wd = SynchronizedWatchdog(FakeWatchdogDriver(False), environ=ENABLED)
    wd.start(threading.Event())
    assert wd.status is WatchdogStatus.MALFUNCTION
    assert wd.last_food_time is None


def test_start_twice_raises():
    wd = SynchronizedWatchdog(FakeWatchdogDriver(False), environ=ENABLED)
    wd.start(threading.Event())
    with pytest.raises(WatchdogStartError, match="started more than once"):
        wd.start(threading.Event())


def test_fake_watchdog_arms_and_disarms():
    wd = new_fake(True)
    stop_event = threading.Event()
    thread = run_in_thread(wd, stop_event)
    assert wait_until(lambda: wd.status is WatchdogStatus.ARMED)
    assert wd.timeout == FAKE_TIMEOUT
    assert wd.timeout == timedelta(seconds=1)
    stop_event.set()
    thread.join(5)
    assert not thread.is_alive()
    assert wd.status is WatchdogStatus.DISARMED


def test_armed_watchdog_is_fed_and_disarmed_on_stop_event():
    driver = RecordingDriver()
    wd = SynchronizedWatchdog(driver, environ={})
    stop_event = threading.Event()
    before = datetime.now(timezone.utc)
    thread = run_in_thread(wd, stop_event)
    assert wait_until(lambda: driver.feeds >= 2)
    assert wd.status is WatchdogStatus.ARMED
    assert wd.timeout == driver.timeout
    fed_at = wd.last_food_time
    assert before <= fed_at <= datetime.now(timezone.utc)
    stop_event.set()
    thread.join(5)
    assert wd.status is WatchdogStatus.DISARMED
    assert driver.disarms == 1
    feeds = driver.feeds
    time.sleep(0.3)
    assert driver.feeds == feeds


def test_stop_triggers_and_stops_feeding():
    driver = RecordingDriver()
    wd = SynchronizedWatchdog(driver, environ={})
    stop_event = threading.Event()
    thread = run_in_thread(wd, stop_event)
    assert wait_until(lambda: driver.feeds >= 1)
    wd.stop()
    assert wd.status is WatchdogStatus.TRIGGERED
    feeds = driver.feeds
    last = wd.last_food_time
    time.sleep(0.3)
    assert driver.feeds == feeds
    assert wd.last_food_time == last
    stop_event.set()
    thread.join(5)
    assert driver.disarms == 0
    assert wd.status is WatchdogStatus.TRIGGERED


def test_stop_on_disarmed_watchdog_keeps_status():
    wd = new_fake(True)
    wd.stop()
    assert wd.status is WatchdogStatus.DISARMED


def test_failed_disarm_keeps_watchdog_armed():
    driver = RecordingDriver(fail_disarm=True)
    wd = SynchronizedWatchdog(driver, environ={})
    stop_event = threading.Event()
    stop_event.set()
    wd.start(stop_event)
    assert driver.disarms == 1
    assert wd.status is WatchdogStatus.ARMED
    wd.stop()
    assert wd.status is WatchdogStatus.TRIGGERED


def test_already_set_stop_event_disarms_immediately():
    driver = RecordingDriver()
    wd = SynchronizedWatchdog(driver, environ={})
    stop_event = threading.Event()
    stop_event.set()
    wd.start(stop_event)
    assert wd.status is WatchdogStatus.DISARMED
    assert driver.disarms == 1


def test_fake_driver_start_results():
    assert FakeWatchdogDriver(True).start() == FAKE_TIMEOUT
    with pytest.raises(WatchdogStartError):
        FakeWatchdogDriver(False).start()