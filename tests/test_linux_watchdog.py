import os
import subprocess
import threading
from unittest import mock

import pytest

from nodeguard.linux_watchdog import (
    LinuxWatchdogDriver,
    check_watchdog_exists,
    enable_softdog,
    find_last_modified_watchdog,
    new_linux,
)
from nodeguard.watchdog import WatchdogStatus


def touch(path, mtime_ns):
    path.write_bytes(b"")
    os.utime(path, ns=(mtime_ns, mtime_ns))
    return path


def test_check_watchdog_exists_missing(tmp_path):
    with pytest.raises(FileNotFoundError, match="watchdog device not found"):
        check_watchdog_exists(str(tmp_path / "watchdog9"))


def test_find_last_modified_watchdog_picks_newest(tmp_path):
    base = 1_000_000_000_000_000_000
    touch(tmp_path / "watchdog0", base)
    newest = touch(tmp_path / "watchdog1", base + 5_000_000_000)
    touch(tmp_path / "other", base + 9_000_000_000)
    subdir = tmp_path / "watchdog_dir"
    subdir.mkdir()
    os.utime(subdir, ns=(base + 9_000_000_000, base + 9_000_000_000))
    assert find_last_modified_watchdog(str(tmp_path)) == str(newest)


def test_find_last_modified_watchdog_tie_takes_last_name(tmp_path):
    base = 1_000_000_000_000_000_000
    touch(tmp_path / "watchdog0", base)
    last = touch(tmp_path / "watchdog1", base)
    assert find_last_modified_watchdog(str(tmp_path)) == str(last)


def test_find_last_modified_watchdog_none_found(tmp_path):
    (tmp_path / "random").write_bytes(b"")
    with pytest.raises(FileNotFoundError, match="failed to find softdog path"):
        find_last_modified_watchdog(str(tmp_path))


def test_find_last_modified_watchdog_missing_folder(tmp_path):
    with pytest.raises(OSError, match="failed to list watchdogs folder"):
        find_last_modified_watchdog(str(tmp_path / "absent"))


def test_enable_softdog_runs_modprobe_and_propagates_missing_tool():
    missing = FileNotFoundError("nsenter")
    with mock.patch("nodeguard.linux_watchdog.subprocess.run", side_effect=missing) as run:
        with pytest.raises(FileNotFoundError):
            enable_softdog()
    assert run.call_args_list == [
        mock.call(["/usr/bin/nsenter", "-m/proc/1/ns/mnt", "modprobe", "softdog"], check=True)
    ]


def test_enable_softdog_failure_raises():
    failure = subprocess.CalledProcessError(1, "nsenter")
    with mock.patch("nodeguard.linux_watchdog.subprocess.run", side_effect=failure):
        with pytest.raises(subprocess.CalledProcessError):
            enable_softdog()


def test_driver_start_on_missing_device(tmp_path):
    driver = LinuxWatchdogDriver(str(tmp_path / "watchdog0"))
    with pytest.raises(FileNotFoundError):
        driver.start()


def test_driver_start_without_timeout_disarms(tmp_path):
    device = tmp_path / "watchdog0"
    device.write_bytes(b"")
    driver = LinuxWatchdogDriver(str(device))
    with pytest.raises(OSError):
        driver.start()
    assert device.read_bytes() == b"V"
    assert driver.info is None


def test_driver_feed_without_open_device(tmp_path):
    driver = LinuxWatchdogDriver(str(tmp_path / "watchdog0"))
    with pytest.raises(OSError, match="is not open"):
        driver.feed()


def test_new_linux_only_once(tmp_path, monkeypatch):
    monkeypatch.setenv("IS_SOFTWARE_REBOOT_ENABLED", "true")
    device = tmp_path / "watchdog0"
    device.write_bytes(b"")
    wd = new_linux(str(device))
    assert wd.driver.device_path == str(device)

    stop_event = threading.Event()
    stop_event.set()
    wd.start(stop_event)
    assert wd.status is WatchdogStatus.MALFUNCTION
    assert device.read_bytes() == b"V"

    with pytest.raises(RuntimeError, match="already instantiated"):
        new_linux(str(device))