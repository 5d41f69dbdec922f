"""The Linux watchdog device driver and its discovery."""

from __future__ import annotations

import fcntl
import logging
import os
import struct
import subprocess
import threading
from dataclasses import dataclass
from datetime import timedelta

from nodeguard.watchdog import SynchronizedWatchdog, WatchdogDriver

WATCHDOGS_FOLDER = "/dev"
WATCHDOG_PREFIX = "watchdog"
WATCHDOG_PATH_ENV_VAR = "WATCHDOG_PATH"

log = logging.getLogger("watchdog")

_INFO_FORMAT = "=II32s"
_INT_FORMAT = "=i"


def _ior(type_char: str, number: int, size: int) -> int:
    read_direction = 2
    return (read_direction << 30) | (size << 16) | (ord(type_char) << 8) | number


WDIOC_GETSUPPORT = _ior("W", 0, struct.calcsize(_INFO_FORMAT))
WDIOC_GETTIMEOUT = _ior("W", 7, struct.calcsize(_INT_FORMAT))

# only one Linux watchdog may exist per process; the lock is never released
_INSTANCE_GUARD = threading.Lock()


@dataclass(frozen=True)
class WatchdogInfo:
    options: int
    firmware_version: int
    identity: bytes


class LinuxWatchdogDriver(WatchdogDriver):
    """Drives a watchdog character device through its file descriptor."""

    def __init__(self, device_path: str) -> None:
        self.device_path = device_path
        self.info: WatchdogInfo | None = None
        self._fd: int | None = None

    def start(self) -> timedelta:
        try:
            self._fd = os.open(self.device_path, os.O_WRONLY)
        except OSError as err:
            log.error("failed to open watchdog device %s: %s", self.device_path, err)
            raise
        self.info = self._read_info()
        try:
            return self._read_timeout()
        except OSError as err:
            # no feeding without a timeout, so disarm
            try:
                self.disarm()
            except OSError:
                pass
            log.error("failed to get timeout of watchdog, disarmed %s: %s", self.device_path, err)
            raise

    def _read_info(self) -> WatchdogInfo | None:
        buf = bytearray(struct.calcsize(_INFO_FORMAT))
        try:
            fcntl.ioctl(self._fd, WDIOC_GETSUPPORT, buf)
        except OSError:
            return None
        options, firmware, identity = struct.unpack(_INFO_FORMAT, bytes(buf))
        return WatchdogInfo(options, firmware, identity.rstrip(b"\0"))

    def _read_timeout(self) -> timedelta:
        buf = bytearray(struct.calcsize(_INT_FORMAT))
        fcntl.ioctl(self._fd, WDIOC_GETTIMEOUT, buf)
        (seconds,) = struct.unpack(_INT_FORMAT, bytes(buf))
        return timedelta(seconds=seconds)

    def _require_fd(self) -> int:
        if self._fd is None:
            raise OSError(f"watchdog device {self.device_path} is not open")
        return self._fd

    def feed(self) -> None:
        os.write(self._require_fd(), b"a")

    def disarm(self) -> None:
        """Close the device without a reboot, even though it is not fed any more."""
        fd = self._require_fd()
        os.write(fd, b"V")  # the magic close character
        os.close(fd)
        self._fd = None


def enable_softdog() -> None:
    """Load the softdog kernel module in the host's mount namespace."""
    subprocess.run(
        ["/usr/bin/nsenter", "-m/proc/1/ns/mnt", "modprobe", "softdog"],
        check=True,
    )


def check_watchdog_exists(path: str) -> None:
    """Raise if the watchdog device at ``path`` cannot be found."""
    try:
        os.stat(path)
    except FileNotFoundError as err:
        raise FileNotFoundError(f"watchdog device not found: {err}") from err
    except OSError as err:
        raise OSError(f"failed to check for watchdog device: {err}") from err


def find_last_modified_watchdog(folder: str = WATCHDOGS_FOLDER) -> str:
    """Return the most recently modified watchdog device in ``folder``."""
    try:
        entries = sorted(os.scandir(folder), key=lambda entry: entry.name)
    except OSError as err:
        raise OSError(f"failed to list watchdogs folder: {folder}: {err}") from err

    latest = ""
    latest_mtime = -1
    for entry in entries:
        if not entry.name.startswith(WATCHDOG_PREFIX):
            continue
        try:
            if entry.is_dir():
                continue
            mtime = entry.stat().st_mtime_ns
        except OSError as err:
            log.error("failed to get info for %s in %s: %s", entry.name, folder, err)
            continue
        if mtime >= latest_mtime:
            latest_mtime = mtime
            latest = os.path.join(folder, entry.name)

    if not latest:
        raise FileNotFoundError("failed to find softdog path")
    return latest


def new_linux(device_path: str | None = None) -> SynchronizedWatchdog:
    """Create the process's single Linux watchdog, loading softdog if needed."""
    if not _INSTANCE_GUARD.acquire(blocking=False):
        raise RuntimeError("linux watchdog already instantiated")

    path = os.environ.get(WATCHDOG_PATH_ENV_VAR, "") if device_path is None else device_path
    try:
        check_watchdog_exists(path)
    except OSError as err:
        log.error("watchdog file path couldn't be accessed: %s", err)
        log.info("trying to enable softdog")
        enable_softdog()
        path = find_last_modified_watchdog()
        log.info("auto detected softdog path: %s", path)
        check_watchdog_exists(path)

    return SynchronizedWatchdog(LinuxWatchdogDriver(path), log)