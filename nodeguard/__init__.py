"""Watchdog handling, reboot decisions, safe-time calculation, peer tracking and manifest rendering for node self-remediation."""

__version__ = "0.0.1"