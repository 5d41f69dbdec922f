"""Taint helpers and detection of out-of-service taint support."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable

from nodeguard.kube import Taint

log = logging.getLogger("utils-taints")

MIN_K8S_MAJOR_VERSION_OUT_OF_SERVICE_TAINT = 1
MIN_K8S_MINOR_VERSION_SUPPORTING_OUT_OF_SERVICE_TAINT = 26
MIN_K8S_MINOR_VERSION_GA_OUT_OF_SERVICE_TAINT = 28

_LEADING_DIGITS = re.compile(r"^(\d+)")
_INTEGER = re.compile(r"[+-]?\d+")


def taint_exists(taints: Iterable[Taint], taint_to_find: Taint) -> bool:
    """Return True if any taint matches the given one."""
    return any(taint.matches(taint_to_find) for taint in taints)


def delete_taint(taints: Iterable[Taint], taint_to_delete: Taint) -> tuple[list[Taint], bool]:
    """Remove all taints with the same key and effect; report whether any went."""
    kept = [taint for taint in taints if not taint_to_delete.matches(taint)]
    remaining = list(taints) if not isinstance(taints, list) else taints
    return kept, len(kept) != len(remaining)


@dataclass(frozen=True)
class OutOfServiceTaintSupport:
    supported: bool
    ga: bool


def _to_int(text: str, what: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise ValueError(f"couldn't parse k8s {what} version: {text!r}")
    return int(text)


def parse_out_of_service_taint_support(major: str, minor: str) -> OutOfServiceTaintSupport:
    """Work out from a server version whether the out-of-service taint is supported and GA."""
    major_ver = _to_int(major, "major")
    match = _LEADING_DIGITS.match(minor)
    minor_ver = _to_int(match.group(1) if match else "", "minor")

    def at_least(min_minor: int) -> bool:
        return major_ver > MIN_K8S_MAJOR_VERSION_OUT_OF_SERVICE_TAINT or (
            major_ver == MIN_K8S_MAJOR_VERSION_OUT_OF_SERVICE_TAINT and minor_ver >= min_minor
        )

    result = OutOfServiceTaintSupport(
        supported=at_least(MIN_K8S_MINOR_VERSION_SUPPORTING_OUT_OF_SERVICE_TAINT),
        ga=at_least(MIN_K8S_MINOR_VERSION_GA_OUT_OF_SERVICE_TAINT),
    )
    log.info(
        "out of service taint strategy: supported=%s ga=%s k8s=%d.%d",
        result.supported, result.ga, major_ver, minor_ver,
    )
    return result