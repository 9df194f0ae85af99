"""
loadfleet/models/results.py

ResultsTable: hostname -> result code, shared by every worker of one run.

Each worker owns exactly one hostname key and writes it at most once, so the
table only needs to refuse a second write for the same key. A hostname with no
code means that node's worker died before producing one; the exception text is
kept separately as the failure reason.
"""

from __future__ import annotations

import threading
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional


class DuplicateResultError(RuntimeError):
    """A second result was recorded for a hostname."""


class ResultsTable:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._codes: Dict[str, int] = {}
        self._failures: Dict[str, str] = {}

    def record(self, host: str, code: int) -> None:
        with self._lock:
            if host in self._codes or host in self._failures:
                raise DuplicateResultError(f"Result for {host} already recorded.")
            self._codes[host] = code

    def record_failure(self, host: str, reason: str) -> None:
        with self._lock:
            if host in self._codes or host in self._failures:
                raise DuplicateResultError(f"Result for {host} already recorded.")
            self._failures[host] = reason

    def get(self, host: str) -> Optional[int]:
        return self._codes.get(host)

    def __contains__(self, host: object) -> bool:
        return host in self._codes

    def __len__(self) -> int:
        return len(self._codes)

    @property
    def codes(self) -> Mapping[str, int]:
        return MappingProxyType(self._codes)

    @property
    def failures(self) -> Mapping[str, str]:
        return MappingProxyType(self._failures)

    def failed_count(self, hosts: Iterable[str]) -> int:
        """Hosts minus the hosts that stored a zero code."""
        host_list = list(hosts)
        succeeded = sum(1 for host in host_list if self._codes.get(host) == 0)
        return len(host_list) - succeeded
