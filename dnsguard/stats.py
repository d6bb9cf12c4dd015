"""Resolver gathering query statistics over the last 24 hours."""

from __future__ import annotations

import signal
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Callable

import dns.rcode
import dns.rdatatype

from dnsguard import dnsutil
from dnsguard.resolver import ChainedResolver, Request, Response, ResponseType, logger

_log = logger("stats_resolver")
_KEY_WIDTH = 50


class Aggregator:
    """Counts keys per hour within a sliding window of hours."""

    def __init__(self, name: str, max_results: int = 0, window_hours: int = 24) -> None:
        self.name = name
        self.max_results = max_results
        self.window_hours = window_hours
        self._buckets: deque[tuple[int, Counter[str]]] = deque()
        self._lock = threading.Lock()

    def _prune(self, hour: int) -> None:
        while self._buckets and self._buckets[0][0] <= hour - self.window_hours:
            self._buckets.popleft()

    def put(self, key: str) -> None:
        """Count one occurrence of ``key``; empty keys are ignored."""
        if not key:
            return
        hour = int(time.time() // 3600)
        with self._lock:
            if not self._buckets or self._buckets[-1][0] != hour:
                self._buckets.append((hour, Counter()))
            self._buckets[-1][1][key] += 1
            self._prune(hour)

    def aggregate_result(self) -> dict[str, int]:
        """Counts in the window, highest first, limited to ``max_results`` if set."""
        hour = int(time.time() // 3600)
        total: Counter[str] = Counter()
        with self._lock:
            self._prune(hour)
            for _, bucket in self._buckets:
                total.update(bucket)
        return dict(total.most_common(self.max_results or None))


@dataclass
class _StatRecorder:
    aggregator: Aggregator
    fn: Callable[[Request, Response], str]

    def record(self, request: Request, response: Response) -> None:
        self.aggregator.put(self.fn(request, response))


def _blocked_domain(request: Request, response: Response) -> str:
    if response.rtype == ResponseType.BLOCKED:
        return dnsutil.extract_domain(request.req.question[0])
    return ""


def _create_recorders() -> list[_StatRecorder]:
    return [
        _StatRecorder(Aggregator("Top 20 queries", 20),
                      lambda req, _: dnsutil.extract_domain(req.req.question[0])),
        _StatRecorder(Aggregator("Top 20 blocked queries", 20), _blocked_domain),
        _StatRecorder(Aggregator("Query count per client"), lambda req, _: ",".join(req.client_names)),
        _StatRecorder(Aggregator("Reason"), lambda _, resp: resp.reason),
        _StatRecorder(Aggregator("Query type"),
                      lambda req, _: dns.rdatatype.to_text(req.req.question[0].rdtype)),
        _StatRecorder(Aggregator("Response type"),
                      lambda _, resp: dns.rcode.to_text(resp.res.rcode())),
    ]


def _render_table(title: str, rows: dict[str, int]) -> list[str]:
    cells = [(f"{key:>{_KEY_WIDTH}}", str(value)) for key, value in rows.items()]
    key_width = max([_KEY_WIDTH] + [len(k) for k, _ in cells])
    value_width = max([1] + [len(v) for _, v in cells])
    inner = key_width + value_width + 5
    lines = [
        "┌" + "─" * inner + "┐",
        "│ " + title.ljust(inner - 2) + " │",
        "├" + "─" * (key_width + 2) + "┬" + "─" * (value_width + 2) + "┤",
    ]
    lines.extend(f"│ {k:>{key_width}} │ {v:>{value_width}} │" for k, v in cells)
    lines.append("└" + "─" * (key_width + 2) + "┴" + "─" * (value_width + 2) + "┘")
    return lines


class StatsResolver(ChainedResolver):
    """Records statistics for every successfully resolved query."""

    def __init__(self, register_trigger: bool = True) -> None:
        self.recorders = _create_recorders()
        self._lock = threading.Lock()
        if register_trigger:
            register_stats_trigger(self)

    def resolve(self, request: Request) -> Response:
        response = self._resolve_next(request)
        with self._lock:
            for recorder in self.recorders:
                recorder.record(request, response)
        return response

    def configuration(self) -> list[str]:
        return ["stats:"] + [f" - {r.aggregator.name}" for r in self.recorders]

    def print_stats(self) -> str:
        """Log the statistics tables and return them as text."""
        lines = ["******* STATS 24h *******"]
        for recorder in self.recorders:
            lines.extend(_render_table(recorder.aggregator.name, recorder.aggregator.aggregate_result()))
        report = "\n".join(lines)
        for line in lines:
            _log.info(line)
        return report


def register_stats_trigger(resolver: StatsResolver) -> bool:
    """Print the resolver's statistics on SIGUSR2 where the platform has it."""
    sigusr2 = getattr(signal, "SIGUSR2", None)
    if sigusr2 is None:
        return False
    try:
        signal.signal(sigusr2, lambda _signum, _frame: resolver.print_stats())
    except ValueError:
        # signal handlers can only be installed from the main thread
        return False
    return True