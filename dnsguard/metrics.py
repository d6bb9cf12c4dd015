"""Resolver recording metrics about requests and responses."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Optional, Sequence

import dns.rcode
import dns.rdatatype

from dnsguard.resolver import ChainedResolver, Request, Response

DURATION_BUCKETS = (5, 10, 20, 30, 50, 75, 100, 200, 500, 1000, 2000)


@dataclass
class PrometheusConfig:
    enable: bool = False
    path: str = "/metrics"


class _Counter:
    def __init__(self, name: str = "", help_text: str = "") -> None:
        self.name = name
        self.help = help_text
        self._value = 0.0
        self._lock = threading.Lock()

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        return self._value


class _Histogram:
    def __init__(self, buckets: Sequence[float]) -> None:
        self.buckets = tuple(buckets)
        self.bucket_counts = [0] * len(self.buckets)
        self.count = 0
        self.sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            self.count += 1
            self.sum += value
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    self.bucket_counts[i] += 1


class _Vec:
    def __init__(self, name: str, help_text: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.help = help_text
        self.label_names = tuple(label_names)
        self._children: dict[tuple[str, ...], object] = {}
        self._lock = threading.Lock()

    def _new_child(self) -> object:
        raise NotImplementedError

    def _child(self, labels: dict[str, str]):
        if set(labels) != set(self.label_names):
            raise ValueError(f"expected labels {list(self.label_names)}, got {sorted(labels)}")
        key = tuple(labels[n] for n in self.label_names)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._new_child()
            return child


class _CounterVec(_Vec):
    def _new_child(self) -> _Counter:
        return _Counter(self.name, self.help)

    def labels(self, **labels: str) -> _Counter:
        return self._child(labels)


class _HistogramVec(_Vec):
    def __init__(self, name: str, help_text: str, label_names: Sequence[str], buckets: Sequence[float]) -> None:
        super().__init__(name, help_text, label_names)
        self.buckets = tuple(buckets)

    def _new_child(self) -> _Histogram:
        return _Histogram(self.buckets)

    def labels(self, **labels: str) -> _Histogram:
        return self._child(labels)


class MetricsResolver(ChainedResolver):
    """Counts queries, responses and errors and records request durations."""

    def __init__(self, cfg: PrometheusConfig) -> None:
        self.cfg = cfg
        self.total_queries = _CounterVec("blocky_query_total", "Number of total queries", ["client", "type"])
        self.total_response = _CounterVec(
            "blocky_response_total", "Number of total responses",
            ["reason", "response_code", "response_type"],
        )
        self.total_errors = _Counter("blocky_error_total", "Number of total errors")
        self.duration_histogram = _HistogramVec(
            "blocky_request_duration_ms", "Request duration distribution",
            ["response_type"], DURATION_BUCKETS,
        )

    def resolve(self, request: Request) -> Response:
        try:
            response = self._resolve_next(request)
        except Exception:
            if self.cfg.enable:
                self._record(request, None)
            raise
        if self.cfg.enable:
            self._record(request, response)
        return response

    def _record(self, request: Request, response: Optional[Response]) -> None:
        self.total_queries.labels(
            client=",".join(request.client_names),
            type=dns.rdatatype.to_text(request.req.question[0].rdtype),
        ).inc()

        duration_ms = float(int((time.monotonic() - request.request_ts) * 1000))
        response_type = str(response.rtype) if response is not None else "err"
        self.duration_histogram.labels(response_type=response_type).observe(duration_ms)

        if response is None:
            self.total_errors.inc()
        else:
            self.total_response.labels(
                reason=response.reason,
                response_code=dns.rcode.to_text(response.res.rcode()),
                response_type=str(response.rtype),
            ).inc()

    def configuration(self) -> list[str]:
        return [
            "metrics:",
            f"  Enable = {str(self.cfg.enable).lower()}",
            f"  Path   = {self.cfg.path}",
        ]