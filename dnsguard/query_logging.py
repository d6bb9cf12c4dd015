"""Resolver writing query information to daily log files or to the log."""

from __future__ import annotations

import csv
import logging
import os
import queue
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import dns.rcode

from dnsguard import dnsutil
from dnsguard.resolver import ChainedResolver, Request, Response, logger

CLEAN_UP_RUN_PERIOD_SEC = 12 * 60 * 60
LOG_QUEUE_CAPACITY = 1000

_DATE_FORMAT = "%Y-%m-%d"
_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9\-_]+")

_log = logger("query_logging_resolver")


@dataclass
class QueryLogConfig:
    """Query log settings; an empty ``dir`` logs to the logger instead of files."""

    dir: str = ""
    per_client: bool = False
    log_retention_days: int = 0


@dataclass
class _LogEntry:
    request: Request
    response: Response
    start: datetime
    duration_ms: int


def _escape(text: str) -> str:
    return _UNSAFE_CHARS.sub("_", text)


def _row(entry: _LogEntry) -> list[str]:
    request = entry.request
    response = entry.response
    return [
        entry.start.strftime(_TIMESTAMP_FORMAT),
        str(request.client_ip) if request.client_ip is not None else "",
        "; ".join(request.client_names),
        str(entry.duration_ms),
        response.reason,
        dnsutil.question_to_string(request.req.question),
        dnsutil.answer_to_string(response.res.answer),
        dns.rcode.to_text(response.res.rcode()),
    ]


class QueryLoggingResolver(ChainedResolver):
    """Records question, answer, duration and reason of each resolved query."""

    def __init__(self, cfg: QueryLogConfig) -> None:
        if cfg.dir and not Path(cfg.dir).exists():
            raise FileNotFoundError(
                f"query log directory '{cfg.dir}' does not exist or is not writable"
            )
        self.log_dir = cfg.dir
        self.per_client = cfg.per_client
        self.log_retention_days = cfg.log_retention_days
        self._queue: "queue.Queue[Optional[_LogEntry]]" = queue.Queue(maxsize=LOG_QUEUE_CAPACITY)
        self._stop = threading.Event()
        self._closed = False
        self._close_lock = threading.Lock()
        self._writer = threading.Thread(target=self._write_log, daemon=True)
        self._writer.start()
        if self.log_retention_days > 0:
            threading.Thread(target=self._periodic_clean_up, daemon=True).start()

    def __enter__(self) -> "QueryLoggingResolver":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Write all pending entries and stop the background threads."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._stop.set()
        self._queue.put(None)
        self._writer.join()

    def _periodic_clean_up(self) -> None:
        while not self._stop.wait(CLEAN_UP_RUN_PERIOD_SEC):
            self.clean_up()

    def clean_up(self) -> None:
        """Delete log files whose date is older than the retention time."""
        _log.debug("starting clean up")
        try:
            files = [e for e in os.scandir(self.log_dir) if e.is_file()]
        except OSError as exc:
            _log.error("can't list log directory '%s': %s", self.log_dir, exc)
            return

        now = datetime.now()
        for entry in files:
            if not (entry.name.endswith(".log") and len(entry.name) > 10):
                continue
            try:
                file_date = datetime.strptime(entry.name[:10], _DATE_FORMAT)
            except ValueError:
                continue
            age_days = int((now - file_date).total_seconds() // (24 * 60 * 60))
            if self.log_retention_days > 0 and age_days > self.log_retention_days:
                _log.info(
                    "existing log file '%s' (%d days old) is older than retention time "
                    "(%d days) and will be deleted",
                    entry.name, age_days, self.log_retention_days,
                )
                try:
                    os.remove(entry.path)
                except OSError as exc:
                    _log.error("can't remove file '%s': %s", entry.name, exc)

    def resolve(self, request: Request) -> Response:
        start = datetime.now()
        started = time.monotonic()
        response = self._resolve_next(request)
        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            self._queue.put_nowait(_LogEntry(request, response, start, duration_ms))
        except queue.Full:
            request.log.error("query log writer is too slow, log entry will be dropped")
        return response

    def _write_log(self) -> None:
        while True:
            entry = self._queue.get()
            if entry is None:
                return
            if self.log_dir:
                self._write_to_file(entry)
            else:
                entry.request.log.info(
                    "query resolved: response_reason=%s response_code=%s answer=%s duration_ms=%d",
                    entry.response.reason,
                    dns.rcode.to_text(entry.response.res.rcode()),
                    dnsutil.answer_to_string(entry.response.res.answer),
                    entry.duration_ms,
                )

    def _file_name(self, entry: _LogEntry) -> str:
        prefix = "-".join(entry.request.client_names) if self.per_client else "ALL"
        return f"{entry.start.strftime(_DATE_FORMAT)}_{_escape(prefix)}.log"

    def _write_to_file(self, entry: _LogEntry) -> None:
        started = time.monotonic()
        path = Path(self.log_dir) / self._file_name(entry)
        try:
            with open(path, "a", newline="", encoding="utf-8") as handle:
                csv.writer(handle, delimiter="\t", lineterminator="\n").writerow(_row(entry))
        except OSError as exc:
            entry.request.log.error("can't write to file '%s': %s", path, exc)

        pending = self._queue.qsize()
        if pending > LOG_QUEUE_CAPACITY // 2:
            entry.request.log.warning(
                "query log writer is too slow (%d entries pending), write duration: %d ms",
                pending, int((time.monotonic() - started) * 1000),
            )

    def configuration(self) -> list[str]:
        if not self.log_dir:
            return ["deactivated"]
        result = [
            f'logDir= "{self.log_dir}"',
            f"perClient = {str(self.per_client).lower()}",
            f"logRetentionDays= {self.log_retention_days}",
        ]
        if self.log_retention_days == 0:
            result.append("log cleanup deactivated")
        return result