"""Resolver caching answers for the lifetime of their TTL, with optional prefetching."""

from __future__ import annotations

import threading
import time
import weakref
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Optional

import dns.message
import dns.rcode
import dns.rdatatype
import dns.rrset

from dnsguard import dnsutil, events
from dnsguard.resolver import (
    ChainedResolver,
    Request,
    Response,
    ResponseType,
    logger,
    name,
    new_request,
)

CACHE_TIME_NEGATIVE = 30 * 60
PREFETCHING_NAME_CACHE_EXPIRATION = 2 * 60 * 60
PREFETCHING_NAME_COUNT_THRESHOLD = 5

_RESULT_CACHE_EXPIRATION = 15 * 60
_RESULT_CACHE_CLEANUP = 15
_PREFETCH_CACHE_CLEANUP = 60

_log = logger("caching_resolver")


@dataclass
class CachingConfig:
    """Caching settings; times are in minutes."""

    min_caching_time: int = 0
    max_caching_time: int = 0
    max_items_count: int = 0
    prefetching: bool = False
    prefetch_expires: int = 0
    prefetch_threshold: int = 0
    prefetch_max_items_count: int = 0


@dataclass
class _CacheValue:
    answer: list[dns.rrset.RRset]
    prefetch: bool


def _janitor(cache_ref: "weakref.ref[_ExpiringCache]", stop: threading.Event, interval: float) -> None:
    while not stop.wait(interval):
        cache = cache_ref()
        if cache is None:
            return
        cache._delete_expired()
        del cache


class _ExpiringCache:
    """Thread-safe key/value store with per-item expiry, optional LRU limit and eviction callback."""

    def __init__(self, default_expiration: float, cleanup_interval: float, max_items: int = 0) -> None:
        self.default_expiration = default_expiration
        self.max_items = max_items
        self.on_evicted: Optional[Callable[[Hashable, Any], None]] = None
        self._items: OrderedDict[Hashable, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        if cleanup_interval > 0:
            threading.Thread(
                target=_janitor,
                args=(weakref.ref(self), self._stop, cleanup_interval),
                daemon=True,
            ).start()

    def __del__(self) -> None:
        self._stop.set()

    def set(self, key: Hashable, value: Any, ttl: float = 0) -> None:
        """Store a value; a ttl of 0 means the default expiration."""
        expires_at = time.monotonic() + (ttl if ttl > 0 else self.default_expiration)
        with self._lock:
            self._items[key] = (value, expires_at)
            self._items.move_to_end(key)
            if self.max_items > 0:
                while len(self._items) > self.max_items:
                    self._items.popitem(last=False)

    def get_with_expiration(self, key: Hashable) -> Optional[tuple[Any, float]]:
        """Return (value, expiry time) for a live item, or None."""
        with self._lock:
            entry = self._items.get(key)
            if entry is None or entry[1] <= time.monotonic():
                return None
            self._items.move_to_end(key)
            return entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _delete_expired(self) -> None:
        now = time.monotonic()
        with self._lock:
            expired = [(k, v) for k, (v, exp) in self._items.items() if exp <= now]
            for key, _ in expired:
                del self._items[key]
            callback = self.on_evicted
        if callback is not None:
            for key, value in expired:
                callback(key, value)


def _go_duration(seconds: int) -> str:
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def _copy_with_ttl(rrset: dns.rrset.RRset, ttl: int) -> dns.rrset.RRset:
    copied = rrset.copy()
    copied.ttl = ttl
    return copied


class CachingResolver(ChainedResolver):
    """Answers recurring queries from a cache to avoid calling upstream resolvers."""

    def __init__(
        self,
        cfg: CachingConfig,
        *,
        cache_expiration: float = _RESULT_CACHE_EXPIRATION,
        cleanup_interval: float = _RESULT_CACHE_CLEANUP,
    ) -> None:
        self.min_cache_time_sec = 60 * cfg.min_caching_time
        self.max_cache_time_sec = 60 * cfg.max_caching_time
        self.result_cache = _ExpiringCache(cache_expiration, cleanup_interval, cfg.max_items_count)
        self.prefetch_expires = 0
        self.prefetch_threshold = 0
        self.prefetching_name_cache: Optional[_ExpiringCache] = None
        if cfg.prefetching:
            self._configure_prefetching(cfg)

    def _configure_prefetching(self, cfg: CachingConfig) -> None:
        self.prefetch_expires = (
            cfg.prefetch_expires * 60 if cfg.prefetch_expires > 0 else PREFETCHING_NAME_CACHE_EXPIRATION
        )
        self.prefetch_threshold = (
            cfg.prefetch_threshold if cfg.prefetch_threshold > 0 else PREFETCHING_NAME_COUNT_THRESHOLD
        )
        self.prefetching_name_cache = _ExpiringCache(
            self.prefetch_expires, _PREFETCH_CACHE_CLEANUP, cfg.prefetch_max_items_count
        )
        self.result_cache.on_evicted = self._on_evicted

    def _on_evicted(self, cache_key: tuple[int, str], _value: Any) -> None:
        if self.prefetching_name_cache is None:
            return
        qtype, domain = cache_key
        entry = self.prefetching_name_cache.get_with_expiration(cache_key)
        if entry is None or entry[0] <= self.prefetch_threshold:
            return
        _log.debug("prefetching '%s' (%s)", domain, dns.rdatatype.to_text(qtype))
        try:
            response = self._resolve_next(new_request(f"{domain}.", qtype, _log))
        except Exception as exc:  # noqa: BLE001 - prefetch failures are only logged
            _log.error("can't prefetch '%s': %s", domain, exc)
            return
        self._put_in_cache(cache_key, response, prefetch=True)
        events.bus().publish(events.CACHING_DOMAIN_PREFETCHED, domain)

    def configuration(self) -> list[str]:
        if self.max_cache_time_sec < 0:
            return ["deactivated"]
        prefetching = self.prefetching_name_cache is not None
        result = [
            f"minCacheTimeInSec = {self.min_cache_time_sec}",
            f"maxCacheTimeSec = {self.max_cache_time_sec}",
            f"prefetching = {str(prefetching).lower()}",
        ]
        if prefetching:
            result.append(f"prefetchExpires = {_go_duration(self.prefetch_expires)}")
            result.append(f"prefetchThreshold = {self.prefetch_threshold}")
        result.append(f"cache items count = {len(self.result_cache)}")
        return result

    def resolve(self, request: Request) -> Response:
        log = request.log
        if self.max_cache_time_sec < 0:
            log.debug("skip cache")
            return self._resolve_next(request)

        response: Optional[Response] = None
        for question in request.req.question:
            domain = dnsutil.extract_domain(question)
            cache_key = (question.rdtype, domain)
            self._track_query_count(domain, cache_key)

            cached = self.result_cache.get_with_expiration(cache_key)
            if cached is not None:
                value, expires_at = cached
                log.debug("domain %s is cached", domain)
                events.bus().publish(events.CACHING_RESULT_CACHE_HIT, domain)
                reply = dns.message.make_response(request.req)
                if isinstance(value, _CacheValue):
                    if value.prefetch:
                        events.bus().publish(events.CACHING_PREFETCH_CACHE_HIT, domain)
                    remaining = max(0, int(expires_at - time.monotonic()))
                    reply.answer = [_copy_with_ttl(rrset, remaining) for rrset in value.answer]
                    return Response(res=reply, reason="CACHED", rtype=ResponseType.CACHED)
                reply.set_rcode(value)
                return Response(res=reply, reason="CACHED NEGATIVE", rtype=ResponseType.CACHED)

            events.bus().publish(events.CACHING_RESULT_CACHE_MISS, domain)
            log.debug("not in cache: go to next resolver %s",
                      name(self.next_resolver) if self.next_resolver else None)
            response = self._resolve_next(request)
            self._put_in_cache(cache_key, response, prefetch=False)

        if response is None:
            return self._resolve_next(request)
        return response

    def _track_query_count(self, domain: str, cache_key: tuple[int, str]) -> None:
        cache = self.prefetching_name_cache
        if cache is None:
            return
        entry = cache.get_with_expiration(cache_key)
        count = (entry[0] if entry is not None else 0) + 1
        cache.set(cache_key, count)
        _log.debug("domain '%s' was requested %d times, total cache size: %d", domain, count, len(cache))
        events.bus().publish(events.CACHING_DOMAINS_TO_PREFETCH_COUNT_CHANGED, len(cache))

    def _put_in_cache(self, cache_key: tuple[int, str], response: Response, prefetch: bool) -> None:
        rcode = response.res.rcode()
        answer = response.res.answer
        if rcode == dns.rcode.NOERROR:
            max_ttl = self._adjust_ttls(answer)
            self.result_cache.set(
                cache_key, _CacheValue([rrset.copy() for rrset in answer], prefetch), max_ttl
            )
        elif rcode == dns.rcode.NXDOMAIN:
            self.result_cache.set(cache_key, rcode, CACHE_TIME_NEGATIVE)
        events.bus().publish(events.CACHING_RESULT_CACHE_CHANGED, len(self.result_cache))

    def _adjust_ttls(self, answer: list[dns.rrset.RRset]) -> int:
        max_ttl = 0
        for rrset in answer:
            if self.min_cache_time_sec > 0 and rrset.ttl < self.min_cache_time_sec:
                rrset.ttl = self.min_cache_time_sec
            if self.max_cache_time_sec > 0 and rrset.ttl > self.max_cache_time_sec:
                rrset.ttl = self.max_cache_time_sec
            max_ttl = max(max_ttl, rrset.ttl)
        return max_ttl