"""Resolver blocking queries whose domain, IP or CNAME is on a blacklist."""

from __future__ import annotations

import enum
import ipaddress
import logging
import threading
import time
import urllib.request
import weakref
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Optional, Protocol, Sequence

import dns.message
import dns.rcode
import dns.rdatatype
import dns.rrset

from dnsguard import dnsutil, events
from dnsguard.resolver import ChainedResolver, Request, Response, ResponseType, logger

DEFAULT_BLOCK_TTL = 6 * 60 * 60
DEFAULT_BLOCK_TYPE = "ZEROIP"
DEFAULT_GROUP = "default"

_log = logger("blocking_resolver")

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class ListCacheType(enum.Enum):
    BLACKLIST = "blacklist"
    WHITELIST = "whitelist"

    def __str__(self) -> str:
        return self.value


@dataclass
class BlockingConfig:
    """Blocking settings; ``refresh_period`` is in minutes."""

    black_lists: Mapping[str, Sequence[str]] = field(default_factory=dict)
    white_lists: Mapping[str, Sequence[str]] = field(default_factory=dict)
    client_groups_block: Mapping[str, Sequence[str]] = field(default_factory=dict)
    block_type: str = ""
    block_time_sec: int = 0
    refresh_period: int = 0


@dataclass(frozen=True)
class BlockingStatus:
    enabled: bool
    disabled_groups: list[str]
    auto_enable_in_sec: int


def _normalize_entry(line: str) -> Optional[str]:
    line = line.split("#", 1)[0].strip()
    if not line:
        return None
    fields = line.split()
    entry = fields[0]
    if len(fields) > 1:
        try:
            ipaddress.ip_address(fields[0])
            entry = fields[1]
        except ValueError:
            pass
    try:
        return str(ipaddress.ip_address(entry))
    except ValueError:
        return entry.rstrip(".").lower() or None


def _read_link(link: str) -> str:
    if link.startswith(("http://", "https://")):
        with urllib.request.urlopen(link, timeout=30) as response:
            return response.read().decode("utf-8", errors="replace")
    with open(link, encoding="utf-8", errors="replace") as handle:
        return handle.read()


def _periodic_refresh(ref: "weakref.ref[ListMatcher]", stop: threading.Event, interval: float) -> None:
    while not stop.wait(interval):
        matcher = ref()
        if matcher is None:
            return
        matcher.refresh()
        del matcher


class ListMatcher:
    """Holds the entries of black or white lists per group and matches domains against them."""

    def __init__(
        self,
        list_type: ListCacheType,
        group_to_links: Mapping[str, Sequence[str]],
        refresh_period: int = 0,
    ) -> None:
        self.list_type = list_type
        self.group_to_links = {group: list(links) for group, links in group_to_links.items()}
        self.refresh_period = refresh_period
        self._cache: dict[str, frozenset[str]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self.refresh()
        if refresh_period > 0:
            threading.Thread(
                target=_periodic_refresh,
                args=(weakref.ref(self), self._stop, refresh_period * 60),
                daemon=True,
            ).start()

    def __del__(self) -> None:
        self._stop.set()

    def _load(self, links: Sequence[str]) -> frozenset[str]:
        entries: set[str] = set()
        for link in links:
            try:
                content = _read_link(link)
            except OSError as exc:
                _log.warning("can't load list '%s': %s", link, exc)
                continue
            entries.update(e for e in map(_normalize_entry, content.splitlines()) if e)
        return frozenset(entries)

    def refresh(self) -> None:
        """Reload every group's lists."""
        new_cache = {group: self._load(links) for group, links in self.group_to_links.items()}
        with self._lock:
            self._cache = new_cache
        for group, entries in new_cache.items():
            _log.info("%s group '%s' refreshed with %d entries", self.list_type, group, len(entries))
            events.bus().publish(events.BLOCKING_CACHE_GROUP_CHANGED, self.list_type, group, len(entries))

    def match(self, domain: str, groups: Sequence[str]) -> Optional[str]:
        """Return the first of ``groups`` whose lists contain ``domain``, or None."""
        with self._lock:
            cache = self._cache
        return next((g for g in groups if domain in cache.get(g, frozenset())), None)

    def configuration(self) -> list[str]:
        if self.refresh_period > 0:
            result = [f"refresh period: {self.refresh_period} minutes"]
        else:
            result = ["refresh: disabled"]
        result.append("group links:")
        for group, links in self.group_to_links.items():
            result.append(f"  {group}:")
            result.extend(f"   - {link}" for link in links)
        result.append("group caches:")
        with self._lock:
            cache = dict(self._cache)
        result.extend(f"  {group}: {len(entries)} entries" for group, entries in cache.items())
        return result


class BlockHandler(Protocol):
    def handle_block(self, question: dns.rrset.RRset, response: dns.message.Message) -> None:
        ...


@dataclass(frozen=True)
class ZeroIPBlockHandler:
    """Answers A/AAAA with the zero address, other types with NXDOMAIN."""

    block_time_sec: int

    def handle_block(self, question: dns.rrset.RRset, response: dns.message.Message) -> None:
        if question.rdtype == dns.rdatatype.AAAA:
            zero_ip: IPAddress = ipaddress.IPv6Address("::")
        elif question.rdtype == dns.rdatatype.A:
            zero_ip = ipaddress.IPv4Address("0.0.0.0")
        else:
            response.set_rcode(dns.rcode.NXDOMAIN)
            return
        response.answer.append(dnsutil.create_answer(question, zero_ip, self.block_time_sec))


@dataclass(frozen=True)
class NXDomainBlockHandler:
    """Answers every blocked query with NXDOMAIN."""

    def handle_block(self, question: dns.rrset.RRset, response: dns.message.Message) -> None:
        response.set_rcode(dns.rcode.NXDOMAIN)


@dataclass(frozen=True)
class IPBlockHandler:
    """Answers with configured addresses of the matching family, else uses the fallback."""

    destinations: tuple[IPAddress, ...]
    block_time_sec: int
    fallback: BlockHandler

    def handle_block(self, question: dns.rrset.RRset, response: dns.message.Message) -> None:
        for ip in self.destinations:
            if (question.rdtype == dns.rdatatype.AAAA and ip.version == 6) or (
                question.rdtype == dns.rdatatype.A and ip.version == 4
            ):
                response.answer.append(dnsutil.create_answer(question, ip, self.block_time_sec))
        if not response.answer:
            self.fallback.handle_block(question, response)


def _block_ttl(cfg: BlockingConfig) -> int:
    return DEFAULT_BLOCK_TTL if cfg.block_time_sec <= 0 else cfg.block_time_sec


def _block_type(cfg: BlockingConfig) -> str:
    return cfg.block_type.upper().strip() or DEFAULT_BLOCK_TYPE


def create_block_handler(cfg: BlockingConfig) -> BlockHandler:
    """Build the handler answering blocked queries from the configured block type."""
    block_type = _block_type(cfg)
    if block_type == "NXDOMAIN":
        return NXDomainBlockHandler()

    ttl = _block_ttl(cfg)
    if block_type == "ZEROIP":
        return ZeroIPBlockHandler(ttl)

    ips: list[IPAddress] = []
    for part in block_type.split(","):
        try:
            ips.append(ipaddress.ip_address(part.strip()))
        except ValueError:
            continue
    if ips:
        return IPBlockHandler(tuple(ips), ttl, ZeroIPBlockHandler(ttl))

    raise ValueError(
        "unknown blockType, please use one of: ZeroIP, NxDomain or specify destination IP address(es)"
    )


def _whitelist_only_groups(cfg: BlockingConfig) -> set[str]:
    return {g for g, links in cfg.white_lists.items() if links and g not in cfg.black_lists}


def _entry_from_record(rdtype: int, rdata) -> tuple[str, str]:
    if rdtype == dns.rdatatype.A:
        return str(ipaddress.ip_address(rdata.address)), "IP"
    if rdtype == dns.rdatatype.AAAA:
        return str(ipaddress.ip_address(rdata.address)).lower(), "IP"
    if rdtype == dns.rdatatype.CNAME:
        return rdata.target.to_text().rstrip(".").lower(), "CNAME"
    return "", ""


def _seconds(duration: float | timedelta) -> float:
    return duration.total_seconds() if isinstance(duration, timedelta) else float(duration)


class BlockingResolver(ChainedResolver):
    """Checks queries and answers against black and white lists per client group."""

    def __init__(self, cfg: BlockingConfig) -> None:
        self.cfg = cfg
        self.block_handler = create_block_handler(cfg)
        self.blacklist_matcher = ListMatcher(ListCacheType.BLACKLIST, cfg.black_lists, cfg.refresh_period)
        self.whitelist_matcher = ListMatcher(ListCacheType.WHITELIST, cfg.white_lists, cfg.refresh_period)
        self.whitelist_only_groups = _whitelist_only_groups(cfg)
        self._lock = threading.Lock()
        self._enabled = True
        self._disabled_groups: list[str] = []
        self._timer: Optional[threading.Timer] = None
        self._disable_end = 0.0

    def refresh_lists(self) -> None:
        """Reload all black and white lists."""
        self.blacklist_matcher.refresh()
        self.whitelist_matcher.refresh()

    def _all_blocking_groups(self) -> list[str]:
        return sorted(set(self.cfg.black_lists) | {DEFAULT_GROUP})

    def _stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def enable_blocking(self) -> None:
        """Enable blocking for all groups."""
        with self._lock:
            self._stop_timer()
            self._enabled = True
            self._disabled_groups = []
        events.bus().publish(events.BLOCKING_ENABLED, True)

    def _enable_again(self) -> None:
        self.enable_blocking()
        _log.info("blocking enabled again")

    def disable_blocking(self, duration: float | timedelta = 0, disable_groups: Sequence[str] = ()) -> None:
        """Disable blocking for the given groups (all if empty) for ``duration`` seconds, 0 meaning forever."""
        seconds = _seconds(duration)
        with self._lock:
            self._stop_timer()
            self._enabled = False
            all_groups = self._all_blocking_groups()
            if disable_groups:
                unknown = next((g for g in disable_groups if g not in all_groups), None)
                if unknown is not None:
                    raise ValueError(f"group '{unknown}' is unknown")
                self._disabled_groups = list(disable_groups)
            else:
                self._disabled_groups = all_groups
            groups_text = "; ".join(self._disabled_groups)
            self._disable_end = time.monotonic() + seconds

        events.bus().publish(events.BLOCKING_ENABLED, False)

        if seconds == 0:
            _log.info("disable blocking for group(s) '%s'", groups_text)
            return
        _log.info("disable blocking for %ss for group(s) '%s'", seconds, groups_text)
        timer = threading.Timer(seconds, self._enable_again)
        timer.daemon = True
        with self._lock:
            self._timer = timer
        timer.start()

    def blocking_status(self) -> BlockingStatus:
        with self._lock:
            remaining = 0.0
            now = time.monotonic()
            if not self._enabled and self._disable_end > now:
                remaining = self._disable_end - now
            return BlockingStatus(
                enabled=self._enabled,
                disabled_groups=list(self._disabled_groups),
                auto_enable_in_sec=int(remaining),
            )

    def configuration(self) -> list[str]:
        if not self.cfg.client_groups_block:
            return ["deactivated"]
        result = ["clientGroupsBlock"]
        result.extend(f'  {key} = "{";".join(val)}"' for key, val in self.cfg.client_groups_block.items())
        block_type = _block_type(self.cfg)
        result.append(f'blockType = "{block_type}"')
        if block_type != "NXDOMAIN":
            result.append(f"blockTTL = {_block_ttl(self.cfg)}")
        result.append("blacklist:")
        result.extend(f"  {line}" for line in self.blacklist_matcher.configuration())
        result.append("whitelist:")
        result.extend(f"  {line}" for line in self.whitelist_matcher.configuration())
        return result

    def _handle_blocked(self, request: Request, question: dns.rrset.RRset, reason: str) -> Response:
        response = dns.message.make_response(request.req)
        self.block_handler.handle_block(question, response)
        request.log.debug("blocking request '%s'", reason)
        return Response(res=response, reason=reason, rtype=ResponseType.BLOCKED)

    def _matches(self, groups: Sequence[str], matcher: ListMatcher, domain: str) -> Optional[str]:
        return matcher.match(domain, groups) if groups else None

    def _handle_blacklist(self, groups: list[str], request: Request) -> Optional[Response]:
        request.log.debug("checking groups for request: %s", "; ".join(groups))
        whitelist_only = any(g in self.whitelist_only_groups for g in groups)
        for question in request.req.question:
            domain = dnsutil.extract_domain(question)
            group = self._matches(groups, self.whitelist_matcher, domain)
            if group is not None:
                request.log.debug("domain %s is whitelisted in group %s", domain, group)
                return self._resolve_next(request)
            if whitelist_only:
                return self._handle_blocked(request, question, "BLOCKED (WHITELIST ONLY)")
            group = self._matches(groups, self.blacklist_matcher, domain)
            if group is not None:
                return self._handle_blocked(request, question, f"BLOCKED ({group})")
        return None

    def resolve(self, request: Request) -> Response:
        groups = self._groups_to_check(request)
        if groups:
            blocked = self._handle_blacklist(groups, request)
            if blocked is not None:
                return blocked

        response = self._resolve_next(request)

        if groups and response.res is not None:
            for rrset in response.res.answer:
                for rdata in rrset:
                    entry, type_name = _entry_from_record(rrset.rdtype, rdata)
                    if not entry:
                        continue
                    group = self._matches(groups, self.whitelist_matcher, entry)
                    if group is not None:
                        request.log.debug("%s %s is whitelisted in group %s", type_name, entry, group)
                        continue
                    group = self._matches(groups, self.blacklist_matcher, entry)
                    if group is not None:
                        return self._handle_blocked(
                            request, request.req.question[0], f"BLOCKED {type_name} ({group})"
                        )
        return response

    def _groups_to_check(self, request: Request) -> list[str]:
        groups: list[str] = []
        client_groups = self.cfg.client_groups_block
        for client_name in request.client_names:
            for block_group, names in client_groups.items():
                if dnsutil.client_name_matches_group_name(block_group, client_name):
                    groups.extend(names)

        if request.client_ip is not None:
            groups.extend(client_groups.get(str(request.client_ip), []))

        for cidr, names in client_groups.items():
            if dnsutil.cidr_contains_ip(cidr, request.client_ip):
                groups.extend(names)

        if not groups:
            groups = list(client_groups.get(DEFAULT_GROUP, []))

        with self._lock:
            disabled = set(self._disabled_groups)
        return sorted(g for g in groups if g not in disabled)