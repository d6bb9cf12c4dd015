"""Resolver determining client names by mapping or reverse DNS lookup."""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

import dns.rdatatype
import dns.reversename

from dnsguard import dnsutil
from dnsguard.resolver import ChainedResolver, Request, Resolver, Response
from dnsguard.upstream import Upstream, UpstreamResolver

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

_CACHE_EXPIRATION_SEC = 60 * 60


@dataclass
class ClientLookupConfig:
    upstream: Optional[Upstream] = None
    single_name_order: Sequence[int] = field(default_factory=list)
    client_name_ip_mapping: Mapping[str, Sequence[IPAddress | str]] = field(default_factory=dict)


class ClientNamesResolver(ChainedResolver):
    """Adds the client's names to each request before passing it on."""

    def __init__(self, cfg: ClientLookupConfig) -> None:
        self.external_resolver: Optional[Resolver] = (
            UpstreamResolver(cfg.upstream) if cfg.upstream is not None else None
        )
        self.single_name_order = list(cfg.single_name_order)
        self.client_ip_mapping: dict[str, list[IPAddress]] = {
            client: [ipaddress.ip_address(str(ip)) for ip in ips]
            for client, ips in cfg.client_name_ip_mapping.items()
        }
        self._cache: dict[str, tuple[list[str], float]] = {}
        self._lock = threading.Lock()

    def _cache_get(self, key: str) -> Optional[list[str]]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            names, expires = entry
            if expires <= time.monotonic():
                del self._cache[key]
                return None
            return names

    def _cache_set(self, key: str, names: list[str]) -> None:
        with self._lock:
            self._cache[key] = (names, time.monotonic() + _CACHE_EXPIRATION_SEC)

    def _cache_count(self) -> int:
        now = time.monotonic()
        with self._lock:
            return sum(1 for _, expires in self._cache.values() if expires > now)

    def configuration(self) -> list[str]:
        if self.external_resolver is None and not self.client_ip_mapping:
            return ["deactivated, use only IP address"]
        result = [f'singleNameOrder = "[{" ".join(str(i) for i in self.single_name_order)}]"']
        if self.external_resolver is not None:
            result.append(f'externalResolver = "{self.external_resolver}"')
        result.append(f"cache item count = {self._cache_count()}")
        if self.client_ip_mapping:
            result.append("client IP mapping:")
            result.extend(
                f"{client} -> [{' '.join(str(ip) for ip in ips)}]"
                for client, ips in self.client_ip_mapping.items()
            )
        return result

    def resolve(self, request: Request) -> Response:
        request.client_names = self._client_names(request)
        request.log.debug("client names: %s", "; ".join(request.client_names))
        return self._resolve_next(request)

    def _client_names(self, request: Request) -> list[str]:
        ip = request.client_ip
        if ip is None:
            return []
        cached = self._cache_get(str(ip))
        if cached is not None:
            return cached
        names = self._resolve_client_names(ip, request.log)
        self._cache_set(str(ip), names)
        return names

    def _names_from_mapping(self, ip: IPAddress) -> list[str]:
        return [
            client
            for client, ips in self.client_ip_mapping.items()
            for mapped in ips
            if mapped == ip
        ]

    def _resolve_client_names(self, ip: IPAddress, log: logging.Logger) -> list[str]:
        mapped = self._names_from_mapping(ip)
        if mapped:
            return mapped
        if self.external_resolver is None:
            return [str(ip)]

        reverse = dns.reversename.from_address(str(ip)).to_text()
        try:
            resp = self.external_resolver.resolve(Request(
                req=dnsutil.new_msg_with_question(reverse, dns.rdatatype.PTR),
                log=log,
            ))
        except Exception as exc:  # noqa: BLE001 - any lookup failure falls back to the IP
            log.error("can't resolve client name: %s", exc)
            return [str(ip)]

        client_names = [
            rdata.target.to_text().removesuffix(".")
            for rrset in resp.res.answer
            if rrset.rdtype == dns.rdatatype.PTR
            for rdata in rrset
        ] or [str(ip)]

        if self.single_name_order:
            result: list[str] = []
            for index in self.single_name_order:
                if 0 < index <= len(client_names):
                    result = [client_names[index - 1]]
                    break
        else:
            result = client_names

        log.debug("resolved client name(s) from external resolver: %s", "; ".join(result))
        return result

    def flush_cache(self) -> None:
        """Forget all cached client names."""
        with self._lock:
            self._cache.clear()