"""Resolver answering from a fixed domain-to-IP mapping."""

from __future__ import annotations

import ipaddress
from collections import defaultdict
from dataclasses import dataclass, field

import dns.message
import dns.rdataclass
import dns.rdatatype
import dns.reversename
import dns.rrset

from dnsguard import dnsutil
from dnsguard.resolver import ChainedResolver, Request, Response, ResponseType, name

CUSTOM_DNS_TTL = 60 * 60

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


@dataclass
class CustomDNSConfig:
    mapping: dict[str, list[IPAddress]] = field(default_factory=dict)


def _is_supported_type(ip: IPAddress, qtype: int) -> bool:
    return (ip.version == 4 and qtype == dns.rdatatype.A) or (
        ip.version == 6 and qtype == dns.rdatatype.AAAA
    )


class CustomDNSResolver(ChainedResolver):
    """Answers queries for mapped domains (and their sub-domains) and reverse lookups."""

    def __init__(self, cfg: CustomDNSConfig) -> None:
        self.mapping: dict[str, list[IPAddress]] = {}
        reverse: dict[str, list[str]] = defaultdict(list)
        for url, ips in cfg.mapping.items():
            self.mapping[url.lower()] = list(ips)
            for ip in ips:
                reverse[dns.reversename.from_address(str(ip)).to_text()].append(url)
        self.reverse_addresses = dict(reverse)

    def configuration(self) -> list[str]:
        if not self.mapping:
            return ["deactivated"]
        return [
            f'{key} = "[{" ".join(str(ip) for ip in val)}]"' for key, val in self.mapping.items()
        ]

    def _handle_reverse(self, request: Request) -> Response | None:
        question = request.req.question[0]
        if question.rdtype != dns.rdatatype.PTR:
            return None
        urls = self.reverse_addresses.get(question.name.to_text())
        if urls is None:
            return None
        response = dns.message.make_response(request.req)
        for url in urls:
            fqdn = url if url.endswith(".") else url + "."
            response.answer.append(
                dns.rrset.from_text(question.name, CUSTOM_DNS_TTL, dns.rdataclass.IN,
                                    dns.rdatatype.PTR, fqdn)
            )
        return Response(res=response, reason="CUSTOM DNS", rtype=ResponseType.CUSTOMDNS)

    def resolve(self, request: Request) -> Response:
        reverse = self._handle_reverse(request)
        if reverse is not None:
            return reverse

        if self.mapping:
            question = request.req.question[0]
            domain = dnsutil.extract_domain(question)
            while domain:
                ips = self.mapping.get(domain)
                if ips is not None:
                    response = dns.message.make_response(request.req)
                    response.answer.extend(
                        dnsutil.create_answer(question, ip, CUSTOM_DNS_TTL)
                        for ip in ips
                        if _is_supported_type(ip, question.rdtype)
                    )
                    request.log.debug(
                        "returning custom dns entry for %s: %s",
                        domain, dnsutil.answer_to_string(response.answer),
                    )
                    return Response(res=response, reason="CUSTOM DNS", rtype=ResponseType.CUSTOMDNS)
                _, dot, rest = domain.partition(".")
                if not dot:
                    break
                domain = rest

        request.log.debug("go to next resolver %s", name(self.next_resolver) if self.next_resolver else None)
        return self._resolve_next(request)