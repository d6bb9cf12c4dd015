"""Resolver that sends queries for chosen domains to their own upstream servers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

import dns.name
import dns.rrset

from dnsguard import dnsutil
from dnsguard.parallel_best import UPSTREAM_DEFAULT_CFG_NAME, ParallelBestResolver
from dnsguard.resolver import ChainedResolver, Request, Resolver, Response, ResponseType, name
from dnsguard.upstream import Upstream


@dataclass
class ConditionalUpstreamConfig:
    rewrite: Mapping[str, str] = field(default_factory=dict)
    upstreams: Mapping[str, Sequence[Upstream | Resolver]] = field(default_factory=dict)


def _fqdn(domain: str) -> str:
    return domain if domain.endswith(".") else domain + "."


class ConditionalUpstreamResolver(ChainedResolver):
    """Delegates a query to the upstream mapped to its domain or a parent domain."""

    def __init__(self, cfg: ConditionalUpstreamConfig) -> None:
        self.mapping: dict[str, Resolver] = {
            domain.lower(): ParallelBestResolver({UPSTREAM_DEFAULT_CFG_NAME: list(upstreams)})
            for domain, upstreams in cfg.upstreams.items()
        }
        self.rewrite: dict[str, str] = {k.lower(): v.lower() for k, v in cfg.rewrite.items()}

    def configuration(self) -> list[str]:
        if not self.mapping:
            return ["deactivated"]
        result = [f'{key} = "{val}"' for key, val in self.mapping.items()]
        result.append("rewrite:")
        result.extend(f'{key} = "{val}"' for key, val in self.rewrite.items())
        return result

    def _apply_rewrite(self, domain: str) -> str:
        for old, new in self.rewrite.items():
            suffix = "." + old
            if domain.endswith(suffix):
                return domain[: -len(suffix)] + "." + new
        return domain

    def resolve(self, request: Request) -> Response:
        log = request.log
        if self.mapping:
            question = request.req.question[0]
            domain_from_question = self._apply_rewrite(dnsutil.extract_domain(question))
            domain = domain_from_question
            while domain:
                resolver = self.mapping.get(domain)
                if resolver is not None:
                    request.req.question[0] = dns.rrset.RRset(
                        dns.name.from_text(_fqdn(domain_from_question)),
                        question.rdclass,
                        question.rdtype,
                    )
                    response = resolver.resolve(request)
                    response.reason = "CONDITIONAL"
                    response.rtype = ResponseType.CONDITIONAL
                    if response.res.question:
                        original = response.res.question[0]
                        response.res.question[0] = dns.rrset.RRset(
                            question.name, original.rdclass, original.rdtype
                        )
                    log.debug(
                        "received response from conditional upstream %s for %s: %s",
                        resolver, domain, dnsutil.answer_to_string(response.res.answer),
                    )
                    return response
                _, dot, rest = domain.partition(".")
                if not dot:
                    break
                domain = rest

        log.debug("go to next resolver %s", name(self.next_resolver) if self.next_resolver else None)
        return self._resolve_next(request)