"""Resolver that can drop all AAAA queries."""

from __future__ import annotations

import dns.message
import dns.rcode
import dns.rdatatype

from dnsguard.resolver import ChainedResolver, Request, Response, ResponseType


class IPv6Checker(ChainedResolver):
    """Answers AAAA queries with an empty NOERROR response when disabled."""

    def __init__(self, disable_aaaa: bool) -> None:
        self.disable_aaaa = disable_aaaa

    def resolve(self, request: Request) -> Response:
        if self.disable_aaaa and request.req.question[0].rdtype == dns.rdatatype.AAAA:
            response = dns.message.make_response(request.req)
            response.set_rcode(dns.rcode.NOERROR)
            return Response(res=response, rtype=ResponseType.RESOLVED)
        return self._resolve_next(request)

    def configuration(self) -> list[str]:
        return ["drop AAAA" if self.disable_aaaa else "accept AAAA"]