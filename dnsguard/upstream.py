"""Resolver forwarding requests to an external DNS server."""

from __future__ import annotations

import ipaddress
import socket
import ssl
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Optional

import dns.exception
import dns.message
import dns.query
import dns.rcode

from dnsguard import dnsutil
from dnsguard.resolver import ChainedResolver, Request, RequestProtocol, Response, ResponseType

NET_TCP_UDP = "tcp+udp"
NET_TCP_TLS = "tcp-tls"
NET_HTTPS = "https"

DEFAULT_TIMEOUT = 2.0
DNS_CONTENT_TYPE = "application/dns-message"
_ATTEMPTS = 3


@dataclass(frozen=True)
class Upstream:
    """Address of an external DNS server."""

    net: str = NET_TCP_UDP
    host: str = ""
    port: int = 53
    path: str = ""


class UpstreamError(Exception):
    """Raised when an upstream server cannot answer."""


def _join_host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _to_address(host: str, port: int) -> str:
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        return socket.getaddrinfo(host, port)[0][4][0]


class UpstreamResolver(ChainedResolver):
    """Sends requests to an external DNS server, retrying on timeouts."""

    def __init__(self, upstream: Upstream, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.upstream = upstream
        self.net = upstream.net
        self.timeout = timeout
        self.ssl_context: Optional[ssl.SSLContext] = None
        if upstream.net == NET_HTTPS:
            self.upstream_url = f"{upstream.net}://{upstream.host}:{upstream.port}{upstream.path}"
        else:
            self.upstream_url = _join_host_port(upstream.host, upstream.port)

    def __str__(self) -> str:
        return f"upstream '{self.net}:{self.upstream_url}'"

    def configuration(self) -> list[str]:
        return []

    def _call_https(self, msg: dns.message.Message) -> dns.message.Message:
        http_request = urllib.request.Request(
            self.upstream_url,
            data=msg.to_wire(),
            headers={"content-type": DNS_CONTENT_TYPE},
            method="POST",
        )
        try:
            with urllib.request.urlopen(
                http_request, timeout=self.timeout, context=self.ssl_context
            ) as http_response:
                status = http_response.status
                content_type = http_response.headers.get("content-type")
                body = http_response.read()
        except urllib.error.HTTPError as exc:
            status = exc.code
            content_type = exc.headers.get("content-type") if exc.headers else None
            body = b""
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise TimeoutError(str(exc.reason)) from exc
            raise UpstreamError(f"can't perform https request: {exc.reason}") from exc
        if status != 200:
            raise UpstreamError(f"http return code should be 200, but received {status}")
        if content_type != DNS_CONTENT_TYPE:
            raise UpstreamError(
                f"http return content type should be '{DNS_CONTENT_TYPE}', but was '{content_type}'"
            )
        try:
            return dns.message.from_wire(body)
        except Exception as exc:
            raise UpstreamError("can't unpack message") from exc

    def _call_dns(self, msg: dns.message.Message, protocol: RequestProtocol) -> dns.message.Message:
        host, port = self.upstream.host, self.upstream.port
        address = _to_address(host, port)
        if self.net == NET_TCP_TLS:
            return dns.query.tls(msg, address, timeout=self.timeout, port=port, server_hostname=host)
        if protocol == RequestProtocol.TCP:
            try:
                return dns.query.tcp(msg, address, timeout=self.timeout, port=port)
            except ConnectionError:
                pass
        return dns.query.udp(msg, address, timeout=self.timeout, port=port)

    def _call_external(self, msg: dns.message.Message, protocol: RequestProtocol) -> dns.message.Message:
        if self.net == NET_HTTPS:
            return self._call_https(msg)
        return self._call_dns(msg, protocol)

    def resolve(self, request: Request) -> Response:
        log = request.log
        last_error: Optional[BaseException] = None
        for attempt in range(1, _ATTEMPTS + 1):
            try:
                resp = self._call_external(request.req, request.protocol)
            except (dns.exception.Timeout, TimeoutError) as exc:
                log.debug("temporary network error / timeout occurred, retrying (attempt %d)", attempt)
                last_error = exc
                continue
            except UpstreamError:
                raise
            except Exception as exc:
                raise UpstreamError(f"can't resolve via {self.upstream_url}: {exc}") from exc
            log.debug(
                "received response from upstream %s: %s (%s)",
                self.upstream_url,
                dnsutil.answer_to_string(resp.answer),
                dns.rcode.to_text(resp.rcode()),
            )
            return Response(res=resp, reason=f"RESOLVED ({self.upstream_url})", rtype=ResponseType.RESOLVED)
        raise UpstreamError(f"read from {self.upstream_url}: i/o timeout") from last_error