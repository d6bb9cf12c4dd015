"""Core request/response types and the resolver chain."""

from __future__ import annotations

import enum
import ipaddress
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import dns.message

from dnsguard import dnsutil


class RequestProtocol(enum.Enum):
    TCP = 0
    UDP = 1

    def __str__(self) -> str:
        return self.name


class ResponseType(enum.Enum):
    RESOLVED = 0
    CACHED = 1
    BLOCKED = 2
    CONDITIONAL = 3
    CUSTOMDNS = 4

    def __str__(self) -> str:
        return self.name


def logger(prefix: str) -> logging.Logger:
    return logging.getLogger(f"dnsguard.{prefix}")


@dataclass
class Request:
    """A client's DNS request."""

    req: dns.message.Message
    client_ip: Optional[ipaddress.IPv4Address | ipaddress.IPv6Address] = None
    protocol: RequestProtocol = RequestProtocol.UDP
    client_names: list[str] = field(default_factory=list)
    log: logging.Logger = field(default_factory=lambda: logging.getLogger("dnsguard"))
    request_ts: float = field(default_factory=time.monotonic)


@dataclass
class Response:
    """The response to a DNS query."""

    res: dns.message.Message
    reason: str = ""
    rtype: ResponseType = ResponseType.RESOLVED


class Resolver(ABC):
    """A resolver answers requests and describes its configuration."""

    @abstractmethod
    def resolve(self, request: Request) -> Response:
        """Resolve the request or raise on failure."""

    @abstractmethod
    def configuration(self) -> list[str]:
        """Describe the current configuration."""


class ChainedResolver(Resolver):
    """A resolver that can delegate to the next resolver in a chain."""

    next_resolver: Optional[Resolver] = None

    def _resolve_next(self, request: Request) -> Response:
        if self.next_resolver is None:
            raise RuntimeError(f"{name(self)} has no next resolver")
        return self.next_resolver.resolve(request)


def chain(*resolvers: Resolver) -> Resolver:
    """Link resolvers one after another and return the first."""
    if not resolvers:
        raise ValueError("at least one resolver is required")
    for current, following in itertools.pairwise(resolvers):
        if isinstance(current, ChainedResolver):
            current.next_resolver = following
    return resolvers[0]


def name(resolver: Resolver) -> str:
    """User-friendly name of a resolver."""
    return type(resolver).__name__


def new_request(question: str, qtype) -> Request:
    return Request(
        req=dnsutil.new_msg_with_question(question, qtype),
        log=logging.getLogger("dnsguard"),
        protocol=RequestProtocol.UDP,
    )


def new_request_with_client(question: str, qtype, ip: str, *client_names: str) -> Request:
    try:
        client_ip = ipaddress.ip_address(ip) if ip else None
    except ValueError:
        client_ip = None
    return Request(
        req=dnsutil.new_msg_with_question(question, qtype),
        client_ip=client_ip,
        client_names=list(client_names),
        protocol=RequestProtocol.UDP,
    )