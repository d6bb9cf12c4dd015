import dns.message
import dns.rdataclass
import dns.rdatatype
import dns.rrset
import pytest

from dnsguard.conditional_upstream import ConditionalUpstreamConfig, ConditionalUpstreamResolver
from dnsguard.resolver import ChainedResolver, Resolver, Response, ResponseType, new_request


class AnsweringUpstream(Resolver):
    def __init__(self, ttl, ip):
        self.ttl = ttl
        self.ip = ip

    def resolve(self, request):
        response = dns.message.make_response(request.req)
        qname = request.req.question[0].name
        response.answer.append(
            dns.rrset.from_text(qname, self.ttl, dns.rdataclass.IN, dns.rdatatype.A, self.ip))
        return Response(res=response)

    def configuration(self):
        return []


class RecordingNext(ChainedResolver):
    def __init__(self):
        self.calls = []

    def resolve(self, request):
        self.calls.append(request)
        return Response(res=dns.message.Message())

    def configuration(self):
        return []


@pytest.fixture
def next_resolver():
    return RecordingNext()


@pytest.fixture
def sut(next_resolver):
    resolver = ConditionalUpstreamResolver(ConditionalUpstreamConfig(
        rewrite={"example.com": "fritz.box"},
        upstreams={
            "fritz.box": [AnsweringUpstream(123, "123.124.122.122")],
            "other.box": [AnsweringUpstream(250, "192.192.192.192")],
        },
    ))
    resolver.next_resolver = next_resolver
    return resolver


def single_answer(response):
    rrset = response.res.answer[0]
    return rrset.name.to_text(), rrset.rdtype, rrset.ttl, [r.to_text() for r in rrset]


@pytest.mark.parametrize("query, expected", [
    ("fritz.box.", ("fritz.box.", dns.rdatatype.A, 123, ["123.124.122.122"])),
    ("other.box.", ("other.box.", dns.rdatatype.A, 250, ["192.192.192.192"])),
    ("test.fritz.box.", ("test.fritz.box.", dns.rdatatype.A, 123, ["123.124.122.122"])),
])
def test_resolves_via_conditional_upstream(sut, next_resolver, query, expected):
    resp = sut.resolve(new_request(query, dns.rdatatype.A))
    assert single_answer(resp) == expected
    assert next_resolver.calls == []
    assert resp.rtype == ResponseType.CONDITIONAL
    assert resp.reason == "CONDITIONAL"


def test_rewrite_is_applied(sut, next_resolver):
    resp = sut.resolve(new_request("test.example.com.", dns.rdatatype.A))
    assert single_answer(resp) == ("test.fritz.box.", dns.rdatatype.A, 123, ["123.124.122.122"])
    assert resp.res.question[0].name.to_text() == "test.example.com."
    assert next_resolver.calls == []
    assert resp.rtype == ResponseType.CONDITIONAL


def test_rewrite_without_subdomain_delegates(sut, next_resolver):
    request = new_request("example.com.", dns.rdatatype.A)
    resp = sut.resolve(request)
    assert resp.rtype == ResponseType.RESOLVED
    assert resp.reason == ""
    assert next_resolver.calls == [request]


def test_unmatched_domain_delegates(sut, next_resolver):
    resp = sut.resolve(new_request("google.com.", dns.rdatatype.A))
    assert len(next_resolver.calls) == 1
    assert resp.rtype == ResponseType.RESOLVED


def test_configuration_enabled(sut):
    c = sut.configuration()
    assert len(c) > 1
    assert "rewrite:" in c
    assert 'example.com = "fritz.box"' in c


def test_configuration_disabled():
    sut = ConditionalUpstreamResolver(ConditionalUpstreamConfig())
    assert sut.configuration() == ["deactivated"]