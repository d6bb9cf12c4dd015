import time

import dns.message
import dns.rdatatype
import pytest

from dnsguard import dnsutil
from dnsguard.parallel_best import (
    UPSTREAM_DEFAULT_CFG_NAME,
    UPSTREAM_DEFAULT_CFG_NAME_DEPRECATED,
    ParallelBestResolver,
    pick_random,
)
from dnsguard.resolver import Resolver, Response, ResponseType, new_request, new_request_with_client
from dnsguard.upstream import Upstream, UpstreamError


class FakeUpstream(Resolver):
    def __init__(self, label, ip=None, delay=0.0, fail=False):
        self.label = label
        self.ip = ip
        self.delay = delay
        self.fail = fail
        self.calls = 0

    def resolve(self, request):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise UpstreamError(f"{self.label} failed")
        msg = dnsutil.new_msg_with_answer("example.com.", 123, dns.rdatatype.A, self.ip)
        return Response(res=msg, reason=f"RESOLVED ({self.label})")

    def configuration(self):
        return []

    def __str__(self):
        return f"fake {self.label}"


def answer_ips(response):
    return [rdata.to_text() for rrset in response.res.answer for rdata in rrset]


def test_missing_default_fails():
    with pytest.raises(ValueError):
        ParallelBestResolver({})


def test_uses_fastest_result():
    fast = FakeUpstream("fast", "123.124.122.122")
    slow = FakeUpstream("slow", "123.124.122.123", delay=0.3)
    sut = ParallelBestResolver({UPSTREAM_DEFAULT_CFG_NAME: [fast, slow]})
    resp = sut.resolve(new_request("example.com.", dns.rdatatype.A))
    assert resp.res.rcode() == 0
    assert resp.rtype == ResponseType.RESOLVED
    assert answer_ips(resp) == ["123.124.122.122"]
    assert resp.res.answer[0].ttl == 123


def test_uses_successful_when_other_fails():
    failing = FakeUpstream("wrong", fail=True)
    slow = FakeUpstream("slow", "123.124.122.123", delay=0.05)
    sut = ParallelBestResolver({UPSTREAM_DEFAULT_CFG_NAME: [failing, slow]})
    resp = sut.resolve(new_request("example.com.", dns.rdatatype.A))
    assert answer_ips(resp) == ["123.124.122.123"]


def test_all_errors_raise():
    sut = ParallelBestResolver({UPSTREAM_DEFAULT_CFG_NAME: [
        FakeUpstream("wrong1", fail=True), FakeUpstream("wrong2", fail=True)]})
    with pytest.raises(UpstreamError, match="resolution was not successful"):
        sut.resolve(new_request("example.com.", dns.rdatatype.A))


@pytest.fixture
def client_sut():
    wildcard = FakeUpstream("wildcard", "123.124.122.124", delay=0.05)
    return ParallelBestResolver({
        UPSTREAM_DEFAULT_CFG_NAME_DEPRECATED: [FakeUpstream("default", "123.124.122.122")],
        "laptop": [FakeUpstream("exact", "123.124.122.123")],
        "client-*-m": [wildcard],
        "client[0-9]": [wildcard],
        "192.168.178.33": [FakeUpstream("ip", "123.124.122.125")],
        "10.43.8.67/28": [FakeUpstream("cidr", "123.124.122.126")],
    })


@pytest.mark.parametrize("ip, client, expected", [
    ("192.168.178.55", "test", "123.124.122.122"),
    ("192.168.178.55", "laptop", "123.124.122.123"),
    ("192.168.178.55", "client-test-m", "123.124.122.124"),
    ("192.168.178.55", "client7", "123.124.122.124"),
    ("192.168.178.33", "cl", "123.124.122.125"),
    ("10.43.8.64", "cl", "123.124.122.126"),
])
def test_client_specific_resolvers(client_sut, ip, client, expected):
    resp = client_sut.resolve(new_request_with_client("example.com.", dns.rdatatype.A, ip, client))
    assert resp.rtype == ResponseType.RESOLVED
    assert answer_ips(resp) == [expected]


def test_single_upstream_is_used_directly():
    only = FakeUpstream("only", "123.124.122.122")
    sut = ParallelBestResolver({UPSTREAM_DEFAULT_CFG_NAME: [only]})
    resp = sut.resolve(new_request("example.com.", dns.rdatatype.A))
    assert answer_ips(resp) == ["123.124.122.122"]
    assert only.calls == 1


def test_weighted_random_selection():
    error1 = FakeUpstream("wrong1", fail=True)
    error2 = FakeUpstream("wrong2", fail=True)
    fast1 = FakeUpstream("fast1", "123.124.122.122")
    fast2 = FakeUpstream("fast2", "123.124.122.122")
    sut = ParallelBestResolver({UPSTREAM_DEFAULT_CFG_NAME: [error1, fast1, fast2, error2]})

    def count_picks():
        counts = {}
        for _ in range(100):
            r1, r2 = pick_random(sut.resolvers_for_client(
                new_request_with_client("example.com", dns.rdatatype.A, "123.123.100.100")))
            assert r1.resolver is not r2.resolver
            for r in (r1.resolver, r2.resolver):
                counts[r] = counts.get(r, 0) + 1
        return counts

    for count in count_picks().values():
        assert 30 <= count <= 70

    for _ in range(100):
        try:
            sut.resolve(new_request("example.com.", dns.rdatatype.A))
        except UpstreamError:
            pass

    counts = count_picks()
    assert counts.get(error1, 0) <= 10
    assert counts.get(error2, 0) <= 10
    assert counts[fast1] >= 80
    assert counts[fast2] >= 80


def test_configuration():
    sut = ParallelBestResolver({UPSTREAM_DEFAULT_CFG_NAME: [Upstream(host="host1"), Upstream(host="host2")]})
    assert sut.configuration() == [
        "upstream resolvers:",
        "- default",
        "  - upstream 'tcp+udp:host1:53'",
        "  - upstream 'tcp+udp:host2:53'",
    ]
    assert str(sut) == "parallel upstreams 'default (upstream 'tcp+udp:host1:53',upstream 'tcp+udp:host2:53')'"