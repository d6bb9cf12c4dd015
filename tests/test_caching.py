import gc
import threading

import dns.message
import dns.rcode
import dns.rdatatype
import pytest

from dnsguard import events
from dnsguard.caching import CachingConfig, CachingResolver
from dnsguard.dnsutil import new_msg_with_answer
from dnsguard.resolver import Resolver, Response, ResponseType, new_request


class _FakeNext(Resolver):
    def __init__(self, answer):
        self.answer = answer
        self.calls = 0

    def resolve(self, request):
        self.calls += 1
        return Response(res=self.answer)

    def configuration(self):
        return []


def _make(cfg, answer):
    sut = CachingResolver(cfg)
    nxt = _FakeNext(answer)
    sut.next_resolver = nxt
    return sut, nxt


def _assert_record(answer, name, rdtype, ttl, data):
    assert len(answer) == 1
    rrset = answer[0]
    assert rrset.name.to_text() == name
    assert rrset.rdtype == rdtype
    assert rrset.ttl == ttl
    assert [r.to_text() for r in rrset] == [data]


def test_prefetch_domain_if_query_count_exceeds_threshold():
    cfg = CachingConfig(prefetching=True, prefetch_expires=120, prefetch_threshold=5)
    sut = CachingResolver(cfg, cache_expiration=0.2, cleanup_interval=0.05)
    sut.next_resolver = _FakeNext(dns.message.Message())

    counts = []
    events.bus().subscribe_once(events.CACHING_DOMAINS_TO_PREFETCH_COUNT_CHANGED, counts.append)
    prefetched = threading.Event()
    domains = []

    def on_prefetched(domain):
        domains.append(domain)
        prefetched.set()

    events.bus().subscribe_once(events.CACHING_DOMAIN_PREFETCHED, on_prefetched)

    sut.resolve(new_request("example.com.", dns.rdatatype.A))
    assert domains == []
    assert counts == [1]

    for _ in range(5):
        sut.resolve(new_request("example.com.", dns.rdatatype.A))

    assert prefetched.wait(3)
    assert domains == ["example.com"]

    hits = []
    events.bus().subscribe_once(events.CACHING_PREFETCH_CACHE_HIT, hits.append)
    resp = sut.resolve(new_request("example.com.", dns.rdatatype.A))
    assert hits == ["example.com"]
    assert resp.rtype == ResponseType.CACHED

    del sut, resp
    gc.collect()


def test_response_ttl_bigger_than_min_caching_time():
    sut, nxt = _make(CachingConfig(min_caching_time=5),
                     new_msg_with_answer("example.com.", 600, dns.rdatatype.A, "123.122.121.120"))

    missed = []
    events.bus().subscribe_once(events.CACHING_RESULT_CACHE_MISS, missed.append)
    resp = sut.resolve(new_request("example.com.", dns.rdatatype.A))
    assert resp.rtype == ResponseType.RESOLVED
    assert nxt.calls == 1
    assert resp.res.rcode() == dns.rcode.NOERROR
    _assert_record(resp.res.answer, "example.com.", dns.rdatatype.A, 600, "123.122.121.120")
    assert missed == ["example.com"]
    assert len(sut.result_cache) == 1

    hit = []
    events.bus().subscribe_once(events.CACHING_RESULT_CACHE_HIT, hit.append)
    resp = sut.resolve(new_request("example.com.", dns.rdatatype.A))
    assert resp.rtype == ResponseType.CACHED
    assert nxt.calls == 1
    assert resp.res.rcode() == dns.rcode.NOERROR
    _assert_record(resp.res.answer, "example.com.", dns.rdatatype.A, 599, "123.122.121.120")
    assert hit == ["example.com"]


def test_response_ttl_smaller_than_min_caching_time_a():
    sut, nxt = _make(CachingConfig(min_caching_time=5),
                     new_msg_with_answer("example.com.", 123, dns.rdatatype.A, "123.122.121.120"))
    resp = sut.resolve(new_request("example.com.", dns.rdatatype.A))
    assert resp.rtype == ResponseType.RESOLVED
    assert nxt.calls == 1
    _assert_record(resp.res.answer, "example.com.", dns.rdatatype.A, 300, "123.122.121.120")

    resp = sut.resolve(new_request("example.com.", dns.rdatatype.A))
    assert resp.rtype == ResponseType.CACHED
    assert nxt.calls == 1
    _assert_record(resp.res.answer, "example.com.", dns.rdatatype.A, 299, "123.122.121.120")


def test_response_ttl_smaller_than_min_caching_time_aaaa():
    sut, nxt = _make(
        CachingConfig(min_caching_time=5),
        new_msg_with_answer("example.com.", 123, dns.rdatatype.AAAA, "2001:0db8:85a3:08d3:1319:8a2e:0370:7344"),
    )
    resp = sut.resolve(new_request("example.com.", dns.rdatatype.AAAA))
    assert resp.rtype == ResponseType.RESOLVED
    _assert_record(resp.res.answer, "example.com.", dns.rdatatype.AAAA, 300,
                   "2001:db8:85a3:8d3:1319:8a2e:370:7344")

    resp = sut.resolve(new_request("example.com.", dns.rdatatype.AAAA))
    assert resp.rtype == ResponseType.CACHED
    assert nxt.calls == 1
    _assert_record(resp.res.answer, "example.com.", dns.rdatatype.AAAA, 299,
                   "2001:db8:85a3:8d3:1319:8a2e:370:7344")


def _aaaa_1230():
    return new_msg_with_answer("example.com.", 1230, dns.rdatatype.AAAA,
                               "2001:0db8:85a3:08d3:1319:8a2e:0370:7344")


def test_negative_max_caching_time_disables_cache():
    sut, nxt = _make(CachingConfig(max_caching_time=-1), _aaaa_1230())
    for expected_calls in (1, 2):
        resp = sut.resolve(new_request("example.com.", dns.rdatatype.AAAA))
        assert resp.rtype == ResponseType.RESOLVED
        assert resp.res.rcode() == dns.rcode.NOERROR
        assert nxt.calls == expected_calls
        _assert_record(resp.res.answer, "example.com.", dns.rdatatype.AAAA, 1230,
                       "2001:db8:85a3:8d3:1319:8a2e:370:7344")


def test_positive_max_caching_time_caps_ttl():
    sut, nxt = _make(CachingConfig(max_caching_time=4), _aaaa_1230())
    resp = sut.resolve(new_request("example.com.", dns.rdatatype.AAAA))
    assert resp.rtype == ResponseType.RESOLVED
    _assert_record(resp.res.answer, "example.com.", dns.rdatatype.AAAA, 240,
                   "2001:db8:85a3:8d3:1319:8a2e:370:7344")

    resp = sut.resolve(new_request("example.com.", dns.rdatatype.AAAA))
    assert resp.rtype == ResponseType.CACHED
    assert nxt.calls == 1
    _assert_record(resp.res.answer, "example.com.", dns.rdatatype.AAAA, 239,
                   "2001:db8:85a3:8d3:1319:8a2e:370:7344")


def test_nxdomain_is_cached_negatively():
    answer = dns.message.Message()
    answer.set_rcode(dns.rcode.NXDOMAIN)
    sut, nxt = _make(CachingConfig(), answer)

    resp = sut.resolve(new_request("example.com.", dns.rdatatype.AAAA))
    assert resp.rtype == ResponseType.RESOLVED
    assert resp.res.rcode() == dns.rcode.NXDOMAIN
    assert nxt.calls == 1

    resp = sut.resolve(new_request("example.com.", dns.rdatatype.AAAA))
    assert resp.rtype == ResponseType.CACHED
    assert resp.reason == "CACHED NEGATIVE"
    assert resp.res.rcode() == dns.rcode.NXDOMAIN
    assert nxt.calls == 1


def test_mx_query_is_cached():
    sut, nxt = _make(CachingConfig(),
                     new_msg_with_answer("google.de.", 180, dns.rdatatype.MX, "10 alt1.aspmx.l.google.com."))
    resp = sut.resolve(new_request("google.de.", dns.rdatatype.MX))
    assert resp.rtype == ResponseType.RESOLVED
    assert resp.res.answer[0].ttl == 180
    assert resp.res.answer[0][0].exchange.to_text() == "alt1.aspmx.l.google.com."

    resp = sut.resolve(new_request("google.de.", dns.rdatatype.MX))
    assert resp.rtype == ResponseType.CACHED
    assert nxt.calls == 1
    assert resp.res.answer[0].ttl == 179
    assert resp.res.answer[0][0].exchange.to_text() == "alt1.aspmx.l.google.com."


def test_different_query_types_are_cached_separately():
    sut, nxt = _make(CachingConfig(),
                     new_msg_with_answer("example.com.", 300, dns.rdatatype.A, "1.2.3.4"))
    sut.resolve(new_request("example.com.", dns.rdatatype.A))
    sut.resolve(new_request("example.com.", dns.rdatatype.AAAA))
    assert nxt.calls == 2


def test_configuration_enabled():
    sut, _ = _make(CachingConfig(), dns.message.Message())
    assert sut.configuration() == [
        "minCacheTimeInSec = 0",
        "maxCacheTimeSec = 0",
        "prefetching = false",
        "cache items count = 0",
    ]


def test_configuration_disabled():
    sut, _ = _make(CachingConfig(max_caching_time=-1), dns.message.Message())
    assert sut.configuration() == ["deactivated"]


def test_configuration_with_prefetching():
    sut, _ = _make(CachingConfig(prefetching=True), dns.message.Message())
    config = sut.configuration()
    assert "prefetching = true" in config
    assert "prefetchExpires = 2h0m0s" in config
    assert "prefetchThreshold = 5" in config


@pytest.mark.parametrize("minutes,expected", [(30, "prefetchExpires = 30m0s"), (120, "prefetchExpires = 2h0m0s")])
def test_configured_prefetch_expiry(minutes, expected):
    sut, _ = _make(CachingConfig(prefetching=True, prefetch_expires=minutes), dns.message.Message())
    assert expected in sut.configuration()