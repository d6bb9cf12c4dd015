# dnsguard

`dnsguard` is a library of DNS resolvers that you link into a chain. Each
resolver does one job: it answers the query itself, or it looks at or changes
the request and passes it on to the next resolver in the chain. Messages are
`dnspython` messages.

## Resolvers

| Module | Class | What it does |
|--------|-------|--------------|
| `dnsguard.client_names` | `ClientNamesResolver` | Sets the request's client names from a fixed IP mapping or a reverse (PTR) lookup; results are cached for an hour |
| `dnsguard.blocking` | `BlockingResolver` | Blocks queries whose domain is on a group's black list; also white lists, whitelist-only groups, and checks of A/AAAA/CNAME records in the answer |
| `dnsguard.query_logging` | `QueryLoggingResolver` | Writes each resolved query as a tab-separated line to daily log files (one per client or one for all), or to the logger; removes old files |
| `dnsguard.metrics` | `MetricsResolver` | Counts queries, responses and errors in memory and records request durations in a histogram |
| `dnsguard.stats` | `StatsResolver` | Keeps 24-hour statistics (top queries, top blocked queries, per client, reason, query type, response code) and renders them as tables |
| `dnsguard.ipv6_checker` | `IPv6Checker` | Can answer every AAAA query with an empty NOERROR response |
| `dnsguard.caching` | `CachingResolver` | Caches answers for their TTL (bounded by a min/max caching time), caches NXDOMAIN for 30 minutes, and prefetches often-asked names |
| `dnsguard.custom_dns` | `CustomDNSResolver` | Answers A/AAAA from a fixed host-to-IP mapping (sub-domains included) and the matching PTR queries |
| `dnsguard.conditional_upstream` | `ConditionalUpstreamResolver` | Sends chosen domains to their own upstream servers and can rewrite domain suffixes first |
| `dnsguard.parallel_best` | `ParallelBestResolver` | Asks two weighted-random upstreams at once and returns the first successful answer; upstreams can be chosen per client name, IP or CIDR |
| `dnsguard.upstream` | `UpstreamResolver` | Talks to an upstream server over UDP (with TCP), TCP-TLS or DNS-over-HTTPS, retrying timeouts up to three times |

`dnsguard.resolver` holds the shared types (`Request`, `Response`,
`ResponseType`, `RequestProtocol`, `Resolver`, `ChainedResolver`) and the
helpers `chain`, `name`, `new_request` and `new_request_with_client`.
`dnsguard.dnsutil` has helpers for building and printing messages, and
`dnsguard.events` has a small publish/subscribe bus (`bus()`) on which the
blocking and caching resolvers announce state changes, cache hits and misses.

## Installation

```
pip install dnsguard
```

## Building a chain

```python
import ipaddress

from dnsguard.custom_dns import CustomDNSConfig, CustomDNSResolver
from dnsguard.ipv6_checker import IPv6Checker
from dnsguard.parallel_best import ParallelBestResolver
from dnsguard.resolver import chain, new_request_with_client
from dnsguard.upstream import Upstream

custom = CustomDNSResolver(CustomDNSConfig(
    mapping={"nas.home": [ipaddress.ip_address("192.168.1.10")]},
))
upstreams = ParallelBestResolver({"default": [Upstream(host="9.9.9.9", port=53)]})

root = chain(IPv6Checker(False), custom, upstreams)

response = root.resolve(new_request_with_client("nas.home.", "A", "192.168.1.20"))
print(response.rtype, response.reason, response.res.answer)
```

`chain` sets `next_resolver` on each `ChainedResolver` and returns the first
one. A resolver that fails raises an exception (for upstream failures,
`dnsguard.upstream.UpstreamError`). Every resolver has `configuration()`,
which returns lines describing its settings, or `["deactivated"]` when it is
not configured.

`ParallelBestResolver` needs upstreams under the group `"default"` (the name
`"externalResolvers"` is still taken for it) and raises `ValueError` otherwise.

## Blocking

```python
from datetime import timedelta

from dnsguard.blocking import BlockingConfig, BlockingResolver

blocking = BlockingResolver(BlockingConfig(
    black_lists={"ads": ["/etc/dnsguard/ads.txt"]},
    client_groups_block={"default": ["ads"]},
    block_type="ZeroIP",
))
blocking.disable_blocking(timedelta(minutes=5), [])
print(blocking.blocking_status())
```

List entries are read from local files or `http://` / `https://` links, one
domain or IP per line (hosts-file lines and `#` comments are accepted).
`refresh_lists()` reloads them; a `refresh_period` in minutes reloads them in
the background. `block_type` is `ZeroIP`, `NxDomain`, or a comma-separated
list of IP addresses to answer with; an unknown block type, or an unknown
group passed to `disable_blocking`, raises `ValueError`.

## Query logging

```python
from dnsguard.query_logging import QueryLogConfig, QueryLoggingResolver

with QueryLoggingResolver(QueryLogConfig(dir="/var/log/dnsguard", per_client=True,
                                         log_retention_days=7)) as logging_resolver:
    ...
```

A directory that does not exist raises `FileNotFoundError`. `close()` (or
leaving the `with` block) writes pending entries; `clean_up()` deletes files
older than the retention time, which otherwise happens every 12 hours.

## Statistics

`StatsResolver.print_stats()` logs the tables and returns them as text. Where
the platform has `SIGUSR2` and the resolver is built on the main thread, that
signal prints them too.

## What it does not do

`dnsguard` is a library only. It has no command, does not listen for DNS
queries on a port, reads no configuration file and offers no HTTP API. The
counters of `MetricsResolver` stay in memory and are not served to a metrics
scraper.

## Running the tests

```
pip install -e ".[test]"
pytest
```