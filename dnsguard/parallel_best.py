"""Resolver that asks two upstream resolvers at once and takes the fastest answer."""

from __future__ import annotations

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from dnsguard import dnsutil
from dnsguard.resolver import Request, Resolver, Response, logger
from dnsguard.upstream import Upstream, UpstreamError, UpstreamResolver

UPSTREAM_DEFAULT_CFG_NAME_DEPRECATED = "externalResolvers"
UPSTREAM_DEFAULT_CFG_NAME = "default"

_MAX_WEIGHT = 60.0
_ERROR_WINDOW_SEC = 60 * 60

_log = logger("parallel_best_resolver")


@dataclass(eq=False)
class _UpstreamStatus:
    resolver: Resolver
    last_error_time: float = 0.0


def _as_resolver(upstream: Upstream | Resolver) -> Resolver:
    if isinstance(upstream, Resolver):
        return upstream
    return UpstreamResolver(upstream)


class ParallelBestResolver(Resolver):
    """Delegates a request to two weighted-random upstreams and returns the first answer."""

    def __init__(self, upstream_resolvers: Mapping[str, Iterable[Upstream | Resolver]]) -> None:
        self.resolvers_per_client: dict[str, list[_UpstreamStatus]] = {}
        for group, upstreams in upstream_resolvers.items():
            statuses = [_UpstreamStatus(_as_resolver(u)) for u in upstreams]
            if (
                UPSTREAM_DEFAULT_CFG_NAME not in upstream_resolvers
                and group == UPSTREAM_DEFAULT_CFG_NAME_DEPRECATED
            ):
                _log.warning(
                    "using deprecated '%s' as default upstream resolver configuration name, "
                    "please consider to change it to '%s'",
                    UPSTREAM_DEFAULT_CFG_NAME_DEPRECATED,
                    UPSTREAM_DEFAULT_CFG_NAME,
                )
                group = UPSTREAM_DEFAULT_CFG_NAME
            self.resolvers_per_client[group] = statuses

        if not self.resolvers_per_client.get(UPSTREAM_DEFAULT_CFG_NAME):
            raise ValueError(
                "no external DNS resolvers configured as default upstream resolvers. "
                f"Please configure at least one under '{UPSTREAM_DEFAULT_CFG_NAME}' configuration name"
            )

    def configuration(self) -> list[str]:
        result = ["upstream resolvers:"]
        for group, statuses in self.resolvers_per_client.items():
            result.append(f"- {group}")
            result.extend(f"  - {s.resolver}" for s in statuses)
        return result

    def __str__(self) -> str:
        parts = [
            f"{group} ({','.join(str(s.resolver) for s in statuses)})"
            for group, statuses in self.resolvers_per_client.items()
        ]
        return f"parallel upstreams '{'; '.join(parts)}'"

    def resolvers_for_client(self, request: Request) -> list[_UpstreamStatus]:
        """Upstreams configured for the request's client, or the default ones."""
        result: list[_UpstreamStatus] = []
        for client_name in request.client_names:
            for definition, statuses in self.resolvers_per_client.items():
                if dnsutil.client_name_matches_group_name(definition, client_name):
                    result.extend(statuses)

        if request.client_ip is not None:
            result.extend(self.resolvers_per_client.get(str(request.client_ip), []))

        for cidr, statuses in self.resolvers_per_client.items():
            if dnsutil.cidr_contains_ip(cidr, request.client_ip):
                result.extend(statuses)

        return result or self.resolvers_per_client[UPSTREAM_DEFAULT_CFG_NAME]

    def resolve(self, request: Request) -> Response:
        log = request.log
        resolvers = self.resolvers_for_client(request)

        if len(resolvers) == 1:
            log.debug("delegating to resolver %s", resolvers[0].resolver)
            return resolvers[0].resolver.resolve(request)

        first, second = pick_random(resolvers)
        log.debug("using %s and %s as resolver", first.resolver, second.resolver)

        errors: list[BaseException] = []
        executor = ThreadPoolExecutor(max_workers=2)
        try:
            futures = [executor.submit(_resolve_with, request, s) for s in (first, second)]
            for future in as_completed(futures):
                try:
                    response = future.result()
                except Exception as exc:  # noqa: BLE001 - every failure is collected
                    log.debug("resolution failed from resolver, cause: %s", exc)
                    errors.append(exc)
                    continue
                log.debug("using response from resolver: %s",
                          dnsutil.answer_to_string(response.res.answer))
                return response
        finally:
            executor.shutdown(wait=False)

        raise UpstreamError(
            f"resolution was not successful, used resolvers: '{first.resolver}' and "
            f"'{second.resolver}' errors: [{', '.join(str(e) for e in errors)}]"
        )


def _resolve_with(request: Request, status: _UpstreamStatus) -> Response:
    try:
        return status.resolver.resolve(request)
    except Exception:
        status.last_error_time = time.time()
        raise


def pick_random(resolvers: Sequence[_UpstreamStatus]) -> tuple[_UpstreamStatus, _UpstreamStatus]:
    """Pick two different resolvers, weighted by how recently they failed."""
    first = weighted_random(resolvers, None)
    second = weighted_random(resolvers, first.resolver)
    return first, second


def weighted_random(resolvers: Sequence[_UpstreamStatus], exclude: Resolver | None) -> _UpstreamStatus:
    """Pick one resolver other than ``exclude``; recently failing ones weigh less."""
    now = time.time()
    choices: list[_UpstreamStatus] = []
    weights: list[int] = []
    for status in resolvers:
        weight = _MAX_WEIGHT
        since = now - status.last_error_time
        if since < _ERROR_WINDOW_SEC:
            weight = max(1.0, weight - (_MAX_WEIGHT - since / 60))
        if status.resolver is not exclude:
            choices.append(status)
            weights.append(int(weight))
    if not choices:
        raise ValueError("no resolver left to choose from")
    return random.choices(choices, weights=weights)[0]