"""Chainable DNS resolvers: client names, blocking, caching, custom mappings, upstreams, metrics, statistics and query logging."""

__version__ = "0.1.0"

__all__ = ["__version__"]