"""
Origin package.

The origin is only consulted after a confirmed local miss.
"""

from shared.config import BaseConfig
from .fetcher import HttpOriginFetcher, OriginFetcher, StubOriginFetcher


def create_origin_fetcher(config: BaseConfig) -> OriginFetcher:
    """Build the origin selected by ``config.origin_backend``."""
    if config.origin_backend == "stub":
        return StubOriginFetcher()
    if config.origin_backend == "http":
        return HttpOriginFetcher.within_budget(config.origin_url, config.origin_timeout_seconds)
    raise ValueError(f"Unknown origin backend: {config.origin_backend}")


__all__ = ["HttpOriginFetcher", "OriginFetcher", "StubOriginFetcher", "create_origin_fetcher"]
