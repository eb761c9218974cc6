"""Upstream data sources."""

from .opendota import OpenDotaClient
from .rate_limiter import RateLimiter

__all__ = ["OpenDotaClient", "RateLimiter"]
