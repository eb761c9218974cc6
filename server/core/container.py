"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from services.cache_or_queue import CacheOrQueue
from services.queue import RequestQueue
from services.resources import ResourceService
from services.upstream import OpenDotaClient, RateLimiter


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database (backs the sqlite cache backend)
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Cache service (backend chosen by CACHE_BACKEND)
    cache = providers.Singleton(
        CacheService,
        settings=settings,
        database=database
    )

    # Sliding-window budget for upstream calls
    rate_limiter = providers.Singleton(
        RateLimiter,
        settings=settings
    )

    # Upstream API client
    opendota_client = providers.Singleton(
        OpenDotaClient,
        settings=settings,
        limiter=rate_limiter
    )

    # Request queue (durable backend when configured, in-process otherwise)
    request_queue = providers.Singleton(
        RequestQueue,
        settings=settings
    )

    # Cache-or-queue protocol shared by every resource endpoint
    cache_or_queue = providers.Singleton(
        CacheOrQueue,
        settings=settings,
        cache=cache,
        queue=request_queue
    )

    resource_service = providers.Singleton(
        ResourceService,
        settings=settings,
        cache=cache,
        client=opendota_client,
        protocol=cache_or_queue
    )


# Global container instance
container = Container()
