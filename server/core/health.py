"""Health report for the /health endpoint.

Cache health is a real round trip through the active backend; queue health
asks the request queue (which probes the durable backend when in use).
Process figures come from psutil when it is installed.
"""
import time
from typing import Dict, Any, Optional, TYPE_CHECKING

try:
    import psutil
    PSUTIL_AVAILABLE = True
except ImportError:
    PSUTIL_AVAILABLE = False

if TYPE_CHECKING:
    from core.config import Settings
    from core.cache import CacheService
    from services.queue import RequestQueue
    from services.cache_or_queue import CacheOrQueue
    from services.upstream import OpenDotaClient

HEALTH_PROBE_KEY = "_health_probe"

_started_at: float = 0.0


def set_startup_time() -> None:
    global _started_at
    _started_at = time.time()


def get_uptime() -> float:
    """Seconds since ``set_startup_time``; 0 before startup."""
    return time.time() - _started_at if _started_at else 0.0


def process_stats() -> Dict[str, float]:
    """Resident memory (MB) and CPU percent of this process."""
    if not PSUTIL_AVAILABLE:
        return {"memory_mb": 0.0, "cpu_percent": 0.0}
    try:
        proc = psutil.Process()
        return {
            "memory_mb": round(proc.memory_info().rss / (1024 * 1024), 1),
            "cpu_percent": round(proc.cpu_percent(interval=None), 1),
        }
    except psutil.Error:
        return {"memory_mb": 0.0, "cpu_percent": 0.0}


async def probe_cache(cache: "CacheService") -> bool:
    """Write, read back and delete a probe key."""
    try:
        await cache.set(HEALTH_PROBE_KEY, "ok", ttl=10)
        ok = await cache.get(HEALTH_PROBE_KEY) == "ok"
        await cache.delete(HEALTH_PROBE_KEY)
    except Exception:
        return False
    return ok


async def get_health_status(
    cache: "CacheService",
    queue: "RequestQueue",
    settings: "Settings",
    client: Optional["OpenDotaClient"] = None,
    protocol: Optional["CacheOrQueue"] = None
) -> Dict[str, Any]:
    """Overall status follows the cache and queue checks only.

    Upstream reachability is reported alongside; an OpenDota outage leaves
    cached data servable, so it does not degrade the service.
    """
    checks = {
        "cache": await probe_cache(cache),
        "queue": await queue.is_healthy(),
    }
    health = {
        "status": "healthy" if all(checks.values()) else "degraded",
        "uptime_seconds": round(get_uptime(), 1),
        **process_stats(),
        "checks": checks,
        "cache": {
            "backend": cache.backend_name(),
            "backend_type": cache.backend_type(),
        },
        "queue": {
            "backend": queue.backend_type(),
            "durable_configured": settings.durable_queue_configured,
        },
        "features": {
            "mock_api": settings.use_mock_api,
            "cache_fallback_to_memory": settings.cache_fallback_to_memory,
        },
        "psutil_available": PSUTIL_AVAILABLE,
    }
    if client is not None:
        health["upstream"] = {
            "reachable": await client.is_healthy(),
            "rate_limit": client.limiter.get_status(),
        }
    if protocol is not None:
        health["inflight"] = protocol.inflight()
    return health
