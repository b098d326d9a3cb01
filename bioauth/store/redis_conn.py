from typing import Dict

from redis import ConnectionPool, Redis
from bioauth.settings import settings

# One pool per URL per process; the repo, the lock and the metrics all call
# get_redis() per operation.
_pools: Dict[str, ConnectionPool] = {}


def get_redis() -> Redis:
    """Text-mode client (records are JSON strings)."""
    url = settings.REDIS_URL
    pool = _pools.get(url)
    if pool is None:
        pool = ConnectionPool.from_url(url, decode_responses=True, health_check_interval=30)
        _pools[url] = pool
    return Redis(connection_pool=pool)
