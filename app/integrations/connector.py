"""
Shared pieces of the sales-platform connectors: error types, the owned
bearer-token cache, and the product shape every connector returns.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Callable, Dict, Any, Tuple

import redis

logger = logging.getLogger(__name__)


class ConnectorError(Exception):
    """Upstream platform API failure (non-2xx or unusable response)."""

    def __init__(self, platform: str, status_code: Optional[int], body: str = ""):
        self.platform = platform
        self.status_code = status_code
        self.body = body
        super().__init__(f"{platform} API error: {status_code} - {body[:500]}")


class MalformedResponseError(ConnectorError):
    """Response parsed, but its shape is not what the endpoint documents."""


@dataclass
class RawProduct:
    platform: str
    platform_id: str
    name: str
    status: str = ""
    price: float = 0
    description: Optional[str] = None
    image_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


class TokenCache:
    """
    In-process bearer token cache owned by one connector instance.

    Expiry is stored as an absolute monotonic deadline; callers pass the
    TTL already reduced by their skew margin.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    def get(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at:
            return self._token
        return None

    def set(self, token: str, ttl_seconds: int) -> None:
        self._token = token
        self._expires_at = self._clock() + max(ttl_seconds, 0)

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0


class RedisTokenCache(TokenCache):
    """Token cache shared across worker processes through Redis. Redis outages degrade to a cache miss."""

    def __init__(self, key: str, client_factory: Optional[Callable[[], redis.Redis]] = None):
        super().__init__()
        self.key = key
        if client_factory is None:
            from app.redis_client import get_redis_client
            client_factory = get_redis_client
        self._client_factory = client_factory

    def get(self) -> Optional[str]:
        try:
            return self._client_factory().get(self.key)
        except redis.RedisError as e:
            logger.warning("Redis unavailable for token cache %s: %s", self.key, e)
            return None

    def set(self, token: str, ttl_seconds: int) -> None:
        try:
            self._client_factory().setex(self.key, max(ttl_seconds, 1), token)
        except redis.RedisError as e:
            logger.warning("Failed to cache token %s in Redis: %s", self.key, e)

    def invalidate(self) -> None:
        try:
            self._client_factory().delete(self.key)
        except redis.RedisError as e:
            logger.warning("Failed to invalidate token %s in Redis: %s", self.key, e)


def extract_list(platform: str, body: Any, *paths: Tuple[str, ...]) -> list:
    """
    Pull the item list out of a list-endpoint response.

    Tries each key path in order. An empty list is a valid result; a body that
    is not an object, or that has none of the paths, or whose value is not a
    list, raises MalformedResponseError.
    """
    if not isinstance(body, dict):
        raise MalformedResponseError(platform, 200, f"expected JSON object, got {type(body).__name__}")

    for path in paths:
        node: Any = body
        found = True
        for key in path:
            if isinstance(node, dict) and key in node:
                node = node[key]
            else:
                found = False
                break
        if not found:
            continue
        if node is None:
            return []
        if not isinstance(node, list):
            raise MalformedResponseError(
                platform, 200, f"expected list at {'.'.join(path)}, got {type(node).__name__}"
            )
        return node

    raise MalformedResponseError(
        platform, 200, f"none of {['.'.join(p) for p in paths]} present in response"
    )
