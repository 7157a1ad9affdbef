"""
Redis-based rate limiting for API endpoints.

Implements a fixed window counter per client: the authenticated store/customer
when there is one, the client IP otherwise. Fails open when Redis is down.
"""
import logging
from functools import lru_cache, wraps
from typing import Optional, Tuple

import redis
from django.conf import settings
from rest_framework import status
from rest_framework.response import Response

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_redis_client() -> Optional[redis.Redis]:
    """Connect lazily; None disables rate limiting for the process."""
    try:
        client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5
        )
        client.ping()
        return client
    except (redis.ConnectionError, redis.TimeoutError) as e:
        logger.warning(f"Redis connection failed: {e}. Rate limiting will be disabled.")
        return None


def get_client_ip(request):
    """Extract client IP address from request."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        ip = x_forwarded_for.split(',')[0].strip()
    else:
        ip = request.META.get('REMOTE_ADDR', 'unknown')
    return ip


def get_client_key(request) -> str:
    """Prefer the authenticated cart owner so shared NAT IPs don't collide."""
    user = getattr(request, 'user', None)
    owner = getattr(user, 'cart_owner', None)
    if owner:
        return f"store-{user.store.pk}:{owner}"
    return get_client_ip(request)


def _limits_enabled() -> bool:
    return getattr(settings, 'RATE_LIMIT_ENABLED', True)


def _hit(key: str, window_seconds: int) -> Tuple[int, int]:
    """Count one request against ``key``; returns (count, ttl)."""
    client = get_redis_client()
    current_count = client.incr(key)
    if current_count == 1:
        client.expire(key, window_seconds)
    return current_count, client.ttl(key)


def _limited_response(max_requests: int, window_seconds: int, ttl: int) -> Response:
    return Response(
        {
            'error': 'Rate limit exceeded',
            'detail': f'Maximum {max_requests} requests per {window_seconds} seconds allowed.',
            'retry_after': ttl
        },
        status=status.HTTP_429_TOO_MANY_REQUESTS,
        headers={
            'X-RateLimit-Limit': str(max_requests),
            'X-RateLimit-Remaining': '0',
            'X-RateLimit-Reset': str(ttl),
            'Retry-After': str(ttl)
        }
    )


def _stamp(response, max_requests: int, current_count: int, ttl: int):
    response['X-RateLimit-Limit'] = str(max_requests)
    response['X-RateLimit-Remaining'] = str(max(0, max_requests - current_count))
    response['X-RateLimit-Reset'] = str(ttl)
    return response


def rate_limit(max_requests: int = 20, window_seconds: int = 60):
    """
    Rate limiting decorator for DRF view methods.

    Usage:
        @rate_limit(60, 60)
        def post(self, request):
            ...
    """
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(self, request, *args, **kwargs):
            if not _limits_enabled() or get_redis_client() is None:
                return view_func(self, request, *args, **kwargs)

            try:
                key = f"rate_limit:{view_func.__name__}:{get_client_key(request)}"
                current_count, ttl = _hit(key, window_seconds)
            except redis.RedisError as e:
                logger.error(f"Redis error in rate limiting: {e}")
                return view_func(self, request, *args, **kwargs)

            if current_count > max_requests:
                return _limited_response(max_requests, window_seconds, ttl)
            response = view_func(self, request, *args, **kwargs)
            return _stamp(response, max_requests, current_count, ttl)

        return wrapper
    return decorator


class RateLimitMixin:
    """
    Rate limiting for class-based views.

    Applied in ``initial`` so the limit is keyed by the authenticated client.

    Usage:
        class MyView(RateLimitMixin, APIView):
            rate_limit_max_requests = 60
            rate_limit_window_seconds = 60
    """
    rate_limit_max_requests = 20
    rate_limit_window_seconds = 60

    def initial(self, request, *args, **kwargs):
        super().initial(request, *args, **kwargs)
        self._rate_limit_state = None
        if not _limits_enabled() or get_redis_client() is None:
            return
        try:
            key = f"rate_limit:{self.__class__.__name__}:{get_client_key(request)}"
            self._rate_limit_state = _hit(key, self.rate_limit_window_seconds)
        except redis.RedisError as e:
            logger.error(f"Redis error in rate limiting: {e}")
            return
        current_count, ttl = self._rate_limit_state
        if current_count > self.rate_limit_max_requests:
            raise RateLimitExceeded(ttl)

    def handle_exception(self, exc):
        if isinstance(exc, RateLimitExceeded):
            return _limited_response(
                self.rate_limit_max_requests, self.rate_limit_window_seconds, exc.ttl
            )
        return super().handle_exception(exc)

    def finalize_response(self, request, response, *args, **kwargs):
        response = super().finalize_response(request, response, *args, **kwargs)
        state = getattr(self, '_rate_limit_state', None)
        if state and response.status_code != status.HTTP_429_TOO_MANY_REQUESTS:
            _stamp(response, self.rate_limit_max_requests, *state)
        return response


class RateLimitExceeded(Exception):
    def __init__(self, ttl: int):
        self.ttl = ttl
        super().__init__(f"Rate limit exceeded, retry in {ttl}s")
