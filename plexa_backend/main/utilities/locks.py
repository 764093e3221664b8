from contextlib import contextmanager
from typing import Optional
from uuid import uuid4

from django.core.cache import cache


def _acquire_lock(key: str, ttl: int = 1800) -> Optional[str]:
    # Prevent duplicate runs across workers; the token identifies this holder
    token = uuid4().hex
    return token if cache.add(key, token, ttl) else None


def _release_lock(key: str, token: str):
    # Leave the key alone if it expired and another worker took it
    if cache.get(key) == token:
        cache.delete(key)


@contextmanager
def task_lock(key: str, ttl: int = 1800):
    """Yields True if this caller holds ``key``; the lock is released on exit."""
    token = _acquire_lock(key, ttl)
    try:
        yield token is not None
    finally:
        if token is not None:
            _release_lock(key, token)
