import hashlib
import logging

from django.conf import settings
from django.core.cache import caches
from django.db import transaction
from rest_framework.response import Response

logger = logging.getLogger(__name__)

CATALOG_CACHE_ALIAS = "catalog"


def get_catalog_cache():
    return caches[CATALOG_CACHE_ALIAS]


def make_cache_key(prefix, *args, **kwargs):
    """Build a stable, bounded-length key from arbitrary call arguments."""
    key_data = f"{prefix}:{args}:{sorted(kwargs.items())}"
    key_hash = hashlib.md5(key_data.encode()).hexdigest()
    return f"{prefix}:{key_hash}"


def read_through(key, loader, ttl=None):
    """Return the cached value for ``key`` or compute it with ``loader`` and store it.

    ``None`` is never cached so that loaders signalling "not found" are retried.
    """
    cache = get_catalog_cache()
    cached = cache.get(key)
    if cached is not None:
        logger.debug("cache_hit key=%s", key)
        return cached

    logger.debug("cache_miss key=%s", key)
    value = loader()
    if value is not None:
        cache.set(key, value, settings.CATALOG_CACHE_TTL if ttl is None else ttl)
    return value


def flush_catalog_cache():
    get_catalog_cache().clear()
    logger.info("catalog_cache_flushed")


def flush_catalog_cache_after_write():
    """Drop every cached read now and again once the surrounding transaction commits.

    The second flush discards anything a concurrent reader cached from the
    pre-commit state.
    """
    flush_catalog_cache()
    transaction.on_commit(flush_catalog_cache)


class CachedReadMixin:
    """Serve ``list``/``retrieve`` through the catalog cache, keyed by the full request path."""

    cache_prefix = None
    cache_ttl = None

    def _cache_key(self, request, kind):
        return make_cache_key(f"{self.cache_prefix}-{kind}", request.get_full_path())

    def list(self, request, *args, **kwargs):
        def load():
            return super(CachedReadMixin, self).list(request, *args, **kwargs).data

        return Response(read_through(self._cache_key(request, "list"), load, self.cache_ttl))

    def retrieve(self, request, *args, **kwargs):
        def load():
            return super(CachedReadMixin, self).retrieve(request, *args, **kwargs).data

        return Response(read_through(self._cache_key(request, "detail"), load, self.cache_ttl))
