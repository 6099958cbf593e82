# dotformer/cache.py
"""Content-addressed cache in front of the transform engine.

The object key already encodes every transformation parameter, so a hit is a
single existence check and there is no separate index, TTL or eviction.
"""
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from prometheus_client import Counter

from dotformer.errors import DotformerError, TransformFailed
from dotformer.keys import derive_key, resolve_format
from dotformer.storage import BlobStore
from dotformer.transformer import TransformEngine, content_type_for

logger = logging.getLogger(__name__)

CACHE_HITS = Counter("dotformer_transform_cache_hits_total", "Transform requests served from the cache")
CACHE_MISSES = Counter("dotformer_transform_cache_misses_total", "Transform requests that invoked the engine")

DEFAULT_CACHE_CONTROL = "public, max-age=31536000, immutable"


@dataclass(frozen=True)
class ResolveResult:
    url: str
    key: str
    cache_hit: bool


class TransformCache:
    """Resolve transformation requests against the target blob store."""

    def __init__(
        self,
        source_store: BlobStore,
        target_store: BlobStore,
        engine: TransformEngine,
        cache_control: Optional[str] = DEFAULT_CACHE_CONTROL,
    ):
        self.source_store = source_store
        self.target_store = target_store
        self.engine = engine
        self.cache_control = cache_control

    def resolve(self, source_id: str, options: Mapping[str, Any]) -> ResolveResult:
        """Return the URL of the transformed artifact, producing it on a miss.

        Raises:
            NotFound: source object does not exist
            TransformFailed: the engine rejected or could not process the input
            TransientStoreError: the blob store stayed unavailable after retries
        """
        key = derive_key(source_id, options)
        output_format = resolve_format(source_id, options)

        if self.target_store.exists(key):
            CACHE_HITS.inc()
            logger.debug(f"Cache hit for {source_id} -> {key}")
            return ResolveResult(url=self.target_store.url_for(key), key=key, cache_hit=True)

        CACHE_MISSES.inc()
        logger.info(f"Cache miss for {source_id} -> {key}; transforming")

        source = self.source_store.get(source_id)
        # The engine writes the same format the key and content type name
        transformed = self._transform(source_id, source, {**options, "format": output_format})

        url = self.target_store.put(
            key,
            transformed,
            content_type=content_type_for(output_format),
            cache_control=self.cache_control,
        )
        return ResolveResult(url=url, key=key, cache_hit=False)

    def _transform(self, source_id: str, data: bytes, options: Mapping[str, Any]) -> bytes:
        try:
            return self.engine.transform(data, options)
        except DotformerError:
            raise
        except Exception as e:
            logger.warning(f"Transform of {source_id} failed: {e}")
            raise TransformFailed(f"Transform of {source_id} failed: {e}") from e
