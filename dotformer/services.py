# dotformer/services.py
"""Process-scoped collaborators shared by request handlers."""
from dataclasses import dataclass
from typing import Callable

from fastapi import Request
from sqlalchemy.orm import Session

from dotformer.cache import TransformCache
from dotformer.metering import UsageRecorder
from dotformer.storage import BlobStore, build_blob_store
from dotformer.transformer import TransformEngine, build_transform_engine


@dataclass
class Services:
    source_store: BlobStore
    target_store: BlobStore
    engine: TransformEngine
    recorder: UsageRecorder
    cache_control: str

    def transform_cache(self) -> TransformCache:
        return TransformCache(
            source_store=self.source_store,
            target_store=self.target_store,
            engine=self.engine,
            cache_control=self.cache_control,
        )


def build_services(settings, session_factory: Callable[[], Session]) -> Services:
    source_store = build_blob_store(settings, settings.source_bucket)
    if settings.transformed_bucket == settings.source_bucket:
        target_store = source_store
    else:
        target_store = build_blob_store(settings, settings.transformed_bucket)

    return Services(
        source_store=source_store,
        target_store=target_store,
        engine=build_transform_engine(settings),
        recorder=UsageRecorder(session_factory, maxsize=settings.usage_queue_size),
        cache_control=settings.cache_control,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
