from functools import lru_cache

from fastapi import Depends

from ingest.core.config import Settings, get_settings
from ingest.jobs.executor import JobContext
from ingest.services.repository import get_repository
from ingest.services.snapshots import SnapshotWriter, build_snapshot_writer
from ingest.sources.registry import SourceRegistry, load_registry


@lru_cache
def get_registry() -> SourceRegistry:
    return load_registry(get_settings().source_modules)


@lru_cache
def get_snapshot_writer() -> SnapshotWriter:
    return build_snapshot_writer(get_settings())


def get_job_context(
    settings: Settings = Depends(get_settings),
    registry: SourceRegistry = Depends(get_registry),
    snapshot_writer: SnapshotWriter = Depends(get_snapshot_writer),
) -> JobContext:
    return JobContext(
        store=get_repository(),
        registry=registry,
        snapshot_writer=snapshot_writer,
        settings=settings,
    )
