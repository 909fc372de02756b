from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Protocol

import httpx

from ingest.core.config import Settings
from ingest.services.repository import StoredCandidate

SNAPSHOT_CONTENT_TYPE = "application/x-ndjson"


class SnapshotError(Exception):
    """Raised when a run snapshot cannot be written."""


class SnapshotWriter(Protocol):
    async def write(self, source_key: str, run_id: str, candidates: list[StoredCandidate]) -> str: ...


def snapshot_object_path(source_key: str, run_id: str) -> str:
    return f"{source_key}/{run_id}.jsonl"


def render_snapshot(candidates: list[StoredCandidate]) -> str:
    """One JSON object per line with a trailing newline; empty runs render as an empty file."""
    lines = [json.dumps(candidate.as_snapshot_dict(), sort_keys=True, default=str) for candidate in candidates]
    return "".join(f"{line}\n" for line in lines)


class LocalSnapshotWriter:
    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    async def write(self, source_key: str, run_id: str, candidates: list[StoredCandidate]) -> str:
        target = self.directory / snapshot_object_path(source_key, run_id)
        body = render_snapshot(candidates)
        await asyncio.to_thread(self._write_file, target, body)
        return str(target)

    @staticmethod
    def _write_file(target: Path, body: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(body, encoding="utf-8")


class ObjectStorageSnapshotWriter:
    def __init__(
        self,
        storage_url: str,
        bucket: str,
        service_key: str | None = None,
        *,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.storage_url = storage_url.rstrip("/")
        self.bucket = bucket
        self.service_key = service_key
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": SNAPSHOT_CONTENT_TYPE,
            "x-upsert": "true",
        }
        if self.service_key:
            headers["Authorization"] = f"Bearer {self.service_key}"
            headers["apikey"] = self.service_key
        return headers

    async def write(self, source_key: str, run_id: str, candidates: list[StoredCandidate]) -> str:
        path = snapshot_object_path(source_key, run_id)
        body = render_snapshot(candidates).encode("utf-8")
        url = f"{self.storage_url}/object/{self.bucket}/{path}"

        if self._client is not None:
            response = await self._client.post(url, content=body, headers=self.headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(url, content=body, headers=self.headers)

        if response.is_error:
            raise SnapshotError(
                f"snapshot upload failed status={response.status_code} path={path}: {response.text[:500]}"
            )
        return f"object://{self.bucket}/{path}"


def build_snapshot_writer(settings: Settings, *, client: httpx.AsyncClient | None = None) -> SnapshotWriter:
    if settings.snapshot_mode == "object":
        if not settings.storage_url:
            raise SnapshotError("INGEST_STORAGE_URL is required when INGEST_SNAPSHOT_MODE=object")
        return ObjectStorageSnapshotWriter(
            settings.storage_url,
            settings.snapshot_bucket,
            settings.storage_service_key,
            timeout_seconds=settings.storage_timeout_seconds,
            client=client,
        )
    return LocalSnapshotWriter(settings.snapshot_local_dir)


class MemorySnapshotWriter:
    """Keeps rendered snapshots in memory; used for dry runs and tests."""

    def __init__(self) -> None:
        self.snapshots: dict[str, str] = {}

    async def write(self, source_key: str, run_id: str, candidates: list[StoredCandidate]) -> str:
        path = snapshot_object_path(source_key, run_id)
        self.snapshots[path] = render_snapshot(candidates)
        return f"memory://{path}"


def parse_snapshot(body: str) -> list[dict[str, Any]]:
    return [json.loads(line) for line in body.splitlines() if line.strip()]
