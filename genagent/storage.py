"""
Artifact stores: give downloaded bytes a durable, shareable URL.

LocalArtifactStore writes under ARTIFACT_DIR and the HTTP surface serves
the files at /artifacts/. SupabaseArtifactStore uploads to a Supabase
Storage bucket and returns the object's public URL.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Protocol

import httpx

log = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class ArtifactStore(Protocol):
    async def persist(self, data: bytes, metadata: dict) -> str: ...


def _safe(name: str, fallback: str) -> str:
    cleaned = _UNSAFE.sub("_", name or "").strip("._")
    return cleaned or fallback


def object_name(metadata: dict) -> str:
    """<job_id>/<timestamp ms>_<filename>, safe for both filesystem and bucket."""
    job_id = _safe(str(metadata.get("job_id", "")), "unassigned")
    filename = _safe(str(metadata.get("filename", "")), "artifact.bin")
    return f"{job_id}/{int(time.time() * 1000)}_{filename}"


class LocalArtifactStore:
    """Stores artifacts on local disk below `root`."""

    def __init__(self, root: str, public_base_url: str) -> None:
        self._root = Path(root).resolve()
        self._public_base_url = public_base_url.rstrip("/")

    @property
    def root(self) -> Path:
        return self._root

    async def persist(self, data: bytes, metadata: dict) -> str:
        name = object_name(metadata)
        path = self._root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        log.debug("Stored %d bytes at %s", len(data), path)
        return f"{self._public_base_url}/artifacts/{name}"


class SupabaseArtifactStore:
    """Uploads artifacts to a Supabase Storage bucket."""

    def __init__(self, url: str, service_role_key: str, bucket: str = "product-designs") -> None:
        self._base_url = url.rstrip("/")
        self._key = service_role_key
        self._bucket = bucket
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Create the persistent httpx.AsyncClient."""
        self._client = httpx.AsyncClient(timeout=60.0)

    async def close(self) -> None:
        """Close the httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def public_url(self, name: str) -> str:
        return f"{self._base_url}/storage/v1/object/public/{self._bucket}/{name}"

    async def persist(self, data: bytes, metadata: dict) -> str:
        """POST the bytes to storage/v1/object. Raises httpx.HTTPStatusError on refusal."""
        if self._client is None:
            raise RuntimeError("SupabaseArtifactStore not started. Call await store.start() first.")
        name = f"product_design/{object_name(metadata)}"
        resp = await self._client.post(
            f"{self._base_url}/storage/v1/object/{self._bucket}/{name}",
            content=data,
            headers={
                "apikey": self._key,
                "Authorization": f"Bearer {self._key}",
                "Content-Type": metadata.get("content_type") or "application/octet-stream",
                "x-upsert": "false",
            },
        )
        resp.raise_for_status()
        url = self.public_url(name)
        log.info("Uploaded %d bytes to %s", len(data), url)
        return url
