from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DOWNLOAD_TIMEOUT_MS = 60_000


def _clean_key(path: str) -> str:
    parts = [p for p in path.replace("\\", "/").split("/") if p and p not in {".", ".."}]
    if not parts:
        raise ValueError("storage path must not be empty")
    return "/".join(re.sub(r"[^A-Za-z0-9._-]+", "_", p) for p in parts)


@dataclass(frozen=True)
class BlobStorageConfig:
    backend: str
    root: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool
    download_timeout_ms: int = DEFAULT_DOWNLOAD_TIMEOUT_MS


class BlobStorageBackend:
    backend_name = "base"
    download_timeout_ms = DEFAULT_DOWNLOAD_TIMEOUT_MS

    def get_object(self, *, bucket: str, path: str) -> bytes:
        raise NotImplementedError

    def put_object(self, *, bucket: str, path: str, content_bytes: bytes, content_type: str | None = None) -> None:
        raise NotImplementedError

    async def download(self, bucket: str, path: str) -> bytes:
        """Fetch raw bytes off the event loop, bounded by the download timeout."""
        return await asyncio.wait_for(
            asyncio.to_thread(self.get_object, bucket=bucket, path=path),
            timeout=self.download_timeout_ms / 1000.0,
        )


class LocalBlobStorage(BlobStorageBackend):
    backend_name = "local"

    def __init__(self, *, root: str | Path, download_timeout_ms: int = DEFAULT_DOWNLOAD_TIMEOUT_MS) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self.download_timeout_ms = download_timeout_ms

    def _path(self, bucket: str, path: str) -> Path:
        return self._root / _clean_key(bucket) / _clean_key(path)

    def get_object(self, *, bucket: str, path: str) -> bytes:
        target = self._path(bucket, path)
        if not target.exists():
            raise FileNotFoundError(f"{bucket}/{path}")
        return target.read_bytes()

    def put_object(self, *, bucket: str, path: str, content_bytes: bytes, content_type: str | None = None) -> None:
        target = self._path(bucket, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content_bytes)


class S3BlobStorage(BlobStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: BlobStorageConfig) -> None:
        try:
            import boto3  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 blob storage backend") from exc
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )
        self.download_timeout_ms = config.download_timeout_ms

    def get_object(self, *, bucket: str, path: str) -> bytes:
        response = self._client.get_object(Bucket=bucket, Key=path)
        return response["Body"].read()

    def put_object(self, *, bucket: str, path: str, content_bytes: bytes, content_type: str | None = None) -> None:
        self._client.put_object(
            Bucket=bucket,
            Key=path,
            Body=content_bytes,
            ContentType=content_type or "application/octet-stream",
        )


def create_blob_storage_from_env(environ: Mapping[str, str] | None = None) -> BlobStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("DOCPIPE_BLOB_BACKEND", "local").strip().lower() or "local"
    try:
        timeout_ms = max(1, int(env.get("BLOB_DOWNLOAD_TIMEOUT_MS", "") or DEFAULT_DOWNLOAD_TIMEOUT_MS))
    except ValueError:
        timeout_ms = DEFAULT_DOWNLOAD_TIMEOUT_MS
    config = BlobStorageConfig(
        backend=backend,
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/docpipe-blobs").strip() or "/tmp/docpipe-blobs",
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", "").strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=env.get("OBJECT_STORAGE_FORCE_PATH_STYLE", "true").strip().lower()
        not in {"0", "false", "no", "off"},
        download_timeout_ms=timeout_ms,
    )
    if config.backend == "s3":
        return S3BlobStorage(config=config)
    if config.backend != "local":
        raise RuntimeError(f"unsupported blob storage backend: {config.backend}")
    return LocalBlobStorage(root=config.root, download_timeout_ms=config.download_timeout_ms)
