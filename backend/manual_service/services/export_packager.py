"""Export of a bundle to blob storage plus a single downloadable archive.

Every file is written under ``<service key>/<epoch millis>/``::

    manual-service.bpmn
    subprocesses/<file>.bpmn
    forms/<file>.form
    manifest.json
    package.zip

Unlike the transfer sink there is no per-file tolerance: the first failed
write aborts packaging with :class:`ExportError`.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import io
import json
import logging
import time
import zipfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Protocol
from urllib.parse import urlencode

from manual_service.config import settings
from manual_service.core.metrics import export_packages_total
from manual_service.exceptions import BlobNotFound, ExportError, PipelineError
from manual_service.services.bundle_builder import (
    FORMS_FOLDER,
    MAIN_FILENAME,
    MANIFEST_FILENAME,
    SUBPROCESS_FOLDER,
    Bundle,
)

logger = logging.getLogger(__name__)

ARCHIVE_FILENAME = "package.zip"


# ---------------------------------------------------------------------------
# Blob storage
# ---------------------------------------------------------------------------


class BlobStore(Protocol):
    async def put(self, bucket: str, path: str, data: bytes, content_type: str = ...) -> None: ...

    async def get(self, bucket: str, path: str) -> bytes: ...

    async def delete(self, bucket: str, path: str) -> bool: ...

    async def list(self, bucket: str, prefix: str = "") -> list[str]: ...

    def signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str: ...


def _signature(secret: str, bucket: str, path: str, expires: int) -> str:
    message = f"{bucket}\n{path}\n{expires}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class LocalBlobStore:
    """Filesystem-backed store: one directory per bucket under ``root``.

    Download links are HMAC-SHA256 signed with ``secret`` and expire after
    the requested TTL.
    """

    def __init__(
        self,
        root: str | Path,
        secret: str,
        base_url: str = "",
        download_path: str = "/api/v1/exports/download",
        clock: Callable[[], float] = time.time,
    ):
        self.root = Path(root)
        self._secret = secret
        self._base_url = base_url.rstrip("/")
        self._download_path = download_path
        self._clock = clock

    @classmethod
    def from_settings(cls) -> LocalBlobStore:
        return cls(
            root=settings.BLOB_STORAGE_ROOT,
            secret=settings.SECRET_KEY,
            base_url=settings.PUBLIC_BASE_URL,
            download_path=f"{settings.API_V1_PREFIX}/exports/download",
        )

    def _resolve(self, bucket: str, path: str) -> Path:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise ValueError(f"Invalid blob path '{path}'")
        if not bucket or "/" in bucket or bucket in (".", ".."):
            raise ValueError(f"Invalid bucket '{bucket}'")
        return self.root / bucket / Path(*relative.parts)

    async def put(
        self, bucket: str, path: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> None:
        target = self._resolve(bucket, path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)

    async def get(self, bucket: str, path: str) -> bytes:
        target = self._resolve(bucket, path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError as exc:
            raise BlobNotFound(bucket, path) from exc

    async def delete(self, bucket: str, path: str) -> bool:
        """Remove one blob; returns False when it was already gone."""
        target = self._resolve(bucket, path)
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError:
            return False
        return True

    async def list(self, bucket: str, prefix: str = "") -> list[str]:
        bucket_root = self.root / bucket

        def _walk() -> list[str]:
            if not bucket_root.is_dir():
                return []
            found = [
                p.relative_to(bucket_root).as_posix() for p in bucket_root.rglob("*") if p.is_file()
            ]
            return sorted(p for p in found if p.startswith(prefix))

        return await asyncio.to_thread(_walk)

    def signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        expires = int(self._clock()) + ttl_seconds
        query = urlencode(
            {
                "bucket": bucket,
                "path": path,
                "expires": expires,
                "signature": _signature(self._secret, bucket, path, expires),
            }
        )
        return f"{self._base_url}{self._download_path}?{query}"

    def verify_signature(self, bucket: str, path: str, expires: int, signature: str) -> bool:
        if expires < self._clock():
            return False
        expected = _signature(self._secret, bucket, path, expires)
        return hmac.compare_digest(expected, signature)


# ---------------------------------------------------------------------------
# Packaging
# ---------------------------------------------------------------------------


@dataclass
class ExportResult:
    service_key: str
    folder: str
    files: list[str]
    archive_path: str
    download_url: str
    expires_in: int

    def to_dict(self) -> dict:
        return {
            "serviceKey": self.service_key,
            "folder": self.folder,
            "files": self.files,
            "archivePath": self.archive_path,
            "downloadUrl": self.download_url,
            "expiresIn": self.expires_in,
        }


@dataclass
class ExportedFile:
    path: str
    name: str
    file_type: str
    download_url: str
    # subprocess files only, taken from manifest.json
    step_external_id: str | None = None
    task_name: str | None = None
    called_element: str | None = None

    def to_dict(self) -> dict:
        data = {
            "path": self.path,
            "name": self.name,
            "type": self.file_type,
            "downloadUrl": self.download_url,
        }
        if self.file_type == "bpmn-sub":
            data.update(
                stepExternalId=self.step_external_id,
                taskName=self.task_name,
                calledElement=self.called_element,
            )
        return data


@dataclass
class ExportListing:
    service_key: str
    folder: str
    files: list[ExportedFile] = field(default_factory=list)
    manifest: dict | None = None

    def to_dict(self) -> dict:
        return {
            "serviceKey": self.service_key,
            "folder": self.folder,
            "files": [f.to_dict() for f in self.files],
            "manifest": self.manifest,
        }


def bundle_files(bundle: Bundle) -> list[tuple[str, bytes, str]]:
    """``(relative path, content, content type)`` for every file of the bundle."""
    files = [(MAIN_FILENAME, bundle.main_xml.encode("utf-8"), "application/xml")]
    files += [
        (f"{SUBPROCESS_FOLDER}/{sub.filename}", sub.xml.encode("utf-8"), "application/xml")
        for sub in bundle.subprocesses
    ]
    files += [
        (
            f"{FORMS_FOLDER}/{form.filename}",
            json.dumps(form.content, indent=2, ensure_ascii=False).encode("utf-8"),
            "application/json",
        )
        for form in bundle.forms
    ]
    files.append(
        (
            MANIFEST_FILENAME,
            json.dumps(bundle.manifest, indent=2, ensure_ascii=False).encode("utf-8"),
            "application/json",
        )
    )
    return files


def build_archive(bundle: Bundle) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for path, data, _content_type in bundle_files(bundle):
            zf.writestr(path, data)
    return buffer.getvalue()


def classify_export_file(relative: str) -> str:
    if relative == MAIN_FILENAME:
        return "bpmn-main"
    if relative.startswith(f"{SUBPROCESS_FOLDER}/"):
        return "bpmn-sub"
    if relative.startswith(f"{FORMS_FOLDER}/"):
        return "form"
    if relative.endswith(".zip"):
        return "archive"
    return "meta"


class ExportPackager:
    def __init__(
        self,
        blob_store: BlobStore,
        bucket: str | None = None,
        ttl_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.blob_store = blob_store
        self.bucket = bucket or settings.EXPORTS_BUCKET
        self.ttl_seconds = ttl_seconds or settings.SIGNED_URL_TTL_SECONDS
        self._clock = clock

    async def package(self, bundle: Bundle) -> ExportResult:
        folder = f"{bundle.service_key}/{int(self._clock() * 1000)}"
        extra = {"service_key": bundle.service_key}

        writes = bundle_files(bundle)
        writes.append((ARCHIVE_FILENAME, build_archive(bundle), "application/zip"))

        written: list[str] = []
        for relative, data, content_type in writes:
            path = f"{folder}/{relative}"
            try:
                await self.blob_store.put(self.bucket, path, data, content_type)
            except (OSError, ValueError, PipelineError) as exc:
                export_packages_total.labels(status="failed").inc()
                logger.error("Export write failed for %s: %s", path, exc, extra=extra)
                raise ExportError(f"Failed to write {path}: {exc}") from exc
            written.append(path)

        archive_path = f"{folder}/{ARCHIVE_FILENAME}"
        url = self.blob_store.signed_url(self.bucket, archive_path, self.ttl_seconds)
        export_packages_total.labels(status="completed").inc()
        logger.info("Exported %d files to %s", len(written), folder, extra=extra)
        return ExportResult(
            service_key=bundle.service_key,
            folder=folder,
            files=written,
            archive_path=archive_path,
            download_url=url,
            expires_in=self.ttl_seconds,
        )

    async def latest_export(self, service_key: str) -> ExportListing | None:
        """Newest export folder of ``service_key`` with signed links per file."""
        paths = await self.blob_store.list(self.bucket, f"{service_key}/")
        stamps = {
            parts[1]
            for parts in (p.split("/") for p in paths)
            if len(parts) >= 3 and parts[1].isdigit()
        }
        if not stamps:
            return None
        latest = max(stamps, key=int)
        folder = f"{service_key}/{latest}"

        manifest = await self._read_manifest(f"{folder}/{MANIFEST_FILENAME}", paths)
        subprocess_meta = {
            entry.get("filename"): entry
            for entry in ((manifest or {}).get("bpmn") or {}).get("subprocesses") or []
            if isinstance(entry, dict)
        }

        listing = ExportListing(service_key=service_key, folder=folder, manifest=manifest)
        for path in paths:
            if not path.startswith(f"{folder}/"):
                continue
            relative = path[len(folder) + 1:]
            meta = subprocess_meta.get(relative, {})
            listing.files.append(
                ExportedFile(
                    path=path,
                    name=relative,
                    file_type=classify_export_file(relative),
                    download_url=self.blob_store.signed_url(self.bucket, path, self.ttl_seconds),
                    step_external_id=meta.get("stepExternalId"),
                    task_name=meta.get("taskName"),
                    called_element=meta.get("calledElement"),
                )
            )
        return listing

    async def _read_manifest(self, path: str, paths: list[str]) -> dict | None:
        if path not in paths:
            return None
        try:
            data = json.loads(await self.blob_store.get(self.bucket, path))
        except ValueError as exc:
            logger.warning("Unreadable export manifest %s: %s", path, exc)
            return None
        return data if isinstance(data, dict) else None
