"""Temporary staging of uploaded video files.

`AssetStager` persists an incoming stream to a temp file before anything else
touches it, so the file can be read more than once (upload, blob copy, retries).
`StagingSession` owns a set of staged files and releases each one exactly once
when the block exits, whatever the exit path.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional

logger = logging.getLogger(__name__)


class StagingError(RuntimeError):
    def __init__(self, message: str, *, filename: str | None = None):
        super().__init__(message)
        self.filename = filename


@dataclass(frozen=True)
class UploadedAsset:
    path: str
    filename: str
    size: int
    content_type: Optional[str] = None

    @property
    def stem(self) -> str:
        return Path(self.filename).stem or self.filename


class AssetStager:
    def __init__(self, upload_dir: str | None = None):
        self.upload_dir = upload_dir or None
        self._live: set[str] = set()
        self._lock = threading.Lock()

    def stage(
        self,
        stream: BinaryIO,
        filename: str,
        content_type: str | None = None,
        declared_size: int | None = None,
    ) -> UploadedAsset:
        """Copy `stream` to a durable temp file and return its handle.

        When the caller knows the upload size (`declared_size`), a file that
        does not match it is treated as a truncated upload and rejected.
        """
        filename = os.path.basename((filename or "").strip()) or "upload.mp4"
        suffix = Path(filename).suffix
        tmp_path: Optional[str] = None
        try:
            if self.upload_dir:
                Path(self.upload_dir).mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="wb",
                prefix="upload-",
                suffix=suffix,
                dir=self.upload_dir,
                delete=False,
            ) as tmp:
                tmp_path = tmp.name
                shutil.copyfileobj(stream, tmp, length=1024 * 1024)
                tmp.flush()
                os.fsync(tmp.fileno())
            size = os.path.getsize(tmp_path)
        except OSError as e:
            if tmp_path:
                Path(tmp_path).unlink(missing_ok=True)
            raise StagingError(f"Could not stage {filename}: {e}", filename=filename) from e

        if size == 0:
            Path(tmp_path).unlink(missing_ok=True)
            raise StagingError(f"Uploaded file {filename} is empty", filename=filename)
        if declared_size is not None and size != declared_size:
            Path(tmp_path).unlink(missing_ok=True)
            raise StagingError(
                f"Uploaded file {filename} is incomplete: got {size} of {declared_size} bytes",
                filename=filename,
            )

        with self._lock:
            self._live.add(tmp_path)
        logger.info("Staged %s (%d bytes) at %s", filename, size, tmp_path)
        return UploadedAsset(path=tmp_path, filename=filename, size=size, content_type=content_type)

    def stage_path(self, path: str) -> UploadedAsset:
        p = Path(path)
        try:
            with p.open("rb") as fh:
                return self.stage(fh, p.name)
        except OSError as e:
            raise StagingError(f"Could not read {p}: {e}", filename=p.name) from e

    def release(self, asset: UploadedAsset) -> bool:
        """Delete the staged file. Returns False when it was already released."""
        with self._lock:
            self._live.discard(asset.path)
        try:
            os.unlink(asset.path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StagingError(f"Could not remove staged file {asset.filename}: {e}", filename=asset.filename) from e
        logger.debug("Released staged file %s", asset.path)
        return True

    def live_paths(self) -> List[str]:
        with self._lock:
            return sorted(self._live)

    def session(self) -> "StagingSession":
        return StagingSession(self)


class StagingSession:
    """Releases every asset staged (or adopted) through it when the block exits."""

    def __init__(self, stager: AssetStager, assets: Iterable[UploadedAsset] = ()):
        self.stager = stager
        self._assets: List[UploadedAsset] = []
        self._released: set[str] = set()
        for a in assets:
            self.adopt(a)

    @property
    def assets(self) -> List[UploadedAsset]:
        return list(self._assets)

    def stage(
        self,
        stream: BinaryIO,
        filename: str,
        content_type: str | None = None,
        declared_size: int | None = None,
    ) -> UploadedAsset:
        asset = self.stager.stage(stream, filename, content_type, declared_size)
        self._assets.append(asset)
        return asset

    def adopt(self, asset: UploadedAsset) -> UploadedAsset:
        if all(a.path != asset.path for a in self._assets):
            self._assets.append(asset)
        return asset

    def release_all(self) -> List[str]:
        """Release everything not yet released; returns one message per failed release."""
        errors: List[str] = []
        for asset in self._assets:
            if asset.path in self._released:
                continue
            self._released.add(asset.path)
            try:
                self.stager.release(asset)
            except StagingError as e:
                logger.error("Cleanup failed for %s: %s", asset.filename, e)
                errors.append(f"Failed to release staged file {asset.filename}: {e}")
        return errors

    def __enter__(self) -> "StagingSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release_all()
