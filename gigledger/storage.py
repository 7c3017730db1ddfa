"""
Object storage adapters.

Blobs are addressed by a relative path such as
``{tenant}/statements/{provider}/{period_key}/{sha256}.pdf``.
"""
import io
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Dict, Optional

import structlog

from gigledger.config import get_settings
from gigledger.exceptions import NotFoundError, StorageUnavailableError

logger = structlog.get_logger(__name__)


class ObjectStore(ABC):
    """Minimal blob store contract."""

    @abstractmethod
    def open_read(self, path: str) -> BinaryIO:
        """Open a blob for reading."""

    @abstractmethod
    def upload(self, path: str, stream: BinaryIO, content_type: str) -> None:
        """Write a blob, replacing any existing content."""

    def read_bytes(self, path: str) -> bytes:
        with self.open_read(path) as fh:
            return fh.read()


class LocalObjectStore(ObjectStore):
    """Stores blobs on the local filesystem under a root directory."""

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root or get_settings().upload_dir)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"Blob path escapes storage root: {path}")
        return target

    def open_read(self, path: str) -> BinaryIO:
        target = self._resolve(path)
        try:
            return open(target, "rb")
        except FileNotFoundError as e:
            raise NotFoundError("Blob", path) from e
        except OSError as e:
            logger.error("blob_read_failed", path=path, error=str(e))
            raise StorageUnavailableError(path) from e

    def upload(self, path: str, stream: BinaryIO, content_type: str) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as out:
                shutil.copyfileobj(stream, out)
        except OSError as e:
            logger.error("blob_upload_failed", path=path, error=str(e))
            raise StorageUnavailableError(path) from e

        logger.info("blob_uploaded", path=path, content_type=content_type)


class InMemoryObjectStore(ObjectStore):
    """Dict-backed store used by tests and local tooling."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}

    def open_read(self, path: str) -> BinaryIO:
        if path not in self.blobs:
            raise NotFoundError("Blob", path)
        return io.BytesIO(self.blobs[path])

    def upload(self, path: str, stream: BinaryIO, content_type: str) -> None:
        self.blobs[path] = stream.read()
        self.content_types[path] = content_type
