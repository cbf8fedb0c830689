"""
Evidence blob storage.

The database only keeps a reference plus metadata for each uploaded file;
the bytes live behind an EvidenceStore. The local filesystem store is the
default, the in-memory store backs tests.
"""
import logging
import os
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class EvidenceBlob:
    """An uploaded file as received from the client."""
    data: bytes
    file_name: str
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class StoredBlob:
    ref: str
    name: str
    size: int
    mime_type: str


def safe_file_name(name: Optional[str]) -> str:
    base = os.path.basename(name or "")
    cleaned = _UNSAFE_CHARS.sub("_", base).strip("._")
    return cleaned or "upload"


class EvidenceStore(ABC):
    """Abstract blob store for evidence files."""

    @abstractmethod
    def put(self, blob: EvidenceBlob, folder: str) -> StoredBlob:
        """Persist the blob under folder and return its reference."""

    @abstractmethod
    def get(self, ref: str) -> bytes:
        """Return the stored bytes. Raises KeyError for unknown refs."""

    @abstractmethod
    def exists(self, ref: str) -> bool:
        ...

    @abstractmethod
    def delete(self, ref: str) -> None:
        """Best-effort removal, used when the database write that follows put() fails."""


class LocalEvidenceStore(EvidenceStore):
    """Stores blobs on the local filesystem under a root directory."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def _path(self, ref: str) -> str:
        path = os.path.abspath(os.path.join(self.root, ref))
        if not path.startswith(self.root + os.sep):
            raise KeyError(ref)
        return path

    def put(self, blob: EvidenceBlob, folder: str) -> StoredBlob:
        name = safe_file_name(blob.file_name)
        ref = f"{folder}/{uuid.uuid4().hex}_{name}"
        path = self._path(ref)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as fh:
            fh.write(blob.data)
        logger.info(f"Stored evidence blob {ref} ({blob.size} bytes)")
        return StoredBlob(ref=ref, name=name, size=blob.size, mime_type=blob.mime_type)

    def get(self, ref: str) -> bytes:
        path = self._path(ref)
        if not os.path.isfile(path):
            raise KeyError(ref)
        with open(path, "rb") as fh:
            return fh.read()

    def exists(self, ref: str) -> bool:
        try:
            return os.path.isfile(self._path(ref))
        except KeyError:
            return False

    def delete(self, ref: str) -> None:
        try:
            os.remove(self._path(ref))
        except (KeyError, FileNotFoundError):
            pass
        except OSError as e:
            logger.warning(f"Could not remove orphaned evidence blob {ref}: {e}")


class InMemoryEvidenceStore(EvidenceStore):
    """Keeps blobs in a dict. For tests and local experiments."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    def put(self, blob: EvidenceBlob, folder: str) -> StoredBlob:
        name = safe_file_name(blob.file_name)
        ref = f"{folder}/{uuid.uuid4().hex}_{name}"
        self._blobs[ref] = blob.data
        return StoredBlob(ref=ref, name=name, size=blob.size, mime_type=blob.mime_type)

    def get(self, ref: str) -> bytes:
        return self._blobs[ref]

    def exists(self, ref: str) -> bool:
        return ref in self._blobs

    def delete(self, ref: str) -> None:
        self._blobs.pop(ref, None)
