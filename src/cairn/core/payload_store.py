"""
Filesystem store for uniform resource content kept out of line.

Resources larger than the inline threshold keep their bytes here and carry
the reference in uniform_resource.content_ref. The reference is the
resource's content digest, so every resource with the same bytes (on any
device, under any URI) shares one blob.

Layout: base_path/ab/abcdef... where "ab" is the first two digest characters.
"""

import hmac
import os
import re
import tempfile
from pathlib import Path

import structlog

from cairn.contracts.payload_store import IntegrityError
from cairn.core.canonical import content_digest

__all__ = ["FilesystemPayloadStore"]

logger = structlog.get_logger(__name__)

# content_digest() output: 64 lowercase hex characters
_DIGEST_PATTERN = re.compile(r"^[a-f0-9]{64}$")


class FilesystemPayloadStore:
    """Content-addressed blob directory keyed by resource content digest.

    Writes go through a unique temporary file in the shard directory and are
    renamed into place, so concurrent admissions of identical content never
    expose a partial blob. A blob that fails its digest check when the same
    bytes are stored again is replaced; on retrieval it raises.
    """

    def __init__(self, base_path: Path) -> None:
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path_for_ref(self, content_ref: str) -> Path:
        """Blob path for a content reference.

        Raises:
            ValueError: If content_ref is not a content digest
        """
        if not _DIGEST_PATTERN.match(content_ref):
            raise ValueError(f"Invalid content_hash: must be 64 lowercase hex characters, got {repr(content_ref)[:50]}")
        return self.base_path / content_ref[:2] / content_ref

    def _matches(self, path: Path, content_ref: str) -> bool:
        return hmac.compare_digest(content_digest(path.read_bytes()), content_ref)

    def _write(self, path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name[:8]}-", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def store(self, content: bytes) -> str:
        """Store resource content and return its content digest."""
        content_ref = content_digest(content)
        path = self._path_for_ref(content_ref)

        if path.exists():
            if self._matches(path, content_ref):
                return content_ref
            logger.warning("payload_blob_repaired", content_ref=content_ref, path=str(path))
        self._write(path, content)
        logger.debug("payload_blob_stored", content_ref=content_ref, size_bytes=len(content))
        return content_ref

    def retrieve(self, content_hash: str) -> bytes:
        """Read a blob back, verifying it still hashes to its reference.

        Raises:
            KeyError: If no blob exists for the reference
            IntegrityError: If the blob no longer matches its digest
        """
        path = self._path_for_ref(content_hash)
        try:
            content = path.read_bytes()
        except FileNotFoundError:
            raise KeyError(f"Payload not found: {content_hash}") from None

        actual = content_digest(content)
        if not hmac.compare_digest(actual, content_hash):
            raise IntegrityError(f"Payload integrity check failed: expected {content_hash}, got {actual}")
        return content

    def exists(self, content_hash: str) -> bool:
        return self._path_for_ref(content_hash).exists()
