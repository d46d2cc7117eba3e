"""PayloadStore protocol for content-addressable blob storage.

Used by the resource store to keep large uniform resource content out of
line. Implemented by core/payload_store.py (FilesystemPayloadStore).
"""

from typing import Protocol, runtime_checkable


class IntegrityError(Exception):
    """Raised when payload content doesn't match expected hash.

    This indicates either filesystem corruption, tampering, or a bug.
    We never silently return corrupted data.
    """


@runtime_checkable
class PayloadStore(Protocol):
    """Protocol for payload storage backends.

    All implementations must provide content-addressable storage
    where payloads are stored by their SHA-256 hash.
    """

    def store(self, content: bytes) -> str:
        """Store content and return its SHA-256 hex digest."""
        ...

    def retrieve(self, content_hash: str) -> bytes:
        """Retrieve content by hash with integrity verification.

        Raises:
            KeyError: If content not found
            IntegrityError: If content doesn't match expected hash
        """
        ...

    def exists(self, content_hash: str) -> bool:
        """Check if content exists."""
        ...
