"""Source adapters.

Adapters implement cairn.contracts.SourceAdapter. Only the filesystem
adapter ships with cairn; mailbox, issue-tracker and telemetry adapters
are external and registered with the ingestion manager by source kind.
"""

from cairn.ingest.adapters.filesystem import FilesystemAdapter

__all__ = ["FilesystemAdapter"]
