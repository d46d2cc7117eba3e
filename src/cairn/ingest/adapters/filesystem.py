# src/cairn/ingest/adapters/filesystem.py
"""Filesystem source adapter.

Walks a root directory in sorted order and reads files as candidates.
Session-level include/exclude globs are applied by the ingestion manager
so that filtered files still get a REJECTED entry; discovery here only
skips what cannot be a file (directories, broken links).
"""

from __future__ import annotations

import os
from collections.abc import Iterator, Sequence
from datetime import UTC, datetime
from pathlib import Path

import structlog

from cairn.contracts import AdapterError, Candidate, SourceRef

logger = structlog.get_logger(__name__)


def nature_for(path: str) -> str | None:
    """Lowercased file extension without the dot, or None."""
    suffix = Path(path).suffix
    return suffix[1:].lower() if suffix else None


class FilesystemAdapter:
    """Reference SourceAdapter over a local directory tree."""

    name = "filesystem"

    def __init__(self, *, follow_symlinks: bool = False) -> None:
        self.follow_symlinks = follow_symlinks

    def discover(
        self,
        root: str,
        include_globs: Sequence[str] | None = None,
        exclude_globs: Sequence[str] | None = None,
    ) -> Iterator[SourceRef]:
        """Yield every file under root, ordered by relative path.

        Raises:
            AdapterError: If root is not a readable directory
        """
        root_path = Path(root)
        if not root_path.is_dir():
            raise AdapterError(f"Ingest root {root!r} is not a directory", source_ref=root, remediation="check the registered root path")

        walk_errors: list[OSError] = []
        for dirpath, dirnames, filenames in os.walk(root_path, followlinks=self.follow_symlinks, onerror=walk_errors.append):
            dirnames.sort()
            for filename in sorted(filenames):
                abs_path = Path(dirpath) / filename
                if not abs_path.is_file():
                    continue
                rel_path = abs_path.relative_to(root_path).as_posix()
                yield SourceRef(abs_path=abs_path.absolute().as_posix(), rel_path=rel_path)
        for error in walk_errors:
            logger.warning("discover_walk_error", root=root, path=error.filename, error=str(error))

    def produce_candidate(self, session_id: str, source_ref: str) -> Candidate:
        """Read one file.

        Raises:
            AdapterError: If the file cannot be read
        """
        path = Path(source_ref)
        try:
            stat = path.stat()
            content = path.read_bytes()
        except OSError as e:
            raise AdapterError(
                f"Cannot read {source_ref!r}: {e.strerror or e}",
                source_ref=source_ref,
                remediation="check that the file exists and is readable",
            ) from e
        return Candidate(
            uri=path.as_posix(),
            content=content,
            size_bytes=len(content),
            nature=nature_for(source_ref),
            last_modified_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
        )
