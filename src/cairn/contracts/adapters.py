"""Source adapter boundary.

Source adapters (filesystem, mailbox, issue tracker, endpoint and network
telemetry) are external collaborators. The ingestion manager selects one
per session at open time and only talks to it through this protocol.

Lifecycle:
1. discover(root, ...) - yields references to candidate units
2. produce_candidate(session_id, ref) - returns the bytes and metadata

Adapters signal failure by raising AdapterError (or any exception); the
manager converts the failure into entry diagnostics and an issue.
"""

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class SourceRef:
    """Reference to one discoverable unit within a registered root."""

    abs_path: str
    rel_path: str


@dataclass(frozen=True)
class Candidate:
    """Raw candidate resource produced by an adapter."""

    uri: str
    content: bytes
    size_bytes: int | None = None
    nature: str | None = None
    metadata: dict[str, Any] | str | None = None
    last_modified_at: datetime | None = None
    captured_executable: dict[str, Any] | str | None = None


@runtime_checkable
class SourceAdapter(Protocol):
    """Capability interface implemented per source kind.

    Example:
        class MailboxAdapter:
            name = "mailbox"

            def discover(self, root, include_globs, exclude_globs):
                for message_id in self._client.list(root):
                    yield SourceRef(abs_path=f"{root}/{message_id}", rel_path=message_id)

            def produce_candidate(self, session_id, source_ref):
                raw = self._client.fetch(source_ref)
                return Candidate(uri=source_ref, content=raw, nature="message/rfc822")
    """

    name: str

    def discover(
        self,
        root: str,
        include_globs: Sequence[str] | None,
        exclude_globs: Sequence[str] | None,
    ) -> Iterator[SourceRef]:
        """Yield candidate references under root."""
        ...

    def produce_candidate(self, session_id: str, source_ref: str) -> Candidate:
        """Produce the candidate resource for one reference."""
        ...
