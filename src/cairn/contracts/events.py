"""Domain events emitted by the store and the ingestion manager."""

from dataclasses import dataclass

from cairn.contracts.enums import EntryStatus


@dataclass(frozen=True, slots=True)
class ResourceAdmitted:
    """A NEW uniform resource row was written.

    Duplicate admissions never emit this event; it is the only trigger for
    downstream lineage indexing.
    """

    resource_id: str
    device_id: str
    ingest_session_id: str
    uri: str
    content_digest: str
    nature: str | None


@dataclass(frozen=True, slots=True)
class EntryIssue:
    """A failed or rejected ingestion unit that should surface as an issue."""

    ingest_session_id: str
    status: EntryStatus
    issue_type: str
    message: str
    source_ref: str
    invalid_value: str | None = None
    remediation: str | None = None
