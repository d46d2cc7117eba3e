"""Uniform resource admission methods for StoreRecorder.

admit() is the dedup authority: the key (device_id, content_digest, uri,
size_bytes) is unique, and admission is compare-and-insert on that key.
A second admission of the same tuple returns the existing id with
is_new_record=False and performs no write.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Connection, select

from cairn.contracts import (
    Admission,
    ReferentialError,
    ResourceAdmitted,
    StoreIntegrityError,
    TransformAdmission,
    UniformResource,
    UniformResourceTransform,
    ValidationError,
)
from cairn.core.canonical import content_digest, validate_structured
from cairn.core.store._database_ops import insert_if_absent
from cairn.core.store._device_recording import require_live_device
from cairn.core.store._helpers import created_by, generate_id, live, now
from cairn.core.store.schema import (
    ingest_session_table,
    uniform_resource_table,
    uniform_resource_transform_table,
)

if TYPE_CHECKING:
    import structlog

    from cairn.contracts.payload_store import PayloadStore
    from cairn.core.events import EventBusProtocol
    from cairn.core.store._database_ops import DatabaseOps
    from cairn.core.store.repositories import UniformResourceRepository, UniformResourceTransformRepository

_RESOURCE_KEY = ("device_id", "content_digest", "uri", "size_bytes")
_TRANSFORM_KEY = ("uniform_resource_id", "content_digest", "nature", "size_bytes")


def _resolve_size(content: bytes, size_bytes: int | None) -> int:
    if size_bytes is None:
        return len(content)
    if size_bytes < 0:
        raise ValidationError(f"size_bytes must be >= 0, got {size_bytes}", field="size_bytes")
    return size_bytes


class ResourceRecordingMixin:
    """Resource store methods. Mixed into StoreRecorder."""

    # Shared state annotations (set by StoreRecorder.__init__)
    _ops: DatabaseOps
    _actor: str
    _log: structlog.stdlib.BoundLogger
    _events: EventBusProtocol
    _payload_store: PayloadStore | None
    _inline_threshold_bytes: int | None
    _resource_repo: UniformResourceRepository
    _transform_repo: UniformResourceTransformRepository

    def _place_content(self, content: bytes) -> tuple[bytes | None, str | None]:
        """Return (inline content, payload ref); large content goes out of line."""
        if self._payload_store is not None and self._inline_threshold_bytes is not None and len(content) > self._inline_threshold_bytes:
            return None, self._payload_store.store(content)
        return content, None

    def admit(
        self,
        device_id: str,
        uri: str,
        content: bytes,
        size_bytes: int | None = None,
        nature: str | None = None,
        *,
        session_id: str,
        ingest_fs_path_id: str | None = None,
        ingest_imap_acct_folder_id: str | None = None,
        ingest_plm_acct_project_id: str | None = None,
        last_modified_at: datetime | None = None,
        frontmatter: Any = None,
        content_fm_body_attrs: Any = None,
        elaboration: Any = None,
    ) -> Admission:
        """Admit content into the store, deduplicating on the resource key.

        Args:
            device_id: Owning device
            uri: Canonical URI of the resource
            content: Raw bytes
            size_bytes: Declared size; defaults to len(content)
            nature: Media nature (e.g. "md", "text/plain")
            session_id: Ingest session admitting the resource; must belong to device_id

        Returns:
            Admission with is_new_record=False when the key already existed

        Raises:
            ValidationError: Malformed structured attribute or size, before any write
            ReferentialError: Device or session missing, or session of another device
        """
        if not uri:
            raise ValidationError("uri must be non-empty", field="uri")
        size = _resolve_size(content, size_bytes)
        frontmatter_json = validate_structured(frontmatter, "frontmatter")
        fm_body_json = validate_structured(content_fm_body_attrs, "content_fm_body_attrs")
        elaboration_json = validate_structured(elaboration, "elaboration")
        digest = content_digest(content)

        def _op(conn: Connection) -> tuple[Any, bool]:
            require_live_device(conn, device_id)
            session_row = conn.execute(
                select(ingest_session_table.c.device_id).where(ingest_session_table.c.ur_ingest_session_id == session_id)
            ).first()
            if session_row is None:
                raise ReferentialError(f"Ingest session {session_id!r} does not exist")
            if session_row.device_id != device_id:
                raise ReferentialError(f"Ingest session {session_id!r} belongs to device {session_row.device_id!r}, not {device_id!r}")

            inline, content_ref = self._place_content(content)
            values = {
                "uniform_resource_id": generate_id(),
                "device_id": device_id,
                "ingest_session_id": session_id,
                "ingest_fs_path_id": ingest_fs_path_id,
                "ingest_imap_acct_folder_id": ingest_imap_acct_folder_id,
                "ingest_plm_acct_project_id": ingest_plm_acct_project_id,
                "uri": uri,
                "content_digest": digest,
                "content": inline,
                "content_ref": content_ref,
                "nature": nature,
                "size_bytes": size,
                "last_modified_at": last_modified_at,
                "frontmatter": frontmatter_json,
                "content_fm_body_attrs": fm_body_json,
                "elaboration": elaboration_json,
                **created_by(self._actor, now()),
            }
            return insert_if_absent(conn, uniform_resource_table, values, _RESOURCE_KEY)

        row, inserted = self._ops.transaction(_op)
        admission = Admission(resource_id=row.uniform_resource_id, is_new_record=inserted, content_digest=digest)

        if inserted:
            self._log.debug("resource_admitted", resource_id=admission.resource_id, device_id=device_id, uri=uri, size_bytes=size)
            # Emitted after commit; subscribers see the row
            self._events.emit(
                ResourceAdmitted(
                    resource_id=admission.resource_id,
                    device_id=device_id,
                    ingest_session_id=session_id,
                    uri=uri,
                    content_digest=digest,
                    nature=nature,
                )
            )
        else:
            self._log.debug("resource_duplicate", resource_id=admission.resource_id, device_id=device_id, uri=uri)
        return admission

    def admit_transform(
        self,
        resource_id: str,
        content: bytes,
        nature: str,
        size_bytes: int | None = None,
        *,
        uri: str | None = None,
        elaboration: Any = None,
    ) -> TransformAdmission:
        """Admit a derived artifact of a resource, deduplicating on the transform key.

        Transforms of one resource that differ in nature or size coexist;
        re-deriving an identical transform returns the existing id.

        Raises:
            ValidationError: Missing nature or malformed elaboration
            ReferentialError: If the resource does not exist
        """
        if not nature:
            raise ValidationError("Transform nature must be non-empty", field="nature")
        size = _resolve_size(content, size_bytes)
        elaboration_json = validate_structured(elaboration, "elaboration")
        digest = content_digest(content)

        def _op(conn: Connection) -> tuple[Any, bool]:
            resource = conn.execute(
                select(uniform_resource_table.c.uri).where(uniform_resource_table.c.uniform_resource_id == resource_id)
            ).first()
            if resource is None:
                raise ReferentialError(f"Uniform resource {resource_id!r} does not exist")
            values = {
                "uniform_resource_transform_id": generate_id(),
                "uniform_resource_id": resource_id,
                "uri": uri if uri is not None else resource.uri,
                "content_digest": digest,
                "content": content,
                "nature": nature,
                "size_bytes": size,
                "elaboration": elaboration_json,
                **created_by(self._actor, now()),
            }
            return insert_if_absent(conn, uniform_resource_transform_table, values, _TRANSFORM_KEY)

        row, inserted = self._ops.transaction(_op)
        if inserted:
            self._log.debug("transform_admitted", transform_id=row.uniform_resource_transform_id, resource_id=resource_id, nature=nature)
        return TransformAdmission(transform_id=row.uniform_resource_transform_id, is_new_record=inserted, content_digest=digest)

    def get_resource(self, resource_id: str, *, include_deleted: bool = False) -> UniformResource | None:
        query = select(uniform_resource_table).where(
            uniform_resource_table.c.uniform_resource_id == resource_id,
            *live(uniform_resource_table, include_deleted),
        )
        row = self._ops.execute_fetchone(query)
        return self._resource_repo.load(row) if row is not None else None

    def find_resource(self, device_id: str, digest: str, uri: str, size_bytes: int) -> UniformResource | None:
        """Look up a resource by its dedup key (including soft-deleted rows)."""
        query = select(uniform_resource_table).where(
            uniform_resource_table.c.device_id == device_id,
            uniform_resource_table.c.content_digest == digest,
            uniform_resource_table.c.uri == uri,
            uniform_resource_table.c.size_bytes == size_bytes,
        )
        row = self._ops.execute_fetchone(query)
        return self._resource_repo.load(row) if row is not None else None

    def list_resources(
        self,
        *,
        device_id: str | None = None,
        session_id: str | None = None,
        digest: str | None = None,
        include_deleted: bool = False,
    ) -> list[UniformResource]:
        """List resources, optionally filtered, ordered by creation then id."""
        clauses = live(uniform_resource_table, include_deleted)
        if device_id is not None:
            clauses.append(uniform_resource_table.c.device_id == device_id)
        if session_id is not None:
            clauses.append(uniform_resource_table.c.ingest_session_id == session_id)
        if digest is not None:
            clauses.append(uniform_resource_table.c.content_digest == digest)
        query = (
            select(uniform_resource_table)
            .where(*clauses)
            .order_by(uniform_resource_table.c.created_at, uniform_resource_table.c.uniform_resource_id)
        )
        return [self._resource_repo.load(r) for r in self._ops.execute_fetchall(query)]

    def list_transforms(self, resource_id: str) -> list[UniformResourceTransform]:
        query = (
            select(uniform_resource_transform_table)
            .where(
                uniform_resource_transform_table.c.uniform_resource_id == resource_id,
                *live(uniform_resource_transform_table),
            )
            .order_by(uniform_resource_transform_table.c.nature, uniform_resource_transform_table.c.created_at)
        )
        return [self._transform_repo.load(r) for r in self._ops.execute_fetchall(query)]

    def read_content(self, resource_id: str) -> bytes:
        """Return the bytes of a resource, inline or from the payload store.

        Raises:
            KeyError: If the resource does not exist
            StoreIntegrityError: If content is out of line but no payload store is configured
            IntegrityError: If the payload store content fails its hash check
        """
        resource = self.get_resource(resource_id, include_deleted=True)
        if resource is None:
            raise KeyError(f"Uniform resource not found: {resource_id}")
        if resource.content is not None:
            return resource.content
        if resource.content_ref is None:
            raise StoreIntegrityError(f"Uniform resource {resource_id} has neither inline content nor content_ref")
        if self._payload_store is None:
            raise StoreIntegrityError(f"Uniform resource {resource_id} is stored out of line but no payload store is configured")
        return self._payload_store.retrieve(resource.content_ref)

    def soft_delete_resource(self, resource_id: str) -> bool:
        """Mark a resource deleted. Its key stays reserved; re-admission reports a duplicate."""
        changed = self._ops.soft_delete(uniform_resource_table, "uniform_resource_id", resource_id, self._actor)
        if changed:
            self._log.info("resource_soft_deleted", resource_id=resource_id)
        return changed
