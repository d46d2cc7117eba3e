"""Device and behavior recording methods for StoreRecorder."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from sqlalchemy import Connection, select

from cairn.contracts import Behavior, Device, DeviceIdentity, DeviceUnknownError, ValidationError
from cairn.core.canonical import canonical_json, validate_structured
from cairn.core.store._database_ops import insert_if_absent, upsert
from cairn.core.store._helpers import created_by, generate_id, live, now, updated_by
from cairn.core.store.schema import behavior_table, device_table

if TYPE_CHECKING:
    import structlog

    from cairn.core.store._database_ops import DatabaseOps
    from cairn.core.store.repositories import BehaviorRepository, DeviceRepository


def _canonical_state(state: Any) -> str:
    """Device state is part of the device key, so equal values must serialize equally."""
    if state is None:
        return "{}"
    if isinstance(state, str):
        validate_structured(state, "state")
        return canonical_json(json.loads(state))
    return canonical_json(state)


def require_live_device(conn: Connection, device_id: str) -> Any:
    """Fetch a live device row inside an open transaction.

    Raises:
        DeviceUnknownError: If the device is absent or soft-deleted
    """
    row = conn.execute(select(device_table).where(device_table.c.device_id == device_id, *live(device_table))).first()
    if row is None:
        raise DeviceUnknownError(device_id)
    return row


class DeviceRecordingMixin:
    """Device registry methods. Mixed into StoreRecorder."""

    # Shared state annotations (set by StoreRecorder.__init__)
    _ops: DatabaseOps
    _actor: str
    _log: structlog.stdlib.BoundLogger
    _device_repo: DeviceRepository
    _behavior_repo: BehaviorRepository

    def ensure_device(
        self,
        name: str,
        *,
        boundary: str = "UNKNOWN",
        state: Any = None,
        segmentation: Any = None,
        state_sysinfo: Any = None,
        elaboration: Any = None,
    ) -> DeviceIdentity:
        """Get or create the device keyed by (name, state, boundary).

        Devices are created on first contact. A soft-deleted device keeps
        its key; ensure_device returns its identity but live queries (and
        session opening) still treat it as absent.

        Returns:
            The shared read-only identity of the device
        """
        if not name:
            raise ValidationError("Device name must be non-empty", field="name")
        values = {
            "device_id": generate_id(),
            "name": name,
            "state": _canonical_state(state),
            "boundary": boundary,
            "segmentation": validate_structured(segmentation, "segmentation"),
            "state_sysinfo": validate_structured(state_sysinfo, "state_sysinfo"),
            "elaboration": validate_structured(elaboration, "elaboration"),
            **created_by(self._actor, now()),
        }

        row, inserted = self._ops.transaction(lambda conn: insert_if_absent(conn, device_table, values, ("name", "state", "boundary")))
        device = self._device_repo.load(row)
        if inserted:
            self._log.info("device_registered", device_id=device.device_id, name=name, boundary=boundary)
        return device.identity

    def get_device(self, device_id: str, *, include_deleted: bool = False) -> Device | None:
        """Get a device by ID; soft-deleted devices only with include_deleted."""
        query = select(device_table).where(device_table.c.device_id == device_id, *live(device_table, include_deleted))
        row = self._ops.execute_fetchone(query)
        if row is None:
            return None
        return self._device_repo.load(row)

    def list_devices(self, *, include_deleted: bool = False) -> list[Device]:
        """List devices ordered by name. Live only unless include_deleted."""
        query = select(device_table).where(*live(device_table, include_deleted)).order_by(device_table.c.name, device_table.c.device_id)
        return [self._device_repo.load(r) for r in self._ops.execute_fetchall(query)]

    def soft_delete_device(self, device_id: str) -> bool:
        """Mark a device deleted. Returns False if it was already deleted."""
        changed = self._ops.soft_delete(device_table, "device_id", device_id, self._actor)
        if changed:
            self._log.info("device_soft_deleted", device_id=device_id)
        return changed

    def ensure_behavior(self, device_id: str, behavior_name: str, conf: Any) -> Behavior:
        """Create or replace the named behavior configuration of a device."""
        conf_json = validate_structured(conf, "behavior_conf_json")
        if conf_json is None:
            raise ValidationError("behavior_conf_json is required", field="behavior_conf_json")
        timestamp = now()
        values = {
            "behavior_id": generate_id(),
            "device_id": device_id,
            "behavior_name": behavior_name,
            "behavior_conf_json": conf_json,
            **created_by(self._actor, timestamp),
        }

        def _op(conn: Connection) -> Any:
            require_live_device(conn, device_id)
            return upsert(
                conn,
                behavior_table,
                values,
                ("device_id", "behavior_name"),
                {"behavior_conf_json": conf_json, **updated_by(self._actor, timestamp)},
            )

        return self._behavior_repo.load(self._ops.transaction(_op))

    def get_behavior(self, device_id: str, behavior_name: str) -> Behavior | None:
        query = select(behavior_table).where(
            behavior_table.c.device_id == device_id,
            behavior_table.c.behavior_name == behavior_name,
            *live(behavior_table),
        )
        row = self._ops.execute_fetchone(query)
        return self._behavior_repo.load(row) if row is not None else None
