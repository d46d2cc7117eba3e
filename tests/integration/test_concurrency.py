# tests/integration/test_concurrency.py
"""Concurrent writers against a file-backed SQLite store.

Races on the admission key, on sibling order allocation and on the
transition key must resolve inside the store: one row, distinct orders,
no ConcurrencyConflict under the contended retry budget.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from cairn.contracts import ResourceAdmitted
from cairn.core.store.recorder import StoreRecorder
from cairn.engine.executor import OrchestrationExecutor

WORKERS = 8


class TestConcurrentAdmission:
    def test_same_key_inserts_once(self, file_recorder: StoreRecorder) -> None:
        admitted: list[ResourceAdmitted] = []
        file_recorder.events.subscribe(ResourceAdmitted, admitted.append)
        device = file_recorder.ensure_device("D1")
        session_id = file_recorder.open_ingest_session(device.device_id, "pytest").ingest_session_id

        def _admit(_: int) -> tuple[str, bool]:
            admission = file_recorder.admit(device.device_id, "/srv/same.md", b"same bytes", session_id=session_id)
            return admission.resource_id, admission.is_new_record

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            results = list(pool.map(_admit, range(WORKERS * 2)))

        assert len({resource_id for resource_id, _ in results}) == 1
        assert sum(1 for _, inserted in results if inserted) == 1
        assert len(admitted) == 1
        assert len(file_recorder.list_resources(device_id=device.device_id)) == 1

    def test_distinct_keys_all_inserted(self, file_recorder: StoreRecorder) -> None:
        device = file_recorder.ensure_device("D1")
        session_id = file_recorder.open_ingest_session(device.device_id, "pytest").ingest_session_id

        def _admit(i: int) -> bool:
            return file_recorder.admit(device.device_id, f"/srv/{i}.md", f"body {i}".encode(), session_id=session_id).is_new_record

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            results = list(pool.map(_admit, range(WORKERS * 2)))

        assert all(results)
        assert len(file_recorder.list_resources(device_id=device.device_id)) == WORKERS * 2


class TestConcurrentExecTree:
    def test_children_get_distinct_sibling_orders(self, file_recorder: StoreRecorder) -> None:
        executor = OrchestrationExecutor(file_recorder)
        device = file_recorder.ensure_device("D1")
        session_id = executor.begin_session(device.device_id, "concurrent", "1.0")
        root = executor.begin_exec(session_id, "root")

        def _child(i: int) -> int:
            with root.child(f"child-{i}") as child:
                return child.record.sibling_order

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            orders = list(pool.map(_child, range(WORKERS * 2)))

        assert sorted(orders) == list(range(WORKERS * 2))
        assert root.finish().exec_status == 0

    def test_concurrent_child_failure_propagates(self, file_recorder: StoreRecorder) -> None:
        executor = OrchestrationExecutor(file_recorder)
        device = file_recorder.ensure_device("D1")
        session_id = executor.begin_session(device.device_id, "concurrent", "1.0")
        root = executor.begin_exec(session_id, "root")

        def _child(i: int) -> None:
            root.child(f"child-{i}").finish(7 if i == 3 else 0)

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            list(pool.map(_child, range(WORKERS)))

        assert root.finish().exec_status == 7


class TestConcurrentTransitions:
    def test_same_transition_one_row(self, file_recorder: StoreRecorder) -> None:
        device = file_recorder.ensure_device("D1")
        session_id = file_recorder.begin_orchestration_session(device.device_id, "concurrent", "1.0").orchestration_session_id

        def _transition(i: int) -> None:
            file_recorder.record_transition(session_id, "PENDING", "RUNNING", reason=f"writer-{i}")

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            list(pool.map(_transition, range(WORKERS * 2)))

        [state] = file_recorder.list_transitions(owner_id=session_id)
        assert state.transition_count == WORKERS * 2
        assert state.transition_reason is not None and state.transition_reason.startswith("writer-")
