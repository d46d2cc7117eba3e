# tests/integration/test_end_to_end.py
"""End-to-end: settings -> recorder -> ingestion -> pipeline -> lineage."""

from __future__ import annotations

from pathlib import Path

import pytest

from cairn.contracts import EntryStatus
from cairn.core.config import load_settings
from cairn.core.events import EventBus
from cairn.core.store.lineage import DirectoryLineageIndexer, LineageGraph
from cairn.core.store.recorder import StoreRecorder
from cairn.engine.executor import OrchestrationExecutor
from cairn.engine.pipeline import IngestStage, OrchestrationPipeline, Stage, StageContext
from cairn.ingest.manager import IngestionSessionManager


@pytest.fixture
def tree(tmp_path: Path) -> Path:
    root = tmp_path / "tree"
    (root / "notes").mkdir(parents=True)
    (root / "readme.md").write_text("---\ntitle: Readme\n---\nHello\n", encoding="utf-8")
    (root / "notes" / "one.txt").write_text("one", encoding="utf-8")
    (root / "notes" / "two.txt").write_text("two", encoding="utf-8")
    return root


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    config = tmp_path / "cairn.yaml"
    config.write_text(
        f"""
store:
  url: "sqlite:///{(tmp_path / 'store.db').as_posix()}"
  actor: e2e
payload_store:
  enabled: true
  base_path: "{(tmp_path / 'payloads').as_posix()}"
  inline_threshold_bytes: 4
ingest:
  default_namespace: files
  match_rules:
    - namespace: files
      regex: '\\.md$'
      nature: text/markdown
      priority: 1
""",
        encoding="utf-8",
    )
    return config


class TestIngestTwice:
    def test_second_run_reports_only_duplicates(self, recorder: StoreRecorder, tree: Path) -> None:
        device = recorder.ensure_device("D1")
        manager = IngestionSessionManager(recorder)

        first = manager.open(device.device_id, "e2e")
        manager.ingest_path(first, str(tree))
        first_summary = manager.close(first)

        second = manager.open(device.device_id, "e2e")
        manager.ingest_path(second, str(tree))
        second_summary = manager.close(second)

        assert (first_summary.admitted, first_summary.duplicate) == (3, 0)
        assert (second_summary.admitted, second_summary.duplicate) == (0, 3)
        assert len(recorder.list_resources(device_id=device.device_id)) == 3
        assert {e.ur_status for e in recorder.list_path_entries(second)} == {EntryStatus.DUPLICATE}
        first_ids = {e.uniform_resource_id for e in recorder.list_path_entries(first)}
        second_ids = {e.uniform_resource_id for e in recorder.list_path_entries(second)}
        assert first_ids == second_ids

    def test_other_device_gets_its_own_resources(self, recorder: StoreRecorder, tree: Path) -> None:
        manager = IngestionSessionManager(recorder)
        for name in ("D1", "D2"):
            device = recorder.ensure_device(name)
            session_id = manager.open(device.device_id, "e2e")
            assert manager.ingest_path(session_id, str(tree)).admitted == 3
            manager.close(session_id)

        assert len(recorder.list_resources()) == 6


class TestConfiguredPipeline:
    def test_pipeline_from_settings(self, settings_file: Path, tree: Path) -> None:
        settings = load_settings(settings_file)
        events = EventBus()
        recorder = StoreRecorder.from_settings(settings, events=events)
        try:
            graph = LineageGraph(recorder)
            DirectoryLineageIndexer(graph).attach(events)
            device = recorder.ensure_device("workstation", boundary="lab")
            manager = IngestionSessionManager.from_settings(recorder, settings.ingest, events=events)
            executor = OrchestrationExecutor(recorder)
            seen: list[int] = []

            def _count(context: StageContext) -> int:
                seen.append(len(recorder.list_resources(device_id=context.device_id)))
                return 0

            report = OrchestrationPipeline(
                executor,
                [IngestStage(manager, [str(tree)]), Stage("count", _count)],
                nature="e2e",
            ).run(device.device_id)

            assert report.succeeded
            assert seen == [3]
            resources = {Path(r.uri).name: r for r in recorder.list_resources(device_id=device.device_id)}
            readme = resources["readme.md"]
            assert readme.nature == "text/markdown"
            stored_device = recorder.get_device(device.device_id)
            assert stored_device is not None and stored_device.created_by == "e2e"
            # Larger than the inline threshold, so content lives in the payload store
            assert readme.content is None and readme.content_ref is not None
            assert recorder.read_content(readme.uniform_resource_id).startswith(b"---")
            notes_dir = Path(resources["one.txt"].uri).parent.as_posix()
            assert len(list(graph.neighbors("filesystem", notes_dir, "contains"))) == 2
        finally:
            recorder.db.close()
