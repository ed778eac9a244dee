from __future__ import annotations

import asyncio
import threading
import json
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from google.api_core import exceptions as gexc

from customer_distribution.domain.models import CloudErrorType, CloudLinkStatus, Customer, FileInput, SyncStatus
from customer_distribution.gateways.base import EnrichmentGateway, ExtractionGateway
from customer_distribution.pipeline import CustomerPipeline, ExtractionFailure, ExtractionPolicy, FailureKind, ImportProgress
from customer_distribution.storage.local import LocalStore


class _FakeExtractor(ExtractionGateway):
    def __init__(self, outputs: Dict[str, Union[List[Customer], Exception]]) -> None:
        self.outputs = outputs
        self.calls: List[str] = []

    async def extract(self, source: FileInput) -> List[Customer]:
        self.calls.append(source.name)
        out = self.outputs[source.name]
        if isinstance(out, Exception):
            raise out
        return list(out)


class _RecordingEnricher(EnrichmentGateway):
    def __init__(self) -> None:
        self.batches: List[List[str]] = []

    async def enrich(self, records: Sequence[Customer]) -> List[Customer]:
        self.batches.append([c.id for c in records])
        return [c.with_changes(map_url=f"https://maps.example/{c.id}") for c in records]


class _FakeCloud:
    def __init__(self, records: Optional[List[Customer]] = None) -> None:
        self.docs: Dict[str, Customer] = {c.id: c for c in records or []}
        self.fetch_error: Optional[BaseException] = None
        self.write_error: Optional[BaseException] = None
        self.upserts = 0

    def fetch_all(self) -> List[Customer]:
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.docs.values())

    def upsert_all(self, records: Sequence[Customer]) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.upserts += 1
        self.docs.update({c.id: c for c in records})

    def delete_all(self) -> int:
        if self.write_error is not None:
            raise self.write_error
        count = len(self.docs)
        self.docs.clear()
        return count


class _ReadOnlyStore(LocalStore):
    def save(self, records, *, default_sync_status=None) -> bool:
        return False


def _c(cid: str, city: str = "Taipei", **extra) -> Customer:
    return Customer(id=cid, name=f"Customer {cid}", address=f"{cid} Main Rd", city=city, **extra)


def _csv(name: str) -> FileInput:
    return FileInput(name=name, kind="csv", content="id,name,address\n")


def _store(tmp_path: Path) -> LocalStore:
    return LocalStore(db_path=str(tmp_path / "customers.sqlite3"))


def test_skip_policy_keeps_good_files_and_reports_failed_ones(tmp_path: Path) -> None:
    extractor = _FakeExtractor(
        {
            "a.csv": [_c("1"), _c("2")],
            "b.png": ExtractionFailure("model refused"),
            "c.csv": [_c("3")],
        }
    )
    enricher = _RecordingEnricher()
    store = _store(tmp_path)
    pipeline = CustomerPipeline(store, extractor=extractor, enricher=enricher)
    progress: List[ImportProgress] = []

    result = asyncio.run(pipeline.import_files([_csv("a.csv"), _csv("b.png"), _csv("c.csv")], on_progress=progress.append))

    assert result.ok
    assert result.added == 3
    assert result.failed_files == ["b.png"]
    assert extractor.calls == ["a.csv", "b.png", "c.csv"]
    assert enricher.batches == [["1", "2", "3"]]
    assert [(p.current, p.total, p.extracted_count) for p in progress] == [(1, 3, 2), (2, 3, 2), (3, 3, 3)]
    stored = {c.id: c for c in store.load()}
    assert set(stored) == {"1", "2", "3"}
    assert all(c.created_at and c.map_url for c in stored.values())


def test_unexpected_extractor_error_is_treated_as_file_failure(tmp_path: Path) -> None:
    extractor = _FakeExtractor({"a.csv": RuntimeError("boom"), "b.csv": [_c("1")]})
    pipeline = CustomerPipeline(_store(tmp_path), extractor=extractor)

    result = asyncio.run(pipeline.import_files([_csv("a.csv"), _csv("b.csv")]))

    assert result.ok
    assert result.failed_files == ["a.csv"]
    assert [c.id for c in result.customers] == ["1"]


def test_all_files_failing_yields_no_records_found(tmp_path: Path) -> None:
    extractor = _FakeExtractor({"a.csv": ExtractionFailure("bad"), "b.csv": []})
    store = _store(tmp_path)
    pipeline = CustomerPipeline(store, extractor=extractor)

    result = asyncio.run(pipeline.import_files([_csv("a.csv"), _csv("b.csv")]))

    assert not result.ok
    assert result.failure is FailureKind.NO_RECORDS
    assert result.failed_files == ["a.csv"]
    assert pipeline.customers == []
    assert store.load() == []


def test_abort_policy_stops_at_first_failure_without_saving(tmp_path: Path) -> None:
    extractor = _FakeExtractor({"a.csv": [_c("1")], "b.csv": ExtractionFailure("bad"), "c.csv": [_c("2")]})
    store = _store(tmp_path)
    pipeline = CustomerPipeline(store, extractor=extractor, policy=ExtractionPolicy.ABORT)

    result = asyncio.run(pipeline.import_files([_csv("a.csv"), _csv("b.csv"), _csv("c.csv")]))

    assert not result.ok
    assert result.failure is FailureKind.EXTRACTION
    assert result.failed_files == ["b.csv"]
    assert extractor.calls == ["a.csv", "b.csv"]
    assert store.load() == []


def test_import_without_extractor_or_files(tmp_path: Path) -> None:
    async def scenario():
        bare = CustomerPipeline(_store(tmp_path))
        no_extractor = await bare.import_files([_csv("a.csv")])
        configured = CustomerPipeline(_store(tmp_path), extractor=_FakeExtractor({}))
        no_files = await configured.import_files([])
        return no_extractor, no_files

    no_extractor, no_files = asyncio.run(scenario())
    assert no_extractor.failure is FailureKind.EXTRACTION
    assert no_files.failure is FailureKind.NO_RECORDS


def test_reimporting_known_records_changes_nothing(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save([_c("1", created_at="2024-01-01T00:00:00+00:00")])
    extractor = _FakeExtractor({"a.csv": [_c("1", city="Elsewhere")]})
    pipeline = CustomerPipeline(store, extractor=extractor)

    async def scenario():
        await pipeline.load_initial()
        return await pipeline.import_files([_csv("a.csv")])

    result = asyncio.run(scenario())

    assert result.ok
    assert result.message == "No new records"
    assert result.added == 0
    assert [c.city for c in store.load()] == ["Taipei"]


def test_failed_save_leaves_collection_unchanged(tmp_path: Path) -> None:
    store = _ReadOnlyStore(db_path=str(tmp_path / "customers.sqlite3"))
    pipeline = CustomerPipeline(store, extractor=_FakeExtractor({"a.csv": [_c("1")]}))

    result = asyncio.run(pipeline.import_files([_csv("a.csv")]))

    assert not result.ok
    assert result.failure is FailureKind.PERSISTENCE
    assert pipeline.customers == []
    assert result.customers == []


def test_cloud_outage_falls_back_to_local_snapshot(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save([_c("1"), _c("2")])
    cloud = _FakeCloud()
    cloud.fetch_error = gexc.ServiceUnavailable("offline")
    pipeline = CustomerPipeline(store, cloud_store=cloud)

    result = asyncio.run(pipeline.load_initial())

    assert result.ok
    assert result.source == "local"
    assert result.failure is FailureKind.CLOUD_READ
    assert result.error_type is CloudErrorType.NETWORK
    assert {c.id for c in pipeline.customers} == {"1", "2"}
    assert pipeline.cloud_status is CloudLinkStatus.ERROR
    assert pipeline.summary()["cloudError"] == "network"


def test_cloud_load_keeps_unsynced_local_records(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(
        [
            _c("pending", created_at="2024-03-01T00:00:00+00:00", sync_status=SyncStatus.LOCAL.value),
            _c("stale", created_at="2024-02-01T00:00:00+00:00", sync_status=SyncStatus.SYNCED.value),
        ]
    )
    cloud = _FakeCloud([_c("remote", created_at="2024-01-01T00:00:00+00:00")])
    pipeline = CustomerPipeline(store, cloud_store=cloud)

    result = asyncio.run(pipeline.load_initial())

    assert result.ok and result.source == "cloud"
    assert [(c.id, c.sync_status) for c in pipeline.customers] == [("pending", "local"), ("remote", "synced")]
    assert pipeline.cloud_status is CloudLinkStatus.CONNECTED
    assert {c.id for c in store.load()} == {"pending", "remote"}


def test_failed_sync_leaves_statuses_untouched(tmp_path: Path) -> None:
    store = _store(tmp_path)
    cloud = _FakeCloud()
    extractor = _FakeExtractor({"a.csv": [_c("1"), _c("2")]})
    pipeline = CustomerPipeline(store, extractor=extractor, cloud_store=cloud)

    async def scenario():
        await pipeline.load_initial()
        await pipeline.import_files([_csv("a.csv")])
        cloud.write_error = gexc.ServiceUnavailable("offline")
        return await pipeline.sync_to_cloud()

    result = asyncio.run(scenario())

    assert not result.ok
    assert result.failure is FailureKind.CLOUD_WRITE
    assert result.message == "Sync failed, retry later"
    assert result.error_type is CloudErrorType.NETWORK
    assert [c.sync_status for c in pipeline.customers] == ["local", "local"]
    assert [c.sync_status for c in store.load()] == ["local", "local"]
    assert pipeline.cloud_status is CloudLinkStatus.ERROR


def test_successful_sync_marks_records_synced(tmp_path: Path) -> None:
    store = _store(tmp_path)
    cloud = _FakeCloud()
    extractor = _FakeExtractor({"a.csv": [_c("1"), _c("2")]})
    pipeline = CustomerPipeline(store, extractor=extractor, cloud_store=cloud)

    async def scenario():
        await pipeline.load_initial()
        await pipeline.import_files([_csv("a.csv")])
        return await pipeline.sync_to_cloud()

    result = asyncio.run(scenario())

    assert result.ok
    assert set(cloud.docs) == {"1", "2"}
    assert all(c.sync_status == "synced" for c in cloud.docs.values())
    assert [c.sync_status for c in pipeline.customers] == ["synced", "synced"]
    assert [c.sync_status for c in store.load()] == ["synced", "synced"]
    assert pipeline.cloud_status is CloudLinkStatus.CONNECTED


def test_auto_sync_runs_in_background_after_import(tmp_path: Path) -> None:
    cloud = _FakeCloud()
    extractor = _FakeExtractor({"a.csv": [_c("1")]})
    pipeline = CustomerPipeline(_store(tmp_path), extractor=extractor, cloud_store=cloud, auto_sync=True)

    async def scenario():
        await pipeline.load_initial()
        imported = await pipeline.import_files([_csv("a.csv")])
        assert pipeline.sync_task is not None
        synced = await pipeline.sync_task
        return imported, synced

    imported, synced = asyncio.run(scenario())

    assert imported.ok and synced.ok
    assert set(cloud.docs) == {"1"}


def test_sync_without_cloud_is_an_initialization_failure(tmp_path: Path) -> None:
    result = asyncio.run(CustomerPipeline(_store(tmp_path)).sync_to_cloud())
    assert result.failure is FailureKind.CLOUD_WRITE
    assert result.error_type is CloudErrorType.INITIALIZATION


def test_backup_restore_rejects_bad_payloads(tmp_path: Path) -> None:
    pipeline = CustomerPipeline(_store(tmp_path))

    async def scenario():
        return (
            await pipeline.import_backup("{broken"),
            await pipeline.import_backup('{"id": "1"}'),
            await pipeline.import_backup('[{"id": "1", "name": "no address"}]'),
        )

    for result in asyncio.run(scenario()):
        assert not result.ok
        assert result.failure is FailureKind.IMPORT_PARSE
    assert pipeline.customers == []


def test_backup_restore_merges_and_resets_sync_state(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save([_c("1", created_at="2024-01-01T00:00:00+00:00")])
    pipeline = CustomerPipeline(store, cloud_store=_FakeCloud())
    blob = json.dumps(
        [
            {"id": "1", "name": "dup", "address": "x"},
            {"id": "2", "name": "new", "address": "y", "city": "台中市", "syncStatus": "synced"},
        ],
        ensure_ascii=False,
    ).encode("utf-8")

    async def scenario():
        await pipeline.load_initial()
        return await pipeline.import_backup(blob)

    result = asyncio.run(scenario())

    assert result.ok and result.added == 1
    restored = {c.id: c for c in pipeline.customers}
    assert restored["1"].name == "Customer 1"
    assert restored["2"].sync_status == "local"


def test_export_snapshot(tmp_path: Path) -> None:
    store = _store(tmp_path)
    pipeline = CustomerPipeline(store)
    empty = asyncio.run(pipeline.export_snapshot())
    assert empty.failure is FailureKind.NO_RECORDS

    store.save([_c("1", city="台北市")])

    async def scenario():
        await pipeline.load_initial()
        return await pipeline.export_snapshot()

    result = asyncio.run(scenario())

    assert result.ok and result.export is not None
    assert result.export.filename.startswith("customer_data_backup_")
    assert result.export.filename.endswith(".json")
    data = json.loads(result.export.content)
    assert data[0]["id"] == "1" and data[0]["city"] == "台北市"
    assert "台北市" in result.export.content


def test_clear_all_keeps_local_data_when_cloud_clear_fails(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save([_c("1")])
    cloud = _FakeCloud([_c("1", created_at="2024-01-01T00:00:00+00:00")])
    pipeline = CustomerPipeline(store, cloud_store=cloud)

    async def scenario():
        await pipeline.load_initial()
        cloud.write_error = gexc.PermissionDenied("rules")
        failed = await pipeline.clear_all()
        cloud.write_error = None
        cleared = await pipeline.clear_all()
        return failed, cleared

    failed, cleared = asyncio.run(scenario())

    assert not failed.ok
    assert failed.error_type is CloudErrorType.PERMISSION_DENIED
    assert cleared.ok
    assert cloud.docs == {}
    assert store.load() == []
    assert pipeline.customers == []


def test_city_stats_follow_collection(tmp_path: Path) -> None:
    extractor = _FakeExtractor({"a.csv": [_c("1", "A"), _c("2", "B"), _c("3", "A"), _c("4", "")]})
    pipeline = CustomerPipeline(_store(tmp_path), extractor=extractor)
    asyncio.run(pipeline.import_files([_csv("a.csv")]))

    assert [(s.city, s.count) for s in pipeline.city_stats()] == [("A", 2), ("B", 1)]
    assert pipeline.summary()["totalCustomers"] == 4


class _SlowUploadCloud(_FakeCloud):
    """Upload that lingers until a delete happens (or a short timeout passes)."""

    def __init__(self) -> None:
        super().__init__()
        self.upload_started = threading.Event()
        self.deleted = threading.Event()

    def upsert_all(self, records: Sequence[Customer]) -> None:
        self.upload_started.set()
        self.deleted.wait(timeout=0.5)
        super().upsert_all(records)

    def delete_all(self) -> int:
        count = super().delete_all()
        self.deleted.set()
        return count


def test_clear_all_waits_for_in_flight_upload(tmp_path: Path) -> None:
    cloud = _SlowUploadCloud()
    pipeline = CustomerPipeline(_store(tmp_path), cloud_store=cloud)

    async def scenario():
        await pipeline.load_initial()
        await pipeline.import_backup('[{"id": "1", "name": "Shop", "address": "1 Main Rd"}]')
        task = pipeline.trigger_cloud_sync()
        await asyncio.to_thread(cloud.upload_started.wait, 2)
        cleared = await pipeline.clear_all()
        await task
        return cleared

    cleared = asyncio.run(scenario())

    assert cleared.ok
    assert cloud.docs == {}
    reloaded = CustomerPipeline(_store(tmp_path), cloud_store=cloud)
    result = asyncio.run(reloaded.load_initial())
    assert result.source == "cloud"
    assert reloaded.customers == []


def test_records_show_syncing_while_upload_runs(tmp_path: Path) -> None:
    seen: List[List[Optional[str]]] = []

    class _ObservingCloud(_FakeCloud):
        def upsert_all(self, records: Sequence[Customer]) -> None:
            seen.append([c.sync_status for c in pipeline.customers])
            super().upsert_all(records)

    store = _store(tmp_path)
    store.save([_c("1", sync_status=SyncStatus.SYNCED.value), _c("2")], default_sync_status=SyncStatus.LOCAL.value)
    cloud = _ObservingCloud([_c("1", created_at="2024-01-01T00:00:00+00:00")])
    pipeline = CustomerPipeline(store, cloud_store=cloud)

    async def scenario():
        await pipeline.load_initial()
        return await pipeline.sync_to_cloud()

    result = asyncio.run(scenario())

    assert result.ok
    assert sorted(seen[0], key=str) == ["synced", "syncing"]
    assert [c.sync_status for c in pipeline.customers] == ["synced", "synced"]


def test_failed_upload_restores_previous_statuses(tmp_path: Path) -> None:
    cloud = _FakeCloud()
    cloud.write_error = gexc.PermissionDenied("rules")
    store = _store(tmp_path)
    store.save([_c("1")], default_sync_status=SyncStatus.LOCAL.value)
    pipeline = CustomerPipeline(store, cloud_store=cloud)

    async def scenario():
        await pipeline.load_initial()
        return await pipeline.sync_to_cloud()

    result = asyncio.run(scenario())

    assert result.error_type is CloudErrorType.PERMISSION_DENIED
    assert [c.sync_status for c in pipeline.customers] == ["local"]
