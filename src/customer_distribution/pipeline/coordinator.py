"""Coordinator owning the in-memory customer collection and the command surface."""

from __future__ import annotations

import asyncio
import functools
import json
from datetime import date
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

from ..config import AppSettings
from ..domain.models import CityStat, CloudErrorType, CloudLinkStatus, Customer, FileInput, RecordValidationError, SyncStatus
from ..domain.timestamps import timestamp_sort_key
from ..gateways.base import EnrichmentGateway, ExtractionGateway
from ..logging import get_logger
from ..storage.cloud import FirestoreCloudStore, classify_cloud_error
from ..storage.local import LocalStore
from .errors import (
    CloudReadFailure,
    CloudWriteFailure,
    ExtractionFailure,
    FailureKind,
    ImportParseFailure,
    NoRecordsFound,
    PersistenceFailure,
)
from .merge import merge
from .results import CommandResult, ExportSnapshot, ImportProgress
from .stats import aggregate, summarize


LOG = get_logger("pipeline")

ProgressCallback = Callable[[ImportProgress], None]


class ExtractionPolicy(str, Enum):
    SKIP = "skip"
    ABORT = "abort"


def _command(kind: FailureKind) -> Callable:
    """Turn anything a command lets escape into a classified failure result."""

    def decorator(fn: Callable[..., Awaitable[CommandResult]]) -> Callable[..., Awaitable[CommandResult]]:
        @functools.wraps(fn)
        async def wrapper(self: "CustomerPipeline", *args, **kwargs) -> CommandResult:
            try:
                return await fn(self, *args, **kwargs)
            except Exception as exc:
                LOG.exception("Unexpected error in %s", fn.__name__)
                return CommandResult(
                    ok=False,
                    customers=list(self._customers),
                    message=f"Unexpected error: {exc}",
                    failure=kind,
                )

        return wrapper

    return decorator


class CustomerPipeline:
    """Extraction → enrichment → merge → local save, plus optional cloud reconciliation.

    All writers of the collection run under one asyncio lock, so a command
    sees a consistent snapshot between its awaits. Cloud I/O happens outside
    the lock and only its result is applied under it.
    """

    def __init__(
        self,
        local_store: LocalStore,
        extractor: Optional[ExtractionGateway] = None,
        enricher: Optional[EnrichmentGateway] = None,
        cloud_store: Optional[FirestoreCloudStore] = None,
        *,
        policy: Union[ExtractionPolicy, str] = ExtractionPolicy.SKIP,
        auto_sync: bool = False,
    ) -> None:
        self.local_store = local_store
        self.extractor = extractor
        self.enricher = enricher
        self.cloud_store = cloud_store
        self.policy = ExtractionPolicy(policy)
        self.auto_sync = auto_sync
        self._customers: List[Customer] = []
        self._cloud_status = CloudLinkStatus.DISCONNECTED
        self._last_cloud_error: Optional[CloudErrorType] = None
        self._sync_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._cloud_lock = asyncio.Lock()

    # ---------------- read-only views ----------------
    @property
    def customers(self) -> List[Customer]:
        return list(self._customers)

    @property
    def cloud_enabled(self) -> bool:
        return self.cloud_store is not None

    @property
    def cloud_status(self) -> CloudLinkStatus:
        return self._cloud_status

    @property
    def last_cloud_error(self) -> Optional[CloudErrorType]:
        return self._last_cloud_error

    @property
    def sync_task(self) -> Optional["asyncio.Task[CommandResult]"]:
        return self._sync_task

    def city_stats(self) -> List[CityStat]:
        return aggregate(self._customers)

    def summary(self) -> dict:
        out = summarize(self._customers)
        out["cloudStatus"] = self._cloud_status.value
        out["cloudError"] = self._last_cloud_error.value if self._last_cloud_error else None
        return out

    # ---------------- internals ----------------
    @property
    def _default_sync_status(self) -> Optional[str]:
        return SyncStatus.LOCAL.value if self.cloud_enabled else None

    async def _persist(self, records: Sequence[Customer]) -> List[Customer]:
        stamped = LocalStore.stamp(records, self._default_sync_status)
        ok = await asyncio.to_thread(self.local_store.save, stamped)
        if not ok:
            raise PersistenceFailure("Local persistence failed; changes were not saved")
        return stamped

    async def _enrich(self, records: List[Customer]) -> List[Customer]:
        if self.enricher is None:
            return records
        try:
            return await self.enricher.enrich(records)
        except Exception as exc:
            LOG.warning("Enrichment raised unexpectedly; continuing without map links: %s", exc)
            return records

    async def _extract_all(
        self, files: Sequence[FileInput], on_progress: Optional[ProgressCallback]
    ) -> tuple[List[Customer], List[str]]:
        if self.extractor is None:
            raise ExtractionFailure("Extraction is not configured")
        extracted: List[Customer] = []
        failed: List[str] = []
        total = len(files)
        for index, source in enumerate(files, start=1):
            rows: List[Customer] = []
            error: Optional[ExtractionFailure] = None
            try:
                rows = await self.extractor.extract(source)
            except ExtractionFailure as exc:
                error = exc
            except Exception as exc:
                error = ExtractionFailure(f"Extraction failed for {source.name}: {exc}", source_name=source.name)
            if error is not None:
                error.source_name = error.source_name or source.name
                if self.policy is ExtractionPolicy.ABORT:
                    LOG.error("Aborting batch at file %d/%d (%s): %s", index, total, source.name, error.message)
                    raise error
                LOG.warning("Skipping %s: %s", source.name, error.message)
                failed.append(source.name)
            else:
                extracted.extend(rows)
            if on_progress is not None:
                on_progress(ImportProgress(current=index, total=total, extracted_count=len(extracted)))
        return extracted, failed

    # ---------------- commands ----------------
    @_command(FailureKind.PERSISTENCE)
    async def load_initial(self) -> CommandResult:
        async with self._lock:
            if self.cloud_store is None:
                self._customers = await asyncio.to_thread(self.local_store.load)
                LOG.info("Loaded %d customer(s) from local store", len(self._customers))
                return CommandResult(ok=True, customers=self.customers, source="local")

            try:
                remote = await asyncio.to_thread(self.cloud_store.fetch_all)
            except Exception as exc:
                error_type = classify_cloud_error(exc)
                self._cloud_status = CloudLinkStatus.ERROR
                self._last_cloud_error = error_type
                LOG.warning("Cloud read failed (%s); falling back to local snapshot: %s", error_type.value, exc)
                self._customers = await asyncio.to_thread(self.local_store.load)
                # degraded but usable: the local snapshot is shown
                failure = CloudReadFailure(f"Cloud unavailable ({error_type.value}); showing local data", error_type=error_type)
                result = CommandResult.from_error(failure, self._customers, source="local")
                result.ok = True
                return result

            self._cloud_status = CloudLinkStatus.CONNECTED
            self._last_cloud_error = None
            confirmed = [c.with_changes(sync_status=SyncStatus.SYNCED.value) for c in remote]
            local = await asyncio.to_thread(self.local_store.load)
            pending = [c for c in local if c.sync_status != SyncStatus.SYNCED.value]
            combined = merge(confirmed, pending).customers
            combined.sort(key=lambda c: timestamp_sort_key(c.created_at), reverse=True)
            message = ""
            try:
                combined = await self._persist(combined)
            except PersistenceFailure as exc:
                LOG.warning("Cloud data loaded but local cache could not be updated: %s", exc.message)
                message = exc.message
            self._customers = combined
            LOG.info("Loaded %d customer(s) from Firestore (%d pending local)", len(remote), len(pending))
            return CommandResult(ok=True, customers=self.customers, source="cloud", message=message)

    @_command(FailureKind.EXTRACTION)
    async def import_files(self, files: Sequence[FileInput], on_progress: Optional[ProgressCallback] = None) -> CommandResult:
        if self.extractor is None:
            return CommandResult.from_error(ExtractionFailure("Extraction is not configured"), self._customers)
        if not files:
            return CommandResult.from_error(NoRecordsFound("No files were provided"), self._customers)

        async with self._lock:
            try:
                extracted, failed = await self._extract_all(files, on_progress)
            except ExtractionFailure as exc:
                failed_name = [exc.source_name] if exc.source_name else []
                return CommandResult.from_error(exc, self._customers, failed_files=failed_name)

            if not extracted:
                exc = NoRecordsFound("No customer records could be recognized in the uploaded files", failed_files=failed)
                return CommandResult.from_error(exc, self._customers, failed_files=failed)

            enriched = await self._enrich(extracted)
            result = merge(self._customers, enriched)
            if not result.changed:
                LOG.info("All %d extracted record(s) already exist", len(extracted))
                return CommandResult(ok=True, customers=self.customers, message="No new records", failed_files=failed)

            try:
                saved = await self._persist(result.customers)
            except PersistenceFailure as exc:
                return CommandResult.from_error(exc, self._customers, failed_files=failed)
            self._customers = saved

        LOG.info("Imported %d new customer(s) from %d file(s)", len(result.added), len(files))
        if self.auto_sync and self.cloud_enabled:
            self.trigger_cloud_sync()
        return CommandResult(
            ok=True,
            customers=self.customers,
            message=f"Added {len(result.added)} new customer(s)",
            added=len(result.added),
            failed_files=failed,
        )

    @_command(FailureKind.PERSISTENCE)
    async def export_snapshot(self) -> CommandResult:
        if not self._customers:
            return CommandResult.from_error(NoRecordsFound("There is no data to export"), self._customers)
        content = json.dumps([c.to_dict() for c in self._customers], ensure_ascii=False, indent=2)
        snapshot = ExportSnapshot(
            filename=f"customer_data_backup_{date.today().isoformat()}.json",
            content=content,
            count=len(self._customers),
        )
        return CommandResult(ok=True, customers=self.customers, message=snapshot.filename, export=snapshot)

    @_command(FailureKind.IMPORT_PARSE)
    async def import_backup(self, blob: Union[str, bytes]) -> CommandResult:
        try:
            if isinstance(blob, bytes):
                blob = blob.decode("utf-8-sig")
            data = json.loads(blob)
        except (UnicodeDecodeError, ValueError) as exc:
            LOG.warning("Backup is not valid JSON: %s", exc)
            return CommandResult.from_error(ImportParseFailure("Backup file is not valid JSON"), self._customers)
        if not isinstance(data, list):
            return CommandResult.from_error(ImportParseFailure("Backup must contain a JSON array of customers"), self._customers)
        try:
            incoming = [Customer.from_dict(item).with_changes(sync_status=None) for item in data]
        except RecordValidationError as exc:
            return CommandResult.from_error(ImportParseFailure(f"Invalid customer record in backup: {exc}"), self._customers)

        async with self._lock:
            result = merge(self._customers, incoming)
            if not result.changed:
                return CommandResult(ok=True, customers=self.customers, message="No new records")
            try:
                saved = await self._persist(result.customers)
            except PersistenceFailure as exc:
                return CommandResult.from_error(exc, self._customers)
            self._customers = saved
        LOG.info("Restored %d new customer(s) from backup (%d in file)", len(result.added), len(incoming))
        return CommandResult(
            ok=True,
            customers=self.customers,
            message=f"Imported {len(result.added)} new customer(s)",
            added=len(result.added),
        )

    @_command(FailureKind.CLOUD_WRITE)
    async def sync_to_cloud(self) -> CommandResult:
        if self.cloud_store is None:
            exc = CloudWriteFailure("Cloud sync is not configured", error_type=CloudErrorType.INITIALIZATION)
            return CommandResult.from_error(exc, self._customers)

        # held for the whole upload so a clear-all cannot interleave with it
        async with self._cloud_lock:
            async with self._lock:
                before = {c.id: c for c in self._customers}
                marked = [
                    c if c.sync_status == SyncStatus.SYNCED.value else c.with_changes(sync_status=SyncStatus.SYNCING.value)
                    for c in self._customers
                ]
                self._customers = marked
            outgoing = [c.with_changes(sync_status=SyncStatus.SYNCED.value) for c in marked]
            self._cloud_status = CloudLinkStatus.SYNCING
            LOG.info("Syncing %d customer(s) to Firestore", len(outgoing))
            try:
                await asyncio.to_thread(self.cloud_store.upsert_all, outgoing)
            except Exception as exc:
                error_type = classify_cloud_error(exc)
                async with self._lock:
                    self._customers = self._settle(marked, before)
                    self._cloud_status = CloudLinkStatus.ERROR
                    self._last_cloud_error = error_type
                LOG.error("Cloud sync failed (%s): %s", error_type.value, exc)
                failure = CloudWriteFailure("Sync failed, retry later", error_type=error_type)
                return CommandResult.from_error(failure, self._customers)

            async with self._lock:
                confirmed = {c.id: c for c in outgoing}
                # records added or changed while the batch was in flight keep their status
                updated = self._settle(marked, confirmed)
                try:
                    saved = await self._persist(updated)
                except PersistenceFailure as exc:
                    self._customers = self._settle(marked, before)
                    self._cloud_status = CloudLinkStatus.CONNECTED
                    return CommandResult.from_error(exc, self._customers)
                self._customers = saved
                self._cloud_status = CloudLinkStatus.CONNECTED
                self._last_cloud_error = None
        return CommandResult(ok=True, customers=self.customers, message=f"Synced {len(outgoing)} customer(s)", source="cloud")

    def _settle(self, marked: Sequence[Customer], replacements: Dict[str, Customer]) -> List[Customer]:
        """Swap in ``replacements`` for records still exactly as they were marked."""
        sent = {c.id: c for c in marked}
        return [replacements[c.id] if sent.get(c.id) == c and c.id in replacements else c for c in self._customers]

    def trigger_cloud_sync(self) -> "asyncio.Task[CommandResult]":
        """Schedule a cloud sync without waiting for it; a running sync is reused."""
        if self._sync_task is not None and not self._sync_task.done():
            return self._sync_task
        self._sync_task = asyncio.get_running_loop().create_task(self.sync_to_cloud())
        return self._sync_task

    @_command(FailureKind.PERSISTENCE)
    async def clear_all(self) -> CommandResult:
        async with self._cloud_lock:
            async with self._lock:
                if self.cloud_store is not None:
                    try:
                        await asyncio.to_thread(self.cloud_store.delete_all)
                    except Exception as exc:
                        error_type = classify_cloud_error(exc)
                        self._cloud_status = CloudLinkStatus.ERROR
                        self._last_cloud_error = error_type
                        failure = CloudWriteFailure("Could not clear cloud data; nothing was deleted", error_type=error_type)
                        return CommandResult.from_error(failure, self._customers)
                cleared = await asyncio.to_thread(self.local_store.clear)
                if not cleared:
                    return CommandResult.from_error(PersistenceFailure("Could not clear local data"), self._customers)
                self._customers = []
        LOG.info("All customer records cleared")
        return CommandResult(ok=True, customers=[], message="All records cleared")


def build_pipeline(settings: AppSettings, *, root_dir: Optional[str] = None, with_extractor: bool = True) -> CustomerPipeline:
    """Wire stores and gateways from settings.

    Extraction is optional so read-only commands work without API keys.
    """
    from ..gateways.enrichment import build_enricher
    from ..gateways.extraction import LLMExtractionGateway

    local_store = LocalStore(root_dir or settings.root_dir)
    extractor: Optional[ExtractionGateway] = None
    if with_extractor:
        try:
            extractor = LLMExtractionGateway.from_settings(settings)
        except ValueError as exc:
            LOG.warning("Extraction unavailable: %s", exc)
    cloud_store = None
    if settings.cloud_sync:
        cloud_store = FirestoreCloudStore(project=settings.firestore_project, collection=settings.firestore_collection)
    return CustomerPipeline(
        local_store,
        extractor=extractor,
        enricher=build_enricher(settings),
        cloud_store=cloud_store,
        policy=settings.extraction_policy,
        auto_sync=settings.auto_sync,
    )
