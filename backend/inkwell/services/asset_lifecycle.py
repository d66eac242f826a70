"""
Inkwell Backend: Asset Lifecycle (State Machine Orchestrator)
=============================================================

What:  Every state transition of an asset, from upload intent to a terminal
       extraction status.
How:   Each operation opens its own transaction, reads the asset, checks
       the transition is legal and writes through AssetStore.compare_and_set.
       Side effects that must follow a durable write (OCR dispatch, blob
       deletion) are registered as post-commit hooks.
Who:   HTTP routes, the OCR dispatch pool (failure path) and the
       reconciliation scheduler.

State Machine:
    upload_status      PENDING ──confirm──▶ UPLOADED
                       PENDING ──intent expired──▶ FAILED
    extraction_status  NULL ──confirm──▶ processing
                       processing ──worker result──▶ completed
                       processing ──worker failure | dispatch failure | timeout──▶ failed

    ┌─────────┐  confirm (CAS)  ┌──────────────────────┐  after commit  ┌────────────┐
    │ PENDING │────────────────▶│ UPLOADED, processing │───────────────▶│ dispatch   │
    └─────────┘                 └──────────────────────┘                │ pool       │
                                    ▲ callbacks / sweep                  └────────────┘
                                    │ complete | fail (guarded CAS)

Guarantees:
    - exactly one confirmation succeeds per asset; every other attempt,
      sequential or concurrent, raises AlreadyConfirmedError
    - the OCR job is enqueued only after the confirming transaction commits
    - terminal extraction states are never overwritten (first writer wins)
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Coroutine, List, Optional, Set
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inkwell.config import settings
from inkwell.database import TransactionScope, transaction
from inkwell.exceptions import (
    AlreadyConfirmedError,
    BlobNotUploadedError,
    ForbiddenError,
    NotFoundError,
    StorageFailureError,
    UploadIntentExpiredError,
)
from inkwell.models.asset import Asset, AssetOrigin, ExtractionStatus, UploadStatus
from inkwell.schemas.asset import (
    AssetSnapshot,
    ExtractionJob,
    ReconciliationReport,
    UploadIntent,
)
from inkwell.services.asset_store import AssetStore, asset_store
from inkwell.services.blob_store import BlobStore
from inkwell.services.dispatch_pool import OcrDispatchPool
from inkwell.services.upload_policy import UploadPolicy

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "extraction timed out"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_file_name(file_name: str) -> str:
    cleaned = re.sub(r"[^\w.\-]+", "_", file_name.strip()).strip("_")
    return cleaned or "upload"


def build_storage_key(owner_id: UUID, note_id: UUID, asset_id: UUID, file_name: str) -> str:
    """users/{owner}/notes/{note}/assets/{asset}_{name}"""
    return (
        f"users/{owner_id}/notes/{note_id}/assets/"
        f"{asset_id}_{normalize_file_name(file_name)}"
    )


class AssetLifecycle:
    """
    Orchestrates asset transitions over the store, blob store and dispatch pool.

    Background work:
        Post-commit blob deletions run as tasks tracked here; `drain()`
        waits for them and for the dispatch pool (tests and shutdown).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        blob_store: BlobStore,
        dispatch_pool: OcrDispatchPool,
        store: Optional[AssetStore] = None,
        upload_policy: Optional[UploadPolicy] = None,
        upload_intent_ttl: Optional[timedelta] = None,
        extraction_timeout: Optional[timedelta] = None,
        intent_expiry_grace: Optional[timedelta] = None,
        sweep_batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.dispatch_pool = dispatch_pool
        self.store = store or asset_store
        self.upload_policy = upload_policy
        self.upload_intent_ttl = (
            upload_intent_ttl
            if upload_intent_ttl is not None
            else timedelta(minutes=settings.upload_intent_ttl_minutes)
        )
        self.extraction_timeout = (
            extraction_timeout
            if extraction_timeout is not None
            else timedelta(minutes=settings.extraction_timeout_minutes)
        )
        self.intent_expiry_grace = (
            intent_expiry_grace
            if intent_expiry_grace is not None
            else timedelta(minutes=settings.intent_expiry_grace_minutes)
        )
        self.sweep_batch_size = sweep_batch_size or settings.reconciliation_batch_size
        self._background: Set[asyncio.Task] = set()

    # ── Transactions & Background Work ────────────────────────────────────

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[TransactionScope]:
        """transaction(), with SQLAlchemy errors translated to StorageFailureError."""
        try:
            async with transaction(self.session_factory) as scope:
                yield scope
        except SQLAlchemyError as e:
            logger.error("Database error in asset lifecycle: %s", str(e), exc_info=True)
            raise StorageFailureError(context={"error_type": type(e).__name__}) from e

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for queued dispatches, their failure handling, and blob deletions."""
        await self.dispatch_pool.join()
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Upload Intent ─────────────────────────────────────────────────────

    async def create_upload_intent(
        self,
        owner_id: UUID,
        note_id: UUID,
        file_name: str,
        mime_type: str,
        file_size: int,
        origin: AssetOrigin = AssetOrigin.UPLOAD,
        now: Optional[datetime] = None,
    ) -> UploadIntent:
        """
        Persist a PENDING asset and hand back where to upload it.

        No blob store call is made; the client writes the blob out-of-band
        before the returned expiry.

        Raises:
            ValidationError / ForbiddenError / StorageQuotaExceededError:
                Rejected by the configured UploadPolicy
            StorageFailureError: The insert failed
        """
        now = now or _utcnow()
        asset_id = uuid4()

        async with self._transaction() as scope:
            if self.upload_policy is not None:
                await self.upload_policy.validate(
                    scope.session, owner_id, note_id, file_name, mime_type, file_size
                )

            asset = Asset(
                id=asset_id,
                owner_id=owner_id,
                note_id=note_id,
                file_name=file_name.strip(),
                file_size=file_size,
                mime_type=mime_type.strip().lower(),
                storage_key=build_storage_key(owner_id, note_id, asset_id, file_name),
                origin=origin,
                upload_status=UploadStatus.PENDING,
                extraction_status=None,
                upload_expires_at=now + self.upload_intent_ttl,
                version=0,
                created_at=now,
                updated_at=now,
            )
            await self.store.add(scope.session, asset)
            intent = UploadIntent(
                asset_id=asset.id,
                storage_key=asset.storage_key,
                expires_at=asset.upload_expires_at,
            )

        logger.info(
            "Upload intent created: asset=%s note=%s size=%d type=%s",
            asset_id,
            note_id,
            file_size,
            mime_type,
        )
        return intent

    # ── Confirmation ──────────────────────────────────────────────────────

    async def confirm_upload(
        self, asset_id: UUID, owner_id: UUID, now: Optional[datetime] = None
    ) -> AssetSnapshot:
        """
        Move a PENDING asset to UPLOADED + processing and queue its OCR job.

        Workflow Steps:
            1. Load the asset and check ownership
            2. Reject repeat confirmations and expired intents
            3. Check the blob exists (missing → retryable, stays PENDING)
            4. CAS on the read version; zero rows → lost race
            5. After commit: enqueue the ExtractionJob on the dispatch pool

        Raises:
            NotFoundError, ForbiddenError, AlreadyConfirmedError,
            UploadIntentExpiredError, BlobNotUploadedError,
            BlobStorageError, StorageFailureError
        """
        now = now or _utcnow()

        async with self._transaction() as scope:
            asset = await self._get_owned(scope.session, asset_id, owner_id)

            if asset.upload_status == UploadStatus.UPLOADED:
                raise AlreadyConfirmedError(asset_id=str(asset_id))
            if asset.upload_status == UploadStatus.FAILED:
                raise UploadIntentExpiredError(asset_id=str(asset_id))

            if not await self.blob_store.exists(asset.storage_key):
                logger.info("Confirm for asset %s before blob upload; still PENDING", asset_id)
                raise BlobNotUploadedError(storage_key=asset.storage_key)

            updated = await self.store.compare_and_set(
                scope.session,
                asset.id,
                asset.version,
                {
                    "upload_status": UploadStatus.UPLOADED,
                    "extraction_status": ExtractionStatus.PROCESSING,
                    "updated_at": now,
                },
            )
            if updated is None:
                if await self.store.get(scope.session, asset_id) is None:
                    logger.info("Asset %s deleted while being confirmed", asset_id)
                    raise NotFoundError(resource="asset", resource_id=str(asset_id))
                logger.warning(
                    "Confirm for asset %s lost the race at version %d", asset_id, asset.version
                )
                raise AlreadyConfirmedError(
                    asset_id=str(asset_id), context={"read_version": asset.version}
                )

            job = ExtractionJob(
                asset_id=updated.id,
                storage_key=updated.storage_key,
                mime_type=updated.mime_type,
            )
            scope.after_commit(lambda: self.dispatch_pool.submit(job, self._on_dispatch_failure))
            snapshot = AssetSnapshot.model_validate(updated)

        logger.info("Asset %s confirmed; extraction queued", asset_id)
        return snapshot

    async def _on_dispatch_failure(self, job: ExtractionJob, error: Exception) -> None:
        reason = getattr(error, "message", None) or str(error)
        await self.fail_extraction(job.asset_id, reason=reason)

    # ── Extraction Results ────────────────────────────────────────────────

    async def complete_extraction(
        self,
        asset_id: UUID,
        content: str,
        total_pages: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Record the worker's result.

        Returns:
            True if the asset moved processing → completed. False (logged)
            if it is gone, not processing, or another writer got there first.
        """
        now = now or _utcnow()
        applied = await self._finish_extraction(
            asset_id,
            {
                "extraction_status": ExtractionStatus.COMPLETED,
                "extracted_content": content,
                "total_pages": total_pages,
                "extraction_completed_at": now,
                "updated_at": now,
            },
            action="complete",
        )
        if applied:
            logger.info("Extraction completed for asset %s (%d pages)", asset_id, total_pages)
        return applied

    async def fail_extraction(
        self,
        asset_id: UUID,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Record an extraction failure; same guards and return value as complete_extraction."""
        now = now or _utcnow()
        applied = await self._finish_extraction(
            asset_id,
            {"extraction_status": ExtractionStatus.FAILED, "updated_at": now},
            action="fail",
        )
        if applied:
            logger.info("Extraction failed for asset %s: %s", asset_id, reason or "no reason given")
        return applied

    async def _finish_extraction(self, asset_id: UUID, values: dict, action: str) -> bool:
        async with self._transaction() as scope:
            asset = await self.store.get(scope.session, asset_id)
            if asset is None:
                logger.warning("Ignoring %s for unknown asset %s", action, asset_id)
                return False
            if asset.extraction_status != ExtractionStatus.PROCESSING:
                logger.warning(
                    "Ignoring %s for asset %s in extraction status %s",
                    action,
                    asset_id,
                    asset.extraction_status.value if asset.extraction_status else None,
                )
                return False

            updated = await self.store.compare_and_set(
                scope.session,
                asset.id,
                asset.version,
                values,
                expected_extraction_status=ExtractionStatus.PROCESSING,
            )
            if updated is None:
                logger.warning("Ignoring %s for asset %s: resolved concurrently", action, asset_id)
                return False
        return True

    # ── Reads & Deletion ──────────────────────────────────────────────────

    async def get_asset_detail(self, asset_id: UUID, owner_id: UUID) -> AssetSnapshot:
        async with self._transaction() as scope:
            asset = await self._get_owned(scope.session, asset_id, owner_id)
            return AssetSnapshot.model_validate(asset)

    async def delete_asset(self, asset_id: UUID, owner_id: UUID) -> None:
        """
        Delete the record, then best-effort delete its blobs.

        Blob deletion runs only after the delete commits; its errors are
        logged and never reach the caller. A worker callback arriving
        later is a no-op.
        """
        async with self._transaction() as scope:
            asset = await self._get_owned(scope.session, asset_id, owner_id)
            keys = [asset.storage_key]
            if asset.thumbnail_key:
                keys.append(asset.thumbnail_key)

            await self.store.delete(scope.session, asset)
            scope.after_commit(lambda: self._spawn(self._delete_blobs(keys)))

        logger.info("Asset %s deleted", asset_id)

    async def _delete_blobs(self, keys: List[str]) -> None:
        for key in keys:
            try:
                await self.blob_store.delete(key)
            except Exception as e:
                logger.error("Failed to delete blob %s: %s", key, getattr(e, "message", str(e)))

    async def _get_owned(self, session: AsyncSession, asset_id: UUID, owner_id: UUID) -> Asset:
        asset = await self.store.get(session, asset_id)
        if asset is None:
            raise NotFoundError(resource="asset", resource_id=str(asset_id))
        if asset.owner_id != owner_id:
            raise ForbiddenError(resource="asset", resource_id=str(asset_id))
        return asset

    # ── Reconciliation ────────────────────────────────────────────────────

    async def reconcile_timeouts(
        self,
        threshold: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> ReconciliationReport:
        """
        Fail every asset stuck in `processing` longer than `threshold`.

        Each asset goes through fail_extraction in its own transaction, so
        one bad row is logged and counted without aborting the sweep. An
        asset resolved by a callback between the query and its update is
        skipped by the processing guard.
        """
        now = now or _utcnow()
        cutoff = now - (threshold if threshold is not None else self.extraction_timeout)

        async with self._transaction() as scope:
            stuck = await self.store.find_stuck_extractions(
                scope.session, cutoff, self.sweep_batch_size
            )

        timed_out = 0
        errors = 0
        for asset_id in stuck:
            try:
                if await self.fail_extraction(asset_id, reason=TIMEOUT_REASON, now=now):
                    timed_out += 1
            except Exception as e:
                errors += 1
                logger.error(
                    "Reconciliation could not fail asset %s: %s",
                    asset_id,
                    getattr(e, "message", str(e)),
                )

        if stuck:
            logger.warning(
                "Reconciliation: %d stuck extractions found, %d timed out, %d errors",
                len(stuck),
                timed_out,
                errors,
            )
        return ReconciliationReport(stuck_found=len(stuck), timed_out=timed_out, errors=errors)

    async def expire_upload_intents(
        self, now: Optional[datetime] = None
    ) -> ReconciliationReport:
        """
        Move PENDING intents past expiry + grace to FAILED and drop their blobs.

        A client may still be mid-upload when the intent expires, hence the
        grace period. The blob (if any partial upload exists) is deleted
        after the FAILED transition commits.
        """
        now = now or _utcnow()
        cutoff = now - self.intent_expiry_grace

        async with self._transaction() as scope:
            expired = await self.store.find_expired_intents(
                scope.session, cutoff, self.sweep_batch_size
            )

        count = 0
        errors = 0
        for asset_id in expired:
            try:
                if await self._expire_intent(asset_id, cutoff, now):
                    count += 1
            except Exception as e:
                errors += 1
                logger.error(
                    "Could not expire upload intent %s: %s",
                    asset_id,
                    getattr(e, "message", str(e)),
                )

        if count:
            logger.info("Expired %d upload intents", count)
        return ReconciliationReport(expired_intents=count, errors=errors)

    async def _expire_intent(self, asset_id: UUID, cutoff: datetime, now: datetime) -> bool:
        async with self._transaction() as scope:
            asset = await self.store.get(scope.session, asset_id)
            if (
                asset is None
                or asset.upload_status != UploadStatus.PENDING
                or asset.upload_expires_at >= cutoff
            ):
                return False

            updated = await self.store.compare_and_set(
                scope.session,
                asset.id,
                asset.version,
                {"upload_status": UploadStatus.FAILED, "updated_at": now},
            )
            if updated is None:
                # confirmed concurrently
                return False

            keys = [asset.storage_key]
            scope.after_commit(lambda: self._spawn(self._delete_blobs(keys)))
        return True
