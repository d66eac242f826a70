"""
Inkwell Backend: Asset Lifecycle Tests
======================================

What:  The asset state machine end to end, against real SQLite and the
       in-memory blob store / recording dispatcher from conftest.

What we test:
    ✅ Intent creation: PENDING record, storage key layout, expiry
    ✅ Confirmation: one success, repeat → AlreadyConfirmedError, one dispatch
    ✅ Concurrent confirmations: exactly one winner
    ✅ Missing blob: retryable, record untouched
    ✅ Ownership and existence checks
    ✅ Dispatch only after commit; dispatch failures end in `failed`
    ✅ Worker results: guarded, first writer wins, late callbacks ignored
    ✅ Deletion: blobs removed after commit, later callbacks are no-ops
    ✅ Full scenario from intent to completed extraction
"""

import asyncio
import re
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from inkwell.exceptions import (
    AlreadyConfirmedError,
    BlobNotUploadedError,
    DispatchFailureError,
    ForbiddenError,
    NotFoundError,
    StorageFailureError,
    UploadIntentExpiredError,
)
from inkwell.models.asset import ExtractionStatus, UploadStatus
from inkwell.services.asset_lifecycle import AssetLifecycle, build_storage_key
from inkwell.services.dispatch_pool import OcrDispatchPool

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class TestCreateUploadIntent:

    @pytest.mark.asyncio
    async def test_creates_pending_asset(self, lifecycle, upload_intent, owner_id, note_id):
        intent = await upload_intent(file_name="Week 3 / slides.pdf", uploaded=False, now=T0)

        assert intent.expires_at == T0 + timedelta(minutes=15)
        assert re.fullmatch(
            rf"users/{owner_id}/notes/{note_id}/assets/{intent.asset_id}_Week_3_slides\.pdf",
            intent.storage_key,
        )

        snapshot = await lifecycle.get_asset_detail(intent.asset_id, owner_id)
        assert snapshot.upload_status == UploadStatus.PENDING
        assert snapshot.extraction_status is None
        assert snapshot.version == 0
        assert snapshot.file_name == "Week 3 / slides.pdf"

    @pytest.mark.asyncio
    async def test_has_no_blob_side_effect(self, upload_intent, blob_store):
        await upload_intent(uploaded=False)
        assert blob_store.blobs == {}
        assert blob_store.deleted == []

    def test_storage_key_sanitizes_name(self):
        owner, note, asset = uuid4(), uuid4(), uuid4()
        key = build_storage_key(owner, note, asset, "../../etc/passwd")
        assert key.startswith(f"users/{owner}/notes/{note}/assets/{asset}_")
        assert "/" not in key.rsplit("/", 1)[1]

    @pytest.mark.asyncio
    async def test_persistence_failure_is_storage_failure(self, lifecycle, owner_id, note_id):
        with patch.object(
            lifecycle.store, "add", side_effect=OperationalError("INSERT", {}, Exception("disk"))
        ):
            with pytest.raises(StorageFailureError):
                await lifecycle.create_upload_intent(
                    owner_id=owner_id,
                    note_id=note_id,
                    file_name="a.pdf",
                    mime_type="application/pdf",
                    file_size=10,
                )


class TestConfirmUpload:

    @pytest.mark.asyncio
    async def test_confirm_moves_to_processing_and_dispatches(
        self, lifecycle, upload_intent, owner_id, dispatcher
    ):
        intent = await upload_intent()

        snapshot = await lifecycle.confirm_upload(intent.asset_id, owner_id)
        await lifecycle.drain()

        assert snapshot.upload_status == UploadStatus.UPLOADED
        assert snapshot.extraction_status == ExtractionStatus.PROCESSING
        assert snapshot.version == 1
        assert [job.asset_id for job in dispatcher.jobs] == [intent.asset_id]
        assert dispatcher.jobs[0].storage_key == intent.storage_key
        assert dispatcher.jobs[0].mime_type == "application/pdf"

    @pytest.mark.asyncio
    async def test_second_confirm_is_rejected(self, lifecycle, upload_intent, owner_id, dispatcher):
        intent = await upload_intent()
        await lifecycle.confirm_upload(intent.asset_id, owner_id)

        with pytest.raises(AlreadyConfirmedError):
            await lifecycle.confirm_upload(intent.asset_id, owner_id)

        await lifecycle.drain()
        assert len(dispatcher.jobs) == 1
        snapshot = await lifecycle.get_asset_detail(intent.asset_id, owner_id)
        assert snapshot.version == 1

    @pytest.mark.asyncio
    async def test_concurrent_confirms_have_one_winner(
        self, lifecycle, upload_intent, owner_id, dispatcher
    ):
        intent = await upload_intent()

        results = await asyncio.gather(
            *[lifecycle.confirm_upload(intent.asset_id, owner_id) for _ in range(5)],
            return_exceptions=True,
        )
        await lifecycle.drain()

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 4
        assert all(isinstance(e, AlreadyConfirmedError) for e in losers)
        assert len(dispatcher.jobs) == 1

        snapshot = await lifecycle.get_asset_detail(intent.asset_id, owner_id)
        assert snapshot.upload_status == UploadStatus.UPLOADED
        assert snapshot.version == 1

    @pytest.mark.asyncio
    async def test_missing_blob_is_retryable(
        self, lifecycle, upload_intent, owner_id, blob_store, dispatcher
    ):
        intent = await upload_intent(uploaded=False)

        with pytest.raises(BlobNotUploadedError):
            await lifecycle.confirm_upload(intent.asset_id, owner_id)

        snapshot = await lifecycle.get_asset_detail(intent.asset_id, owner_id)
        assert snapshot.upload_status == UploadStatus.PENDING
        assert snapshot.version == 0

        await blob_store.put(intent.storage_key, b"late bytes")
        snapshot = await lifecycle.confirm_upload(intent.asset_id, owner_id)
        await lifecycle.drain()

        assert snapshot.upload_status == UploadStatus.UPLOADED
        assert len(dispatcher.jobs) == 1

    @pytest.mark.asyncio
    async def test_unknown_asset(self, lifecycle, owner_id):
        with pytest.raises(NotFoundError):
            await lifecycle.confirm_upload(uuid4(), owner_id)

    @pytest.mark.asyncio
    async def test_other_owner_is_forbidden(self, lifecycle, upload_intent, dispatcher):
        intent = await upload_intent()
        with pytest.raises(ForbiddenError):
            await lifecycle.confirm_upload(intent.asset_id, uuid4())
        await lifecycle.drain()
        assert dispatcher.jobs == []

    @pytest.mark.asyncio
    async def test_expired_intent(self, lifecycle, upload_intent, owner_id):
        intent = await upload_intent(now=T0)
        await lifecycle.expire_upload_intents(now=T0 + timedelta(hours=1))

        with pytest.raises(UploadIntentExpiredError):
            await lifecycle.confirm_upload(intent.asset_id, owner_id)

    @pytest.mark.asyncio
    async def test_deleted_during_confirm_is_not_found(
        self, lifecycle, upload_intent, owner_id, blob_store, dispatcher
    ):
        intent = await upload_intent()
        stored_exists = blob_store.exists

        async def exists_then_delete(key):
            # The delete commits between the confirm's read and its update
            found = await stored_exists(key)
            await lifecycle.delete_asset(intent.asset_id, owner_id)
            return found

        with patch.object(blob_store, "exists", new=exists_then_delete):
            with pytest.raises(NotFoundError):
                await lifecycle.confirm_upload(intent.asset_id, owner_id)

        await lifecycle.drain()
        assert dispatcher.jobs == []

    @pytest.mark.asyncio
    async def test_no_dispatch_when_commit_fails(
        self, lifecycle, upload_intent, owner_id, dispatcher
    ):
        intent = await upload_intent()

        with patch(
            "sqlalchemy.ext.asyncio.AsyncSession.commit",
            side_effect=RuntimeError("commit lost"),
        ):
            with pytest.raises(RuntimeError):
                await lifecycle.confirm_upload(intent.asset_id, owner_id)

        await lifecycle.drain()
        assert dispatcher.jobs == []
        snapshot = await lifecycle.get_asset_detail(intent.asset_id, owner_id)
        assert snapshot.upload_status == UploadStatus.PENDING

    @pytest.mark.asyncio
    async def test_dispatch_failure_marks_extraction_failed(
        self, lifecycle, upload_intent, owner_id, dispatcher
    ):
        dispatcher.error = DispatchFailureError(message="worker unreachable")
        intent = await upload_intent()

        snapshot = await lifecycle.confirm_upload(intent.asset_id, owner_id)
        assert snapshot.extraction_status == ExtractionStatus.PROCESSING

        await lifecycle.drain()
        snapshot = await lifecycle.get_asset_detail(intent.asset_id, owner_id)
        assert snapshot.upload_status == UploadStatus.UPLOADED
        assert snapshot.extraction_status == ExtractionStatus.FAILED

    @pytest.mark.asyncio
    async def test_full_queue_marks_extraction_failed(
        self, session_factory, blob_store, dispatcher, owner_id, note_id
    ):
        pool = OcrDispatchPool(dispatcher, workers=1, capacity=1)
        lifecycle = AssetLifecycle(session_factory, blob_store, pool)

        intents = []
        for name in ("first.pdf", "second.pdf"):
            intent = await lifecycle.create_upload_intent(
                owner_id, note_id, name, "application/pdf", 100
            )
            await blob_store.put(intent.storage_key, b"x")
            intents.append(intent)

        # Pool not started: the first job fills the queue, the second overflows
        for intent in intents:
            await lifecycle.confirm_upload(intent.asset_id, owner_id)

        await pool.start()
        try:
            await lifecycle.drain()
        finally:
            await pool.stop()

        first = await lifecycle.get_asset_detail(intents[0].asset_id, owner_id)
        second = await lifecycle.get_asset_detail(intents[1].asset_id, owner_id)
        assert first.extraction_status == ExtractionStatus.PROCESSING
        assert second.extraction_status == ExtractionStatus.FAILED
        assert [job.asset_id for job in dispatcher.jobs] == [intents[0].asset_id]


class TestExtractionResults:

    @pytest.mark.asyncio
    async def test_complete_sets_content(self, lifecycle, upload_intent, owner_id):
        intent = await upload_intent()
        await lifecycle.confirm_upload(intent.asset_id, owner_id)

        applied = await lifecycle.complete_extraction(
            intent.asset_id, "chapter one", 3, now=T0
        )

        assert applied is True
        snapshot = await lifecycle.get_asset_detail(intent.asset_id, owner_id)
        assert snapshot.extraction_status == ExtractionStatus.COMPLETED
        assert snapshot.extracted_content == "chapter one"
        assert snapshot.total_pages == 3
        assert snapshot.extraction_completed_at == T0

    @pytest.mark.asyncio
    async def test_failure_after_completion_is_ignored(self, lifecycle, upload_intent, owner_id):
        intent = await upload_intent()
        await lifecycle.confirm_upload(intent.asset_id, owner_id)
        await lifecycle.complete_extraction(intent.asset_id, "text", 1)

        assert await lifecycle.fail_extraction(intent.asset_id, reason="late") is False
        snapshot = await lifecycle.get_asset_detail(intent.asset_id, owner_id)
        assert snapshot.extraction_status == ExtractionStatus.COMPLETED
        assert snapshot.extracted_content == "text"

    @pytest.mark.asyncio
    async def test_completion_after_failure_is_ignored(self, lifecycle, upload_intent, owner_id):
        intent = await upload_intent()
        await lifecycle.confirm_upload(intent.asset_id, owner_id)
        await lifecycle.fail_extraction(intent.asset_id, reason="bad scan")

        assert await lifecycle.complete_extraction(intent.asset_id, "text", 1) is False
        snapshot = await lifecycle.get_asset_detail(intent.asset_id, owner_id)
        assert snapshot.extraction_status == ExtractionStatus.FAILED
        assert snapshot.extracted_content is None

    @pytest.mark.asyncio
    async def test_result_before_confirmation_is_ignored(self, lifecycle, upload_intent, owner_id):
        intent = await upload_intent()
        assert await lifecycle.complete_extraction(intent.asset_id, "text", 1) is False
        snapshot = await lifecycle.get_asset_detail(intent.asset_id, owner_id)
        assert snapshot.upload_status == UploadStatus.PENDING
        assert snapshot.extraction_status is None

    @pytest.mark.asyncio
    async def test_unknown_asset_is_noop(self, lifecycle):
        assert await lifecycle.complete_extraction(uuid4(), "text", 1) is False
        assert await lifecycle.fail_extraction(uuid4()) is False

    @pytest.mark.asyncio
    async def test_concurrent_results_first_writer_wins(self, lifecycle, upload_intent, owner_id):
        intent = await upload_intent()
        await lifecycle.confirm_upload(intent.asset_id, owner_id)

        results = await asyncio.gather(
            lifecycle.complete_extraction(intent.asset_id, "text", 2),
            lifecycle.fail_extraction(intent.asset_id, reason="worker crash"),
        )

        assert sorted(results) == [False, True]
        snapshot = await lifecycle.get_asset_detail(intent.asset_id, owner_id)
        assert snapshot.extraction_status in (ExtractionStatus.COMPLETED, ExtractionStatus.FAILED)
        assert (snapshot.extracted_content is not None) == (
            snapshot.extraction_status == ExtractionStatus.COMPLETED
        )
        assert snapshot.version == 2


class TestDeleteAsset:

    @pytest.mark.asyncio
    async def test_delete_removes_record_and_blob(
        self, lifecycle, upload_intent, owner_id, blob_store
    ):
        intent = await upload_intent()

        await lifecycle.delete_asset(intent.asset_id, owner_id)
        await lifecycle.drain()

        assert blob_store.deleted == [intent.storage_key]
        with pytest.raises(NotFoundError):
            await lifecycle.get_asset_detail(intent.asset_id, owner_id)

    @pytest.mark.asyncio
    async def test_callback_after_delete_is_noop(
        self, lifecycle, upload_intent, owner_id
    ):
        intent = await upload_intent()
        await lifecycle.confirm_upload(intent.asset_id, owner_id)
        await lifecycle.delete_asset(intent.asset_id, owner_id)

        assert await lifecycle.complete_extraction(intent.asset_id, "text", 1) is False
        assert await lifecycle.fail_extraction(intent.asset_id) is False

    @pytest.mark.asyncio
    async def test_blob_delete_failure_is_not_raised(
        self, lifecycle, upload_intent, owner_id, blob_store
    ):
        intent = await upload_intent()
        blob_store.fail_deletes_for.add(intent.storage_key)

        await lifecycle.delete_asset(intent.asset_id, owner_id)
        await lifecycle.drain()

        with pytest.raises(NotFoundError):
            await lifecycle.get_asset_detail(intent.asset_id, owner_id)

    @pytest.mark.asyncio
    async def test_other_owner_cannot_delete(self, lifecycle, upload_intent, owner_id, blob_store):
        intent = await upload_intent()
        with pytest.raises(ForbiddenError):
            await lifecycle.delete_asset(intent.asset_id, uuid4())
        await lifecycle.drain()
        assert blob_store.deleted == []
        assert (await lifecycle.get_asset_detail(intent.asset_id, owner_id)).id == intent.asset_id


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_intent_to_completed_extraction(
        self, lifecycle, upload_intent, owner_id, dispatcher
    ):
        intent = await upload_intent(uploaded=False)

        with pytest.raises(BlobNotUploadedError):
            await lifecycle.confirm_upload(intent.asset_id, owner_id)

        await lifecycle.blob_store.put(intent.storage_key, b"%PDF")
        await lifecycle.confirm_upload(intent.asset_id, owner_id)
        await lifecycle.drain()
        assert len(dispatcher.jobs) == 1

        assert await lifecycle.complete_extraction(intent.asset_id, "T", 5) is True
        assert await lifecycle.complete_extraction(intent.asset_id, "T", 5) is False

        snapshot = await lifecycle.get_asset_detail(intent.asset_id, owner_id)
        assert snapshot.upload_status == UploadStatus.UPLOADED
        assert snapshot.extraction_status == ExtractionStatus.COMPLETED
        assert snapshot.extracted_content == "T"
        assert snapshot.total_pages == 5
        assert snapshot.version == 2
