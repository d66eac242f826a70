"""
Inkwell Backend: Asset Store (Persistence Gateway)
==================================================

What:  All reads and writes of the `assets` table.
How:   Stateless; every method receives the AsyncSession of the caller's
       transaction, so the caller decides transaction boundaries.
Who:   AssetLifecycle and UploadPolicy.

Optimistic locking:
    State transitions never flush a dirty ORM object. They go through
    `compare_and_set`, a single conditional UPDATE:

        UPDATE assets SET ..., version = :v + 1
        WHERE id = :id AND version = :v [AND extraction_status = :s]

    One matched row means this caller won; zero rows means another writer
    got there first (or the guard no longer holds), and the caller takes
    its explicit lost-race branch.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from inkwell.models.asset import Asset, ExtractionStatus, UploadStatus

logger = logging.getLogger(__name__)


class AssetStore:
    """Typed queries and guarded updates over the Asset model."""

    async def get(self, session: AsyncSession, asset_id: UUID) -> Optional[Asset]:
        result = await session.execute(select(Asset).where(Asset.id == asset_id))
        return result.scalar_one_or_none()

    async def add(self, session: AsyncSession, asset: Asset) -> Asset:
        """Insert a new asset and flush so defaults (id, timestamps) are populated."""
        session.add(asset)
        await session.flush()
        return asset

    async def delete(self, session: AsyncSession, asset: Asset) -> None:
        await session.delete(asset)
        await session.flush()

    async def compare_and_set(
        self,
        session: AsyncSession,
        asset_id: UUID,
        expected_version: int,
        values: Dict[str, Any],
        expected_extraction_status: Optional[ExtractionStatus] = None,
    ) -> Optional[Asset]:
        """
        Apply `values` only if the row still has `expected_version`.

        Args:
            session: Session of the current transaction
            asset_id: Target row
            expected_version: Version the caller read
            values: Column values to write; `version` is set here
            expected_extraction_status: Extra guard on the current extraction status

        Returns:
            The reloaded Asset when the update applied, None when it matched
            no row (lost race, guard failed, or row deleted).
        """
        stmt = (
            update(Asset)
            .where(Asset.id == asset_id, Asset.version == expected_version)
            .values(**values, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        if expected_extraction_status is not None:
            stmt = stmt.where(Asset.extraction_status == expected_extraction_status)

        result = await session.execute(stmt)
        if result.rowcount != 1:
            logger.debug(
                "CAS on asset %s at version %d matched %d rows",
                asset_id,
                expected_version,
                result.rowcount,
            )
            return None

        # populate_existing: overwrite the stale copy in the identity map
        reloaded = await session.execute(
            select(Asset)
            .where(Asset.id == asset_id)
            .execution_options(populate_existing=True)
        )
        return reloaded.scalar_one()

    # ── Sweep Queries ─────────────────────────────────────────────────────

    async def find_stuck_extractions(
        self, session: AsyncSession, cutoff: datetime, limit: int
    ) -> List[UUID]:
        """Ids of assets in `processing` whose last transition is older than cutoff."""
        result = await session.execute(
            select(Asset.id)
            .where(
                Asset.extraction_status == ExtractionStatus.PROCESSING,
                Asset.updated_at < cutoff,
            )
            .order_by(Asset.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_expired_intents(
        self, session: AsyncSession, cutoff: datetime, limit: int
    ) -> List[UUID]:
        """Ids of PENDING assets whose upload intent expired before cutoff."""
        result = await session.execute(
            select(Asset.id)
            .where(
                Asset.upload_status == UploadStatus.PENDING,
                Asset.upload_expires_at < cutoff,
            )
            .order_by(Asset.upload_expires_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    # ── Quota ─────────────────────────────────────────────────────────────

    async def sum_note_usage(self, session: AsyncSession, note_id: UUID) -> int:
        """Declared bytes of a note's live assets; expired (FAILED) intents do not count."""
        result = await session.execute(
            select(func.coalesce(func.sum(Asset.file_size), 0)).where(
                Asset.note_id == note_id,
                Asset.upload_status.in_([UploadStatus.PENDING, UploadStatus.UPLOADED]),
            )
        )
        return int(result.scalar_one())


# ── Singleton Instance ────────────────────────────────────────────────────
asset_store = AssetStore()
