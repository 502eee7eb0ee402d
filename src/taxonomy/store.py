"""Versioned taxonomy store backed by the database.

Every read returns a ``TaxonomySnapshot`` carrying the version id it was
read at. Writes append a new ``taxonomy_versions`` row and move the store
head with a compare-and-set, so an apply that read a stale version fails
instead of overwriting a concurrent change.
"""
from dataclasses import dataclass
from typing import Optional
import hashlib
import structlog

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.base import utcnow
from src.db.models.taxonomy import TaxonomyHead, TaxonomyVersion
from src.errors.exceptions import (
    DatabaseError,
    RollbackError,
    StaleTaxonomyVersionError,
    TaxonomyIntegrityError,
)
from src.taxonomy.document import TaxonomyDocument
from src.taxonomy.loader import load_seed_document

logger = structlog.get_logger(__name__)


def compute_version_id(version_before: str, proposal_id: str) -> str:
    """Derive the version produced by applying ``proposal_id`` on ``version_before``."""
    digest = hashlib.sha256(f"{version_before}:{proposal_id}".encode("utf-8")).hexdigest()
    return f"tx-{digest[:20]}"


def seed_version_id(store_id: str, content_hash: str) -> str:
    digest = hashlib.sha256(f"seed:{store_id}:{content_hash}".encode("utf-8")).hexdigest()
    return f"tx-seed-{digest[:16]}"


@dataclass(frozen=True)
class TaxonomySnapshot:
    """Immutable handle on one taxonomy version."""
    store_id: str
    version_id: str
    document: TaxonomyDocument


class TaxonomyStore:
    """Versioned taxonomy for one store scope.

    The instance caches the last snapshot it read; the cache is keyed by
    version id and refreshed whenever the head moves.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], store_id: str):
        self._session_maker = session_maker
        self.store_id = store_id
        self._cache: Optional[TaxonomySnapshot] = None
        self._log = logger.bind(component="TaxonomyStore", store_id=store_id)

    # =========================================================================
    # Reads
    # =========================================================================

    async def ensure_seeded(self, document: Optional[TaxonomyDocument] = None) -> TaxonomySnapshot:
        """Create the first version from the seed files if the store has none."""
        async with self._session_maker() as session:
            head = await self._read_head(session)
            if head is not None:
                return await self._snapshot(session, head)

            seed = (document or load_seed_document()).check_integrity()
            content = seed.canonical_json()
            content_hash = seed.content_hash()
            version_id = seed_version_id(self.store_id, content_hash)
            try:
                if await session.get(TaxonomyVersion, version_id) is None:
                    session.add(TaxonomyVersion(
                        version_id=version_id,
                        store_id=self.store_id,
                        parent_version=None,
                        proposal_id=None,
                        content=content,
                        content_hash=content_hash,
                    ))
                    await session.flush()
                session.add(TaxonomyHead(store_id=self.store_id, current_version=version_id))
                await session.commit()
            except IntegrityError:
                # Another replica seeded concurrently
                await session.rollback()
                head = await self._read_head(session)
                if head is None:
                    raise
                return await self._snapshot(session, head)

            self._log.info("taxonomy_seeded", version_id=version_id, content_hash=content_hash)
            self._cache = TaxonomySnapshot(self.store_id, version_id, seed)
            return self._cache

    async def current(self) -> TaxonomySnapshot:
        """Snapshot at the current head."""
        async with self._session_maker() as session:
            head = await self._read_head(session)
            if head is None:
                raise TaxonomyIntegrityError(f"Taxonomy store '{self.store_id}' has not been seeded")
            return await self._snapshot(session, head)

    async def load_version(self, version_id: str) -> TaxonomySnapshot:
        """Snapshot of an arbitrary version of this store."""
        async with self._session_maker() as session:
            return await self._snapshot(session, version_id)

    async def head_version(self, session: AsyncSession) -> Optional[str]:
        return await self._read_head(session)

    async def version_content(self, session: AsyncSession, version_id: str) -> str:
        row = await session.get(TaxonomyVersion, version_id)
        if row is None or row.store_id != self.store_id:
            raise TaxonomyIntegrityError(f"Unknown taxonomy version '{version_id}' for store '{self.store_id}'")
        return row.content

    # =========================================================================
    # Writes (caller owns the transaction)
    # =========================================================================

    async def commit_version(
        self,
        session: AsyncSession,
        *,
        expected_version: str,
        document: TaxonomyDocument,
        proposal_id: str,
    ) -> str:
        """Append a version derived from ``expected_version`` and move the head.

        Must run inside the caller's transaction; nothing is committed here.

        Raises:
            StaleTaxonomyVersionError: The head is no longer ``expected_version``
        """
        version_after = compute_version_id(expected_version, proposal_id)
        content = document.canonical_json()
        session.add(TaxonomyVersion(
            version_id=version_after,
            store_id=self.store_id,
            parent_version=expected_version,
            proposal_id=proposal_id,
            content=content,
            content_hash=document.content_hash(),
        ))
        try:
            await session.flush()
        except IntegrityError as e:
            raise StaleTaxonomyVersionError(self.store_id, expected_version, version_after) from e

        await self._move_head(session, expected_version, version_after)
        self._cache = None
        return version_after

    async def restore_version(self, session: AsyncSession, *, expected_head: str, target_version: str) -> None:
        """Point the head back at ``target_version``.

        Raises:
            RollbackError: ``target_version`` does not belong to this store
            StaleTaxonomyVersionError: The head is no longer ``expected_head``
        """
        row = await session.get(TaxonomyVersion, target_version)
        if row is None or row.store_id != self.store_id:
            raise RollbackError(f"Cannot restore unknown taxonomy version '{target_version}'")
        await self._move_head(session, expected_head, target_version)
        self._cache = None

    # =========================================================================
    # Internals
    # =========================================================================

    async def _move_head(self, session: AsyncSession, expected: str, target: str) -> None:
        try:
            result = await session.execute(
                update(TaxonomyHead)
                .where(TaxonomyHead.store_id == self.store_id)
                .where(TaxonomyHead.current_version == expected)
                .values(current_version=target, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self._log.error("taxonomy_head_update_failed", error=str(e))
            raise DatabaseError(f"Failed to move taxonomy head: {e}") from e

        if result.rowcount != 1:
            actual = await self._read_head(session)
            self._log.warning("taxonomy_head_stale", expected=expected, actual=actual)
            raise StaleTaxonomyVersionError(self.store_id, expected, actual)

    async def _read_head(self, session: AsyncSession) -> Optional[str]:
        result = await session.execute(
            select(TaxonomyHead.current_version).where(TaxonomyHead.store_id == self.store_id)
        )
        return result.scalar_one_or_none()

    async def _snapshot(self, session: AsyncSession, version_id: str) -> TaxonomySnapshot:
        if self._cache is not None and self._cache.version_id == version_id:
            return self._cache
        content = await self.version_content(session, version_id)
        snapshot = TaxonomySnapshot(self.store_id, version_id, TaxonomyDocument.from_json(content))
        self._cache = snapshot
        return snapshot
