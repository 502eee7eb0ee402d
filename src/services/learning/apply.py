"""Apply and roll back learning proposals.

Every apply is one transaction: the new taxonomy version, the head move,
the ``applied_changes`` row, the diff row and the proposal status flip
commit together or not at all. The head moves by compare-and-set, so two
applies racing on the same version cannot both win.

Structural kinds (merge/split/move) have no computable rule patch. They are
recorded as synthetic applied changes whose version carries unchanged
content, and are capped per loop.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Union
import uuid
import structlog

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.base import utcnow
from src.db.models.learning import (
    STRUCTURAL_KINDS,
    AppliedChange,
    AppliedChangeStatus,
    LearningProposal,
    ProposalDiff,
    ProposalStatus,
    RollbackEvent,
)
from src.errors.exceptions import (
    ConsistencyError,
    DatabaseError,
    ProposalValidationError,
    RollbackError,
)
from src.taxonomy.document import TaxonomyDocument
from src.taxonomy.rule_patch import apply_payload
from src.taxonomy.store import TaxonomyStore

logger = structlog.get_logger(__name__)

PENDING_LIMIT = 100
LATEST_APPLIED = "latest-applied"
APPLY_MODE_RULE_PATCH = "rule_patch"
APPLY_MODE_STRUCTURAL = "structural_synthetic"
DEGRADE_REASON = "harness_degrade_detected"


class GateResult(Protocol):
    passed: bool


@dataclass(frozen=True)
class AppliedChangeRecord:
    """Detached view of an ``applied_changes`` row."""
    id: uuid.UUID
    proposal_id: uuid.UUID
    store_id: str
    version_before: str
    version_after: str
    status: str
    rollback_token: uuid.UUID
    metadata: Dict[str, Any]

    @classmethod
    def from_row(cls, row: AppliedChange) -> "AppliedChangeRecord":
        return cls(
            id=row.id,
            proposal_id=row.proposal_id,
            store_id=row.store_id,
            version_before=row.version_before,
            version_after=row.version_after,
            status=row.status.value,
            rollback_token=row.rollback_token,
            metadata=dict(row.meta or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "proposal_id": str(self.proposal_id),
            "store_id": self.store_id,
            "version_before": self.version_before,
            "version_after": self.version_after,
            "status": self.status,
            "rollback_token": str(self.rollback_token),
            "metadata": self.metadata,
        }


@dataclass
class ApplyResult:
    """Outcome of one ``apply_learning_proposals`` pass."""
    considered: int = 0
    applied: int = 0
    structural_applied: int = 0
    rejected: int = 0
    applied_changes: List[AppliedChangeRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "considered": self.considered,
            "applied": self.applied,
            "structural_applied": self.structural_applied,
            "rejected": self.rejected,
            "applied_changes": [change.to_dict() for change in self.applied_changes],
        }


def _as_uuid(value: Union[str, uuid.UUID]) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class ApplyRollbackManager:
    """Transactional apply/rollback against one taxonomy store."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], store: TaxonomyStore):
        self._session_maker = session_maker
        self.store = store
        self._log = logger.bind(component="ApplyRollbackManager", store_id=store.store_id)

    # =========================================================================
    # Apply
    # =========================================================================

    async def list_pending(
        self,
        batch_id: Optional[uuid.UUID] = None,
        run_id: Optional[uuid.UUID] = None,
        limit: int = PENDING_LIMIT,
    ) -> List[LearningProposal]:
        """Proposed proposals in scope, highest expected impact first."""
        query = (
            select(LearningProposal)
            .where(LearningProposal.store_id == self.store.store_id)
            .where(LearningProposal.status == ProposalStatus.PROPOSED)
            .order_by(
                LearningProposal.expected_impact_score.desc(),
                LearningProposal.created_at.asc(),
                LearningProposal.id.asc(),
            )
            .limit(limit)
        )
        if batch_id is not None:
            query = query.where(LearningProposal.batch_id == batch_id)
        if run_id is not None:
            query = query.where(LearningProposal.run_id == run_id)
        async with self._session_maker() as session:
            result = await session.execute(query)
            return list(result.scalars())

    async def apply_learning_proposals(
        self,
        harness_result: GateResult,
        *,
        batch_id: Optional[uuid.UUID] = None,
        run_id: Optional[uuid.UUID] = None,
        max_structural_changes: int = 1,
        sequence_no: Optional[int] = None,
    ) -> ApplyResult:
        """Apply pending proposals in scope, gated on a passed harness result.

        A failed harness short-circuits: nothing is considered or applied.
        Proposals that fail validation are rejected and skipped; stale
        versions and other consistency errors propagate.
        """
        result = ApplyResult()
        if not harness_result.passed:
            self._log.info("apply_skipped_harness_failed", batch_id=str(batch_id) if batch_id else None)
            return result

        for proposal in await self.list_pending(batch_id=batch_id, run_id=run_id):
            result.considered += 1
            structural = proposal.kind in STRUCTURAL_KINDS
            if structural and result.structural_applied >= max_structural_changes:
                # Left proposed for a later loop
                continue

            metadata = {
                "batch_id": str(batch_id) if batch_id else None,
                "run_id": str(run_id) if run_id else None,
                "sequence_no": sequence_no,
            }
            try:
                change = await self.apply_one(proposal.id, metadata=metadata)
            except ProposalValidationError as e:
                await self._reject(proposal.id, str(e))
                result.rejected += 1
                continue

            result.applied += 1
            result.structural_applied += int(structural)
            result.applied_changes.append(change)

        self._log.info(
            "proposals_applied",
            considered=result.considered,
            applied=result.applied,
            structural_applied=result.structural_applied,
            rejected=result.rejected,
        )
        return result

    async def apply_one(
        self,
        proposal_id: uuid.UUID,
        *,
        expected_version: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AppliedChangeRecord:
        """Apply one proposal in a single transaction.

        Args:
            proposal_id: Proposal in ``proposed`` status
            expected_version: Version the caller read; defaults to the current head
            metadata: Extra metadata stored on the applied change

        Raises:
            ProposalValidationError: Proposal missing, not proposed, or its payload is invalid
            StaleTaxonomyVersionError: The head moved away from ``expected_version``
            ConsistencyError: The proposal changed status concurrently
        """
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    proposal = await session.get(LearningProposal, proposal_id, with_for_update=True)
                    if proposal is None or proposal.store_id != self.store.store_id:
                        raise ProposalValidationError(f"Proposal {proposal_id} not found")
                    if proposal.status != ProposalStatus.PROPOSED:
                        raise ProposalValidationError(
                            f"Proposal {proposal_id} is {proposal.status.value}, not proposed"
                        )

                    version_before = expected_version or await self.store.head_version(session)
                    if version_before is None:
                        raise ProposalValidationError(f"Taxonomy store '{self.store.store_id}' has not been seeded")
                    document = TaxonomyDocument.from_json(await self.store.version_content(session, version_before))

                    structural = proposal.kind in STRUCTURAL_KINDS
                    if structural:
                        new_document = document
                        diff: Dict[str, Any] = {
                            "apply_mode": APPLY_MODE_STRUCTURAL,
                            "target_slug": proposal.payload.get("target_slug"),
                            "kind": proposal.kind.value,
                        }
                    else:
                        patch = apply_payload(document, proposal.payload)
                        new_document = patch.document
                        diff = {"apply_mode": APPLY_MODE_RULE_PATCH, **patch.to_diff()}

                    version_after = await self.store.commit_version(
                        session,
                        expected_version=version_before,
                        document=new_document,
                        proposal_id=str(proposal.id),
                    )

                    change = AppliedChange(
                        proposal_id=proposal.id,
                        store_id=self.store.store_id,
                        batch_id=proposal.batch_id,
                        run_id=proposal.run_id,
                        version_before=version_before,
                        version_after=version_after,
                        status=AppliedChangeStatus.APPLIED,
                        meta={
                            **(metadata or {}),
                            "apply_mode": diff["apply_mode"],
                            "proposal_kind": proposal.kind.value,
                        },
                    )
                    session.add(change)
                    await session.flush()
                    session.add(ProposalDiff(proposal_id=proposal.id, applied_change_id=change.id, diff=diff))

                    flipped = await session.execute(
                        update(LearningProposal)
                        .where(LearningProposal.id == proposal.id)
                        .where(LearningProposal.status == ProposalStatus.PROPOSED)
                        .values(status=ProposalStatus.APPLIED, updated_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                    if flipped.rowcount != 1:
                        raise ConsistencyError(f"Proposal {proposal_id} changed status during apply")
                    record = AppliedChangeRecord.from_row(change)
        except SQLAlchemyError as e:
            self._log.error("apply_failed", proposal_id=str(proposal_id), error=str(e))
            raise DatabaseError(f"Failed to apply proposal {proposal_id}: {e}") from e

        self._log.info(
            "proposal_applied",
            proposal_id=str(proposal_id),
            version_before=record.version_before,
            version_after=record.version_after,
            apply_mode=record.metadata.get("apply_mode"),
        )
        return record

    async def _reject(self, proposal_id: uuid.UUID, error: str) -> None:
        async with self._session_maker() as session:
            proposal = await session.get(LearningProposal, proposal_id)
            if proposal is None or proposal.status != ProposalStatus.PROPOSED:
                return
            proposal.status = ProposalStatus.REJECTED
            proposal.provenance = {**(proposal.provenance or {}), "rejection_reason": error}
            await session.commit()
        self._log.warning("proposal_rejected", proposal_id=str(proposal_id), error=error)

    # =========================================================================
    # Rollback
    # =========================================================================

    async def _find_change(self, session: AsyncSession, target: Union[str, uuid.UUID]) -> Optional[AppliedChange]:
        if target == LATEST_APPLIED:
            result = await session.execute(
                select(AppliedChange)
                .where(AppliedChange.store_id == self.store.store_id)
                .where(AppliedChange.status == AppliedChangeStatus.APPLIED)
                .order_by(AppliedChange.created_at.desc(), AppliedChange.id.desc())
                .limit(1)
                .with_for_update()
            )
            return result.scalar_one_or_none()

        target_id = _as_uuid(target)
        if target_id is None:
            return None
        result = await session.execute(
            select(AppliedChange)
            .where(AppliedChange.store_id == self.store.store_id)
            .where((AppliedChange.id == target_id) | (AppliedChange.rollback_token == target_id))
            .with_for_update()
        )
        return result.scalars().first()

    async def rollback(
        self,
        target: Union[str, uuid.UUID],
        reason: str = "manual_rollback",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AppliedChangeRecord:
        """Restore the taxonomy to the change's ``version_before``.

        Args:
            target: Applied change id, its rollback token, or ``"latest-applied"``
            reason: Stored on the rollback event

        Raises:
            RollbackError: Change not found, already rolled back, or a later
                version is live on top of it
        """
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    change = await self._find_change(session, target)
                    if change is None or change.status != AppliedChangeStatus.APPLIED:
                        raise RollbackError(f"Applied change '{target}' not found or already rolled back")

                    head = await self.store.head_version(session)
                    if head != change.version_after:
                        raise RollbackError(
                            f"Cannot roll back change {change.id}: taxonomy head is {head}, "
                            f"expected {change.version_after}; roll back later changes first"
                        )
                    await self.store.restore_version(
                        session,
                        expected_head=change.version_after,
                        target_version=change.version_before,
                    )

                    flipped = await session.execute(
                        update(AppliedChange)
                        .where(AppliedChange.id == change.id)
                        .where(AppliedChange.status == AppliedChangeStatus.APPLIED)
                        .values(status=AppliedChangeStatus.ROLLED_BACK, rolled_back_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                    if flipped.rowcount != 1:
                        raise RollbackError(f"Applied change {change.id} was rolled back concurrently")

                    await session.execute(
                        update(LearningProposal)
                        .where(LearningProposal.id == change.proposal_id)
                        .values(status=ProposalStatus.ROLLED_BACK, updated_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                    session.add(RollbackEvent(applied_change_id=change.id, reason=reason, meta=metadata or {}))

                    record = AppliedChangeRecord(
                        id=change.id,
                        proposal_id=change.proposal_id,
                        store_id=change.store_id,
                        version_before=change.version_before,
                        version_after=change.version_after,
                        status=AppliedChangeStatus.ROLLED_BACK.value,
                        rollback_token=change.rollback_token,
                        metadata=dict(change.meta or {}),
                    )
        except SQLAlchemyError as e:
            self._log.error("rollback_failed", target=str(target), error=str(e))
            raise DatabaseError(f"Failed to roll back '{target}': {e}") from e

        self._log.info(
            "change_rolled_back",
            applied_change_id=str(record.id),
            restored_version=record.version_before,
            reason=reason,
        )
        return record

    async def rollback_on_degrade(
        self,
        *,
        batch_id: uuid.UUID,
        sequence_no: int,
        watch_loops: int,
    ) -> Optional[AppliedChangeRecord]:
        """Roll back the batch's most recent live change applied within the watch window.

        Returns:
            The rolled back change, or None when nothing in scope is live
        """
        async with self._session_maker() as session:
            result = await session.execute(
                select(AppliedChange)
                .where(AppliedChange.store_id == self.store.store_id)
                .where(AppliedChange.batch_id == batch_id)
                .where(AppliedChange.status == AppliedChangeStatus.APPLIED)
                .order_by(AppliedChange.created_at.desc(), AppliedChange.id.desc())
            )
            candidates = list(result.scalars())

        for change in candidates:
            applied_at = (change.meta or {}).get("sequence_no")
            if applied_at is None or sequence_no - int(applied_at) > watch_loops:
                continue
            return await self.rollback(
                change.id,
                reason=DEGRADE_REASON,
                metadata={"batch_id": str(batch_id), "sequence_no": sequence_no},
            )
        return None
