"""Unit tests for proposal generation and transactional apply/rollback.

Tests cover:
    - QA term mining, threshold nudges and structural merge suggestions
    - Ordering, confidence floor and truncation of candidates
    - Apply gating on the harness result and the structural cap
    - Rejection of invalid payloads
    - Rollback by id/token, double rollback and head mismatch
    - Degrade rollback within the watch window
"""
import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from src.db.models.learning import (
    AppliedChange,
    LearningProposal,
    ProposalDiff,
    ProposalKind,
    ProposalStatus,
    RollbackEvent,
)
from src.db.models.pipeline_run import PipelineRun, PipelineRunStatus, QAFeedback, RunKind
from src.errors.exceptions import ProposalValidationError, RollbackError, StaleTaxonomyVersionError
from src.services.learning import (
    LATEST_APPLIED,
    ApplyRollbackManager,
    GenerationOptions,
    ProposalGenerator,
    QAFailRow,
    generate_proposals,
)
from src.services.learning.proposals import STRUCTURAL_MERGE_VALUE
from src.taxonomy import load_seed_document

PASSED = SimpleNamespace(passed=True)
FAILED = SimpleNamespace(passed=False)


@pytest.fixture
def document():
    return load_seed_document()


def _qa(sku: str, corrected: str, title: str) -> QAFailRow:
    return QAFailRow(sku=sku, predicted_category="material-escolar-diverso", corrected_category=corrected, title=title)


class TestGenerateProposals:

    def test_term_mining_skips_known_terms(self, document):
        rows = [
            _qa("1", "cola-bastao", "Cola bastao UHU 21g"),
            _qa("2", "cola-bastao", "Cola UHU stick"),
            _qa("3", "cola-bastao", "UHU cola branca"),
            _qa("4", "nao-existe", "Qualquer coisa"),
            QAFailRow(sku="5", predicted_category="x", corrected_category=None, title="Sem correcao"),
        ]

        candidates = generate_proposals(document, rows)

        assert len(candidates) == 1
        proposal = candidates[0]
        assert proposal.kind == ProposalKind.RULE_TERM_ADD
        assert proposal.payload == {
            "target_slug": "cola-bastao",
            "field": "include_any",
            "action": "add",
            "value": "uhu",
            "reason": "qa_fail_correction_signal",
        }
        assert proposal.confidence_score == pytest.approx(0.66)
        assert proposal.expected_impact_score == pytest.approx(0.12)
        assert proposal.provenance["sample_skus"] == ["1", "2", "3"]

    def test_term_mining_reads_descriptions(self, document):
        rows = [
            QAFailRow(sku="1", predicted_category="cola-liquida", corrected_category="cola-bastao",
                      title="Cola bastao", description="Formula lavavel sem cheiro"),
            QAFailRow(sku="2", predicted_category="cola-liquida", corrected_category="cola-bastao",
                      title="Cola stick", description="Lavavel e atoxica"),
        ]

        candidates = generate_proposals(document, rows)

        assert [c.payload["value"] for c in candidates] == ["lavavel"]

    def test_threshold_nudges(self, document):
        alerts = [
            {"category_slug": "tesoura-escolar", "low_margin_count": 1, "contradiction_count": 0},
            {"category_slug": "caneta-gel", "low_margin_count": 2, "contradiction_count": 1},
        ]

        candidates = generate_proposals(
            document,
            [],
            failed_metrics=["auto_accepted_rate", "needs_review_rate", "fallback_category_rate"],
            alerts=alerts,
            options=GenerationOptions(allow_structural=False),
        )
        by_field = {(c.payload["target_slug"], c.payload["field"]): c for c in candidates}

        assert by_field[("caneta-gel", "auto_min_confidence")].payload["value"] == pytest.approx(0.75)
        assert by_field[("caneta-gel", "auto_min_confidence")].confidence_score == pytest.approx(0.72)
        assert by_field[("caneta-gel", "auto_min_margin")].payload["value"] == pytest.approx(0.09)
        assert by_field[("material-escolar-diverso", "auto_min_confidence")].payload["value"] == pytest.approx(0.87)
        assert all(c.kind == ProposalKind.THRESHOLD_TUNE for c in candidates)

    def test_rule_override_is_the_nudge_base(self, document):
        candidates = generate_proposals(
            document,
            [],
            failed_metrics=["auto_accepted_rate"],
            alerts=[{"category_slug": "papel-a4", "low_margin_count": 1}],
        )
        assert candidates[0].payload["value"] == pytest.approx(0.71)

    def test_structural_merge_needs_pressure(self, document):
        alerts = [
            {"category_slug": "caneta-gel", "low_margin_count": 3, "contradiction_count": 2},
            {"category_slug": "cola-bastao", "low_margin_count": 2, "contradiction_count": 1},
        ]

        candidates = generate_proposals(document, [], alerts=alerts)

        assert len(candidates) == 1
        merge = candidates[0]
        assert merge.kind == ProposalKind.TAXONOMY_MERGE
        assert merge.is_structural is True
        assert merge.payload["value"] == STRUCTURAL_MERGE_VALUE
        assert merge.confidence_score == pytest.approx(0.6)

        assert generate_proposals(document, [], alerts=alerts, options=GenerationOptions(allow_structural=False)) == []

    def test_sorted_filtered_and_truncated(self, document):
        rows = [_qa("1", "cola-bastao", "Cola UHU")]
        alerts = [{"category_slug": "caneta-gel", "low_margin_count": 4, "contradiction_count": 1}]
        failed = ["auto_accepted_rate", "needs_review_rate", "fallback_category_rate"]

        everything = generate_proposals(document, rows, failed, alerts)
        impacts = [c.expected_impact_score for c in everything]
        assert impacts == sorted(impacts, reverse=True)
        assert len(everything) == 5

        confident = generate_proposals(document, rows, failed, alerts, GenerationOptions(min_confidence=0.7))
        assert {c.kind for c in confident} == {ProposalKind.THRESHOLD_TUNE}

        top_two = generate_proposals(document, rows, failed, alerts, GenerationOptions(max_proposals=2))
        assert [c.expected_impact_score for c in top_two] == impacts[:2]


class TestProposalGenerator:

    @pytest.mark.asyncio
    async def test_persists_proposals_from_qa_feedback(self, session_maker, store):
        snapshot = await store.current()
        run_id = uuid.uuid4()
        async with session_maker() as session:
            session.add(PipelineRun(
                id=run_id,
                store_id=store.store_id,
                run_kind=RunKind.CANARY,
                status=PipelineRunStatus.COMPLETED,
                taxonomy_version=snapshot.version_id,
            ))
            await session.flush()
            session.add_all([
                QAFeedback(run_id=run_id, sku="1", title="Mochila Eastpak azul", predicted_category="material-escolar-diverso",
                           corrected_category="mochila-escolar", review_status="fail"),
                QAFeedback(run_id=run_id, sku="2", title="Eastpak classica", predicted_category="material-escolar-diverso",
                           corrected_category="mochila-escolar", review_status="fail"),
                QAFeedback(run_id=run_id, sku="3", title="Caneta gel", predicted_category="caneta-gel",
                           corrected_category=None, review_status="pass"),
            ])
            await session.commit()

        batch_id = uuid.uuid4()
        proposals = await ProposalGenerator(session_maker, store).generate(batch_id=batch_id, run_id=run_id)

        assert len(proposals) == 1
        assert proposals[0].payload["value"] == "eastpak"
        assert proposals[0].status == ProposalStatus.PROPOSED
        assert proposals[0].provenance["taxonomy_version"] == snapshot.version_id

        pending = await ApplyRollbackManager(session_maker, store).list_pending(batch_id=batch_id)
        assert [p.id for p in pending] == [proposals[0].id]

    @pytest.mark.asyncio
    async def test_fail_rows_carry_descriptions(self, session_maker, store):
        snapshot = await store.current()
        run_id = uuid.uuid4()
        async with session_maker() as session:
            session.add(PipelineRun(
                id=run_id,
                store_id=store.store_id,
                run_kind=RunKind.FULL,
                status=PipelineRunStatus.COMPLETED,
                taxonomy_version=snapshot.version_id,
            ))
            await session.flush()
            session.add(QAFeedback(run_id=run_id, sku="1", title="Cola stick", description="Lavavel",
                                   predicted_category="cola-liquida", corrected_category="cola-bastao",
                                   review_status="fail"))
            await session.commit()

        rows = await ProposalGenerator(session_maker, store).read_qa_fail_rows(run_id)

        assert [(row.title, row.description) for row in rows] == [("Cola stick", "Lavavel")]


async def _add_proposal(session_maker, store_id, kind, payload, impact, batch_id=None):
    proposal = LearningProposal(
        store_id=store_id,
        batch_id=batch_id,
        kind=kind,
        status=ProposalStatus.PROPOSED,
        confidence_score=0.7,
        expected_impact_score=impact,
        payload=payload,
        provenance={},
    )
    async with session_maker() as session:
        session.add(proposal)
        await session.commit()
    return proposal.id


def _term_payload(slug="caneta-gel", value="refil"):
    return {"target_slug": slug, "field": "exclude_any", "action": "add", "value": value}


def _merge_payload(slug="caneta-gel"):
    return {"target_slug": slug, "field": "include_any", "action": "add", "value": STRUCTURAL_MERGE_VALUE}


async def _status(session_maker, proposal_id) -> ProposalStatus:
    async with session_maker() as session:
        return (await session.get(LearningProposal, proposal_id)).status


class TestApply:

    @pytest.mark.asyncio
    async def test_failed_harness_applies_nothing(self, session_maker, store):
        proposal_id = await _add_proposal(session_maker, store.store_id, ProposalKind.RULE_TERM_ADD, _term_payload(), 0.5)
        head = (await store.current()).version_id

        result = await ApplyRollbackManager(session_maker, store).apply_learning_proposals(FAILED)

        assert result.considered == 0
        assert result.applied == 0
        assert await _status(session_maker, proposal_id) == ProposalStatus.PROPOSED
        assert (await store.current()).version_id == head

    @pytest.mark.asyncio
    async def test_structural_cap_leaves_extra_merge_proposed(self, session_maker, store):
        batch_id = uuid.uuid4()
        merge_a = await _add_proposal(session_maker, store.store_id, ProposalKind.TAXONOMY_MERGE, _merge_payload(), 0.9, batch_id)
        merge_b = await _add_proposal(session_maker, store.store_id, ProposalKind.TAXONOMY_MERGE,
                                      _merge_payload("cola-bastao"), 0.8, batch_id)
        term = await _add_proposal(session_maker, store.store_id, ProposalKind.RULE_TERM_ADD, _term_payload(), 0.5, batch_id)
        seed_version = (await store.current()).version_id

        result = await ApplyRollbackManager(session_maker, store).apply_learning_proposals(
            PASSED, batch_id=batch_id, max_structural_changes=1, sequence_no=1,
        )

        assert result.considered == 3
        assert result.applied == 2
        assert result.structural_applied == 1
        assert await _status(session_maker, merge_a) == ProposalStatus.APPLIED
        assert await _status(session_maker, merge_b) == ProposalStatus.PROPOSED
        assert await _status(session_maker, term) == ProposalStatus.APPLIED

        structural, patch = result.applied_changes
        assert structural.metadata["apply_mode"] == "structural_synthetic"
        assert structural.version_before == seed_version
        assert patch.version_before == structural.version_after
        assert patch.metadata["sequence_no"] == 1

        current = await store.current()
        assert current.version_id == patch.version_after
        assert "refil" in current.document.rule_for("caneta-gel").exclude_any
        # Structural apply carries content through unchanged
        before = await store.load_version(seed_version)
        after_merge = await store.load_version(structural.version_after)
        assert before.document.canonical_json() == after_merge.document.canonical_json()

        async with session_maker() as session:
            diffs = (await session.execute(select(func.count()).select_from(ProposalDiff))).scalar_one()
        assert diffs == 2

    @pytest.mark.asyncio
    async def test_invalid_proposal_is_rejected(self, session_maker, store):
        bad = await _add_proposal(session_maker, store.store_id, ProposalKind.RULE_TERM_ADD,
                                  _term_payload(slug="nao-existe"), 0.9)
        good = await _add_proposal(session_maker, store.store_id, ProposalKind.RULE_TERM_ADD, _term_payload(), 0.5)

        result = await ApplyRollbackManager(session_maker, store).apply_learning_proposals(PASSED)

        assert result.rejected == 1
        assert result.applied == 1
        assert await _status(session_maker, bad) == ProposalStatus.REJECTED
        assert await _status(session_maker, good) == ProposalStatus.APPLIED
        async with session_maker() as session:
            rejected = await session.get(LearningProposal, bad)
            assert "unknown rule slug" in rejected.provenance["rejection_reason"]
            changes = (await session.execute(select(func.count()).select_from(AppliedChange))).scalar_one()
        assert changes == 1

    @pytest.mark.asyncio
    async def test_apply_one_twice_fails(self, session_maker, store):
        proposal_id = await _add_proposal(session_maker, store.store_id, ProposalKind.RULE_TERM_ADD, _term_payload(), 0.5)
        manager = ApplyRollbackManager(session_maker, store)

        await manager.apply_one(proposal_id)

        with pytest.raises(ProposalValidationError, match="not proposed"):
            await manager.apply_one(proposal_id)

    @pytest.mark.asyncio
    async def test_apply_on_stale_version(self, session_maker, store):
        manager = ApplyRollbackManager(session_maker, store)
        seed_version = (await store.current()).version_id
        first = await _add_proposal(session_maker, store.store_id, ProposalKind.RULE_TERM_ADD, _term_payload(), 0.5)
        second = await _add_proposal(session_maker, store.store_id, ProposalKind.RULE_TERM_ADD,
                                     _term_payload(value="carga"), 0.4)

        await manager.apply_one(first, expected_version=seed_version)
        with pytest.raises(StaleTaxonomyVersionError):
            await manager.apply_one(second, expected_version=seed_version)

        # Nothing from the losing apply persisted
        assert await _status(session_maker, second) == ProposalStatus.PROPOSED


class TestRollback:

    @pytest.mark.asyncio
    async def test_rollback_by_token_restores_version(self, session_maker, store):
        manager = ApplyRollbackManager(session_maker, store)
        seed_version = (await store.current()).version_id
        proposal_id = await _add_proposal(session_maker, store.store_id, ProposalKind.RULE_TERM_ADD, _term_payload(), 0.5)
        change = await manager.apply_one(proposal_id)

        record = await manager.rollback(str(change.rollback_token), reason="operator")

        assert record.status == "rolled_back"
        assert (await store.current()).version_id == seed_version
        assert await _status(session_maker, proposal_id) == ProposalStatus.ROLLED_BACK
        async with session_maker() as session:
            event = (await session.execute(select(RollbackEvent))).scalar_one()
        assert event.reason == "operator"

        with pytest.raises(RollbackError, match="already rolled back"):
            await manager.rollback(change.id)

    @pytest.mark.asyncio
    async def test_rollback_requires_change_at_head(self, session_maker, store):
        manager = ApplyRollbackManager(session_maker, store)
        seed_version = (await store.current()).version_id
        first = await manager.apply_one(
            await _add_proposal(session_maker, store.store_id, ProposalKind.RULE_TERM_ADD, _term_payload(), 0.5)
        )
        second = await manager.apply_one(
            await _add_proposal(session_maker, store.store_id, ProposalKind.RULE_TERM_ADD, _term_payload(value="carga"), 0.4)
        )

        with pytest.raises(RollbackError, match="roll back later changes first"):
            await manager.rollback(first.id)

        await manager.rollback(second.id)
        await manager.rollback(first.id)
        assert (await store.current()).version_id == seed_version

    @pytest.mark.asyncio
    async def test_rollback_latest_applied(self, session_maker, store):
        manager = ApplyRollbackManager(session_maker, store)
        seed_version = (await store.current()).version_id
        await manager.apply_one(
            await _add_proposal(session_maker, store.store_id, ProposalKind.RULE_TERM_ADD, _term_payload(), 0.5)
        )

        await manager.rollback(LATEST_APPLIED)

        assert (await store.current()).version_id == seed_version
        with pytest.raises(RollbackError):
            await manager.rollback(LATEST_APPLIED)

    @pytest.mark.asyncio
    async def test_rollback_unknown_target(self, session_maker, store):
        manager = ApplyRollbackManager(session_maker, store)
        with pytest.raises(RollbackError):
            await manager.rollback("not-a-uuid")
        with pytest.raises(RollbackError):
            await manager.rollback(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_rollback_on_degrade_respects_watch_window(self, session_maker, store):
        manager = ApplyRollbackManager(session_maker, store)
        batch_id = uuid.uuid4()
        seed_version = (await store.current()).version_id
        await _add_proposal(session_maker, store.store_id, ProposalKind.RULE_TERM_ADD, _term_payload(), 0.5, batch_id)
        await manager.apply_learning_proposals(PASSED, batch_id=batch_id, sequence_no=1)

        assert await manager.rollback_on_degrade(batch_id=batch_id, sequence_no=4, watch_loops=2) is None

        record = await manager.rollback_on_degrade(batch_id=batch_id, sequence_no=3, watch_loops=2)

        assert record is not None
        assert (await store.current()).version_id == seed_version
        assert await manager.rollback_on_degrade(batch_id=batch_id, sequence_no=3, watch_loops=2) is None
