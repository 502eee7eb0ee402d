"""Unit tests for the harness gate, benchmark snapshots and QA feedback import."""
import uuid

import pandas as pd
import pytest
from sqlalchemy import func, select

from src.db.models.learning import HarnessRun
from src.db.models.pipeline_run import (
    PipelineRun,
    PipelineRunStatus,
    ProductAssignment,
    QAFeedback,
    RunKind,
)
from src.errors.exceptions import CatalogReadError, ValidationError
from src.services.learning import (
    BenchmarkBuilder,
    HarnessEvaluator,
    HarnessResult,
    HarnessThresholds,
    QAFeedbackImporter,
    QARow,
    evaluate_stats,
    read_qa_file,
    resolve_category_label,
    snapshot_hash,
)
from src.services.learning.qa_feedback import normalize_review_status
from src.taxonomy import load_seed_document


async def _add_run(session_maker, store_id, stats=None, status=PipelineRunStatus.COMPLETED, assignments=()):
    run = PipelineRun(
        store_id=store_id,
        run_kind=RunKind.CANARY,
        status=status,
        taxonomy_version="tx-test",
        stats=stats or {},
    )
    async with session_maker() as session:
        session.add(run)
        await session.flush()
        for sku, slug, decision, margin in assignments:
            session.add(ProductAssignment(
                run_id=run.id,
                sku=sku,
                title=f"Produto {sku}",
                category_slug=slug,
                confidence=0.8,
                top2_confidence=0.8 - margin,
                margin=margin,
                decision=decision,
            ))
        await session.commit()
    return run.id


class TestEvaluateStats:

    def test_passing_candidate(self):
        scores, failed = evaluate_stats(
            {"fallback_category_rate": 0.02, "needs_review_rate": 0.2, "l1_accuracy": 0.8},
            {"l1_accuracy": 0.75, "fallback_category_rate": 0.03},
            60,
            HarnessThresholds(),
        )
        assert failed == []
        assert scores["l1_delta"] == pytest.approx(0.05)
        assert scores["l2_delta"] == 0.0
        assert scores["fallback_category_rate_delta"] == pytest.approx(-0.01)

    def test_every_failure_is_reported(self):
        _, failed = evaluate_stats(
            {"fallback_category_rate": 0.1, "needs_review_rate": 0.5, "l1_accuracy": 0.7, "l3_accuracy": "0.4"},
            {"l1_accuracy": 0.75, "l3_accuracy": 0.5},
            10,
            HarnessThresholds(),
        )
        assert failed == ["benchmark_sample_size", "fallback_category_rate", "needs_review_rate", "l1_delta", "l3_delta"]

    def test_accuracy_delta_needs_both_runs(self):
        _, failed = evaluate_stats({"l1_accuracy": 0.1}, {}, 60, HarnessThresholds())
        assert failed == []

    def test_harness_delta_is_tier_mean(self):
        result = HarnessResult(
            passed=True,
            metric_scores={"l1_delta": 0.03, "l2_delta": 0.0, "l3_delta": 0.06},
            candidate_run_id=uuid.uuid4(),
        )
        assert result.harness_delta == pytest.approx(0.03)


class TestHarnessEvaluator:

    @pytest.mark.asyncio
    async def test_defaults_to_latest_completed_baseline(self, session_maker, store_id):
        await _add_run(session_maker, store_id, {"l1_accuracy": 0.9}, status=PipelineRunStatus.FAILED)
        baseline_id = await _add_run(session_maker, store_id, {"l1_accuracy": 0.7})
        candidate_id = await _add_run(session_maker, store_id, {"l1_accuracy": 0.75, "fallback_category_rate": 0.01})
        evaluator = HarnessEvaluator(session_maker, store_id, HarnessThresholds(min_sample_size=0))

        batch_id = uuid.uuid4()
        result = await evaluator.evaluate(candidate_id, batch_id=batch_id)

        assert result.passed is True
        assert result.baseline_run_id == baseline_id
        assert result.metric_scores["l1_delta"] == pytest.approx(0.05)
        assert result.benchmark_snapshot_id is not None
        async with session_maker() as session:
            record = await session.get(HarnessRun, result.harness_run_id)
        assert record.passed is True
        assert record.batch_id == batch_id
        assert record.notes is None

    @pytest.mark.asyncio
    async def test_candidate_must_belong_to_store(self, session_maker, store_id):
        other_run = await _add_run(session_maker, "other-store")
        evaluator = HarnessEvaluator(session_maker, store_id, HarnessThresholds(min_sample_size=0))

        with pytest.raises(ValidationError):
            await evaluator.evaluate(other_run)
        with pytest.raises(ValidationError):
            await evaluator.evaluate(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_explicit_baseline_must_belong_to_store(self, session_maker, store_id):
        candidate_id = await _add_run(session_maker, store_id, {"l1_accuracy": 0.8})
        foreign_baseline = await _add_run(session_maker, "other-store", {"l1_accuracy": 0.1})
        evaluator = HarnessEvaluator(session_maker, store_id, HarnessThresholds(min_sample_size=0))

        with pytest.raises(ValidationError, match="Baseline run"):
            await evaluator.evaluate(candidate_id, baseline_run_id=foreign_baseline)
        with pytest.raises(ValidationError, match="Baseline run"):
            await evaluator.evaluate(candidate_id, baseline_run_id=uuid.uuid4())

        async with session_maker() as session:
            assert await session.scalar(select(func.count()).select_from(HarnessRun)) == 0

    @pytest.mark.asyncio
    async def test_small_benchmark_fails_gate(self, session_maker, store_id):
        candidate_id = await _add_run(session_maker, store_id, {"fallback_category_rate": 0.0})
        evaluator = HarnessEvaluator(session_maker, store_id, HarnessThresholds(min_sample_size=5))

        result = await evaluator.evaluate(candidate_id)

        assert result.passed is False
        assert "benchmark_sample_size" in result.failed_metrics
        async with session_maker() as session:
            record = await session.get(HarnessRun, result.harness_run_id)
        assert record.notes == "no_baseline_run"


class TestBenchmarkBuilder:

    @pytest.mark.asyncio
    async def test_snapshot_combines_qa_and_hard_cases(self, session_maker, store_id):
        run_id = await _add_run(session_maker, store_id, assignments=[
            ("A", "cola-bastao", "review", 0.05),
            ("B", "tesoura-escolar", "auto", 0.5),
            ("C", "caneta-gel", "review", 0.02),
        ])
        async with session_maker() as session:
            session.add(QAFeedback(run_id=run_id, sku="A", title="Cola", predicted_category="cola-bastao",
                                   corrected_category="cola-liquida", review_status="fail"))
            await session.commit()
        builder = BenchmarkBuilder(session_maker, store_id)

        snapshot = await builder.build(hard_case_limit=10)

        assert snapshot.sample_size == 2
        assert [item["sku"] for item in snapshot.items] == ["C", "A"]
        assert snapshot.items[1]["label"] == "cola-liquida"
        assert snapshot.source["qa_fail_count"] == 1
        assert snapshot.content_hash == snapshot_hash(store_id, snapshot.items)

        again = await builder.build(hard_case_limit=10)
        assert again.content_hash == snapshot.content_hash
        assert (await builder.get(snapshot.id)).id == snapshot.id
        assert await BenchmarkBuilder(session_maker, "other-store").get(snapshot.id) is None


class TestQALabels:

    @pytest.fixture
    def document(self):
        return load_seed_document()

    @pytest.mark.parametrize("label,expected", [
        ("cola-liquida", "cola-liquida"),
        ("Cola Líquida", "cola-liquida"),
        ("glue stick", "cola-bastao"),
        ("", None),
        ("zzzz qqqq", None),
    ])
    def test_resolve_category_label(self, document, label, expected):
        assert resolve_category_label(label, document) == expected

    @pytest.mark.parametrize("status,predicted,corrected,expected", [
        ("aprovado", "a", "b", "pass"),
        ("Reprovado", "a", None, "fail"),
        ("", "a", "b", "fail"),
        ("", "a", "a", "pass"),
        ("", "a", None, "pass"),
    ])
    def test_normalize_review_status(self, status, predicted, corrected, expected):
        assert normalize_review_status(status, predicted, corrected) == expected

    def test_read_qa_file_aliases(self, tmp_path):
        path = tmp_path / "qa.csv"
        pd.DataFrame([
            {"source_sku": "A", "predicted_category": "cola-bastao", "expected_category": "Cola Líquida",
             "qa_status": "fail", "attributes_valid": "nao"},
            {"source_sku": "", "predicted_category": "x", "expected_category": "", "qa_status": "", "attributes_valid": ""},
        ]).to_csv(path, index=False)

        rows = read_qa_file(str(path))

        assert rows == [QARow(sku="A", predicted="cola-bastao", corrected="Cola Líquida",
                              review_status="fail", notes="", attributes_ok=False)]

    def test_read_qa_file_needs_sku(self, tmp_path):
        path = tmp_path / "qa.csv"
        pd.DataFrame([{"predicted": "x"}]).to_csv(path, index=False)
        with pytest.raises(CatalogReadError):
            read_qa_file(str(path))


class TestQAFeedbackImporter:

    @pytest.mark.asyncio
    async def test_import_upserts_and_writes_accuracy(self, session_maker, store):
        run_id = await _add_run(session_maker, store.store_id, {"auto_accepted_rate": 0.5}, assignments=[
            ("A", "caneta-gel", "auto", 0.4),
            ("B", "cola-bastao", "review", 0.05),
            ("C", "tesoura-escolar", "auto", 0.5),
        ])
        importer = QAFeedbackImporter(session_maker, store)
        rows = [
            QARow(sku="A", review_status="pass"),
            QARow(sku="B", corrected="Cola Líquida"),
            QARow(sku="C", corrected="zzzz qqqq", attributes_ok=False),
            QARow(sku="Z", review_status="pass"),
        ]

        result = await importer.import_rows(run_id, rows)

        assert result.imported == 3
        assert result.unmatched_skus == ["Z"]
        assert result.unresolved_labels == ["zzzz qqqq"]
        assert result.accuracy["qa_reviewed_count"] == 3
        assert result.accuracy["l1_accuracy"] == pytest.approx(2 / 3)
        assert result.accuracy["l2_accuracy"] == pytest.approx(1 / 3)
        assert result.accuracy["l3_accuracy"] == pytest.approx(2 / 3)

        async with session_maker() as session:
            run = await session.get(PipelineRun, run_id)
            assert run.stats["auto_accepted_rate"] == 0.5
            assert run.stats["l1_accuracy"] == pytest.approx(2 / 3)

        # Re-import updates the existing rows instead of duplicating them
        again = await importer.import_rows(run_id, [QARow(sku="B", review_status="pass")])
        assert again.accuracy["qa_reviewed_count"] == 3
        assert again.accuracy["l1_accuracy"] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_unknown_run(self, session_maker, store):
        with pytest.raises(ValidationError):
            await QAFeedbackImporter(session_maker, store).import_rows(uuid.uuid4(), [])
