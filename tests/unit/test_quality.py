"""Unit tests for run stats, the quality gate and the confusion hotlist."""
import pytest

from src.errors.exceptions import CanaryError
from src.models.assignment import CategoryAssignment, ProductDecision
from src.models.catalog import CatalogRow, NormalizedProduct
from src.services.canary.gate import is_gate_passing, read_auto_accepted_rate
from src.services.quality import (
    QualityTargets,
    build_confusion_hotlist,
    build_self_correction_context,
    compute_run_stats,
    confidence_histogram,
    evaluate_quality_gate,
    latest_hotlist,
    read_hotlist,
    top_confusion_alerts,
    write_hotlist,
)
from src.taxonomy import load_seed_document


def _assignment(
    sku: str,
    slug: str = "caneta-gel",
    decision: str = "auto",
    confidence: float = 0.9,
    top2: str = "caneta-esferografica",
    margin: float = 0.3,
    contradictions: int = 0,
    is_fallback: bool = False,
) -> CategoryAssignment:
    return CategoryAssignment(
        sku=sku,
        category_slug=slug,
        top2_slug=top2,
        confidence=confidence,
        top2_confidence=max(0.0, confidence - margin),
        margin=margin,
        decision=decision,
        is_fallback=is_fallback,
        contradiction_count=contradictions,
    )


def _decision(assignment: CategoryAssignment, values=None, fails: int = 0) -> ProductDecision:
    return ProductDecision(
        assignment=assignment,
        title=f"Produto {assignment.sku}",
        attribute_values=values or {},
        attribute_validation_fail_count=fails,
        needs_review=assignment.decision != "auto" or fails > 0,
    )


@pytest.fixture
def healthy_decisions():
    decisions = [_decision(_assignment(f"A{i}"), values={"ink_type": "gel"}) for i in range(8)]
    decisions.append(_decision(_assignment("R1", decision="review", margin=0.05)))
    decisions.append(_decision(_assignment("F1", slug="material-escolar-diverso", decision="review",
                                           top2=None, is_fallback=True, confidence=0.1, margin=0.1)))
    return decisions


class TestComputeRunStats:

    def test_counts_and_rates(self, healthy_decisions):
        stats = compute_run_stats(healthy_decisions)

        assert stats["unique_products_processed"] == 10
        assert stats["auto_accepted_count"] == 8
        assert stats["needs_review_count"] == 2
        assert stats["auto_accepted_rate"] == pytest.approx(0.8)
        assert stats["fallback_category_rate"] == pytest.approx(0.1)
        assert stats["variant_fill_rate"] == pytest.approx(0.8)
        assert stats["family_distribution"] == {"caneta-gel": 9, "material-escolar-diverso": 1}
        assert stats["quality_gate"]["auto_accepted_rate_target"] == 0.7
        # Fallback rate 0.1 is above the 0.05 target
        assert stats["quality_gate"]["pre_qa_passed"] is False

    def test_validation_failures_force_review(self):
        decisions = [_decision(_assignment("A1"), fails=2)]
        stats = compute_run_stats(decisions)
        assert stats["auto_accepted_count"] == 0
        assert stats["attribute_validation_fail_count"] == 2

    def test_empty_run(self):
        stats = compute_run_stats([])
        assert stats["unique_products_processed"] == 0
        assert stats["auto_accepted_rate"] == 0.0
        assert stats["top_confusion_alerts"] == []

    def test_histogram_edges(self):
        assignments = [
            _assignment("a", confidence=0.0, margin=0.0),
            _assignment("b", confidence=0.5, margin=0.1),
            _assignment("c", confidence=1.0, margin=0.1),
        ]
        histogram = confidence_histogram(assignments)
        assert histogram["0.0-0.2"] == 1
        assert histogram["0.4-0.6"] == 1
        assert histogram["0.8-1.0"] == 1
        assert sum(histogram.values()) == 3

    def test_alerts_ranked_by_contradiction_and_margin(self):
        assignments = [
            _assignment("a", slug="cola-bastao", decision="review", margin=0.05, contradictions=1),
            _assignment("b", slug="cola-bastao", decision="review", margin=0.05),
            _assignment("c", slug="tesoura-escolar", decision="review", margin=0.5),
            _assignment("d", slug="caneta-gel", decision="auto", margin=0.5),
        ]
        alerts = top_confusion_alerts(assignments)

        assert [a.category_slug for a in alerts] == ["cola-bastao", "tesoura-escolar"]
        assert alerts[0].affected_count == 2
        assert alerts[0].low_margin_count == 2
        assert alerts[0].contradiction_count == 1


class TestQualityGate:

    def test_targets_met(self):
        stats = compute_run_stats(
            [_decision(_assignment(f"A{i}")) for i in range(9)]
            + [_decision(_assignment("R", decision="review"))]
        )
        result = evaluate_quality_gate(stats)
        assert result.passed is True
        assert result.failed_metrics == []

    def test_failed_metrics_named(self, healthy_decisions):
        result = evaluate_quality_gate(compute_run_stats(healthy_decisions))
        assert result.passed is False
        assert result.failed_metrics == ["fallback_category_rate"]
        assert result.base_passed is False

    def test_canary_threshold_is_additional(self):
        stats = compute_run_stats(
            [_decision(_assignment(f"A{i}")) for i in range(9)]
            + [_decision(_assignment("R", decision="review"))]
        )
        assert evaluate_quality_gate(stats, canary_threshold=0.9).passed is True

        result = evaluate_quality_gate(stats, canary_threshold=0.95)
        assert result.passed is False
        assert result.base_passed is True
        assert result.canary_threshold_passed is False
        assert result.failed_metrics == ["canary_auto_accepted_rate"]

    def test_better_metrics_never_fail_gate(self):
        worse = {
            "auto_accepted_rate": 0.75, "fallback_category_rate": 0.04, "needs_review_rate": 0.25,
            "attribute_validation_fail_count": 0, "unique_products_processed": 100,
            "quality_gate": QualityTargets().as_stats(),
        }
        better = dict(worse, auto_accepted_rate=0.9, fallback_category_rate=0.01, needs_review_rate=0.1)
        assert evaluate_quality_gate(worse).passed is True
        assert evaluate_quality_gate(better).passed is True

    def test_missing_rate_fails_canary_check(self):
        result = evaluate_quality_gate({}, canary_threshold=0.5)
        assert result.canary_threshold_passed is False
        assert result.base_passed is True

    def test_pre_qa_flag_without_metric(self):
        result = evaluate_quality_gate({"quality_gate": {"pre_qa_passed": False}})
        assert result.failed_metrics == ["pre_qa_failed_unknown"]


class TestSelfCorrectionContext:

    def test_context_shape(self, healthy_decisions):
        stats = compute_run_stats(healthy_decisions)
        context = build_self_correction_context(RuntimeError("quality gate failed"), stats)

        assert context["failure_summary"] == "quality gate failed"
        assert context["failed_gate_metrics"] == ["fallback_category_rate"]
        assert "tighten_fallback_rescue_rules_for_specific_families" in context["candidate_fixes"]
        assert any(fix.startswith("inspect_confusion_pair_") for fix in context["candidate_fixes"])

    def test_tolerates_malformed_stats(self):
        context = build_self_correction_context(None, {"top_confusion_alerts": ["junk", {"x": 1}]})
        assert context["failure_summary"] == "unknown_error"
        assert context["last_confusion_alerts"] == []


class TestCanaryGate:

    def test_reads_numeric_strings(self):
        assert read_auto_accepted_rate({"auto_accepted_rate": "0.81"}) == pytest.approx(0.81)

    @pytest.mark.parametrize("stats", [{}, {"auto_accepted_rate": "n/a"}, {"auto_accepted_rate": True}])
    def test_missing_rate_raises(self, stats):
        with pytest.raises(CanaryError):
            read_auto_accepted_rate(stats)

    def test_gate_is_inclusive(self):
        assert is_gate_passing(0.8, 0.8) is True
        assert is_gate_passing(0.79, 0.8) is False


class TestHotlist:

    @pytest.fixture
    def document(self):
        return load_seed_document()

    @pytest.fixture
    def run(self):
        products = [
            NormalizedProduct.from_row(CatalogRow(sku=f"S{i}", title=f"Caneta gel esferografica azul {i}"))
            for i in range(3)
        ]
        assignments = [
            _assignment("S0", decision="review", margin=0.05),
            _assignment("S1", slug="caneta-esferografica", top2="caneta-gel", decision="review", margin=0.05,
                        contradictions=1),
            _assignment("S2", decision="auto", margin=0.4),
        ]
        return products, assignments

    def test_pairs_merge_regardless_of_order(self, run, document):
        products, assignments = run
        rows = build_confusion_hotlist(products, assignments, document)

        assert len(rows) == 1
        row = rows[0]
        assert (row.category_a, row.category_b) == ("caneta-esferografica", "caneta-gel")
        assert row.affected_count == 2
        assert row.low_margin_count == 2
        assert row.contradiction_count == 1
        # Contradicted sample first
        assert row.sample_skus[0] == "S1"
        assert "azul" in row.top_tokens

    def test_write_read_and_latest(self, run, document, tmp_path):
        products, assignments = run
        rows = build_confusion_hotlist(products, assignments, document)

        path = write_hotlist(rows, str(tmp_path), "run-1")

        assert path.name == "confusion_hotlist_run-1.csv"
        assert latest_hotlist(str(tmp_path)) == path
        loaded = read_hotlist(str(path))
        assert loaded[0].category_a == rows[0].category_a
        assert loaded[0].sample_skus == rows[0].sample_skus
        assert loaded[0].affected_count == 2

    def test_latest_hotlist_missing_dir(self, tmp_path):
        assert latest_hotlist(str(tmp_path / "missing")) is None
