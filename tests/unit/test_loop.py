"""Unit tests for one self-improvement loop attempt."""
import asyncio
import json
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock
import uuid

import pytest

from src.config import canary_settings
from src.db.models.pipeline_run import RunKind
from src.db.models.self_improvement import LoopType
from src.errors.exceptions import CanaryError, StageTimeoutError
from src.models.catalog import CatalogRow
from src.services.catalog import write_catalog
from src.services.learning import ApplyResult, HarnessResult
from src.services.llm import HashingEmbedder, NullCompleter
from src.services.pipeline import PipelineRunResult
from src.services.quality import QualityTargets
from src.services.self_improvement import LoopRunner
from src.services.self_improvement.loop import (
    has_high_severity_schema_violations,
    is_canary_degrade_mode,
    should_auto_apply,
)

GOOD_STATS = {
    "auto_accepted_rate": 0.9,
    "fallback_category_rate": 0.01,
    "needs_review_rate": 0.1,
    "attribute_validation_fail_count": 0,
    "unique_products_processed": 20,
    "quality_gate": QualityTargets().as_stats(),
    "top_confusion_alerts": [{"category_slug": "cola-bastao", "affected_count": 2}, "junk"],
}

VALID_PAYLOAD = {
    "target_slug": "cola-bastao",
    "field": "include_any",
    "action": "add",
    "value": "uhu",
    "reason": "qa_corrections_mention_term",
}


def _batch(loop_type=LoopType.FULL, policy="if_gate_passes"):
    return SimpleNamespace(
        id=uuid.uuid4(),
        loop_type=loop_type,
        auto_apply_policy=policy,
        max_structural_changes=1,
    )


def _harness(passed: bool, failed=()):
    return HarnessResult(
        passed=passed,
        metric_scores={"l1_delta": 0.03 if passed else -0.02, "l2_delta": 0.0, "l3_delta": 0.0},
        failed_metrics=list(failed),
        candidate_run_id=uuid.uuid4(),
        harness_run_id=uuid.uuid4(),
    )


@pytest.fixture
def catalog_path(tmp_path):
    rows = [CatalogRow(sku=f"S{i}", title=f"Caneta gel azul {i}") for i in range(20)]
    return str(write_catalog(rows, str(tmp_path / "catalog.csv")))


@pytest.fixture
def runner(session_maker, store, catalog_path, tmp_path):
    loop_runner = LoopRunner(
        session_maker,
        store,
        HashingEmbedder(16),
        NullCompleter(),
        catalog_path=catalog_path,
        output_dir=str(tmp_path / "outputs"),
    )
    run_id = uuid.uuid4()
    loop_runner.pipeline.run = AsyncMock(return_value=PipelineRunResult(
        run_id=run_id,
        store_id=store.store_id,
        run_kind=RunKind.FULL,
        taxonomy_version="tx-test",
        stats=dict(GOOD_STATS),
        hotlist_path=str(tmp_path / "outputs" / f"confusion_hotlist_{run_id}.csv"),
    ))
    loop_runner.proposals.generate = AsyncMock(return_value=[SimpleNamespace(payload=dict(VALID_PAYLOAD))])
    loop_runner.harness.evaluate = AsyncMock(return_value=_harness(True))
    loop_runner.manager.apply_learning_proposals = AsyncMock(return_value=ApplyResult(considered=1, applied=1))
    loop_runner.manager.rollback_on_degrade = AsyncMock(return_value=None)
    return loop_runner


class TestLoopHelpers:

    @pytest.mark.parametrize("payload", [
        {**VALID_PAYLOAD, "reason": " "},
        {**VALID_PAYLOAD, "target_slug": None},
        {**VALID_PAYLOAD, "field": ""},
        {**VALID_PAYLOAD, "value": 3},
        {**VALID_PAYLOAD, "field": "auto_min_confidence", "value": "0.7"},
        {**VALID_PAYLOAD, "field": "auto_min_margin", "value": True},
    ])
    def test_schema_violations(self, payload):
        assert has_high_severity_schema_violations([dict(VALID_PAYLOAD), payload]) is True

    def test_valid_payloads(self):
        threshold = {**VALID_PAYLOAD, "field": "auto_min_confidence", "value": 0.8}
        assert has_high_severity_schema_violations([VALID_PAYLOAD, threshold]) is False
        assert has_high_severity_schema_violations([]) is False

    @pytest.mark.parametrize("policy,quality,harness,violations,expected", [
        ("if_gate_passes", True, True, False, True),
        ("never", True, True, False, False),
        ("if_gate_passes", False, True, False, False),
        ("if_gate_passes", True, False, False, False),
        ("if_gate_passes", True, True, True, False),
    ])
    def test_should_auto_apply(self, policy, quality, harness, violations, expected):
        assert should_auto_apply(policy, quality, harness, violations) is expected

    def test_degrade_mode_only_for_canary_retries(self):
        assert is_canary_degrade_mode(LoopType.CANARY, 2) is True
        assert is_canary_degrade_mode(LoopType.CANARY, 1) is False
        assert is_canary_degrade_mode(LoopType.FULL, 3) is False


class TestRunAttempt:

    @pytest.mark.asyncio
    async def test_full_loop_applies_when_gates_pass(self, runner):
        batch = _batch()

        result = await runner.run_attempt(batch, sequence_no=1, attempt_no=1)

        assert result.passed is True
        assert result.correction_context is None
        assert result.harness_delta == pytest.approx(0.01)
        assert result.learning_result["proposals_applied"] == 1
        assert result.learning_result["rollback_triggered"] is False

        products = runner.pipeline.run.await_args.args[0]
        assert len(products) == 20
        assert runner.pipeline.run.await_args.kwargs["run_kind"] == RunKind.FULL

        generate_kwargs = runner.proposals.generate.await_args.kwargs
        assert generate_kwargs["alerts"] == [{"category_slug": "cola-bastao", "affected_count": 2}]
        assert generate_kwargs["options"].allow_structural is True
        assert generate_kwargs["options"].min_confidence == 0.0

        apply_kwargs = runner.manager.apply_learning_proposals.await_args.kwargs
        assert apply_kwargs["max_structural_changes"] == 1
        assert apply_kwargs["sequence_no"] == 1
        runner.manager.rollback_on_degrade.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_harness_failure_rolls_back(self, runner):
        runner.harness.evaluate.return_value = _harness(False, failed=["l1_delta"])
        runner.manager.rollback_on_degrade.return_value = SimpleNamespace(id=uuid.uuid4())

        result = await runner.run_attempt(_batch(), sequence_no=3, attempt_no=1, previous_failed_metrics=["x"])

        assert result.passed is False
        assert result.failed_metrics == ["x", "l1_delta"]
        assert result.learning_result["rollback_triggered"] is True
        assert result.correction_context["failure_summary"]
        runner.manager.apply_learning_proposals.assert_not_awaited()
        assert runner.manager.rollback_on_degrade.await_args.kwargs["sequence_no"] == 3

    @pytest.mark.asyncio
    async def test_schema_violation_blocks_apply(self, runner):
        runner.proposals.generate.return_value = [SimpleNamespace(payload={**VALID_PAYLOAD, "reason": ""})]

        result = await runner.run_attempt(_batch(), sequence_no=1, attempt_no=1)

        assert result.passed is True
        assert result.learning_result["high_severity_schema_violations"] is True
        runner.manager.apply_learning_proposals.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_never_policy_blocks_apply(self, runner):
        await runner.run_attempt(_batch(policy="never"), sequence_no=1, attempt_no=1)
        runner.manager.apply_learning_proposals.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_canary_retry_runs_in_degrade_mode(self, runner):
        result = await runner.run_attempt(_batch(LoopType.CANARY), sequence_no=1, attempt_no=2)

        assert result.learning_result["canary_retry_degrade_mode"] is True
        options = runner.proposals.generate.await_args.kwargs["options"]
        assert options.allow_structural is False
        assert options.min_confidence == pytest.approx(0.7)
        assert runner.manager.apply_learning_proposals.await_args.kwargs["max_structural_changes"] == 0
        assert runner.pipeline.run.await_args.kwargs["run_kind"] == RunKind.CANARY

        state = json.loads(Path(canary_settings.state_path).read_text(encoding="utf-8"))
        assert state["lastCanaryRunId"] == str(result.pipeline_run_id)

    @pytest.mark.asyncio
    async def test_canary_needs_auto_accept_rate(self, runner):
        stats = dict(GOOD_STATS)
        del stats["auto_accepted_rate"]
        runner.pipeline.run.return_value.stats = stats

        with pytest.raises(CanaryError):
            await runner.run_attempt(_batch(LoopType.CANARY), sequence_no=1, attempt_no=1)

    @pytest.mark.asyncio
    async def test_canary_needs_hotlist(self, runner):
        runner.pipeline.run.return_value.hotlist_path = None

        with pytest.raises(CanaryError, match="hotlist"):
            await runner.run_attempt(_batch(LoopType.CANARY), sequence_no=1, attempt_no=1)

    @pytest.mark.asyncio
    async def test_stage_timeout(self, runner):
        async def slow_run(*args, **kwargs):
            await asyncio.sleep(5)

        runner.pipeline.run = AsyncMock(side_effect=slow_run)
        runner.stage_timeout = 0.05

        with pytest.raises(StageTimeoutError) as exc_info:
            await runner.run_attempt(_batch(), sequence_no=1, attempt_no=1)
        assert exc_info.value.stage == "pipeline_run"
