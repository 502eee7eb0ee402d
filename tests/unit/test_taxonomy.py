"""Unit tests for the taxonomy document, seed loader, rule patches and store.

Tests cover:
    - Seed loading and referential integrity checks
    - apply_payload for term and numeric fields, including rejections
    - Canonical JSON stability
    - TaxonomyStore seeding, version chain and compare-and-set head moves
"""
import json

import pytest

from src.errors.exceptions import (
    ProposalValidationError,
    RollbackError,
    StaleTaxonomyVersionError,
    TaxonomyIntegrityError,
)
from src.taxonomy import (
    CategoryDefinition,
    CategoryRule,
    TaxonomyDocument,
    TaxonomyStore,
    apply_payload,
    compute_version_id,
    dedupe_terms,
    load_seed_document,
)
from src.taxonomy.loader import ATTRIBUTE_POLICIES_FILE, CATEGORIES_FILE, MATCH_RULES_FILE


@pytest.fixture
def seed():
    return load_seed_document()


def _category(slug: str, **kwargs) -> CategoryDefinition:
    return CategoryDefinition(slug=slug, name_pt=slug, family=kwargs.pop("family", "test"), **kwargs)


class TestSeedDocument:
    """Tests for the packaged seed taxonomy."""

    def test_seed_loads_with_single_fallback(self, seed):
        assert seed.fallback_category.slug == "material-escolar-diverso"
        assert seed.has_category("caneta-gel")
        assert seed.rule_for("caneta-gel").high_risk is True

    def test_rule_for_unknown_rule_is_empty(self, seed):
        rule = seed.rule_for("tesoura-escolar")
        assert rule.slug == "tesoura-escolar"
        empty = TaxonomyDocument(categories=[_category("x", is_fallback=True)]).rule_for("x")
        assert empty.include_any == []

    def test_canonical_json_is_stable(self, seed):
        again = TaxonomyDocument.from_json(seed.canonical_json())
        assert again.canonical_json() == seed.canonical_json()
        assert again.content_hash() == seed.content_hash()

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(TaxonomyIntegrityError):
            load_seed_document(tmp_path)

    def test_rules_without_categories_array_raise(self, tmp_path, seed):
        (tmp_path / CATEGORIES_FILE).write_text(
            json.dumps({"categories": [c.model_dump() for c in seed.categories]}), encoding="utf-8"
        )
        (tmp_path / MATCH_RULES_FILE).write_text(json.dumps({"rules": []}), encoding="utf-8")
        (tmp_path / ATTRIBUTE_POLICIES_FILE).write_text("{}", encoding="utf-8")
        with pytest.raises(TaxonomyIntegrityError, match="categories array"):
            load_seed_document(tmp_path)


class TestIntegrity:
    """Tests for TaxonomyDocument.check_integrity."""

    def test_empty_categories(self):
        with pytest.raises(TaxonomyIntegrityError, match="empty"):
            TaxonomyDocument(categories=[]).check_integrity()

    def test_duplicate_slug(self):
        document = TaxonomyDocument(categories=[_category("a", is_fallback=True), _category("a")])
        with pytest.raises(TaxonomyIntegrityError, match="Duplicate category slug"):
            document.check_integrity()

    def test_rule_for_unknown_slug(self):
        document = TaxonomyDocument(
            categories=[_category("a", is_fallback=True)],
            rules=[CategoryRule(slug="ghost")],
        )
        with pytest.raises(TaxonomyIntegrityError, match="unknown category slug"):
            document.check_integrity()

    def test_requires_exactly_one_fallback(self):
        document = TaxonomyDocument(categories=[_category("a"), _category("b")])
        with pytest.raises(TaxonomyIntegrityError, match="exactly one fallback"):
            document.check_integrity()


class TestRulePatch:
    """Tests for apply_payload."""

    def test_add_term_dedupes_case_insensitively(self, seed):
        result = apply_payload(seed, {
            "target_slug": "caneta-gel", "field": "include_any", "action": "add", "value": "CANETA",
        })
        assert result.new_value == result.old_value
        assert result.document.rule_for("caneta-gel").include_any == seed.rule_for("caneta-gel").include_any

    def test_add_new_term(self, seed):
        result = apply_payload(seed, {
            "target_slug": "caneta-gel", "field": "exclude_any", "action": "add", "value": " refil ",
        })
        assert result.new_value[-1] == "refil"
        assert result.old_value == ["recarga"]
        # Input document untouched
        assert seed.rule_for("caneta-gel").exclude_any == ["recarga"]

    def test_remove_term(self, seed):
        result = apply_payload(seed, {
            "target_slug": "cola-bastao", "field": "include_any", "action": "remove", "value": "Stick",
        })
        assert "stick" not in result.new_value
        assert result.to_diff()["field"] == "include_any"

    def test_set_term_replaces_list(self, seed):
        result = apply_payload(seed, {
            "target_slug": "tesoura-escolar", "field": "include_any", "action": "set", "value": "tesoura",
        })
        assert result.new_value == ["tesoura"]

    def test_numeric_set(self, seed):
        result = apply_payload(seed, {
            "target_slug": "papel-a4", "field": "auto_min_confidence", "action": "set", "value": 0.71,
        })
        assert result.old_value == 0.72
        assert result.document.rule_for("papel-a4").auto_min_confidence == 0.71

    def test_numeric_accepts_numeric_string(self, seed):
        result = apply_payload(seed, {
            "target_slug": "papel-a4", "field": "auto_min_margin", "action": "set", "value": "0.2",
        })
        assert result.new_value == 0.2

    @pytest.mark.parametrize("payload", [
        {"target_slug": "nao-existe", "field": "include_any", "action": "add", "value": "x"},
        {"target_slug": "papel-a4", "field": "family", "action": "set", "value": "x"},
        {"target_slug": "papel-a4", "field": "include_any", "action": "add", "value": "   "},
        {"target_slug": "papel-a4", "field": "include_any", "action": "append", "value": "x"},
        {"target_slug": "papel-a4", "field": "auto_min_confidence", "action": "add", "value": 0.5},
        {"target_slug": "papel-a4", "field": "auto_min_confidence", "action": "set", "value": 1.5},
        {"target_slug": "papel-a4", "field": "auto_min_confidence", "action": "set", "value": True},
        {"target_slug": "papel-a4", "field": "auto_min_confidence", "action": "set", "value": "high"},
    ])
    def test_rejects_invalid_payloads(self, seed, payload):
        with pytest.raises(ProposalValidationError):
            apply_payload(seed, payload)

    def test_dedupe_terms_keeps_first_spelling(self):
        assert dedupe_terms(["Gel", "gel", " ", "GEL pen", "gel pen"]) == ["Gel", "GEL pen"]


class TestTaxonomyStore:
    """Tests for the versioned store."""

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, session_maker, store):
        first = await store.current()
        second = await TaxonomyStore(session_maker, store.store_id).ensure_seeded()
        assert first.version_id == second.version_id
        assert first.version_id.startswith("tx-seed-")

    @pytest.mark.asyncio
    async def test_current_on_unseeded_store_raises(self, session_maker):
        with pytest.raises(TaxonomyIntegrityError):
            await TaxonomyStore(session_maker, "empty").current()

    @pytest.mark.asyncio
    async def test_commit_version_moves_head(self, session_maker, store):
        before = await store.current()
        patched = apply_payload(before.document, {
            "target_slug": "caneta-gel", "field": "exclude_any", "action": "add", "value": "refil",
        }).document

        async with session_maker() as session:
            async with session.begin():
                version_after = await store.commit_version(
                    session, expected_version=before.version_id, document=patched, proposal_id="p-1",
                )

        assert version_after == compute_version_id(before.version_id, "p-1")
        after = await store.current()
        assert after.version_id == version_after
        assert "refil" in after.document.rule_for("caneta-gel").exclude_any
        old = await store.load_version(before.version_id)
        assert "refil" not in old.document.rule_for("caneta-gel").exclude_any

    @pytest.mark.asyncio
    async def test_commit_on_stale_version_fails(self, session_maker, store):
        base = await store.current()
        async with session_maker() as session:
            async with session.begin():
                await store.commit_version(
                    session, expected_version=base.version_id, document=base.document, proposal_id="p-1",
                )

        with pytest.raises(StaleTaxonomyVersionError) as exc_info:
            async with session_maker() as session:
                async with session.begin():
                    await store.commit_version(
                        session, expected_version=base.version_id, document=base.document, proposal_id="p-2",
                    )
        assert exc_info.value.expected == base.version_id

        # The failed transaction left no trace
        assert (await store.current()).version_id == compute_version_id(base.version_id, "p-1")

    @pytest.mark.asyncio
    async def test_restore_version(self, session_maker, store):
        base = await store.current()
        async with session_maker() as session:
            async with session.begin():
                head = await store.commit_version(
                    session, expected_version=base.version_id, document=base.document, proposal_id="p-1",
                )
        async with session_maker() as session:
            async with session.begin():
                await store.restore_version(session, expected_head=head, target_version=base.version_id)
        assert (await store.current()).version_id == base.version_id

    @pytest.mark.asyncio
    async def test_restore_unknown_version(self, session_maker, store):
        base = await store.current()
        with pytest.raises(RollbackError):
            async with session_maker() as session:
                async with session.begin():
                    await store.restore_version(session, expected_head=base.version_id, target_version="tx-nope")

    @pytest.mark.asyncio
    async def test_stores_are_isolated(self, session_maker, store):
        other = TaxonomyStore(session_maker, "other-store")
        snapshot = await other.ensure_seeded()
        assert snapshot.version_id != (await store.current()).version_id
        with pytest.raises(TaxonomyIntegrityError):
            await other.load_version((await store.current()).version_id)
