"""Unit tests for text utilities, attribute extraction and catalog IO."""
import pandas as pd
import pytest

from src.errors.exceptions import CatalogReadError
from src.services.catalog import read_catalog
from src.services.extraction.attributes import empty_extraction, extract_attributes
from src.services.extraction.text import (
    detect_format,
    detect_pack_count,
    detect_ruling,
    fnv1a_32,
    has_term,
    normalize_text,
    tokenize,
)
from src.taxonomy.document import (
    AttributeDefinition,
    AttributePolicies,
    AttributePolicy,
    CategoryDefinition,
    TaxonomyDocument,
)

NOTEBOOK = CategoryDefinition(
    slug="caderno",
    name_pt="Caderno",
    family="papelaria",
    default_attributes=[
        AttributeDefinition(key="format", label_pt="Formato", type="enum", allowed_values=["A4", "A5"], required=True),
        AttributeDefinition(
            key="ruling", label_pt="Pauta", type="enum",
            allowed_values=["pautado", "quadriculado", "liso"], required=True,
        ),
        AttributeDefinition(key="pack_count", label_pt="Unidades", type="number"),
    ],
)

DOCUMENT = TaxonomyDocument(
    categories=[
        NOTEBOOK,
        CategoryDefinition(slug="outros", name_pt="Outros", family="outros", is_fallback=True),
    ],
    attribute_policies=AttributePolicies(
        attribute_policies={"pack_count": AttributePolicy(min=1, pack_context_required=True)},
    ),
)


class TestText:

    def test_normalize_text(self):
        assert normalize_text("Caderno Universitário, 10 Matérias!") == "caderno universitario 10 materias"
        assert normalize_text(None) == ""

    def test_tokenize_drops_stop_words(self):
        assert tokenize("Kit de Canetas Gel") == ["canetas", "gel"]

    def test_fnv1a_known_values(self):
        assert fnv1a_32("") == 0x811C9DC5
        assert fnv1a_32("a") == 0xE40C292C

    def test_has_term_respects_word_boundaries(self):
        assert has_term("caneta gel azul", "Gel") is True
        assert has_term("gelatina colorida", "gel") is False
        assert has_term("cola em bastao", "cola em bastão") is True

    def test_has_term_plural_suffix(self):
        assert has_term("canetas gel", "caneta", allow_plural=True) is True
        assert has_term("canetas gel", "caneta") is False
        assert has_term("lapiseira azul", "lapis", allow_plural=True) is False

    @pytest.mark.parametrize("title,fmt,ruling", [
        ("Caderno A4 pautado", "A4", "pautado"),
        ("Bloco A5 quadriculado", "A5", "quadriculado"),
        ("Caderno sem pauta", None, "liso"),
        ("Caderno espiral", None, None),
    ])
    def test_format_and_ruling(self, title, fmt, ruling):
        assert detect_format(title) == fmt
        assert detect_ruling(title) == ruling

    def test_pack_count(self):
        assert detect_pack_count("Caneta gel pack 3") == 3
        assert detect_pack_count("Lápis 12 unidades") == 12
        assert detect_pack_count("Caixa com lapis") is None


class TestExtractAttributes:

    def test_rules_resolve_explicit_tokens(self):
        result = extract_attributes(normalize_text("Caderno A4 pautado 96 folhas"), NOTEBOOK, DOCUMENT)

        assert result.values == {"format": "A4", "ruling": "pautado", "pack_count": None}
        assert result.reasons == []
        assert result.validation_fail_count == 0
        assert result.has_any_value is True

    def test_pack_count_without_pack_context_is_remapped(self):
        result = extract_attributes(normalize_text("Bloco 50 un"), NOTEBOOK, DOCUMENT)

        assert result.values["pack_count"] is None
        assert "pack_count_remapped_to_sheet_count" in result.reasons
        assert "missing_required_format" in result.reasons
        assert "missing_required_ruling" in result.reasons
        assert result.validation_fail_count == 1

    def test_pack_count_below_policy_minimum(self):
        result = extract_attributes(normalize_text("Kit 0 cadernos"), NOTEBOOK, DOCUMENT)

        assert result.values["pack_count"] is None
        assert "policy_min_pack_count" in result.reasons

    def test_completion_output_fills_gaps_and_is_validated(self):
        llm_output = {
            "values": {"format": "A3", "ruling": "liso"},
            "confidence": {"format": 0.9, "ruling": 0.5},
        }

        result = extract_attributes(normalize_text("Caderno espiral"), NOTEBOOK, DOCUMENT, llm_output=llm_output)

        assert result.values == {"format": None, "ruling": "liso", "pack_count": None}
        assert result.confidence["format"] == pytest.approx(0.2)
        assert result.confidence["ruling"] == pytest.approx(0.5)
        assert result.reasons == [
            "invalid_enum_format",
            "missing_required_format",
            "low_attribute_confidence_ruling",
        ]
        assert result.validation_fail_count == 1

    def test_malformed_completion_output_is_ignored(self):
        result = extract_attributes(normalize_text("Caderno espiral"), NOTEBOOK, DOCUMENT, llm_output="garbage")
        assert result.has_any_value is False

    def test_non_finite_confidence_sanitized(self):
        llm_output = {"values": {"format": "A5"}, "confidence": {"format": float("nan")}}

        result = extract_attributes(normalize_text("Caderno espiral"), NOTEBOOK, DOCUMENT, llm_output=llm_output)

        assert result.values["format"] == "A5"
        assert result.confidence["format"] == 0.0

    def test_empty_extraction(self):
        result = empty_extraction(NOTEBOOK)
        assert result.values == {"format": None, "ruling": None, "pack_count": None}
        assert set(result.confidence.values()) == {0.0}


class TestReadCatalog:

    def test_aliases_skips_and_dedupe(self, tmp_path):
        path = tmp_path / "catalog.csv"
        path.write_text(
            "Source_SKU,Nome,Marca\n"
            "A1,Caneta gel,BIC\n"
            ",Sem sku,X\n"
            "A1,Duplicada,Y\n"
            "B2,Lapis HB,\n",
            encoding="utf-8",
        )

        rows = read_catalog(str(path))

        assert [(row.sku, row.title, row.brand) for row in rows] == [("A1", "Caneta gel", "BIC"), ("B2", "Lapis HB", "")]
        assert rows[0].category_hint is None

    def test_xlsx(self, tmp_path):
        path = tmp_path / "catalog.xlsx"
        pd.DataFrame({"id": ["X9"], "titulo": ["Mochila com rodas"]}).to_excel(path, index=False, engine="openpyxl")

        rows = read_catalog(str(path))

        assert [(row.sku, row.title) for row in rows] == [("X9", "Mochila com rodas")]

    def test_missing_title_column(self, tmp_path):
        path = tmp_path / "catalog.csv"
        path.write_text("sku,marca\nA1,BIC\n", encoding="utf-8")

        with pytest.raises(CatalogReadError, match="sku and title"):
            read_catalog(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(CatalogReadError, match="not found"):
            read_catalog(str(tmp_path / "absent.csv"))
