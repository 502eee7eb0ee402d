"""Attribute extraction.

Rule-based detectors run first; completion-service output fills only the
attributes the rules could not resolve. Values are then validated against
enum domains and numeric attribute policies.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
import math
import re

from src.services.extraction.text import (
    PACK_CONTEXT_PATTERN,
    SHEET_CONTEXT_PATTERN,
    detect_format,
    detect_pack_count,
    detect_ruling,
    normalize_text,
    parse_number,
)
from src.taxonomy.document import AttributeDefinition, CategoryDefinition, TaxonomyDocument

AttributeValue = Union[str, float, bool, None]


@dataclass(frozen=True)
class AttributeExtraction:
    """Extraction result for one product."""
    values: Dict[str, AttributeValue]
    confidence: Dict[str, float]
    reasons: List[str] = field(default_factory=list)
    validation_fail_count: int = 0

    @property
    def has_any_value(self) -> bool:
        return any(value not in (None, "") for value in self.values.values())


def _detect_boolean(text: str, positive: str, negative: str) -> Optional[bool]:
    if re.search(negative, text):
        return False
    if re.search(positive, text):
        return True
    return None


def infer_attribute(key: str, text: str) -> Tuple[AttributeValue, float]:
    """Rule-based value and confidence for one attribute key.

    ``text`` must already be normalized.
    """
    if key == "format":
        value = detect_format(text)
        return value, 0.92 if value else 0.1
    if key == "ruling":
        value = detect_ruling(text)
        return value, 0.9 if value else 0.1
    if key == "pack_count":
        value = detect_pack_count(text)
        return (float(value), 0.88) if value is not None else (None, 0.1)
    if key == "sheet_count":
        value = parse_number(text, r"(\d{2,4})\s*(?:folhas|fls)")
        return value, 0.88 if value else 0.1
    if key == "point_size_mm":
        value = parse_number(text, r"(\d(?:[.,]\d)?)\s*mm")
        return value, 0.86 if value else 0.1
    if key == "hardness":
        match = re.search(r"\b(hb|2b|b|h)\b", text)
        return (match.group(1).upper(), 0.9) if match else (None, 0.1)
    if key == "ink_type":
        if "gel" in text:
            return "gel", 0.9
        if re.search(r"(esferografica|esferografico|ballpoint|cristal)", text):
            return "esferografica", 0.88
        if "roller" in text:
            return "roller", 0.88
        return None, 0.1
    if key == "glue_type":
        if re.search(r"(fita|adesiva|dupla face|washi|masking)", text):
            return None, 0.1
        if re.search(r"(bastao|stick)", text):
            return "bastao", 0.9
        if re.search(r"(liquida|liquid|branca|pva)", text):
            return "liquida", 0.9
        return None, 0.1
    if key == "volume_ml":
        value = parse_number(text, r"(\d{1,4})\s*ml")
        if value:
            return value, 0.84
        grams = parse_number(text, r"(\d{1,4}(?:[.,]\d+)?)\s*g\b")
        return grams, 0.68 if grams else 0.1
    if key == "length_cm":
        value = parse_number(text, r"(\d{1,3}(?:[.,]\d+)?)\s*cm")
        return value, 0.83 if value else 0.1
    if key == "capacity_l":
        value = parse_number(text, r"(\d{1,3}(?:[.,]\d+)?)\s*(?:l|litros?)\b")
        return value, 0.84 if value else 0.1
    if key == "has_wheels":
        value = _detect_boolean(text, r"(com rodas|rodas|trolley)", r"(sem rodas)")
        return value, 0.86 if value is not None else 0.1
    if key == "weight_gsm":
        value = parse_number(text, r"(\d{2,3})\s*(?:g/m2|gsm|g)\b")
        return value, 0.82 if value else 0.1
    return None, 0.05


def attribute_detected(key: str, text: str) -> bool:
    value, _ = infer_attribute(key, text)
    return value is not None


def _coerce(attribute: AttributeDefinition, value: Any) -> AttributeValue:
    if value is None or value == "":
        return None
    if attribute.type == "number":
        if isinstance(value, bool):
            return None
        try:
            parsed = float(str(value).replace(",", "."))
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    if attribute.type == "boolean":
        if isinstance(value, bool):
            return value
        normalized = normalize_text(str(value))
        if normalized in ("sim", "true", "1", "yes", "com"):
            return True
        if normalized in ("nao", "false", "0", "no", "sem"):
            return False
        return None
    return str(value).strip() or None


def _sanitize_confidence(value: Any) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(parsed):
        return 0.0
    return max(0.0, min(1.0, parsed))


def _apply_number_policy(
    document: TaxonomyDocument,
    category_slug: str,
    key: str,
    value: float,
    text: str,
) -> Tuple[Optional[float], List[str]]:
    policy = document.attribute_policies.policy_for(category_slug, key)
    if policy is None:
        return value, []
    if not policy.allow_negative and value < 0:
        return None, [f"policy_negative_{key}"]
    if policy.min is not None and value < policy.min:
        return None, [f"policy_min_{key}"]
    if policy.max is not None and value > policy.max:
        return None, [f"policy_max_{key}"]
    if policy.pack_context_required and key == "pack_count" and not PACK_CONTEXT_PATTERN.search(text):
        if SHEET_CONTEXT_PATTERN.search(text) and value >= 20:
            return None, ["pack_count_remapped_to_sheet_count"]
        return None, ["policy_pack_context_missing"]
    return value, []


def extract_attributes(
    text: str,
    category: CategoryDefinition,
    document: TaxonomyDocument,
    llm_output: Optional[Dict[str, Any]] = None,
    auto_min_confidence: float = 0.7,
) -> AttributeExtraction:
    """Merge rule-based and completion-service attribute values.

    Args:
        text: Normalized product text
        category: Category the product was assigned to
        document: Taxonomy document (attribute policies)
        llm_output: ``{"values": {...}, "confidence": {...}}`` or None
        auto_min_confidence: Confidence below which a value is flagged

    Returns:
        AttributeExtraction; never raises for missing or malformed input
    """
    llm_values = {}
    llm_confidence = {}
    if isinstance(llm_output, dict):
        if isinstance(llm_output.get("values"), dict):
            llm_values = llm_output["values"]
        if isinstance(llm_output.get("confidence"), dict):
            llm_confidence = llm_output["confidence"]

    values: Dict[str, AttributeValue] = {}
    confidence: Dict[str, float] = {}
    reasons: List[str] = []

    for attribute in category.default_attributes:
        key = attribute.key
        rule_value, rule_score = infer_attribute(key, text)
        chosen = _coerce(attribute, rule_value)
        chosen_confidence = _sanitize_confidence(rule_score)

        if chosen is None:
            llm_value = _coerce(attribute, llm_values.get(key))
            if llm_value is not None:
                chosen = llm_value
                chosen_confidence = _sanitize_confidence(llm_confidence.get(key))

        if attribute.type == "enum" and chosen is not None and attribute.allowed_values:
            normalized = normalize_text(str(chosen))
            if not any(normalize_text(allowed) == normalized for allowed in attribute.allowed_values):
                reasons.append(f"invalid_enum_{key}")
                chosen = None
                chosen_confidence = min(chosen_confidence, 0.2)

        if isinstance(chosen, float):
            chosen, policy_reasons = _apply_number_policy(document, category.slug, key, chosen, text)
            reasons.extend(policy_reasons)

        if key == "ruling" and chosen == "quadriculado" and "pautado" in text and "quadriculado" not in text:
            reasons.append("contradiction_ruling_text")
            chosen = None

        if chosen is not None and chosen_confidence < auto_min_confidence:
            prefix = "low_attribute_confidence" if attribute.required else "low_optional_attribute_confidence"
            reasons.append(f"{prefix}_{key}")

        if attribute.required and chosen is None:
            reasons.append(f"missing_required_{key}")

        values[key] = chosen
        confidence[key] = chosen_confidence

    unique_reasons = list(dict.fromkeys(reasons))
    validation_fail_count = sum(
        1
        for reason in unique_reasons
        if reason.startswith(("invalid_", "policy_", "contradiction_", "pack_count_"))
    )
    return AttributeExtraction(
        values=values,
        confidence=confidence,
        reasons=unique_reasons,
        validation_fail_count=validation_fail_count,
    )


def empty_extraction(category: CategoryDefinition) -> AttributeExtraction:
    """All-null values at zero confidence for a category."""
    return AttributeExtraction(
        values={attribute.key: None for attribute in category.default_attributes},
        confidence={attribute.key: 0.0 for attribute in category.default_attributes},
    )
