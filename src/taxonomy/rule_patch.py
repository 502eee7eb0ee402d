"""Apply a proposal payload to a taxonomy document.

Pure functions: the input document is never modified, a new document is
returned together with the old and new field values for the diff record.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Union
import math

from src.errors.exceptions import ProposalValidationError
from src.taxonomy.document import TaxonomyDocument

TERM_FIELDS = ("include_any", "include_all", "exclude_any", "strong_exclude_any")
NUMERIC_FIELDS = ("auto_min_confidence", "auto_min_margin")
TERM_ACTIONS = ("add", "remove", "set")

FieldValue = Union[List[str], float, None]


@dataclass(frozen=True)
class RulePatchResult:
    """Outcome of applying one payload."""
    document: TaxonomyDocument
    target_slug: str
    field: str
    old_value: FieldValue
    new_value: FieldValue

    def to_diff(self) -> Dict[str, Any]:
        return {
            "target_slug": self.target_slug,
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
        }


def _term_key(value: str) -> str:
    return value.strip().lower()


def dedupe_terms(values: List[str]) -> List[str]:
    """Case-insensitive dedupe keeping the first spelling and original order."""
    seen = set()
    output: List[str] = []
    for value in values:
        trimmed = value.strip()
        if not trimmed:
            continue
        key = _term_key(trimmed)
        if key in seen:
            continue
        seen.add(key)
        output.append(trimmed)
    return output


def apply_payload(document: TaxonomyDocument, payload: Dict[str, Any]) -> RulePatchResult:
    """Apply ``{target_slug, field, action, value}`` to ``document``.

    Args:
        document: Current taxonomy document
        payload: Proposal payload

    Returns:
        RulePatchResult with the mutated document

    Raises:
        ProposalValidationError: Unknown slug, unsupported field, illegal
            action for the field, or a value of the wrong type
    """
    target_slug = payload.get("target_slug")
    field = payload.get("field")
    action = payload.get("action")
    raw_value = payload.get("value")

    if not isinstance(target_slug, str) or not document.has_category(target_slug):
        raise ProposalValidationError(f"Cannot apply proposal: unknown rule slug '{target_slug}'")

    rule = document.rule_for(target_slug)

    if field in TERM_FIELDS:
        if not isinstance(raw_value, str) or not raw_value.strip():
            raise ProposalValidationError(f"Expected non-empty string value for {field}")
        current: List[str] = list(getattr(rule, field))
        old_value = list(current)

        if action == "add":
            updated = dedupe_terms(current + [raw_value])
        elif action == "remove":
            remove_key = _term_key(raw_value)
            updated = [entry for entry in current if _term_key(entry) != remove_key]
        elif action == "set":
            updated = dedupe_terms([raw_value])
        else:
            raise ProposalValidationError(f"Unsupported action '{action}' for field '{field}'")

        new_rule = rule.model_copy(update={field: updated})
        return RulePatchResult(
            document=document.replace_rule(new_rule),
            target_slug=target_slug,
            field=field,
            old_value=old_value,
            new_value=list(updated),
        )

    if field in NUMERIC_FIELDS:
        if action != "set":
            raise ProposalValidationError(f"Only 'set' action is allowed for numeric field '{field}'")
        if isinstance(raw_value, bool):
            raise ProposalValidationError(f"Expected numeric value for {field}")
        try:
            next_value = float(raw_value)
        except (TypeError, ValueError):
            raise ProposalValidationError(f"Expected numeric value for {field}")
        if not math.isfinite(next_value) or not 0.0 <= next_value <= 1.0:
            raise ProposalValidationError(f"Value for {field} must be within [0, 1], got {raw_value}")

        old_value = getattr(rule, field)
        new_rule = rule.model_copy(update={field: next_value})
        return RulePatchResult(
            document=document.replace_rule(new_rule),
            target_slug=target_slug,
            field=field,
            old_value=old_value,
            new_value=next_value,
        )

    raise ProposalValidationError(f"Unsupported proposal field '{field}'")
