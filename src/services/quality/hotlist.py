"""Confusion hotlist: category pairs the engine keeps mixing up.

A product contributes to the pair (top1, top2) when the pair is distinct
and the decision was ``review``, the margin was thin, or the top pick had
contradictions. Pairs are stored sorted so (a, b) and (b, a) merge.

The hotlist is written as CSV with pandas and is read back by the canary
selector on later runs.
"""
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set
import re

import pandas as pd
import structlog

from src.models.assignment import CategoryAssignment
from src.models.catalog import NormalizedProduct
from src.services.extraction.text import tokenize
from src.taxonomy.document import TaxonomyDocument

logger = structlog.get_logger(__name__)

LOW_MARGIN_THRESHOLD = 0.12
MAX_SAMPLE_SKUS = 5
MAX_SUGGESTIONS = 5
DEFAULT_MAX_ROWS = 20
LIST_SEPARATOR = " | "

HOTLIST_COLUMNS = [
    "category_a",
    "category_b",
    "affected_count",
    "low_margin_count",
    "contradiction_count",
    "sample_skus",
    "sample_titles",
    "top_tokens",
    "suggested_include_a",
    "suggested_exclude_a",
    "suggested_include_b",
    "suggested_exclude_b",
]


@dataclass
class HotlistRow:
    """One ranked confusion pair."""
    category_a: str
    category_b: str
    affected_count: int = 0
    low_margin_count: int = 0
    contradiction_count: int = 0
    sample_skus: List[str] = field(default_factory=list)
    sample_titles: List[str] = field(default_factory=list)
    top_tokens: List[str] = field(default_factory=list)
    suggested_include_a: List[str] = field(default_factory=list)
    suggested_exclude_a: List[str] = field(default_factory=list)
    suggested_include_b: List[str] = field(default_factory=list)
    suggested_exclude_b: List[str] = field(default_factory=list)

    @property
    def severity(self) -> int:
        return self.affected_count * 3 + self.low_margin_count * 2 + self.contradiction_count

    def to_record(self) -> Dict[str, object]:
        record: Dict[str, object] = {}
        for column in HOTLIST_COLUMNS:
            value = getattr(self, column)
            record[column] = LIST_SEPARATOR.join(value) if isinstance(value, list) else value
        return record


def _is_confusing(assignment: CategoryAssignment) -> bool:
    if not assignment.top2_slug or assignment.top2_slug == assignment.category_slug:
        return False
    return (
        assignment.decision == "review"
        or assignment.margin < LOW_MARGIN_THRESHOLD
        or assignment.contradiction_count > 0
    )


def _content_tokens(text: str) -> List[str]:
    return [token for token in tokenize(text) if len(token) >= 3 and not token.isdigit()]


def _term_tokens(terms: Sequence[str]) -> Set[str]:
    return {token for term in terms for token in tokenize(term) if len(token) >= 3}


def _descriptor_tokens(document: TaxonomyDocument, slug: str) -> Set[str]:
    if not document.has_category(slug):
        return set()
    category = document.category(slug)
    return _term_tokens([category.name_pt, category.description_pt, *category.synonyms, *category.prototype_terms])


def _suggest(row: HotlistRow, document: TaxonomyDocument) -> None:
    rule_a = document.rule_for(row.category_a)
    rule_b = document.rule_for(row.category_b)
    include_a, exclude_a = _term_tokens(rule_a.include_any), _term_tokens(rule_a.exclude_any)
    include_b, exclude_b = _term_tokens(rule_b.include_any), _term_tokens(rule_b.exclude_any)
    descriptor_a = _descriptor_tokens(document, row.category_a)
    descriptor_b = _descriptor_tokens(document, row.category_b)

    for token in row.top_tokens:
        if token in descriptor_a and token not in include_a and token not in include_b:
            if len(row.suggested_include_a) < MAX_SUGGESTIONS:
                row.suggested_include_a.append(token)
        if token in include_b and token not in exclude_a and len(row.suggested_exclude_a) < MAX_SUGGESTIONS:
            row.suggested_exclude_a.append(token)
        if token in descriptor_b and token not in include_b and token not in include_a:
            if len(row.suggested_include_b) < MAX_SUGGESTIONS:
                row.suggested_include_b.append(token)
        if token in include_a and token not in exclude_b and len(row.suggested_exclude_b) < MAX_SUGGESTIONS:
            row.suggested_exclude_b.append(token)


def build_confusion_hotlist(
    products: Sequence[NormalizedProduct],
    assignments: Sequence[CategoryAssignment],
    document: TaxonomyDocument,
    max_rows: int = DEFAULT_MAX_ROWS,
) -> List[HotlistRow]:
    """Group confusing assignments by category pair and rank the pairs.

    Args:
        products: Products of the run (for titles and tokens)
        assignments: Assignments of the run
        document: Taxonomy document used for term suggestions
        max_rows: Maximum pairs kept

    Returns:
        Rows ordered by severity descending, then category pair
    """
    products_by_sku = {product.sku: product for product in products}
    buckets: Dict[tuple, Dict[str, object]] = {}

    for assignment in assignments:
        if not _is_confusing(assignment):
            continue
        product = products_by_sku.get(assignment.sku)
        if product is None:
            continue
        pair = tuple(sorted((assignment.category_slug, assignment.top2_slug)))
        bucket = buckets.setdefault(pair, {"entries": [], "tokens": Counter(), "low_margin": 0, "contradiction": 0})
        bucket["entries"].append((assignment, product))
        if assignment.margin < LOW_MARGIN_THRESHOLD:
            bucket["low_margin"] += 1
        bucket["contradiction"] += assignment.contradiction_count
        bucket["tokens"].update(_content_tokens(f"{product.normalized_title} {product.normalized_description}"))

    rows: List[HotlistRow] = []
    for (category_a, category_b), bucket in buckets.items():
        # Contradicted and thin-margin samples first; stable on input order
        samples = sorted(
            bucket["entries"],
            key=lambda entry: -(entry[0].contradiction_count + (1 if entry[0].margin < LOW_MARGIN_THRESHOLD else 0)),
        )[:MAX_SAMPLE_SKUS]
        token_counts: Counter = bucket["tokens"]
        top_tokens = [token for token, _ in sorted(token_counts.items(), key=lambda item: (-item[1], item[0]))[:10]]
        row = HotlistRow(
            category_a=category_a,
            category_b=category_b,
            affected_count=len(bucket["entries"]),
            low_margin_count=bucket["low_margin"],
            contradiction_count=bucket["contradiction"],
            sample_skus=[assignment.sku for assignment, _ in samples],
            sample_titles=[product.title for _, product in samples],
            top_tokens=top_tokens,
        )
        _suggest(row, document)
        rows.append(row)

    rows.sort(key=lambda row: (-row.severity, row.category_a, row.category_b))
    return rows[:max(1, max_rows)]


def hotlist_filename(run_id: str) -> str:
    return f"confusion_hotlist_{run_id}.csv"


def write_hotlist(rows: Sequence[HotlistRow], output_dir: str, run_id: str) -> Path:
    """Write the hotlist CSV into ``output_dir`` and return its path."""
    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / hotlist_filename(run_id)
    frame = pd.DataFrame([row.to_record() for row in rows], columns=HOTLIST_COLUMNS)
    frame.to_csv(path, index=False)
    logger.info("hotlist_written", path=str(path), rows=len(rows))
    return path


def _split_list(value: object) -> List[str]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return []
    return [part.strip() for part in re.split(r"\|", str(value)) if part.strip()]


def _as_int(value: object) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return 0 if pd.isna(number) else int(number)


def read_hotlist(path: str) -> List[HotlistRow]:
    """Read a hotlist CSV; unknown or missing columns degrade to empty values.

    A zero-byte file reads as an empty hotlist.

    Raises:
        FileNotFoundError: ``path`` does not exist
    """
    try:
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError:
        logger.warning("hotlist_empty", path=str(path))
        return []
    rows: List[HotlistRow] = []
    for record in frame.to_dict(orient="records"):
        category_a = str(record.get("category_a", "")).strip()
        category_b = str(record.get("category_b", "")).strip()
        if not category_a and not category_b:
            continue
        rows.append(HotlistRow(
            category_a=category_a,
            category_b=category_b,
            affected_count=_as_int(record.get("affected_count")),
            low_margin_count=_as_int(record.get("low_margin_count")),
            contradiction_count=_as_int(record.get("contradiction_count")),
            sample_skus=_split_list(record.get("sample_skus")),
            sample_titles=_split_list(record.get("sample_titles")),
            top_tokens=_split_list(record.get("top_tokens")),
        ))
    return rows


def latest_hotlist(output_dir: str) -> Optional[Path]:
    """Most recently modified hotlist in ``output_dir``; ties resolve by path descending."""
    directory = Path(output_dir)
    if not directory.is_dir():
        return None
    candidates = [path for path in directory.glob("confusion_hotlist_*.csv") if path.is_file()]
    if not candidates:
        return None
    return max(candidates, key=lambda path: (path.stat().st_mtime, str(path)))
