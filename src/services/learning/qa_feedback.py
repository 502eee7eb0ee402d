"""QA feedback import.

Reads a reviewed-rows CSV, resolves free-text corrected labels onto
category slugs with rapidfuzz, upserts ``qa_feedback`` rows for a run and
writes L1/L2/L3 accuracy onto the run stats:

    - L1: category correct
    - L2: category correct and attributes accepted by the reviewer
    - L3: category correct and auto-accepted by the engine
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
import uuid
import pandas as pd
import structlog

from rapidfuzz import fuzz, process, utils
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models.pipeline_run import PipelineRun, ProductAssignment, QAFeedback
from src.errors.exceptions import CatalogReadError, DatabaseError, ValidationError
from src.services.extraction.text import normalize_text
from src.taxonomy.document import TaxonomyDocument
from src.taxonomy.store import TaxonomyStore

logger = structlog.get_logger(__name__)

QA_COLUMN_ALIASES: Dict[str, List[str]] = {
    "sku": ["sku", "source_sku", "id"],
    "predicted": ["predicted", "predicted_category", "category_slug"],
    "corrected": ["corrected", "corrected_category", "expected_category"],
    "review_status": ["review_status", "status", "qa_status"],
    "notes": ["notes", "review_notes", "observacoes"],
    "attributes_ok": ["attributes_ok", "attributes_valid"],
}

LABEL_SCORE_CUTOFF = 82.0
_PASS_VALUES = {"pass", "ok", "approved", "aprovado", "correct"}
_FAIL_VALUES = {"fail", "rejected", "reprovado", "wrong", "incorrect"}
_FALSE_VALUES = {"0", "false", "no", "nao", "n", "fail"}


@dataclass(frozen=True)
class QARow:
    """One reviewed row as read from the file."""
    sku: str
    predicted: str = ""
    corrected: str = ""
    review_status: str = ""
    notes: str = ""
    attributes_ok: bool = True


@dataclass
class QAImportResult:
    """Outcome of one import."""
    run_id: uuid.UUID
    rows_read: int = 0
    imported: int = 0
    unmatched_skus: List[str] = field(default_factory=list)
    unresolved_labels: List[str] = field(default_factory=list)
    accuracy: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "rows_read": self.rows_read,
            "imported": self.imported,
            "unmatched_skus": self.unmatched_skus[:50],
            "unresolved_labels": sorted(set(self.unresolved_labels)),
            "accuracy": self.accuracy,
        }


def _parse_bool(value: str) -> bool:
    return normalize_text(value) not in _FALSE_VALUES if value else True


def read_qa_file(path: str) -> List[QARow]:
    """Read reviewed rows; rows without a SKU are skipped.

    Raises:
        CatalogReadError: File missing, empty, unparseable or without a sku column
    """
    file_path = Path(path)
    if not file_path.exists():
        raise CatalogReadError(f"QA file not found: {path}")
    try:
        frame = pd.read_csv(file_path, dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError:
        raise CatalogReadError(f"QA file is empty: {path}")
    except UnicodeDecodeError:
        frame = pd.read_csv(file_path, dtype=str, keep_default_na=False, encoding="latin-1")
    except (pd.errors.ParserError, ValueError) as e:
        raise CatalogReadError(f"QA file parsing error: {e}") from e

    headers = {str(column).strip().lower(): column for column in frame.columns}
    columns: Dict[str, str] = {}
    for field_name, aliases in QA_COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in headers:
                columns[field_name] = headers[alias]
                break
    if "sku" not in columns:
        raise CatalogReadError(f"QA file must have a sku column (aliases: {QA_COLUMN_ALIASES['sku']})")

    def cell(record: pd.Series, name: str) -> str:
        column = columns.get(name)
        return str(record[column]).strip() if column is not None else ""

    rows = []
    for _, record in frame.iterrows():
        sku = cell(record, "sku")
        if not sku:
            continue
        rows.append(QARow(
            sku=sku,
            predicted=cell(record, "predicted"),
            corrected=cell(record, "corrected"),
            review_status=cell(record, "review_status"),
            notes=cell(record, "notes"),
            attributes_ok=_parse_bool(cell(record, "attributes_ok")),
        ))
    return rows


def resolve_category_label(
    label: str,
    document: TaxonomyDocument,
    score_cutoff: float = LABEL_SCORE_CUTOFF,
) -> Optional[str]:
    """Map a slug, category name or synonym onto a slug.

    Exact slug matches win; otherwise the best WRatio match across names and
    synonyms above ``score_cutoff``.
    """
    if not label:
        return None
    if document.has_category(label):
        return label
    slug_guess = normalize_text(label).replace(" ", "_")
    if document.has_category(slug_guess):
        return slug_guess

    choices: Dict[str, str] = {}
    for category in document.categories:
        for text in (category.slug, category.name_pt, *category.synonyms):
            choices.setdefault(normalize_text(text), category.slug)
    match = process.extractOne(
        normalize_text(label),
        list(choices.keys()),
        scorer=fuzz.WRatio,
        processor=utils.default_process,
        score_cutoff=score_cutoff,
    )
    if match is None:
        return None
    return choices[match[0]]


def normalize_review_status(status: str, predicted: str, corrected: Optional[str]) -> str:
    """pass/fail from explicit status, else from whether a correction differs."""
    value = normalize_text(status)
    if value in _PASS_VALUES:
        return "pass"
    if value in _FAIL_VALUES:
        return "fail"
    return "fail" if corrected and corrected != predicted else "pass"


def compute_accuracy(feedback: Sequence[QAFeedback], assignments: Dict[str, ProductAssignment]) -> Dict[str, Any]:
    """L1/L2/L3 accuracy over reviewed rows that have an assignment."""
    reviewed = l1 = l2 = l3 = 0
    for row in feedback:
        assignment = assignments.get(row.sku)
        if assignment is None:
            continue
        reviewed += 1
        expected = row.corrected_category if row.review_status == "fail" and row.corrected_category else row.predicted_category
        if assignment.category_slug != expected:
            continue
        l1 += 1
        if row.attributes_ok:
            l2 += 1
        if assignment.decision == "auto":
            l3 += 1

    if reviewed == 0:
        return {"qa_reviewed_count": 0}
    return {
        "qa_reviewed_count": reviewed,
        "l1_accuracy": l1 / reviewed,
        "l2_accuracy": l2 / reviewed,
        "l3_accuracy": l3 / reviewed,
    }


class QAFeedbackImporter:
    """Imports reviewed rows for runs of one store."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], store: TaxonomyStore):
        self._session_maker = session_maker
        self.store = store
        self._log = logger.bind(component="QAFeedbackImporter", store_id=store.store_id)

    async def import_file(self, run_id: uuid.UUID, path: str) -> QAImportResult:
        return await self.import_rows(run_id, read_qa_file(path))

    async def import_rows(self, run_id: uuid.UUID, rows: Sequence[QARow]) -> QAImportResult:
        """Upsert reviewed rows for ``run_id`` and refresh its accuracy stats.

        Raises:
            ValidationError: Run missing or belongs to another store
            DatabaseError: Rows could not be stored
        """
        snapshot = await self.store.current()
        document = snapshot.document
        result = QAImportResult(run_id=run_id, rows_read=len(rows))
        log = self._log.bind(run_id=str(run_id))

        try:
            async with self._session_maker() as session:
                run = await session.get(PipelineRun, run_id)
                if run is None or run.store_id != self.store.store_id:
                    raise ValidationError(f"Run {run_id} not found for QA import")

                assignment_rows = await session.execute(
                    select(ProductAssignment).where(ProductAssignment.run_id == run_id)
                )
                assignments = {row.sku: row for row in assignment_rows.scalars()}
                existing_rows = await session.execute(select(QAFeedback).where(QAFeedback.run_id == run_id))
                existing = {row.sku: row for row in existing_rows.scalars()}

                for row in rows:
                    assignment = assignments.get(row.sku)
                    if assignment is None:
                        result.unmatched_skus.append(row.sku)
                        continue
                    predicted = resolve_category_label(row.predicted, document) or assignment.category_slug
                    corrected = resolve_category_label(row.corrected, document) if row.corrected else None
                    if row.corrected and corrected is None:
                        result.unresolved_labels.append(row.corrected)
                    status = normalize_review_status(row.review_status, predicted, corrected)

                    feedback = existing.get(row.sku)
                    if feedback is None:
                        feedback = QAFeedback(run_id=run_id, sku=row.sku)
                        session.add(feedback)
                        existing[row.sku] = feedback
                    feedback.title = assignment.title
                    feedback.description = assignment.description
                    feedback.predicted_category = predicted
                    feedback.corrected_category = corrected
                    feedback.review_status = status
                    feedback.attributes_ok = row.attributes_ok
                    feedback.notes = row.notes or None
                    result.imported += 1

                await session.flush()
                result.accuracy = compute_accuracy(list(existing.values()), assignments)
                await session.execute(
                    update(PipelineRun)
                    .where(PipelineRun.id == run_id)
                    .values(stats={**(run.stats or {}), **result.accuracy})
                )
                await session.commit()
        except SQLAlchemyError as e:
            log.error("qa_import_failed", error=str(e))
            raise DatabaseError(f"Failed to store QA feedback: {e}") from e

        log.info(
            "qa_feedback_imported",
            imported=result.imported,
            unmatched=len(result.unmatched_skus),
            unresolved_labels=len(set(result.unresolved_labels)),
            **{k: v for k, v in result.accuracy.items() if k.endswith("_accuracy")},
        )
        return result
