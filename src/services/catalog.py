"""Catalog file reader and writer.

Reads CSV or XLSX catalogs with pandas, maps aliased column headers onto
``CatalogRow`` fields, skips rows without a SKU or title and keeps the first
occurrence of each SKU.
"""
from pathlib import Path
from typing import Dict, List, Optional, Sequence
import pandas as pd
import structlog

from src.errors.exceptions import CatalogReadError
from src.models.catalog import CatalogRow, NormalizedProduct

logger = structlog.get_logger(__name__)

COLUMN_ALIASES: Dict[str, List[str]] = {
    "sku": ["sku", "source_sku", "id"],
    "title": ["title", "name", "nome", "titulo"],
    "description": ["description", "descricao"],
    "brand": ["brand", "marca"],
    "category_hint": ["category_hint", "category", "categoria"],
}

NA_VALUES = ["", "N/A", "n/a", "NA", "null", "NULL", "None"]

SUBSET_COLUMNS = ["sku", "title", "description", "brand", "category_hint"]


def _read_frame(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix in (".xlsx", ".xlsm", ".xls"):
        return pd.read_excel(path, dtype=str, engine="openpyxl")
    try:
        return pd.read_csv(path, dtype=str, na_values=NA_VALUES, keep_default_na=True)
    except UnicodeDecodeError as e:
        logger.warning("utf8_decode_failed_trying_latin1", path=str(path), error=str(e))
        return pd.read_csv(path, dtype=str, encoding="latin-1", na_values=NA_VALUES, keep_default_na=True)


def _map_columns(headers: Sequence[str]) -> Dict[str, str]:
    """Map field name -> actual header, first alias wins."""
    normalized = {str(header).strip().lower(): header for header in headers}
    column_map: Dict[str, str] = {}
    for field_name, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in normalized:
                column_map[field_name] = normalized[alias]
                break
    return column_map


def _cell(row: pd.Series, column: Optional[str]) -> str:
    if column is None:
        return ""
    value = row.get(column)
    if value is None or pd.isna(value):
        return ""
    return str(value).strip()


def read_catalog(path: str) -> List[CatalogRow]:
    """Read a catalog file.

    Args:
        path: CSV or XLSX file

    Returns:
        Deduplicated rows in file order

    Raises:
        CatalogReadError: File missing, empty, unparseable or lacking sku/title columns
    """
    file_path = Path(path)
    log = logger.bind(path=str(file_path))
    if not file_path.exists():
        raise CatalogReadError(f"Catalog file not found: {path}")

    try:
        frame = _read_frame(file_path)
    except pd.errors.EmptyDataError:
        raise CatalogReadError(f"Catalog file is empty: {path}")
    except (pd.errors.ParserError, ValueError) as e:
        raise CatalogReadError(f"Catalog parsing error: {e}") from e

    column_map = _map_columns(list(frame.columns))
    if "sku" not in column_map or "title" not in column_map:
        raise CatalogReadError(
            f"Catalog must have sku and title columns (aliases: "
            f"{COLUMN_ALIASES['sku']}, {COLUMN_ALIASES['title']})"
        )

    rows: List[CatalogRow] = []
    seen = set()
    skipped = 0
    duplicates = 0
    for _, record in frame.iterrows():
        sku = _cell(record, column_map.get("sku"))
        title = _cell(record, column_map.get("title"))
        if not sku or not title:
            skipped += 1
            continue
        if sku in seen:
            duplicates += 1
            continue
        seen.add(sku)
        rows.append(CatalogRow(
            sku=sku,
            title=title,
            description=_cell(record, column_map.get("description")),
            brand=_cell(record, column_map.get("brand")),
            category_hint=_cell(record, column_map.get("category_hint")) or None,
        ))

    log.info("catalog_read", rows=len(rows), skipped=skipped, duplicates=duplicates)
    return rows


def normalize_catalog(rows: Sequence[CatalogRow]) -> List[NormalizedProduct]:
    return [NormalizedProduct.from_row(row) for row in rows]


def write_catalog(rows: Sequence[CatalogRow], path: str) -> Path:
    """Write rows as a CSV catalog readable by ``read_catalog``."""
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    frame = pd.DataFrame(
        [
            {
                "sku": row.sku,
                "title": row.title,
                "description": row.description,
                "brand": row.brand,
                "category_hint": row.category_hint or "",
            }
            for row in rows
        ],
        columns=SUBSET_COLUMNS,
    )
    frame.to_csv(file_path, index=False)
    return file_path
