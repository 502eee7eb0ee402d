"""Canary subset selection.

A canary subset is a small, reproducible slice of the catalog:

    - fixed portion: SKUs sampled in the highest-severity rows of the latest
      confusion hotlist (affected, low-margin, contradiction counts descending,
      then category pair ascending)
    - random portion: every remaining SKU ranked by a stable hash of
      ``seed::store_id::sku``; the lowest ranks fill the open slots

Same catalog, hotlist, seed, store and sizes always select the same SKUs.
A short or missing hotlist is backfilled from the random pool with a
warning, never an error.
"""
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence
import structlog

from src.config import canary_settings, settings
from src.errors.exceptions import CanaryError
from src.models.catalog import CatalogRow
from src.services.canary.state import SOURCE_NONE, resolve_hotlist_source
from src.services.catalog import read_catalog, write_catalog
from src.services.extraction.text import fnv1a_32
from src.services.quality.hotlist import HotlistRow, read_hotlist

logger = structlog.get_logger(__name__)

NO_HOTLIST_WARNING = (
    "No hotlist source was found. Fixed canary products will be backfilled using random selection."
)


@dataclass
class CanarySelection:
    """Selection report."""
    sample_size_requested: int
    sample_size_used: int
    total_available: int
    fixed_target: int
    fixed_selected: int
    random_selected: int
    selected_skus: List[str]
    warnings: List[str] = field(default_factory=list)
    hotlist_source: str = SOURCE_NONE
    hotlist_path: Optional[str] = None
    subset_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subset_path": self.subset_path,
            "sample_size_requested": self.sample_size_requested,
            "sample_size_used": self.sample_size_used,
            "total_available": self.total_available,
            "fixed_target": self.fixed_target,
            "fixed_selected": self.fixed_selected,
            "random_selected": self.random_selected,
            "hotlist_source": self.hotlist_source,
            "hotlist_path": self.hotlist_path,
            "selected_skus": list(self.selected_skus),
            "warnings": list(self.warnings),
        }


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def fixed_target_for(sample_size_used: int, fixed_ratio: float) -> int:
    return min(sample_size_used, max(1, round_half_up(sample_size_used * fixed_ratio)))


def sort_hotlist_rows(rows: Sequence[HotlistRow]) -> List[HotlistRow]:
    return sorted(
        rows,
        key=lambda row: (
            -row.affected_count,
            -row.low_margin_count,
            -row.contradiction_count,
            row.category_a,
            row.category_b,
        ),
    )


def deterministic_sku_order(skus: Sequence[str], seed: str, store_id: str) -> List[str]:
    """Order SKUs by ``fnv1a_32(seed::store_id::sku)``, SKU as tie-break."""
    return sorted(skus, key=lambda sku: (fnv1a_32(f"{seed}::{store_id}::{sku}"), sku))


def select_subset(
    skus: Sequence[str],
    hotlist_rows: Optional[Sequence[HotlistRow]],
    sample_size: int,
    fixed_ratio: float,
    seed: str,
    store_id: str,
) -> CanarySelection:
    """Pure selection over deduplicated SKUs in catalog order.

    Args:
        skus: Unique catalog SKUs
        hotlist_rows: Hotlist rows, or None when no hotlist exists
        sample_size: Requested subset size
        fixed_ratio: Share of the subset drawn from the hotlist
        seed: Random-portion seed
        store_id: Store scope mixed into the hash

    Raises:
        CanaryError: No products to select from
    """
    if not skus:
        raise CanaryError("Canary input has no valid products after ingest/deduplication")

    warnings: List[str] = []
    total = len(skus)
    used = min(max(1, sample_size), total)
    if used < sample_size:
        warnings.append(
            f"Only {total} unique products available. Canary sample reduced from {sample_size} to {used}."
        )
    fixed_target = fixed_target_for(used, fixed_ratio)

    if hotlist_rows is None:
        warnings.append(NO_HOTLIST_WARNING)

    valid = set(skus)
    fixed: List[str] = []
    fixed_set = set()
    for row in sort_hotlist_rows(hotlist_rows or []):
        for sku in row.sample_skus:
            if len(fixed) >= fixed_target:
                break
            if sku in valid and sku not in fixed_set:
                fixed_set.add(sku)
                fixed.append(sku)
        if len(fixed) >= fixed_target:
            break

    if len(fixed) < fixed_target:
        warnings.append(
            f"Hotlist provided {len(fixed)} fixed products for target {fixed_target}. "
            "Remaining slots were backfilled with random selection."
        )

    pool = deterministic_sku_order([sku for sku in skus if sku not in fixed_set], seed, store_id)
    chosen = fixed_set | set(pool[:used - len(fixed)])
    selected = [sku for sku in skus if sku in chosen]

    return CanarySelection(
        sample_size_requested=sample_size,
        sample_size_used=used,
        total_available=total,
        fixed_target=fixed_target,
        fixed_selected=len(fixed),
        random_selected=len(selected) - len(fixed),
        selected_skus=selected,
        warnings=warnings,
    )


def build_canary_subset(
    input_path: Optional[str] = None,
    *,
    store_id: Optional[str] = None,
    sample_size: Optional[int] = None,
    fixed_ratio: Optional[float] = None,
    seed: Optional[str] = None,
    subset_path: Optional[str] = None,
    state_path: Optional[str] = None,
    output_dir: Optional[str] = None,
) -> CanarySelection:
    """Read the catalog, select a canary subset and write it as a catalog CSV.

    Unset arguments come from ``CanarySettings``/``Settings``.

    Raises:
        CatalogReadError: Catalog unreadable
        CanaryError: Catalog has no valid products
    """
    input_path = input_path or canary_settings.input_path
    store_id = store_id or settings.default_store_id
    sample_size = canary_settings.sample_size if sample_size is None else sample_size
    fixed_ratio = canary_settings.fixed_ratio if fixed_ratio is None else fixed_ratio
    seed = seed or canary_settings.seed
    subset_path = subset_path or canary_settings.subset_path
    state_path = state_path or canary_settings.state_path
    output_dir = output_dir or settings.output_dir

    rows: List[CatalogRow] = read_catalog(input_path)
    source = resolve_hotlist_source(state_path, output_dir)
    hotlist_rows = read_hotlist(str(source.path)) if source.path is not None else None

    selection = select_subset(
        [row.sku for row in rows],
        hotlist_rows,
        sample_size,
        fixed_ratio,
        seed,
        store_id,
    )
    selected = set(selection.selected_skus)
    written = write_catalog([row for row in rows if row.sku in selected], subset_path)

    selection.hotlist_source = source.kind
    selection.hotlist_path = str(source.path) if source.path is not None else None
    selection.subset_path = str(written)

    logger.info(
        "canary_subset_built",
        store_id=store_id,
        subset_path=selection.subset_path,
        sample_size_used=selection.sample_size_used,
        fixed_selected=selection.fixed_selected,
        random_selected=selection.random_selected,
        hotlist_source=selection.hotlist_source,
    )
    for warning in selection.warnings:
        logger.warning("canary_selection_warning", store_id=store_id, warning=warning)
    return selection


