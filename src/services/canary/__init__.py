"""Canary subset selection, state and gate."""
from src.services.canary.gate import is_gate_passing, read_auto_accepted_rate
from src.services.canary.selector import (
    CanarySelection,
    build_canary_subset,
    deterministic_sku_order,
    fixed_target_for,
    select_subset,
    sort_hotlist_rows,
)
from src.services.canary.state import (
    CanaryState,
    HotlistSource,
    read_canary_state,
    resolve_hotlist_source,
    write_canary_state,
)

__all__ = [
    "is_gate_passing",
    "read_auto_accepted_rate",
    "CanarySelection",
    "build_canary_subset",
    "deterministic_sku_order",
    "fixed_target_for",
    "select_subset",
    "sort_hotlist_rows",
    "CanaryState",
    "HotlistSource",
    "read_canary_state",
    "resolve_hotlist_source",
    "write_canary_state",
]
