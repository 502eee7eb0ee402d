"""Persisted canary state and hotlist source resolution."""
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional
import json
import structlog

from src.db.base import utcnow
from src.services.quality.hotlist import latest_hotlist

logger = structlog.get_logger(__name__)

SOURCE_STATE = "state"
SOURCE_LATEST_LOCAL = "latest_local"
SOURCE_NONE = "none"


@dataclass(frozen=True)
class CanaryState:
    """Last canary run and the hotlist it produced."""
    last_run_id: str
    last_hotlist_path: str
    updated_at: str

    def to_json(self) -> dict:
        return {
            "lastCanaryRunId": self.last_run_id,
            "lastCanaryHotlistPath": self.last_hotlist_path,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class HotlistSource:
    kind: str
    path: Optional[Path] = None


def read_canary_state(state_path: str) -> Optional[CanaryState]:
    """Read the state file; missing, unreadable or incomplete state reads as None."""
    path = Path(state_path)
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("canary_state_unreadable", path=str(path), error=str(e))
        return None
    if not isinstance(data, dict):
        return None

    values = [data.get(key) for key in ("lastCanaryRunId", "lastCanaryHotlistPath", "updatedAt")]
    if not all(isinstance(value, str) and value.strip() for value in values):
        return None
    return CanaryState(last_run_id=values[0], last_hotlist_path=values[1], updated_at=values[2])


def write_canary_state(
    state_path: str,
    run_id: str,
    hotlist_path: str,
    now: Optional[datetime] = None,
) -> CanaryState:
    state = CanaryState(
        last_run_id=str(run_id),
        last_hotlist_path=str(hotlist_path),
        updated_at=(now or utcnow()).isoformat(),
    )
    path = Path(state_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(state.to_json(), indent=2), encoding="utf-8")
    logger.info("canary_state_written", path=str(path), run_id=state.last_run_id)
    return state


def resolve_hotlist_source(state_path: str, output_dir: str) -> HotlistSource:
    """Pick the hotlist for the fixed canary portion.

    Priority: the path recorded in canary state (relative paths resolve
    against the state file's directory) if it still exists, else the most
    recently modified hotlist in ``output_dir``, else none.
    """
    state = read_canary_state(state_path)
    if state is not None:
        recorded = Path(state.last_hotlist_path)
        if not recorded.is_absolute():
            recorded = (Path(state_path).parent / recorded).resolve()
        if recorded.is_file():
            return HotlistSource(kind=SOURCE_STATE, path=recorded)

    latest = latest_hotlist(output_dir)
    if latest is not None:
        return HotlistSource(kind=SOURCE_LATEST_LOCAL, path=latest)
    return HotlistSource(kind=SOURCE_NONE)
