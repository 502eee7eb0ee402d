"""Persisted run log.

``RunLogWriter`` buffers structured entries for one pipeline run or
self-improvement batch and writes them to ``run_logs`` in batches. Writing
is best effort: a failed flush is reported through structlog and the
entries are dropped, never raised into the caller.

Payloads are truncated before buffering (nesting depth, list items, dict
keys, string length) when their JSON form exceeds the byte limit.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional
import json
import uuid
import structlog

from sqlalchemy import delete, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import trace_settings
from src.db.base import utcnow
from src.db.models.run_log import RunLog

logger = structlog.get_logger(__name__)

LEVELS = ("debug", "info", "warning", "error")


@dataclass(frozen=True)
class PayloadLimits:
    """Truncation limits for run-log payloads."""
    max_bytes: int = 24_000
    max_depth: int = 4
    max_items: int = 20
    max_keys: int = 40
    max_string_chars: int = 700

    @classmethod
    def from_settings(cls) -> "PayloadLimits":
        return cls(
            max_bytes=trace_settings.max_payload_bytes,
            max_depth=trace_settings.max_depth,
            max_items=trace_settings.max_items,
            max_keys=trace_settings.max_keys,
            max_string_chars=trace_settings.max_string_chars,
        )


def _truncate(value: Any, depth: int, limits: PayloadLimits) -> Any:
    if depth >= limits.max_depth:
        return "[truncated_depth_limit]"
    if isinstance(value, str):
        if len(value) <= limits.max_string_chars:
            return value
        return value[:limits.max_string_chars] + "..."
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        items = [_truncate(entry, depth + 1, limits) for entry in value[:limits.max_items]]
        if len(value) > limits.max_items:
            items.append(f"[truncated_items:{len(value) - limits.max_items}]")
        return items
    if isinstance(value, dict):
        keys = list(value.keys())
        output = {str(key): _truncate(value[key], depth + 1, limits) for key in keys[:limits.max_keys]}
        if len(keys) > limits.max_keys:
            output["__truncated_keys"] = len(keys) - limits.max_keys
        return output
    return str(value)


def truncate_payload(payload: Any, limits: Optional[PayloadLimits] = None) -> Dict[str, Any]:
    """JSON-safe payload no larger than the configured limits.

    Non-dict payloads are wrapped as ``{"value": ...}``. Payloads that fit
    in ``max_bytes`` are returned unchanged (after JSON normalization).
    """
    limits = limits or PayloadLimits.from_settings()
    if payload is None:
        return {}
    try:
        normalized = json.loads(json.dumps(payload, default=str))
    except (TypeError, ValueError):
        return {"payload_serialization_error": True}
    if not isinstance(normalized, dict):
        normalized = {"value": normalized}

    size = len(json.dumps(normalized).encode("utf-8"))
    if size <= limits.max_bytes:
        return normalized
    truncated = _truncate(normalized, 0, limits)
    return {"__payload_truncated": True, "__original_size_bytes": size, **truncated}


class RunLogWriter:
    """Buffered, best-effort writer for ``run_logs`` rows."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        run_id: Optional[uuid.UUID] = None,
        batch_id: Optional[uuid.UUID] = None,
        flush_batch_size: Optional[int] = None,
        limits: Optional[PayloadLimits] = None,
    ):
        self._session_maker = session_maker
        self.run_id = run_id
        self.batch_id = batch_id
        self._flush_batch_size = flush_batch_size or trace_settings.flush_batch_size
        self._limits = limits or PayloadLimits.from_settings()
        self._buffer: List[Dict[str, Any]] = []
        self.event_count = 0
        self.flush_error_count = 0
        self._log = logger.bind(
            component="RunLogWriter",
            run_id=str(run_id) if run_id else None,
            batch_id=str(batch_id) if batch_id else None,
        )

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def log(self, level: str, stage: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Buffer one entry; flushes once the buffer reaches the batch size."""
        if level not in LEVELS:
            level = "info"
        self._buffer.append({
            "id": uuid.uuid4(),
            "run_id": self.run_id,
            "batch_id": self.batch_id,
            "level": level,
            "stage": stage,
            "event": event,
            "payload": truncate_payload(payload, self._limits),
            "created_at": utcnow(),
        })
        self.event_count += 1
        if len(self._buffer) >= self._flush_batch_size:
            await self.flush()

    async def info(self, stage: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        await self.log("info", stage, event, payload)

    async def warning(self, stage: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        await self.log("warning", stage, event, payload)

    async def error(self, stage: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        await self.log("error", stage, event, payload)

    async def flush(self) -> int:
        """Write buffered entries. Returns rows written (0 on failure)."""
        if not self._buffer:
            return 0
        rows, self._buffer = self._buffer, []
        try:
            async with self._session_maker() as session:
                for start in range(0, len(rows), self._flush_batch_size):
                    await session.execute(insert(RunLog), rows[start:start + self._flush_batch_size])
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            self.flush_error_count += 1
            self._log.warning("run_log_flush_failed", dropped=len(rows), error=str(e))
            return 0
        return len(rows)

    def stats(self) -> Dict[str, int]:
        return {
            "trace_event_count": self.event_count,
            "trace_flush_error_count": self.flush_error_count,
        }


async def expire_run_logs(
    session_maker: async_sessionmaker[AsyncSession],
    retention_hours: Optional[int] = None,
) -> int:
    """Delete run-log rows older than the retention window.

    Returns:
        Number of rows deleted
    """
    hours = retention_hours if retention_hours is not None else trace_settings.retention_hours
    cutoff = utcnow() - timedelta(hours=hours)
    async with session_maker() as session:
        result = await session.execute(delete(RunLog).where(RunLog.created_at < cutoff))
        await session.commit()
    deleted = result.rowcount or 0
    logger.info("run_logs_expired", deleted=deleted, retention_hours=hours)
    return deleted
