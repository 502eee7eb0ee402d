"""Append-only run log ORM model."""
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column
from src.db.base import Base, UUIDMixin, CreatedAtMixin, JSONType
from typing import Any, Dict
import uuid


class RunLog(Base, UUIDMixin, CreatedAtMixin):
    """Structured trace entry for a pipeline run or self-improvement batch."""

    __tablename__ = "run_logs"

    run_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    batch_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    level: Mapped[str] = mapped_column(String(16), nullable=False)
    stage: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<RunLog(stage='{self.stage}', event='{self.event}', level='{self.level}')>"
