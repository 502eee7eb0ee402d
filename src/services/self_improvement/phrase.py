"""Operator phrases for self-improvement batches."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import re

from src.config import self_improve_settings
from src.db.models.self_improvement import LoopType
from src.errors.exceptions import PhraseParseError

SUPPORTED_COMMANDS = (
    "'run <N> self-improvement <canary|full> loops', "
    "'show self-improvement batches', or 'show self-improvement batch <id>'"
)

_STATUS_ALL = re.compile(r"^show\s+self-improvement\s+batches$", re.IGNORECASE)
_STATUS_ONE = re.compile(r"^show\s+self-improvement\s+batch\s+([A-Za-z0-9-]+)$", re.IGNORECASE)
_ENQUEUE = re.compile(r"^run\s+(\d+)\s+self-improvement\s+(canary|full)\s+loops?$", re.IGNORECASE)
_AMBIGUOUS = re.compile(r"^(run|show)\b.*self-improvement", re.IGNORECASE)


class PhraseAction(str, Enum):
    ENQUEUE = "enqueue"
    STATUS_ALL = "status_all"
    STATUS_ONE = "status_one"


@dataclass(frozen=True)
class PhraseCommand:
    action: PhraseAction
    count: Optional[int] = None
    loop_type: Optional[LoopType] = None
    batch_id: Optional[str] = None


def parse_phrase(phrase: str, max_loops: Optional[int] = None) -> PhraseCommand:
    """Map an operator phrase to a batch command.

    Raises:
        PhraseParseError: Unknown, ambiguous or out-of-range phrase
    """
    text = " ".join((phrase or "").split())
    max_loops = self_improve_settings.max_loops if max_loops is None else max_loops

    if _STATUS_ALL.match(text):
        return PhraseCommand(action=PhraseAction.STATUS_ALL)

    match = _STATUS_ONE.match(text)
    if match:
        return PhraseCommand(action=PhraseAction.STATUS_ONE, batch_id=match.group(1))

    match = _ENQUEUE.match(text)
    if match:
        count = int(match.group(1))
        if count <= 0:
            raise PhraseParseError("Requested count must be at least 1.")
        if count > max_loops:
            raise PhraseParseError(
                f"Requested count {count} exceeds max allowed {max_loops}. "
                f"Please request {max_loops} or fewer loops."
            )
        return PhraseCommand(
            action=PhraseAction.ENQUEUE,
            count=count,
            loop_type=LoopType(match.group(2).lower()),
        )

    if _AMBIGUOUS.match(text):
        raise PhraseParseError(f"Ambiguous self-improvement phrase. Use {SUPPORTED_COMMANDS}.")
    raise PhraseParseError(f"Unrecognized phrase. Supported commands: {SUPPORTED_COMMANDS}.")
