"""
Sync phase state machine and checkpoint log.

A run moves idle -> fetching -> extracting -> preview -> importing -> complete,
and may drop to error from any phase. Every transition is validated against
TRANSITIONS, reported to the caller's progress callback and appended to a
JSONL checkpoint log.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .error_tracker import InvalidTransition
from .logging_manager import get_logger
from .models import ExtractedData

logger = get_logger(__name__)


class SyncPhase(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    PREVIEW = "preview"
    IMPORTING = "importing"
    COMPLETE = "complete"
    ERROR = "error"


TRANSITIONS: Dict[SyncPhase, frozenset] = {
    SyncPhase.IDLE: frozenset({SyncPhase.FETCHING, SyncPhase.ERROR}),
    SyncPhase.FETCHING: frozenset({SyncPhase.EXTRACTING, SyncPhase.ERROR}),
    SyncPhase.EXTRACTING: frozenset({SyncPhase.PREVIEW, SyncPhase.ERROR}),
    SyncPhase.PREVIEW: frozenset({SyncPhase.IMPORTING, SyncPhase.ERROR}),
    SyncPhase.IMPORTING: frozenset({SyncPhase.COMPLETE, SyncPhase.ERROR}),
    # A finished or failed run can only be restarted from idle
    SyncPhase.COMPLETE: frozenset({SyncPhase.IDLE}),
    SyncPhase.ERROR: frozenset({SyncPhase.IDLE}),
}


def transition(current: SyncPhase, target: SyncPhase) -> SyncPhase:
    """Return `target` if the move is allowed, else raise InvalidTransition."""
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(f"Cannot move from {current.value} to {target.value}")
    return target


@dataclass
class SyncProgress:
    phase: SyncPhase
    progress: int
    current_step: str
    extracted_data: Optional[ExtractedData] = None
    error: Optional[str] = None


ProgressCallback = Callable[[SyncProgress], None]


@dataclass
class Checkpoint:
    institution_id: str
    run_id: str
    phase: str
    progress: int
    details: Dict
    timestamp: str


class CheckpointLog:
    """Append-only JSONL record of phase transitions, one line per transition."""

    def __init__(self, state_dir: str = "./cache", filename: str = "sync_checkpoints.jsonl"):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.filepath = self.state_dir / filename

    def write_checkpoint(self, institution_id: str, run_id: str, phase: SyncPhase, progress: int,
                         details: Optional[Dict] = None) -> None:
        cp = Checkpoint(
            institution_id=institution_id,
            run_id=run_id,
            phase=phase.value,
            progress=progress,
            details=details or {},
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        with open(self.filepath, "a", encoding="utf-8") as f:
            f.write(json.dumps(asdict(cp), ensure_ascii=False) + "\n")

    def read_checkpoints(self, institution_id: Optional[str] = None) -> List[Dict]:
        if not self.filepath.exists():
            return []
        rows: List[Dict] = []
        with open(self.filepath, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed checkpoint line")
                    continue
                if institution_id is None or data.get("institution_id") == institution_id:
                    rows.append(data)
        return rows

    def latest(self, institution_id: str) -> Optional[Dict]:
        cps = self.read_checkpoints(institution_id)
        return cps[-1] if cps else None


class PhaseMachine:
    """
    Current phase of one orchestrator run.

    Progress events are advisory: a callback that raises is logged and
    ignored so telemetry cannot break a sync.
    """

    def __init__(self, institution_id: str, run_id: str, on_progress: Optional[ProgressCallback] = None,
                 checkpoints: Optional[CheckpointLog] = None, start: SyncPhase = SyncPhase.IDLE):
        self.institution_id = institution_id
        self.run_id = run_id
        self.on_progress = on_progress
        self.checkpoints = checkpoints
        self.phase = start

    def _emit(self, event: SyncProgress) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(event)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}", extra={'details': {'institution_id': self.institution_id}})

    def announce(self, progress: int, current_step: str, extracted_data: Optional[ExtractedData] = None) -> None:
        """Report progress inside the current phase without moving."""
        self._emit(SyncProgress(self.phase, progress, current_step, extracted_data=extracted_data))

    def advance(self, target: SyncPhase, progress: int, current_step: str,
                extracted_data: Optional[ExtractedData] = None, error: Optional[str] = None) -> None:
        previous = self.phase
        self.phase = transition(self.phase, target)
        logger.info(f"Sync phase {previous.value} -> {target.value}: {current_step}", extra={'details': {
            'institution_id': self.institution_id, 'run_id': self.run_id, 'progress': progress
        }})
        if self.checkpoints is not None:
            details = {'step': current_step}
            if error:
                details['error'] = error
            try:
                self.checkpoints.write_checkpoint(self.institution_id, self.run_id, target, progress, details)
            except OSError as e:
                logger.warning(f"Failed to write checkpoint: {e}", extra={'details': {'institution_id': self.institution_id}})
        self._emit(SyncProgress(target, progress, current_step, extracted_data=extracted_data, error=error))

    def fail(self, message: str) -> None:
        """Move to error unless the run already failed."""
        if self.phase == SyncPhase.ERROR:
            return
        self.advance(SyncPhase.ERROR, 0, message, error=message)
