"""Result document persistence.

The recorder owns the run's SetupOutput. Every phase records its outcome
and the document is flushed immediately, so a crash or abort mid-run still
leaves a usable partial file behind. The file holds a client secret, so it
is written atomically and readable only by the owner.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .config import atomic_write
from .models import PhaseRecord, SetupOutput

logger = logging.getLogger(__name__)


class OutputRecorder:
    """Accumulates phase results into one SetupOutput and persists it."""

    def __init__(self, path: Path | None, tenant_id: str | None = None) -> None:
        self.path = path
        self.output = SetupOutput(tenant_id=tenant_id)

    def record(self, phase: str, status: str, detail: str | None = None) -> None:
        """Record (or replace) a phase outcome and flush."""
        self.output.phases = [p for p in self.output.phases if p.name != phase]
        self.output.phases.append(PhaseRecord(name=phase, status=status, detail=detail))
        self.flush()

    def phase_status(self, phase: str) -> str | None:
        for record in self.output.phases:
            if record.name == phase:
                return record.status
        return None

    def mark_completed(self) -> None:
        self.output.completed = True
        self.flush()

    def flush(self) -> None:
        if self.path is None:
            return
        atomic_write(self.path, self.output.model_dump_json(by_alias=True, indent=2))
        logger.debug("Output flushed", extra={"path": str(self.path)})


def load_output(path: Path) -> SetupOutput:
    """Read a previously written result document."""
    return SetupOutput.model_validate_json(path.read_text(encoding="utf-8"))
