"""
Chain Mirror - API Response Schemas
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from chainmirror.models.records import PassReport, SyncCursor


class LastPassSummary(BaseModel):
    """Short form of the most recent pass."""
    pass_number: int
    trigger: str
    finished_at: Optional[datetime]
    ok: bool
    changed: bool

    @classmethod
    def from_report(cls, report: PassReport) -> "LastPassSummary":
        return cls(
            pass_number=report.pass_number,
            trigger=report.trigger,
            finished_at=report.finished_at,
            ok=report.ok,
            changed=report.changed,
        )


class HealthResponse(BaseModel):
    status: str
    listener: str
    polling: bool
    sync_running: bool
    passes_completed: int
    last_pass: Optional[LastPassSummary] = None


class SyncStatusResponse(BaseModel):
    """Per-entity cursors and the full last pass report."""
    running: bool
    pending: bool
    passes_completed: int
    cursors: list[SyncCursor]
    last_report: Optional[PassReport] = None


class TriggerResponse(BaseModel):
    # False: queued behind the running pass
    started: bool
