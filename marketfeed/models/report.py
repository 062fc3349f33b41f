from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel


class CycleReport(BaseModel):
    """
    Outcome of one refresh cycle.

    skipped:
      True when the market gate was closed and nothing ran

    committed:
      True only when the durable write (and everything after it) went through

    succeeded / failed:
      per-symbol outcome; failed maps symbol -> short reason

    triggered:
      ids of alert rules that fired because of this cycle
    """

    label: str
    tier: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    committed: bool = False
    succeeded: List[str] = []
    failed: Dict[str, str] = {}
    triggered: List[int] = []

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)

    def summary(self) -> str:
        if self.skipped:
            return f"{self.label}: skipped (market closed)"
        if not self.succeeded:
            return (
                f"{self.label}: cycle failed, 0/{self.attempted} symbols "
                f"failed={sorted(self.failed)}"
            )
        line = f"{self.label}: ok {len(self.succeeded)}/{self.attempted}"
        if self.failed:
            details = ", ".join(f"{s} ({r})" for s, r in sorted(self.failed.items()))
            line += f" failed: {details}"
        if not self.committed:
            line += " (commit aborted)"
        return line
